"""
Tests for YAML/JSON pipeline configuration and CLI overrides.
"""

import json
from pathlib import Path

import pytest

from tidyrna.config import (
    DifferentialConfig,
    PipelineConfig,
    apply_overrides,
    config_from_dict,
    load_config,
)


class TestLoadConfig:

    def test_yaml(self, tmp_path):
        path = tmp_path / "pipeline.yaml"
        path.write_text(
            "counts: data/counts.tsv\n"
            "samples: data/samples.tsv\n"
            "filter:\n"
            "  factor_of_interest: dex\n"
            "differential:\n"
            "  formula: '~ 0 + dex'\n"
            "  contrasts:\n"
            "    trt: dextrt - dexuntrt\n"
            "export:\n"
            "  output_dir: out\n"
        )
        config = load_config(path)
        assert config.counts == Path("data/counts.tsv")
        assert config.filter.factor_of_interest == "dex"
        assert config.filter.minimum_counts == 10
        assert config.differential.contrasts == {"trt": "dextrt - dexuntrt"}
        assert config.export.output_dir == Path("out")
        assert config.reduction.methods == ["PCA", "MDS"]

    def test_json(self, tmp_path):
        path = tmp_path / "pipeline.json"
        path.write_text(json.dumps({"reduction": {"methods": ["MDS"], "top": 50}}))
        config = load_config(path)
        assert config.reduction.methods == ["MDS"]
        assert config.reduction.top == 50

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(path) == PipelineConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "pipeline.toml"
        path.write_text("counts = 'x'\n")
        with pytest.raises(ValueError, match="Unsupported"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("filter: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)


class TestConfigFromDict:

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown config key"):
            config_from_dict({"count": "x.tsv"})

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="'differential'"):
            config_from_dict({"differential": {"fdr": 0.1}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a mapping"):
            config_from_dict({"filter": ["dex"]})


class TestApplyOverrides:

    def test_given_values_replace_file_values(self):
        config = config_from_dict({"differential": {"formula": "~ dex", "fdr_threshold": 0.01}})
        merged = apply_overrides(config, {
            "differential.fdr_threshold": 0.1,
            "differential.formula": None,
            "export.output_dir": "elsewhere",
            "counts": "counts.tsv",
        })
        assert merged.differential.fdr_threshold == 0.1
        assert merged.differential.formula == "~ dex"
        assert merged.export.output_dir == Path("elsewhere")
        assert merged.counts == Path("counts.tsv")
        # Original untouched
        assert config.differential.fdr_threshold == 0.01

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="Unknown config section"):
            apply_overrides(PipelineConfig(), {"plotting.dpi": 300})

    def test_defaults(self):
        assert DifferentialConfig().method == "quasi_likelihood"
        assert PipelineConfig().scaling.method == "TMM"
