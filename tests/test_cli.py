"""
Tests for the tidyrna command-line interface.
"""

import matplotlib
matplotlib.use("Agg")

import pandas as pd
import pytest

from tidyrna.cli import main
from tidyrna.io import read_feature_table


@pytest.fixture
def input_files(tmp_path, nb_data):
    counts, samples = nb_data
    counts_path = tmp_path / "counts.tsv"
    samples_path = tmp_path / "samples.tsv"
    counts.to_csv(counts_path, sep="\t", index_label="gene_id")
    samples.to_csv(samples_path, sep="\t", index_label="sample_id")
    return counts_path, samples_path


class TestMain:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "tidyrna" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["--version"])
        assert excinfo.value.code == 0
        assert "tidyrna" in capsys.readouterr().out


class TestRunCommand:

    def test_full_run(self, tmp_path, input_files):
        counts, samples = input_files
        output = tmp_path / "results"
        code = main([
            "run", "--counts", str(counts), "--samples", str(samples),
            "--output", str(output), "--factor", "group",
            "--formula", "~ 0 + group", "--contrast", "grouptreated - groupuntreated",
            "--keep-variable", "20", "--report", "--color-by", "group",
        ])
        assert code == 0
        for name in ("features.tsv", "samples.tsv", "count_scaled.tsv",
                     "variance_explained.tsv", "differential_summary.tsv", "report.html"):
            assert (output / name).exists(), name
        assert (output / "figures" / "pca_samples.png").exists()
        assert (output / "figures" / "volcano_1.png").exists()
        assert (output / "figures" / "variable_heatmap.png").exists()

        features = pd.read_csv(output / "features.tsv", sep="\t")
        assert len(features) == 200
        assert {"lowly_abundant", "logFC", "FDR", "significant"} <= set(features.columns)

        sample_table = pd.read_csv(output / "samples.tsv", sep="\t")
        assert {"PC1", "PC2", "Dim1", "Dim2", "norm_factor"} <= set(sample_table.columns)

    def test_formula_without_factor(self, tmp_path, one_sided_data):
        counts, samples = one_sided_data
        counts_path = tmp_path / "counts.tsv"
        samples_path = tmp_path / "samples.tsv"
        counts.to_csv(counts_path, sep="\t", index_label="gene_id")
        samples.to_csv(samples_path, sep="\t", index_label="sample_id")
        output = tmp_path / "results"

        code = main([
            "run", "--counts", str(counts_path), "--samples", str(samples_path),
            "--output", str(output), "--reduction", "PCA",
            "--formula", "~ 0 + group", "--contrast", "grouptreated - groupuntreated",
        ])
        assert code == 0

        features = read_feature_table(output / "features.tsv").set_index("feature")
        gene = features.loc["gene_treated_only"]
        assert not gene["lowly_abundant"]
        assert gene["significant"]
        assert 5 < gene["logFC"] < 15

    def test_config_file_with_override(self, tmp_path, input_files):
        counts, samples = input_files
        config = tmp_path / "pipeline.yaml"
        config.write_text(
            f"counts: {counts}\n"
            f"samples: {samples}\n"
            "reduction:\n"
            "  methods: [MDS]\n"
            "export:\n"
            f"  output_dir: {tmp_path / 'from_config'}\n"
        )
        output = tmp_path / "from_cli"
        assert main(["run", "--config", str(config), "--output", str(output)]) == 0

        variance = pd.read_csv(output / "variance_explained.tsv", sep="\t")
        assert variance["method"].unique().tolist() == ["MDS"]
        assert not (output / "differential_summary.tsv").exists()
        assert not (tmp_path / "from_config").exists()

    def test_missing_inputs(self, tmp_path):
        assert main(["run", "--output", str(tmp_path / "out")]) == 1

    def test_missing_counts_file(self, tmp_path, input_files):
        _, samples = input_files
        code = main(["run", "--counts", str(tmp_path / "absent.tsv"),
                     "--samples", str(samples), "--output", str(tmp_path / "out")])
        assert code == 1

    def test_invalid_fdr_rejected(self, input_files):
        counts, samples = input_files
        with pytest.raises(SystemExit):
            main(["run", "--counts", str(counts), "--samples", str(samples), "--fdr", "1.5"])


class TestScaleCommand:

    def test_scale(self, tmp_path, input_files):
        counts, samples = input_files
        output = tmp_path / "scaled.tsv"
        factors = tmp_path / "factors.tsv"
        code = main(["scale", "--counts", str(counts), "--samples", str(samples),
                     "--factor", "group", "--output", str(output), "--factors", str(factors)])
        assert code == 0

        scaled = pd.read_csv(output, sep="\t", index_col=0)
        assert scaled.shape == (200, 6)
        factor_table = pd.read_csv(factors, sep="\t")
        assert list(factor_table["sample"]) == ["S1", "S2", "S3", "S4", "S5", "S6"]

    def test_scale_without_samples(self, tmp_path, input_files):
        counts, _ = input_files
        output = tmp_path / "scaled.tsv"
        assert main(["scale", "--counts", str(counts), "--output", str(output)]) == 0
        assert output.exists()

    def test_factor_requires_samples(self, tmp_path, input_files):
        counts, _ = input_files
        code = main(["scale", "--counts", str(counts), "--factor", "group",
                     "--output", str(tmp_path / "scaled.tsv")])
        assert code == 1
