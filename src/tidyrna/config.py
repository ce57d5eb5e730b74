"""
Pipeline configuration: one dataclass per stage, loaded from YAML or JSON.

Used by run_pipeline directly and by the CLI, whose arguments override
file values. Unknown keys are rejected so that a typo never silently
falls back to a default.

Example (YAML)::

    counts: data/counts.tsv
    samples: data/samples.tsv
    strip_sample_prefix: SRR
    filter:
      factor_of_interest: dex
    reduction:
      methods: [PCA, MDS]
      top: 500
    differential:
      formula: "~ 0 + dex + cell"
      contrasts:
        trt_vs_untrt: dextrt - dexuntrt
    export:
      output_dir: results
      figures: true
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

__all__ = [
    'FilterConfig',
    'ScalingConfig',
    'ReductionConfig',
    'VariableConfig',
    'DifferentialConfig',
    'ExportConfig',
    'PipelineConfig',
    'load_config',
    'config_from_dict',
    'apply_overrides',
]


@dataclass
class FilterConfig:
    """Low-abundance identification configuration."""
    factor_of_interest: Optional[str] = None
    formula: Optional[str] = None
    minimum_counts: float = 10
    minimum_total_counts: float = 15
    minimum_proportion: float = 0.7
    large_n: float = 10


@dataclass
class ScalingConfig:
    """Normalization configuration."""
    method: str = "TMM"
    reference_sample: Optional[str] = None


@dataclass
class ReductionConfig:
    """Dimensionality reduction configuration."""
    methods: List[str] = field(default_factory=lambda: ["PCA", "MDS"])
    n_components: int = 2
    top: int = 500
    scale: bool = False


@dataclass
class VariableConfig:
    """Variable-gene selection; off unless enabled."""
    enabled: bool = False
    top: int = 500


@dataclass
class DifferentialConfig:
    """Differential abundance configuration. Skipped when formula is None."""
    formula: Optional[str] = None
    contrasts: Union[Dict[str, str], List[str], str, None] = None
    method: str = "quasi_likelihood"
    fdr_threshold: float = 0.05
    fdr_method: str = "BH"
    factor_of_interest: Optional[str] = None
    n_jobs: int = 1


@dataclass
class ExportConfig:
    """Output files and figures."""
    output_dir: Path = Path("results")
    figures: bool = False
    figure_format: str = "png"
    report: bool = False
    color_by: Optional[str] = None


@dataclass
class PipelineConfig:
    """
    Complete configuration schema for ``tidyrna run``.

    Mirrors the CLI argument structure for consistency.
    """
    counts: Optional[Path] = None
    samples: Optional[Path] = None
    features: Optional[Path] = None
    sample_key: Optional[str] = None
    feature_key: Optional[str] = None
    strip_sample_prefix: Optional[str] = None
    filter: FilterConfig = field(default_factory=FilterConfig)
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    variable: VariableConfig = field(default_factory=VariableConfig)
    differential: DifferentialConfig = field(default_factory=DifferentialConfig)
    export: ExportConfig = field(default_factory=ExportConfig)


_SECTIONS = {
    "filter": FilterConfig,
    "scaling": ScalingConfig,
    "reduction": ReductionConfig,
    "variable": VariableConfig,
    "differential": DifferentialConfig,
    "export": ExportConfig,
}

_PATH_KEYS = {"counts", "samples", "features", "output_dir"}


def _build(cls, values: Mapping[str, Any], where: str):
    if not isinstance(values, Mapping):
        raise ValueError(f"Config section '{where}' must be a mapping, got {type(values).__name__}")

    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(
            f"Unknown config key(s) in '{where}': {unknown} (allowed: {sorted(known)})"
        )

    kwargs = {}
    for key, value in values.items():
        if key in _SECTIONS and cls is PipelineConfig:
            value = _build(_SECTIONS[key], value or {}, key)
        elif key in _PATH_KEYS and value is not None:
            value = Path(value)
        kwargs[key] = value
    return cls(**kwargs)


def config_from_dict(config: Mapping[str, Any]) -> PipelineConfig:
    """
    Build a PipelineConfig from a nested mapping.

    Raises:
        ValueError: On unknown keys or non-mapping sections
    """
    return _build(PipelineConfig, config, "<top level>")


def load_config(config_path: Path) -> PipelineConfig:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        PipelineConfig with file values over defaults

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("pipeline.yaml"))
        >>> print(config.differential.formula)
        ~ 0 + dex + cell
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return PipelineConfig()

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config_from_dict(config)


def apply_overrides(config: PipelineConfig, overrides: Mapping[str, Any]) -> PipelineConfig:
    """
    Return a copy of ``config`` with explicitly given values replaced.

    Keys are ``"name"`` for top-level fields or ``"section.name"`` for
    section fields. ``None`` values mean "not given on the command line"
    and are skipped, so CLI arguments override the file only when set.

    Examples:
        >>> merged = apply_overrides(config, {"differential.fdr_threshold": 0.1})
    """
    top_level: Dict[str, Any] = {}
    sections: Dict[str, Dict[str, Any]] = {}

    for key, value in overrides.items():
        if value is None:
            continue
        section, _, name = key.rpartition(".")
        if key.split(".")[-1] in _PATH_KEYS:
            value = Path(value)
        if section:
            if section not in _SECTIONS:
                raise ValueError(f"Unknown config section '{section}'")
            sections.setdefault(section, {})[name] = value
        else:
            top_level[name] = value

    for section, values in sections.items():
        top_level[section] = dataclasses.replace(getattr(config, section), **values)

    return dataclasses.replace(config, **top_level)
