"""
Analysis configuration.

Every option of a run lives in one explicit AnalysisConfig that is passed to
the pipeline; nothing is read from process-wide state such as the working
directory. Configs load from YAML or JSON:

    inputs:
      feature_table: exported/feature-table.biom
      taxonomy: exported/taxonomy.tsv
      tree: exported/tree.nwk
      metadata: sample-metadata.tsv
    filter:
      select: {Source: Agr, EnvFeature: Pot}
      count_threshold: 5
      prevalence: 0.5
    model:
      design: "~ Description"
      contrast: [Description, Rhizosphere, Bulk]
      cooks_cutoff: false
    significance:
      alpha: 0.01
      lfc_threshold: 1.0
    output: results/

Unknown keys are rejected. Command-line values override file values only
when given explicitly (explicit CLI > config file > default).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from taxadiff.core.assembly import TaxonomyParser
from taxadiff.core.dataset import UNASSIGNED
from taxadiff.stats.design_matrix import Contrast, parse_design_formula
from taxadiff.stats.normalization import SizeFactorMethod

__all__ = [
    'InputPaths',
    'FilterConfig',
    'ModelConfig',
    'SignificanceConfig',
    'TaxonomyConfig',
    'AnalysisConfig',
    'load_config',
    'merge_overrides',
]


def _optional_path(value: Any) -> Optional[Path]:
    return None if value in (None, "") else Path(value)


@dataclass
class InputPaths:
    """Locations of the exported input files."""
    feature_table: Optional[Path] = None
    taxonomy: Optional[Path] = None
    metadata: Optional[Path] = None
    tree: Optional[Path] = None

    def __post_init__(self):
        for name in ("feature_table", "taxonomy", "metadata", "tree"):
            setattr(self, name, _optional_path(getattr(self, name)))

    def require(self) -> None:
        """Raise ValueError naming any missing required path."""
        missing = [n for n in ("feature_table", "taxonomy", "metadata") if getattr(self, n) is None]
        if missing:
            raise ValueError(f"Missing input path(s): {', '.join(missing)}")


@dataclass
class FilterConfig:
    """Sample selection and prevalence filter configuration."""
    select: Dict[str, Any] = field(default_factory=dict)
    count_threshold: float = 5
    prevalence: float = 0.5

    def __post_init__(self):
        if not isinstance(self.select, dict):
            raise ValueError(f"filter.select must be a mapping of field to value, got {self.select!r}")
        if self.count_threshold < 0:
            raise ValueError(f"count_threshold must be >= 0, got {self.count_threshold}")
        if not (0 < self.prevalence <= 1):
            raise ValueError(f"prevalence must be in (0, 1], got {self.prevalence}")


@dataclass
class ModelConfig:
    """
    Count model configuration.

    ``design`` defaults to ``~ <contrast factor>`` when omitted.
    ``cooks_cutoff``: False disables count outlier flagging, True uses the
    F(0.99; p, m - p) quantile, a number is used as the cutoff.
    """
    design: Optional[str] = None
    contrast: Optional[Contrast] = None
    size_factor_method: str = "ratio"
    cooks_cutoff: Union[bool, float] = False
    n_jobs: int = 1

    def __post_init__(self):
        if self.contrast is not None and not isinstance(self.contrast, Contrast):
            values = list(self.contrast)
            if len(values) != 3:
                raise ValueError(
                    f"contrast must be [factor, numerator, denominator], got {self.contrast!r}"
                )
            self.contrast = Contrast(*(str(v) for v in values))

        if not self.design and self.contrast is not None:
            self.design = f"~ {self.contrast.factor}"
        if self.design:
            factor = parse_design_formula(self.design)
            if self.contrast is not None and self.contrast.factor != factor:
                raise ValueError(
                    f"Contrast factor {self.contrast.factor!r} is not the design factor {factor!r}"
                )

        SizeFactorMethod(self.size_factor_method)

        if not isinstance(self.cooks_cutoff, bool):
            if self.cooks_cutoff is None:
                self.cooks_cutoff = False
            elif float(self.cooks_cutoff) <= 0:
                raise ValueError(f"cooks_cutoff must be positive, got {self.cooks_cutoff}")

        if int(self.n_jobs) == 0:
            raise ValueError("n_jobs must be non-zero (use -1 for all cores)")

    def require(self) -> None:
        if self.contrast is None:
            raise ValueError("A contrast [factor, numerator, denominator] is required")


@dataclass
class SignificanceConfig:
    """Significance gate: padj < alpha AND |log2FC| >= lfc_threshold."""
    alpha: float = 0.01
    lfc_threshold: float = 1.0

    def __post_init__(self):
        if not (0 < self.alpha < 1):
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")
        if self.lfc_threshold < 0:
            raise ValueError(f"lfc_threshold must be >= 0, got {self.lfc_threshold}")


@dataclass
class TaxonomyConfig:
    """Taxonomy string splitting rules."""
    delimiter: str = ";"
    unassigned: str = UNASSIGNED
    strip_rank_prefixes: bool = True

    def parser(self) -> TaxonomyParser:
        return TaxonomyParser(
            delimiter=self.delimiter,
            unassigned=self.unassigned,
            strip_rank_prefixes=self.strip_rank_prefixes,
        )


_SECTIONS = {
    "inputs": InputPaths,
    "filter": FilterConfig,
    "model": ModelConfig,
    "significance": SignificanceConfig,
    "taxonomy": TaxonomyConfig,
}


def _build_section(cls, data: Optional[Dict[str, Any]], section: str):
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{section}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(
            f"Unknown key(s) in '{section}': {', '.join(unknown)}. Allowed: {', '.join(sorted(known))}"
        )
    return cls(**data)


@dataclass
class AnalysisConfig:
    """
    Complete configuration for one differential-abundance run.

    Mirrors the ``taxadiff differential`` argument structure.
    """
    inputs: InputPaths = field(default_factory=InputPaths)
    filter: FilterConfig = field(default_factory=FilterConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    significance: SignificanceConfig = field(default_factory=SignificanceConfig)
    taxonomy: TaxonomyConfig = field(default_factory=TaxonomyConfig)
    strict_metadata: bool = True
    output: Optional[Path] = None

    def __post_init__(self):
        if not isinstance(self.strict_metadata, bool):
            raise ValueError(f"strict_metadata must be true or false, got {self.strict_metadata!r}")
        self.output = _optional_path(self.output)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        """
        Build and validate a config from a nested mapping.

        Raises:
            ValueError: Unknown keys or invalid values
        """
        data = dict(data or {})
        allowed = set(_SECTIONS) | {"strict_metadata", "output"}
        unknown = sorted(set(data) - allowed)
        if unknown:
            raise ValueError(f"Unknown config key(s): {', '.join(unknown)}. Allowed: {', '.join(sorted(allowed))}")

        sections = {name: _build_section(klass, data.get(name), name) for name, klass in _SECTIONS.items()}
        return cls(
            **sections,
            strict_metadata=data.get("strict_metadata", True),
            output=data.get("output"),
        )

    @classmethod
    def from_file(cls, path: Path | str) -> "AnalysisConfig":
        return cls.from_dict(load_config(Path(path)))

    def to_dict(self) -> Dict[str, Any]:
        """Plain, JSON-serializable representation (round-trips through from_dict)."""
        contrast = self.model.contrast
        return {
            "inputs": {
                f.name: (str(getattr(self.inputs, f.name)) if getattr(self.inputs, f.name) else None)
                for f in fields(InputPaths)
            },
            "filter": {
                "select": dict(self.filter.select),
                "count_threshold": self.filter.count_threshold,
                "prevalence": self.filter.prevalence,
            },
            "model": {
                "design": self.model.design,
                "contrast": [contrast.factor, contrast.numerator, contrast.denominator] if contrast else None,
                "size_factor_method": self.model.size_factor_method,
                "cooks_cutoff": self.model.cooks_cutoff,
                "n_jobs": self.model.n_jobs,
            },
            "significance": {
                "alpha": self.significance.alpha,
                "lfc_threshold": self.significance.lfc_threshold,
            },
            "taxonomy": {
                "delimiter": self.taxonomy.delimiter,
                "unassigned": self.taxonomy.unassigned,
                "strip_rank_prefixes": self.taxonomy.strip_rank_prefixes,
            },
            "strict_metadata": self.strict_metadata,
            "output": str(self.output) if self.output else None,
        }


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> print(config['model']['contrast'])
        ['Description', 'Rhizosphere', 'Bulk']
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
        raise ValueError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config


def merge_overrides(config: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply explicitly given command-line values on top of a config mapping.

    ``overrides`` uses dotted keys ("filter.prevalence", "output"); entries
    whose value is None were not given on the command line and leave the
    config value (or, if absent, the default) in place.

    Examples:
        >>> merge_overrides({"significance": {"alpha": 0.05}}, {"significance.alpha": None})
        {'significance': {'alpha': 0.05}}
        >>> merge_overrides({"significance": {"alpha": 0.05}}, {"significance.alpha": 0.01})
        {'significance': {'alpha': 0.01}}
    """
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in (config or {}).items()}
    for dotted, value in overrides.items():
        if value is None:
            continue
        if "." in dotted:
            section, key = dotted.split(".", 1)
            target = merged.setdefault(section, {})
            if not isinstance(target, dict):
                raise ValueError(f"Config section '{section}' must be a mapping")
            target[key] = value
        else:
            merged[dotted] = value
    return merged
