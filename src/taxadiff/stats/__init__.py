"""
Count-model statistics for differential abundance.

Exports core functions for:
- Size factors (median-of-ratios, poscounts)
- Dispersion estimation with trend shrinkage
- Per-feature negative-binomial GLM fitting
- Wald contrast tests, FDR correction and the significance gate
"""

from .normalization import (
    SizeFactorMethod,
    SizeFactorResult,
    estimate_size_factors,
    normalized_counts,
)
from .dispersion import DispersionResult, estimate_dispersions
from .design_matrix import Contrast, FactorDesign, build_factor_design, parse_design_formula
from .nbglm import FitResult, fit_nb_glm
from .differential import (
    DifferentialResult,
    fdr_correction,
    filter_significant,
    wald_test,
)

__all__ = [
    "SizeFactorMethod",
    "SizeFactorResult",
    "estimate_size_factors",
    "normalized_counts",
    "DispersionResult",
    "estimate_dispersions",
    "Contrast",
    "FactorDesign",
    "build_factor_design",
    "parse_design_formula",
    "FitResult",
    "fit_nb_glm",
    "DifferentialResult",
    "fdr_correction",
    "filter_significant",
    "wald_test",
]
