"""
Single-factor design construction for count GLMs.

The comparison is a one-factor design ``~ factor``: an intercept for the
reference level plus one treatment-coded column per remaining level.

Design matrix structure:
    X = [intercept | level_2 | ... | level_k]

A contrast (factor, numerator, denominator) is mapped from level space to
coefficient space through L, the matrix that turns coefficients into level
means (row i: intercept + coefficient of level i):

    c_param = L' (e_numerator - e_denominator)

so the estimate is c_param' beta and its variance c_param' Cov(beta) c_param,
independent of which level happens to be the reference.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from taxadiff.core.errors import DegenerateDesign, MissingMetadata, format_keys

__all__ = ['Contrast', 'FactorDesign', 'parse_design_formula', 'build_factor_design']


_FORMULA = re.compile(r"^\s*~?\s*([A-Za-z_.][\w.]*)\s*$")


@dataclass(frozen=True)
class Contrast:
    """Log-ratio of interest: numerator level over denominator level of factor."""

    factor: str
    numerator: str
    denominator: str

    def __post_init__(self):
        if str(self.numerator) == str(self.denominator):
            raise ValueError(
                f"Contrast levels must differ, got {self.numerator!r} twice for {self.factor!r}"
            )

    @property
    def name(self) -> str:
        return f"{self.factor}_{self.numerator}_vs_{self.denominator}"


def parse_design_formula(formula: str) -> str:
    """
    Extract the factor name from a one-sided single-factor formula.

    Accepts "~ Source", "~Source" or "Source".

    Raises:
        ValueError: For anything other than exactly one factor term
    """
    match = _FORMULA.match(formula or "")
    if not match:
        raise ValueError(
            f"Design formula must name exactly one factor (e.g. '~ Source'), got {formula!r}"
        )
    return match.group(1)


@dataclass(frozen=True)
class FactorDesign:
    """Treatment-coded design for one categorical factor.

    Attributes:
        factor: Metadata column the design is built from.
        levels: Ordered levels; levels[0] is the reference (intercept).
        sample_levels: Level label of each sample (n_samples,).
        X: Design matrix (n_samples, n_levels).
        col_names: Coefficient names, "Intercept" then
            "<factor>_<level>_vs_<reference>".
    """

    factor: str
    levels: list[str]
    sample_levels: NDArray
    X: NDArray[np.float64]
    col_names: list[str]

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    @property
    def level_counts(self) -> dict[str, int]:
        return {lvl: int(np.sum(self.sample_levels == lvl)) for lvl in self.levels}

    def level_means_matrix(self) -> NDArray[np.float64]:
        """L (n_levels × n_params): level means = L @ beta."""
        L = np.zeros((len(self.levels), self.n_params))
        L[:, 0] = 1.0
        for i in range(1, len(self.levels)):
            L[i, i] = 1.0
        return L

    def contrast_vector(self, contrast: Contrast) -> NDArray[np.float64]:
        """
        Coefficient-space contrast vector for numerator − denominator.

        Raises:
            ValueError: If the contrast names a different factor
            DegenerateDesign: If a contrast level has no samples
        """
        if contrast.factor != self.factor:
            raise ValueError(
                f"Contrast factor {contrast.factor!r} does not match design factor {self.factor!r}"
            )
        for level in (contrast.numerator, contrast.denominator):
            if str(level) not in self.levels:
                raise DegenerateDesign(
                    f"Contrast level {level!r} has no samples for factor {self.factor!r} "
                    f"(observed levels: {self.levels})"
                )

        level_vec = np.zeros(len(self.levels))
        level_vec[self.levels.index(str(contrast.numerator))] = 1.0
        level_vec[self.levels.index(str(contrast.denominator))] = -1.0
        return self.level_means_matrix().T @ level_vec


def build_factor_design(sample_metadata: pd.DataFrame, formula: str) -> FactorDesign:
    """
    Build the treatment-coded design for ``~ factor``.

    Level order follows the categories of a pandas Categorical column,
    otherwise the sorted observed values.

    Raises:
        ValueError: Malformed formula
        MissingMetadata: Factor column absent, or null for some samples
        DegenerateDesign: Fewer than two levels, a level with zero samples,
            or no residual degrees of freedom
    """
    factor = parse_design_formula(formula)

    if factor not in sample_metadata.columns:
        raise MissingMetadata(
            f"Design factor {factor!r} not found in sample metadata. "
            f"Available: {list(sample_metadata.columns)}"
        )

    column = sample_metadata[factor]
    if column.isna().any():
        missing = sample_metadata.index[column.isna()]
        raise MissingMetadata(
            f"{len(missing)} sample(s) have no value for design factor {factor!r}: {format_keys(missing)}"
        )

    if isinstance(column.dtype, pd.CategoricalDtype):
        levels = [str(c) for c in column.cat.categories]
    else:
        levels = sorted(column.astype(str).unique().tolist())

    sample_levels = column.astype(str).to_numpy()

    if len(levels) < 2:
        raise DegenerateDesign(
            f"Design factor {factor!r} needs at least two levels, observed {levels}"
        )

    empty = [lvl for lvl in levels if not np.any(sample_levels == lvl)]
    if empty:
        raise DegenerateDesign(f"Design factor {factor!r} has level(s) with zero samples: {empty}")

    n_samples = len(sample_levels)
    X = np.zeros((n_samples, len(levels)))
    X[:, 0] = 1.0
    for i, level in enumerate(levels[1:], 1):
        X[:, i] = (sample_levels == level).astype(float)

    if n_samples <= len(levels):
        raise DegenerateDesign(
            f"Design ~ {factor} has {len(levels)} coefficients for {n_samples} samples; "
            "replicates are required to estimate dispersion"
        )

    col_names = ["Intercept"] + [f"{factor}_{lvl}_vs_{levels[0]}" for lvl in levels[1:]]

    return FactorDesign(
        factor=factor,
        levels=levels,
        sample_levels=sample_levels,
        X=X,
        col_names=col_names,
    )
