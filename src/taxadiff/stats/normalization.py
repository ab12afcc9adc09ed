"""
Sequencing-depth normalization for count data.

Size factors put samples with different library sizes on a common scale.
Both estimators here are median-of-ratios methods:

- "ratio": reference = per-feature geometric mean over all samples; only
  features observed (count > 0) in every sample contribute.
- "poscounts": reference = geometric mean over the positive counts only
  (zeros contribute log(1) via the n-sample denominator), so sparse tables
  where every feature has a zero somewhere still normalize. Factors are
  rescaled to a geometric mean of 1.

Amplicon tables are sparse; when "ratio" finds no feature without zeros it
falls back to "poscounts" with a warning.

References:
    - Anders & Huber (2010) Genome Biology 11:R106 (median-of-ratios)
    - Love, Huber & Anders (2014) Genome Biology 15:550
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from enum import Enum

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

__all__ = [
    'SizeFactorMethod',
    'SizeFactorResult',
    'estimate_size_factors',
    'normalized_counts',
]


class SizeFactorMethod(Enum):
    """Available size-factor estimators."""

    RATIO = "ratio"
    POSCOUNTS = "poscounts"


@dataclass(frozen=True)
class SizeFactorResult:
    """Result of size-factor estimation.

    Attributes:
        size_factors: Per-sample scaling factors (n_samples,)
        method: Estimator actually used (after any fallback)
        n_reference_features: Features that contributed to the reference
    """

    size_factors: NDArray[np.float64]
    method: SizeFactorMethod
    n_reference_features: int


def _median_of_ratios(counts: NDArray[np.float64], log_geo_means: NDArray[np.float64]) -> NDArray[np.float64]:
    usable = np.isfinite(log_geo_means)
    factors = np.empty(counts.shape[1])
    with np.errstate(divide="ignore"):
        log_counts = np.log(counts)
    for j in range(counts.shape[1]):
        ok = usable & (counts[:, j] > 0)
        if not ok.any():
            factors[j] = np.nan
        else:
            factors[j] = np.exp(np.median(log_counts[ok, j] - log_geo_means[ok]))
    return factors


def estimate_size_factors(
    counts: NDArray,
    method: SizeFactorMethod | str = SizeFactorMethod.RATIO,
) -> SizeFactorResult:
    """
    Estimate per-sample size factors from a features × samples count matrix.

    Args:
        counts: Non-negative counts (features × samples).
        method: "ratio" or "poscounts".

    Returns:
        SizeFactorResult.

    Raises:
        ValueError: If a sample shares no usable feature with the reference
            (e.g. an all-zero sample), so its factor is undefined.
    """
    method = SizeFactorMethod(method)
    counts = np.asarray(counts, dtype=np.float64)
    n_samples = counts.shape[1]

    if method == SizeFactorMethod.RATIO:
        with np.errstate(divide="ignore"):
            log_geo_means = np.log(counts).mean(axis=1)
        n_ref = int(np.isfinite(log_geo_means).sum())
        if n_ref == 0:
            msg = (
                "Every feature has at least one zero count; median-of-ratios is "
                "undefined, falling back to poscounts size factors"
            )
            logger.warning(msg)
            warnings.warn(msg)
            return estimate_size_factors(counts, SizeFactorMethod.POSCOUNTS)
        factors = _median_of_ratios(counts, log_geo_means)
    else:
        log_counts = np.log(np.where(counts > 0, counts, 1.0))
        log_geo_means = log_counts.sum(axis=1) / n_samples
        # All-zero features have no reference
        log_geo_means[(counts > 0).sum(axis=1) == 0] = -np.inf
        n_ref = int(np.isfinite(log_geo_means).sum())
        factors = _median_of_ratios(counts, log_geo_means)
        if np.all(np.isfinite(factors)):
            factors = factors / np.exp(np.mean(np.log(factors)))

    if not np.all(np.isfinite(factors)) or np.any(factors <= 0):
        bad = np.where(~np.isfinite(factors) | (factors <= 0))[0]
        raise ValueError(
            f"Size factors undefined for sample column(s) {bad.tolist()}; "
            "remove empty samples before fitting"
        )

    logger.debug(f"Size factors ({method.value}, {n_ref} reference features): {np.round(factors, 3)}")
    return SizeFactorResult(size_factors=factors, method=method, n_reference_features=n_ref)


def normalized_counts(counts: NDArray, size_factors: NDArray[np.float64]) -> NDArray[np.float64]:
    """Counts divided by their sample's size factor."""
    return np.asarray(counts, dtype=np.float64) / size_factors[None, :]
