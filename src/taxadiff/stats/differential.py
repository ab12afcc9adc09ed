"""
Wald contrast tests, FDR correction and the significance gate.

For a fitted feature with natural-log coefficients beta and covariance
Cov(beta), a contrast vector c (see FactorDesign.contrast_vector) gives

    LFC  = c' beta / ln 2              (log2 fold change, numerator/denominator)
    SE   = sqrt(c' Cov(beta) c) / ln 2
    W    = LFC / SE                    (asymptotically N(0, 1))
    p    = 2 * (1 - Phi(|W|))

P-values are adjusted by Benjamini-Hochberg over the non-NaN p-values only;
NaN stays NaN and does not count towards the number of tests.

Count outlier handling is explicit: with ``cooks_cutoff`` disabled (the
default) every fitted feature receives a p-value. When enabled, features
whose maximum Cook's distance exceeds the cutoff keep their fold change
but get NaN p-value and adjusted p-value.

References:
    - Benjamini & Hochberg (1995) JRSS-B 57:289-300
    - Love, Huber & Anders (2014) Genome Biology 15:550
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Literal, Optional, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats

from taxadiff.stats.design_matrix import Contrast
from taxadiff.stats.nbglm import FitResult

logger = logging.getLogger(__name__)

__all__ = [
    'RESULT_COLUMNS',
    'ISSUE_COOKS_OUTLIER',
    'DifferentialResult',
    'wald_test',
    'fdr_correction',
    'resolve_cooks_cutoff',
    'filter_significant',
]

RESULT_COLUMNS = [
    "feature_id", "baseMean", "log2FoldChange", "stderr", "statistic", "pvalue", "padj", "issue",
]
ISSUE_COOKS_OUTLIER = "Cook's distance outlier"

CooksCutoff = Union[bool, float, None]


@dataclass(frozen=True)
class DifferentialResult:
    """Per-feature contrast statistics, one entry per fitted feature.

    Attributes:
        contrast: Contrast tested
        feature_ids: Feature keys, in working-dataset order
        base_mean: Mean normalized count
        log2_fold_change: log2(numerator / denominator)
        stderr: Standard error of log2_fold_change
        statistic: Wald statistic
        pvalue: Two-sided normal p-value (NaN = not available)
        padj: Benjamini-Hochberg adjusted p-value
        issues: Why a feature has NaN statistics, else None
        cooks_cutoff: Cook's distance cutoff applied, or None if disabled
        fdr_method: Correction used for ``padj``
    """

    contrast: Contrast
    feature_ids: pd.Index
    base_mean: NDArray[np.float64]
    log2_fold_change: NDArray[np.float64]
    stderr: NDArray[np.float64]
    statistic: NDArray[np.float64]
    pvalue: NDArray[np.float64]
    padj: NDArray[np.float64]
    issues: tuple[Optional[str], ...]
    cooks_cutoff: Optional[float] = None
    fdr_method: str = "BH"

    def to_dataframe(self) -> pd.DataFrame:
        """Row-oriented result table (RESULT_COLUMNS), feature order preserved."""
        return pd.DataFrame({
            "feature_id": np.asarray(self.feature_ids, dtype=object),
            "baseMean": self.base_mean,
            "log2FoldChange": self.log2_fold_change,
            "stderr": self.stderr,
            "statistic": self.statistic,
            "pvalue": self.pvalue,
            "padj": self.padj,
            "issue": list(self.issues),
        }, columns=RESULT_COLUMNS)

    def summary(self, alpha: float = 0.01, lfc_threshold: float = 1.0) -> dict[str, int]:
        """Counts of tested, not-available and significant up/down features."""
        significant = filter_significant(self.to_dataframe(), alpha=alpha, lfc_threshold=lfc_threshold)
        return {
            "n_features": len(self.feature_ids),
            "n_tested": int(np.isfinite(self.pvalue).sum()),
            "n_not_available": int(np.isnan(self.pvalue).sum()),
            "n_cooks_outliers": sum(1 for issue in self.issues if issue == ISSUE_COOKS_OUTLIER),
            "n_significant": len(significant),
            "n_up": int((significant["log2FoldChange"] > 0).sum()),
            "n_down": int((significant["log2FoldChange"] < 0).sum()),
        }


def fdr_correction(
    pvalues: NDArray[np.float64],
    method: Literal["BH", "BY", "bonferroni"] = "BH",
    alpha: float = 0.05,
) -> NDArray[np.float64]:
    """
    Apply multiple testing correction.

    Args:
        pvalues: Array of raw p-values; NaN entries are left out of the
            ranking and stay NaN.
        method: Correction method:
            - "BH": Benjamini-Hochberg (controls FDR)
            - "BY": Benjamini-Yekutieli (controls FDR under dependence)
            - "bonferroni": Bonferroni (controls FWER)
        alpha: Significance threshold.

    Returns:
        Array of adjusted p-values.
    """
    from statsmodels.stats.multitest import multipletests

    pvalues = np.asarray(pvalues, dtype=np.float64)

    # Handle NaN p-values
    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adj_pvals

    method_map = {"BH": "fdr_bh", "BY": "fdr_by", "bonferroni": "bonferroni"}
    _, adj_pvals[valid_mask], _, _ = multipletests(
        pvalues[valid_mask],
        alpha=alpha,
        method=method_map.get(method, method),
    )

    return adj_pvals


def resolve_cooks_cutoff(cooks_cutoff: CooksCutoff, n_params: int, n_samples: int) -> Optional[float]:
    """
    Translate the cutoff option into a threshold.

    False/None disables outlier flagging; True uses the 0.99 quantile of
    F(p, m - p); a number is used as given.
    """
    if cooks_cutoff is None or cooks_cutoff is False:
        return None
    if cooks_cutoff is True:
        return float(scipy_stats.f.ppf(0.99, n_params, n_samples - n_params))
    cutoff = float(cooks_cutoff)
    if cutoff <= 0:
        raise ValueError(f"cooks_cutoff must be positive, got {cooks_cutoff}")
    return cutoff


def wald_test(
    fit: FitResult,
    contrast: Contrast,
    cooks_cutoff: CooksCutoff = False,
    fdr_method: Literal["BH", "BY", "bonferroni"] = "BH",
) -> DifferentialResult:
    """
    Wald test of one contrast for every feature of a fit.

    Args:
        fit: Per-feature NB GLM fit.
        contrast: (factor, numerator, denominator).
        cooks_cutoff: Outlier flagging; disabled by default (see
            resolve_cooks_cutoff).
        fdr_method: Multiple testing correction for ``padj``.

    Returns:
        DifferentialResult in fit feature order. Unfitted features have NaN
        in every statistic column, never zero.

    Raises:
        ValueError: Contrast factor differs from the design factor
        DegenerateDesign: A contrast level has no samples
    """
    c = fit.design.contrast_vector(contrast)
    issues = list(fit.issues)

    estimate = fit.coefficients @ c
    variance = np.einsum("p,fpq,q->f", c, fit.covariance, c)

    bad_variance = np.isfinite(variance) & (variance <= 0)
    for i in np.flatnonzero(bad_variance):
        warnings.warn(f"Non-positive variance for {fit.feature_ids[i]}, contrast {contrast.name}")
        issues[i] = "non-positive variance"
    variance = np.where(bad_variance, np.nan, variance)

    with np.errstate(invalid="ignore"):
        stderr = np.sqrt(variance)
        statistic = estimate / stderr
    pvalue = 2.0 * scipy_stats.norm.sf(np.abs(statistic))

    log2_fold_change = np.where(bad_variance, np.nan, estimate / np.log(2))
    stderr = stderr / np.log(2)

    cutoff = resolve_cooks_cutoff(cooks_cutoff, fit.design.n_params, fit.design.n_samples)
    if cutoff is not None:
        max_cooks = fit.max_cooks()
        with np.errstate(invalid="ignore"):
            outliers = np.isfinite(pvalue) & (max_cooks > cutoff)
        pvalue[outliers] = np.nan
        for i in np.flatnonzero(outliers):
            issues[i] = ISSUE_COOKS_OUTLIER
        logger.info(f"Cook's distance cutoff {cutoff:.3g}: {int(outliers.sum())} features set to NA")

    padj = fdr_correction(pvalue, method=fdr_method)

    logger.info(
        f"Wald test {contrast.name}: {int(np.isfinite(pvalue).sum())} tested, "
        f"{int(np.isnan(pvalue).sum())} not available"
    )

    return DifferentialResult(
        contrast=contrast,
        feature_ids=fit.feature_ids,
        base_mean=np.asarray(fit.base_mean, dtype=np.float64).copy(),
        log2_fold_change=log2_fold_change,
        stderr=stderr,
        statistic=statistic,
        pvalue=pvalue,
        padj=padj,
        issues=tuple(issues),
        cooks_cutoff=cutoff,
        fdr_method=fdr_method,
    )


def filter_significant(
    table: pd.DataFrame | DifferentialResult,
    alpha: float = 0.01,
    lfc_threshold: float = 1.0,
) -> pd.DataFrame:
    """
    Rows with padj < alpha AND |log2FoldChange| >= lfc_threshold.

    Both conditions must hold; NaN in either column excludes the row. Row
    order is the input order.
    """
    if not (0 < alpha < 1):
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")
    if lfc_threshold < 0:
        raise ValueError(f"lfc_threshold must be >= 0, got {lfc_threshold}")

    if isinstance(table, DifferentialResult):
        table = table.to_dataframe()

    keep = (table["padj"] < alpha) & (table["log2FoldChange"].abs() >= lfc_threshold)
    return table.loc[keep.fillna(False).astype(bool)].copy()
