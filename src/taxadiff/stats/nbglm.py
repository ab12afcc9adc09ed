"""
Per-feature negative-binomial GLM fitting.

Model for feature i, sample j:

    y_ij ~ NB(mu_ij, alpha_i)
    log(mu_ij) = log(s_j) + x_j' beta_i

where s_j is the sample's size factor (an offset) and alpha_i the MAP
dispersion from taxadiff.stats.dispersion. Each feature is fitted by
ridge-penalized IRLS at fixed alpha and is independent of every other
feature, so fits may run in parallel through joblib without changing the
result.

Features whose counts are all zero in the current samples are not fitted.
A feature whose fit raises is recorded with an issue and NaN estimates; it
never aborts the run.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from taxadiff.stats.design_matrix import FactorDesign, build_factor_design
from taxadiff.stats.dispersion import (
    MIN_MU,
    DispersionResult,
    estimate_dispersions,
    nb_log_likelihood,
)
from taxadiff.stats.normalization import (
    SizeFactorMethod,
    SizeFactorResult,
    estimate_size_factors,
)

if TYPE_CHECKING:
    from taxadiff.core.dataset import ComposedDataset

logger = logging.getLogger(__name__)

__all__ = [
    'ISSUE_ALL_ZERO',
    'FitResult',
    'fit_nb_glm',
    'fit_feature',
    'cooks_distance',
]

ISSUE_ALL_ZERO = "all-zero counts"

RIDGE = 1e-6
MAX_COEFFICIENT = 30.0
MAX_ITER = 100
DEVIANCE_TOL = 1e-8


def _penalized_nll(beta, y, X, size_factors, alpha):
    mu = size_factors * np.exp(X @ beta)
    value = -nb_log_likelihood(y, mu, alpha) + 0.5 * RIDGE * float(beta @ beta)
    grad = -X.T @ ((y - mu) / (1.0 + alpha * mu)) + RIDGE * beta
    return value, grad


def fit_feature(
    y: NDArray,
    X: NDArray,
    offset: NDArray,
    alpha: float,
    max_iter: int = MAX_ITER,
    tol: float = DEVIANCE_TOL,
) -> tuple[NDArray, NDArray, NDArray, bool]:
    """
    Fit one feature's NB GLM at fixed dispersion by ridge-penalized IRLS.

    A ridge of 1e-6 on every natural-log coefficient keeps the estimate
    finite when the likelihood has no maximum, as for a feature observed
    in only one group. Inside the iteration fitted means are floored at
    0.5, which stops such a coefficient from drifting once its samples
    contribute nothing more to the deviance. If a step takes any
    coefficient beyond +/-30 or the iteration limit is reached, the
    penalized likelihood is minimized directly (L-BFGS-B, coefficients
    bounded to +/-30) and the fit is reported as not converged.

    Returns:
        (coefficients, covariance, fitted means, converged). Coefficients
        are on the natural-log scale; the covariance is the ridge sandwich
        (X'WX + R)^-1 X'WX (X'WX + R)^-1.
    """
    y = np.asarray(y, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    size_factors = np.exp(offset)
    ridge = np.diag(np.full(X.shape[1], RIDGE))

    beta = np.linalg.lstsq(X, np.log(y / size_factors + 0.1), rcond=None)[0]
    mu = np.maximum(size_factors * np.exp(X @ beta), MIN_MU)
    deviance = -2.0 * nb_log_likelihood(y, mu, alpha)

    converged = False
    for _ in range(max_iter):
        w = mu / (1.0 + alpha * mu)
        z = np.log(mu / size_factors) + (y - mu) / mu
        step = np.linalg.solve(X.T @ (X * w[:, None]) + ridge, X.T @ (w * z))
        if np.any(np.abs(step) > MAX_COEFFICIENT):
            break
        beta = step
        mu = np.maximum(size_factors * np.exp(X @ beta), MIN_MU)
        previous, deviance = deviance, -2.0 * nb_log_likelihood(y, mu, alpha)
        if abs(deviance - previous) / (abs(deviance) + 0.1) < tol:
            converged = True
            break

    if not converged:
        from scipy.optimize import minimize

        result = minimize(
            _penalized_nll,
            np.clip(beta, -MAX_COEFFICIENT, MAX_COEFFICIENT),
            args=(y, X, size_factors, alpha),
            jac=True,
            method="L-BFGS-B",
            bounds=[(-MAX_COEFFICIENT, MAX_COEFFICIENT)] * X.shape[1],
        )
        beta = result.x

    mu = size_factors * np.exp(X @ beta)
    w = mu / (1.0 + alpha * mu)
    information = X.T @ (X * w[:, None])
    bread = np.linalg.inv(information + ridge)
    cov = bread @ information @ bread
    if not (np.all(np.isfinite(beta)) and np.all(np.isfinite(cov))):
        raise FloatingPointError("non-finite coefficients or covariance")
    return beta, cov, mu, converged


def _fit_or_issue(y, X, offset, alpha):
    try:
        return fit_feature(y, X, offset, alpha)
    except Exception as e:
        return f"model fitting failed: {e}"


def cooks_distance(
    y: NDArray,
    mu: NDArray,
    X: NDArray,
    alpha: float,
) -> NDArray[np.float64]:
    """
    Cook's distance of every sample for one fitted feature.

        D_j = r_j^2 / p * h_j / (1 - h_j)^2

    with r_j the Pearson residual under Var = mu + alpha mu^2 and h_j the
    leverage from the IRLS weights.
    """
    y = np.asarray(y, dtype=np.float64)
    n_params = X.shape[1]
    w = mu / (1.0 + alpha * mu)
    xtwx_inv = np.linalg.pinv(X.T @ (X * w[:, None]))
    hat = w * np.sum((X @ xtwx_inv) * X, axis=1)
    hat = np.clip(hat, 0.0, 1.0 - 1e-8)
    pearson = (y - mu) / np.sqrt(mu + alpha * mu ** 2)
    return pearson ** 2 / n_params * hat / (1.0 - hat) ** 2


@dataclass(frozen=True)
class FitResult:
    """
    Immutable per-feature NB GLM fit over one working dataset.

    Array attributes are read-only. Rows follow ``feature_ids``; NaN rows
    mark features that were not fitted (see ``issues``).

    Attributes:
        feature_ids: Feature keys (row order of every per-feature array)
        sample_ids: Sample keys (column order of ``mu`` and ``cooks``)
        design: Treatment-coded design the model was fitted against
        size_factors: Per-sample size factors and the estimator used
        dispersions: Gene-wise, trend and final dispersions
        coefficients: Natural-log coefficients (n_features, n_params)
        covariance: Coefficient covariance (n_features, n_params, n_params)
        base_mean: Mean normalized count per feature
        mu: Fitted means (n_features, n_samples)
        cooks: Cook's distances (n_features, n_samples)
        converged: IRLS convergence flag per feature
        issues: Reason a feature has no estimate, else None
    """

    feature_ids: pd.Index
    sample_ids: pd.Index
    design: FactorDesign
    size_factors: SizeFactorResult
    dispersions: DispersionResult
    coefficients: NDArray[np.float64]
    covariance: NDArray[np.float64]
    base_mean: NDArray[np.float64]
    mu: NDArray[np.float64]
    cooks: NDArray[np.float64]
    converged: NDArray[np.bool_]
    issues: tuple[Optional[str], ...] = field(default_factory=tuple)

    def __post_init__(self):
        for name in ("coefficients", "covariance", "base_mean", "mu", "cooks", "converged"):
            getattr(self, name).setflags(write=False)

    @property
    def n_features(self) -> int:
        return len(self.feature_ids)

    @property
    def available(self) -> NDArray[np.bool_]:
        """Features with finite coefficients."""
        return np.all(np.isfinite(self.coefficients), axis=1)

    def max_cooks(self, min_replicates: int = 3) -> NDArray[np.float64]:
        """
        Per-feature maximum Cook's distance over samples in levels with at
        least ``min_replicates`` samples; NaN when no sample qualifies.
        """
        counts = self.design.level_counts
        eligible = np.array([counts[lvl] >= min_replicates for lvl in self.design.sample_levels])
        out = np.full(self.n_features, np.nan)
        if not eligible.any():
            return out
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            out = np.nanmax(self.cooks[:, eligible], axis=1)
        return out

    def coefficient_frame(self) -> pd.DataFrame:
        """log2-scale coefficients as a features × coefficient-name table."""
        return pd.DataFrame(
            self.coefficients / np.log(2),
            index=self.feature_ids,
            columns=self.design.col_names,
        )


def fit_nb_glm(
    dataset: ComposedDataset,
    design: str | FactorDesign,
    size_factor_method: SizeFactorMethod | str = SizeFactorMethod.RATIO,
    n_jobs: int = 1,
) -> FitResult:
    """
    Estimate size factors and dispersions, then fit every feature's GLM.

    Args:
        dataset: Working (filtered) dataset.
        design: One-sided formula such as "~ Source", or a prebuilt design.
        size_factor_method: "ratio" or "poscounts".
        n_jobs: joblib worker count for the per-feature fits (1 = serial).

    Returns:
        FitResult in dataset feature order.

    Raises:
        MissingMetadata: Design factor missing from metadata
        DegenerateDesign: Fewer than two levels, empty level, or no
            residual degrees of freedom
    """
    from joblib import Parallel, delayed

    if not isinstance(design, FactorDesign):
        design = build_factor_design(dataset.sample_metadata, design)

    counts = dataset.counts
    n_features, n_samples = counts.shape
    X = design.X

    logger.info(
        f"Fitting NB GLM ~ {design.factor}: {n_features} features, {n_samples} samples, "
        f"levels {design.level_counts}"
    )

    sf = estimate_size_factors(counts, size_factor_method)
    offset = np.log(sf.size_factors)
    base_mean = (counts / sf.size_factors[None, :]).mean(axis=1)
    dispersions = estimate_dispersions(counts, sf.size_factors, X)

    estimable = np.flatnonzero(base_mean > 0)
    if n_jobs == 1:
        fits = [_fit_or_issue(counts[i], X, offset, dispersions.final[i]) for i in estimable]
    else:
        fits = Parallel(n_jobs=n_jobs)(
            delayed(_fit_or_issue)(counts[i], X, offset, dispersions.final[i]) for i in estimable
        )

    n_params = design.n_params
    coefficients = np.full((n_features, n_params), np.nan)
    covariance = np.full((n_features, n_params, n_params), np.nan)
    mu = np.full((n_features, n_samples), np.nan)
    cooks = np.full((n_features, n_samples), np.nan)
    converged = np.zeros(n_features, dtype=bool)
    issues: list[Optional[str]] = [ISSUE_ALL_ZERO if base_mean[i] == 0 else None for i in range(n_features)]

    for i, fit in zip(estimable, fits):
        if isinstance(fit, str):
            issues[i] = fit
            logger.debug(f"{dataset.feature_ids[i]}: {fit}")
            continue
        coefficients[i], covariance[i], mu[i], converged[i] = fit
        cooks[i] = cooks_distance(counts[i], mu[i], X, dispersions.final[i])

    n_zero = int((base_mean == 0).sum())
    n_failed = len(estimable) - int(np.isfinite(coefficients[:, 0]).sum())
    n_unconverged = int((~converged[estimable]).sum()) - n_failed
    logger.info(
        f"GLM fitting complete: {n_features - n_zero - n_failed} fitted, {n_zero} all-zero, "
        f"{n_failed} failed, {n_unconverged} did not converge"
    )

    return FitResult(
        feature_ids=dataset.feature_ids,
        sample_ids=dataset.sample_ids,
        design=design,
        size_factors=sf,
        dispersions=dispersions,
        coefficients=coefficients,
        covariance=covariance,
        base_mean=base_mean,
        mu=mu,
        cooks=cooks,
        converged=converged,
        issues=tuple(issues),
    )
