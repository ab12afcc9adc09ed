"""Tests for per-feature NB GLM fitting and Wald contrast tests."""

import dataclasses

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from taxadiff.core.assembly import assemble_dataset
from taxadiff.core.dataset import RANKS, ComposedDataset
from taxadiff.quality.filtering import PrevalenceFilter, SampleSelector
from taxadiff.stats import nbglm
from taxadiff.stats.design_matrix import Contrast
from taxadiff.stats.differential import (
    ISSUE_COOKS_OUTLIER,
    RESULT_COLUMNS,
    resolve_cooks_cutoff,
    wald_test,
)
from taxadiff.stats.nbglm import ISSUE_ALL_ZERO, cooks_distance, fit_feature, fit_nb_glm

from conftest import build_inputs

A_VS_B = Contrast("Group", "A", "B")


@pytest.fixture
def fit_3v3(three_vs_three_dataset):
    return fit_nb_glm(three_vs_three_dataset, "~ Group")


@pytest.fixture
def presence_absence_dataset():
    """One feature observed only in group A, plus NB background features."""
    rng = np.random.RandomState(11)
    sample_ids = pd.Index([f"S{i}" for i in range(1, 7)], name="sample_id")
    metadata = pd.DataFrame({"Group": ["A", "A", "A", "B", "B", "B"]}, index=sample_ids)
    counts = {"ONLY_A": [150, 180, 160, 0, 0, 0]}
    for k in range(19):
        mean = 50 + 25 * k
        counts[f"ASV_{k:02d}"] = rng.negative_binomial(20, 20 / (20 + mean), size=6).tolist()
    feature_table, taxonomy, metadata, tree = build_inputs(counts, metadata)
    return assemble_dataset(feature_table, taxonomy, metadata, tree=tree)


@pytest.fixture
def dataset_with_zero_feature(three_vs_three_dataset):
    ds = three_vs_three_dataset
    feature_ids = ds.feature_ids.append(pd.Index(["ZERO"]))
    feature_ids.name = ds.feature_ids.name
    taxonomy = pd.concat([
        ds.taxonomy,
        pd.DataFrame([["Bacteria"] + ["Unassigned"] * 6], index=["ZERO"], columns=RANKS),
    ])
    taxonomy.index = feature_ids
    return ComposedDataset(
        counts=np.vstack([ds.counts, np.zeros((1, ds.n_samples), dtype=ds.counts.dtype)]),
        feature_ids=feature_ids,
        sample_ids=ds.sample_ids,
        sample_metadata=ds.sample_metadata,
        taxonomy=taxonomy,
    )


class TestFitNBGLM:
    """Tests for fit_nb_glm."""

    def test_shapes_and_names(self, fit_3v3, three_vs_three_dataset):
        n_features, n_samples = three_vs_three_dataset.shape
        assert fit_3v3.coefficients.shape == (n_features, 2)
        assert fit_3v3.covariance.shape == (n_features, 2, 2)
        assert fit_3v3.mu.shape == (n_features, n_samples)
        assert fit_3v3.feature_ids.equals(three_vs_three_dataset.feature_ids)
        assert list(fit_3v3.coefficient_frame().columns) == ["Intercept", "Group_B_vs_A"]
        assert fit_3v3.available.all()
        assert all(issue is None for issue in fit_3v3.issues)

    def test_coefficients_recover_group_ratio(self, fit_3v3):
        """The B-vs-A coefficient of the enriched feature is about log2(1/10)."""
        lfc_b_vs_a = fit_3v3.coefficient_frame().loc["UP", "Group_B_vs_A"]
        assert -4.5 < lfc_b_vs_a < -2.5
        assert fit_3v3.converged[0]

    def test_fitted_means_follow_groups(self, fit_3v3):
        sf = fit_3v3.size_factors.size_factors
        normalized_mu = fit_3v3.mu[0] / sf
        np.testing.assert_allclose(normalized_mu[:3], normalized_mu[0], rtol=1e-6)
        np.testing.assert_allclose(normalized_mu[3:], normalized_mu[3], rtol=1e-6)

    def test_result_is_immutable(self, fit_3v3):
        with pytest.raises(ValueError):
            fit_3v3.coefficients[0, 0] = 0.0
        with pytest.raises(dataclasses.FrozenInstanceError):
            fit_3v3.issues = ()

    def test_parallel_matches_serial(self, three_vs_three_dataset, fit_3v3):
        parallel = fit_nb_glm(three_vs_three_dataset, "~ Group", n_jobs=2)
        np.testing.assert_allclose(parallel.coefficients, fit_3v3.coefficients)
        np.testing.assert_allclose(parallel.covariance, fit_3v3.covariance)

    def test_all_zero_feature_not_fitted(self, dataset_with_zero_feature):
        fit = fit_nb_glm(dataset_with_zero_feature, "~ Group")
        assert fit.issues[-1] == ISSUE_ALL_ZERO
        assert np.isnan(fit.coefficients[-1]).all()
        assert np.isnan(fit.dispersions.final[-1])
        assert fit.available[:-1].all()

    def test_fit_failure_recorded_not_raised(self, three_vs_three_dataset, monkeypatch):
        original = nbglm.fit_feature
        up_counts = three_vs_three_dataset.counts[0]

        def flaky(y, X, offset, alpha):
            if np.array_equal(y, up_counts):
                raise np.linalg.LinAlgError("singular matrix")
            return original(y, X, offset, alpha)

        monkeypatch.setattr(nbglm, "fit_feature", flaky)
        fit = fit_nb_glm(three_vs_three_dataset, "~ Group")

        assert fit.issues[0] == "model fitting failed: singular matrix"
        assert np.isnan(fit.coefficients[0]).all()
        assert fit.available[1:].all()

    def test_design_levels_logged_in_result(self, fit_3v3):
        assert fit_3v3.design.level_counts == {"A": 3, "B": 3}


class TestCooksDistance:

    def test_deviating_sample_has_largest_distance(self):
        X = np.column_stack([np.ones(6), [0, 0, 0, 1, 1, 1]])
        y = np.array([50.0, 52.0, 200.0, 20.0, 21.0, 19.0])
        mu = np.repeat([y[:3].mean(), y[3:].mean()], 3)
        d = cooks_distance(y, mu, X, alpha=0.05)
        assert np.argmax(d) == 2
        assert np.all(d >= 0)

    def test_max_cooks_needs_three_replicates(self, scenario_dataset):
        """With two samples per level no Cook's distance is eligible."""
        agr = SampleSelector({"Source": "Agr"}).apply(scenario_dataset)
        working = PrevalenceFilter().apply(agr)
        fit = fit_nb_glm(working, "~ Description")
        assert np.isnan(fit.max_cooks()).all()


class TestWaldTest:
    """Tests for wald_test."""

    def test_result_table(self, fit_3v3):
        result = wald_test(fit_3v3, A_VS_B)
        table = result.to_dataframe()
        assert list(table.columns) == RESULT_COLUMNS
        assert table["feature_id"].tolist() == list(fit_3v3.feature_ids)
        assert result.cooks_cutoff is None

    def test_enriched_feature(self, fit_3v3):
        result = wald_test(fit_3v3, A_VS_B)
        assert 2.5 < result.log2_fold_change[0] < 4.5
        assert result.pvalue[0] < 1e-6
        assert result.padj[0] < 0.01

    def test_statistics_consistent(self, fit_3v3):
        result = wald_test(fit_3v3, A_VS_B)
        np.testing.assert_allclose(result.statistic, result.log2_fold_change / result.stderr)
        np.testing.assert_allclose(result.pvalue, 2 * stats.norm.sf(np.abs(result.statistic)))
        assert np.all(result.padj >= result.pvalue - 1e-12)

    def test_reversed_contrast_negates_fold_change(self, fit_3v3):
        forward = wald_test(fit_3v3, A_VS_B)
        reverse = wald_test(fit_3v3, Contrast("Group", "B", "A"))
        np.testing.assert_allclose(reverse.log2_fold_change, -forward.log2_fold_change)
        np.testing.assert_allclose(reverse.pvalue, forward.pvalue)

    def test_unfitted_feature_is_nan_not_zero(self, dataset_with_zero_feature):
        fit = fit_nb_glm(dataset_with_zero_feature, "~ Group")
        result = wald_test(fit, A_VS_B)
        table = result.to_dataframe().set_index("feature_id")
        row = table.loc["ZERO"]
        for column in ("log2FoldChange", "stderr", "statistic", "pvalue", "padj"):
            assert np.isnan(row[column])
        assert row["issue"] == ISSUE_ALL_ZERO
        assert result.summary()["n_not_available"] == 1

    def test_nan_pvalues_do_not_count_as_tests(self, dataset_with_zero_feature, fit_3v3):
        """Adding an untestable feature leaves adjusted p-values unchanged."""
        with_zero = wald_test(fit_nb_glm(dataset_with_zero_feature, "~ Group"), A_VS_B)
        without = wald_test(fit_3v3, A_VS_B)
        np.testing.assert_allclose(with_zero.padj[:-1], without.padj, rtol=1e-6)

    def test_cooks_disabled_keeps_every_pvalue(self, fit_3v3):
        result = wald_test(fit_3v3, A_VS_B, cooks_cutoff=False)
        assert np.isfinite(result.pvalue).all()
        assert result.summary()["n_cooks_outliers"] == 0

    def test_cooks_cutoff_flags_exactly_exceeding_features(self, fit_3v3):
        max_cooks = fit_3v3.max_cooks()
        cutoff = float(np.median(max_cooks))
        result = wald_test(fit_3v3, A_VS_B, cooks_cutoff=cutoff)

        flagged = max_cooks > cutoff
        assert flagged.any()
        np.testing.assert_array_equal(np.isnan(result.pvalue), flagged)
        np.testing.assert_array_equal(np.isnan(result.padj), flagged)
        assert np.isfinite(result.log2_fold_change[flagged]).all()
        for i in np.flatnonzero(flagged):
            assert result.issues[i] == ISSUE_COOKS_OUTLIER
        assert result.cooks_cutoff == cutoff

    def test_contrast_level_without_samples(self, fit_3v3):
        from taxadiff.core.errors import DegenerateDesign

        with pytest.raises(DegenerateDesign):
            wald_test(fit_3v3, Contrast("Group", "C", "A"))


class TestResolveCooksCutoff:

    def test_disabled(self):
        assert resolve_cooks_cutoff(False, 2, 6) is None
        assert resolve_cooks_cutoff(None, 2, 6) is None

    def test_automatic_f_quantile(self):
        assert resolve_cooks_cutoff(True, 2, 6) == pytest.approx(stats.f.ppf(0.99, 2, 4))

    def test_explicit_value(self):
        assert resolve_cooks_cutoff(2.5, 2, 6) == 2.5

    def test_non_positive_rejected(self):
        with pytest.raises(ValueError):
            resolve_cooks_cutoff(-1.0, 2, 6)


class TestSeparatedFeature:
    """A feature present in only one group still gets a finite, testable estimate."""

    def test_fit_feature_stays_bounded(self):
        X = np.column_stack([np.ones(6), [0, 0, 0, 1, 1, 1]])
        y = np.array([150.0, 180.0, 160.0, 0.0, 0.0, 0.0])
        beta, cov, mu, converged = fit_feature(y, X, np.zeros(6), alpha=0.05)

        assert converged
        assert np.all(np.abs(beta) <= nbglm.MAX_COEFFICIENT)
        assert -10 < beta[1] < -4
        se = np.sqrt(cov[1, 1])
        assert se < 3
        assert abs(beta[1] / se) > 4
        assert np.all(mu[3:] < 1)

    def test_presence_absence_feature_is_significant(self, presence_absence_dataset):
        fit = fit_nb_glm(presence_absence_dataset, "~ Group")
        result = wald_test(fit, A_VS_B)
        table = result.to_dataframe().set_index("feature_id")
        row = table.loc["ONLY_A"]

        assert 6 < row["log2FoldChange"] < 15
        assert row["stderr"] < 4
        assert row["padj"] < 0.01
        assert fit.available.all()
