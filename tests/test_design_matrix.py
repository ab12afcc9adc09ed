"""Tests for single-factor design construction and contrast vectors."""

import numpy as np
import pandas as pd
import pytest

from taxadiff.core.errors import DegenerateDesign, MissingMetadata
from taxadiff.stats.design_matrix import (
    Contrast,
    build_factor_design,
    parse_design_formula,
)


@pytest.fixture
def three_level_metadata():
    return pd.DataFrame(
        {"Site": ["A", "A", "B", "B", "C", "C"]},
        index=[f"S{i}" for i in range(6)],
    )


class TestParseDesignFormula:

    @pytest.mark.parametrize("formula", ["~ Source", "~Source", "Source", "  ~  Source  "])
    def test_accepted_forms(self, formula):
        assert parse_design_formula(formula) == "Source"

    @pytest.mark.parametrize("formula", ["", "~ Source + Depth", "~ Source * Depth", "~ 1"])
    def test_rejected_forms(self, formula):
        with pytest.raises(ValueError, match="exactly one factor"):
            parse_design_formula(formula)


class TestContrast:

    def test_name(self):
        assert Contrast("Description", "Rhizosphere", "Bulk").name == "Description_Rhizosphere_vs_Bulk"

    def test_levels_must_differ(self):
        with pytest.raises(ValueError, match="must differ"):
            Contrast("Description", "Bulk", "Bulk")


class TestBuildFactorDesign:
    """Tests for build_factor_design."""

    def test_treatment_coding_with_sorted_levels(self, scenario_metadata):
        design = build_factor_design(scenario_metadata, "~ Description")

        assert design.levels == ["Bulk", "Rhizosphere"]
        assert design.col_names == ["Intercept", "Description_Rhizosphere_vs_Bulk"]
        np.testing.assert_array_equal(design.X[:, 0], np.ones(6))
        np.testing.assert_array_equal(design.X[:, 1], [1, 1, 0, 0, 1, 0])
        assert design.n_params == 2
        assert design.df_residual == 4
        assert design.level_counts == {"Bulk": 3, "Rhizosphere": 3}

    def test_categorical_order_sets_reference(self, scenario_metadata):
        metadata = scenario_metadata.copy()
        metadata["Description"] = pd.Categorical(
            metadata["Description"], categories=["Rhizosphere", "Bulk"]
        )
        design = build_factor_design(metadata, "Description")
        assert design.levels == ["Rhizosphere", "Bulk"]
        assert design.col_names[1] == "Description_Bulk_vs_Rhizosphere"

    def test_single_level_is_degenerate(self, scenario_metadata):
        with pytest.raises(DegenerateDesign, match="at least two levels"):
            build_factor_design(scenario_metadata, "~ EnvFeature")

    def test_unused_category_is_degenerate(self, scenario_metadata):
        metadata = scenario_metadata.copy()
        metadata["Description"] = pd.Categorical(
            metadata["Description"], categories=["Bulk", "Rhizosphere", "Litter"]
        )
        with pytest.raises(DegenerateDesign, match="zero samples"):
            build_factor_design(metadata, "~ Description")

    def test_no_residual_degrees_of_freedom(self):
        metadata = pd.DataFrame({"Group": ["A", "B"]}, index=["S1", "S2"])
        with pytest.raises(DegenerateDesign, match="replicates"):
            build_factor_design(metadata, "~ Group")

    def test_missing_factor(self, scenario_metadata):
        with pytest.raises(MissingMetadata, match="Depth"):
            build_factor_design(scenario_metadata, "~ Depth")

    def test_null_factor_values(self, scenario_metadata):
        metadata = scenario_metadata.copy()
        metadata.loc["B2", "Description"] = np.nan
        with pytest.raises(MissingMetadata, match="B2"):
            build_factor_design(metadata, "~ Description")


class TestContrastVector:
    """Tests for mapping level contrasts into coefficient space."""

    def test_against_reference(self, three_level_metadata):
        design = build_factor_design(three_level_metadata, "~ Site")
        np.testing.assert_array_equal(design.contrast_vector(Contrast("Site", "B", "A")), [0, 1, 0])
        np.testing.assert_array_equal(design.contrast_vector(Contrast("Site", "A", "B")), [0, -1, 0])

    def test_between_non_reference_levels(self, three_level_metadata):
        design = build_factor_design(three_level_metadata, "~ Site")
        np.testing.assert_array_equal(design.contrast_vector(Contrast("Site", "C", "B")), [0, -1, 1])

    def test_contrast_matches_level_means(self, three_level_metadata):
        """c' beta equals the difference of the two level means."""
        design = build_factor_design(three_level_metadata, "~ Site")
        beta = np.array([1.0, 0.5, 2.0])
        level_means = design.level_means_matrix() @ beta
        c = design.contrast_vector(Contrast("Site", "C", "B"))
        assert c @ beta == pytest.approx(level_means[2] - level_means[1])

    def test_unobserved_level(self, three_level_metadata):
        design = build_factor_design(three_level_metadata, "~ Site")
        with pytest.raises(DegenerateDesign, match="'D'"):
            design.contrast_vector(Contrast("Site", "D", "A"))

    def test_factor_mismatch(self, three_level_metadata):
        design = build_factor_design(three_level_metadata, "~ Site")
        with pytest.raises(ValueError, match="does not match"):
            design.contrast_vector(Contrast("Depth", "B", "A"))
