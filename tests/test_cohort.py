"""Unit tests for cohort_survival.cohort module.

Tests the birth-period index, period tables, exposure classification,
exclusion rules and covariate derivation helpers.
"""
import pytest
import numpy as np
import pandas as pd

from cohort_survival.cohort import (
    CollapsedClassification,
    ExclusionRule,
    ExposureClassifier,
    PeriodTable,
    apply_exclusions,
    birth_period_index,
    cluster_key,
    derive_covariates,
    indicator_dummies,
    quantile_bins_with_indicator,
    set_indicator,
    standardize,
    threshold_indicator,
)
from cohort_survival.config import DerivationSpec, EngineConfig, ExclusionSpec, PeriodBoundary
from cohort_survival.errors import (
    ConfigurationError,
    ConfigurationOverlap,
    DropReason,
    SchemaError,
    UNCLASSIFIED,
)


class TestBirthPeriodIndex:
    """Tests for birth_period_index and cluster_key."""

    def test_quarterly_index_with_offset(self):
        """Test the quarterly index used by the rationing analysis."""
        assert birth_period_index(1953, 9, offset=41) == 15.0
        assert birth_period_index(1954, 7, offset=41) == 19.0
        assert birth_period_index(1956, 3, offset=41) == 25.0

    def test_vectorised_with_invalid_month(self):
        """Test array input; month 0 gives NaN."""
        result = birth_period_index([1960, 1960], [12, 0])
        assert result[0] == 3.0
        assert np.isnan(result[1])

    def test_cluster_key_is_month_of_birth(self):
        """Test the year-month cluster identifier."""
        assert cluster_key(1960, 1) == 0.0
        assert cluster_key(1953, 9) == -76.0


class TestPeriodTable:
    """Tests for PeriodTable."""

    def test_classify(self):
        """Test classification inside and outside the window."""
        table = PeriodTable([PeriodBoundary(1, 25, 25), PeriodBoundary(2, 23, 24)])
        assert table.classify(24) == 2
        assert table.classify(25) == 1
        assert table.classify(22) is UNCLASSIFIED
        assert table.classify(np.nan) is UNCLASSIFIED

    def test_overlap_names_both_periods(self):
        """Test that overlapping bounds raise ConfigurationOverlap naming both periods."""
        with pytest.raises(ConfigurationOverlap) as exc_info:
            PeriodTable([PeriodBoundary(1, 10, 12), PeriodBoundary(2, 12, 14)])
        assert {exc_info.value.first, exc_info.value.second} == {1, 2}

    def test_duplicate_ids_rejected(self):
        """Test that one period id cannot appear twice."""
        with pytest.raises(ConfigurationError):
            PeriodTable([PeriodBoundary(1, 1, 2), PeriodBoundary(1, 3, 4)])

    def test_classify_frame_matches_scalar(self):
        """Test that the vectorised path agrees with classify."""
        table = EngineConfig.sugar_rationing().cohort.periods
        table = PeriodTable(table)
        index = pd.Series(np.arange(5, 28, dtype=float))
        vectorised = table.classify_frame(index)
        for value, label in zip(index, vectorised):
            scalar = table.classify(value)
            if scalar is UNCLASSIFIED:
                assert pd.isna(label)
            else:
                assert label == scalar


class TestCollapsedClassification:
    """Tests for CollapsedClassification."""

    def test_unmapped_fine_period_rejected(self):
        """Test that every fine period must map to a coarse level."""
        with pytest.raises(ConfigurationError):
            CollapsedClassification("coarse", {1: 0, 2: 1}, fine_ids=[1, 2, 3])

    def test_apply(self):
        """Test many-to-one mapping of fine ids."""
        collapse = CollapsedClassification("coarse", {1: 0, 2: 1, 3: 1}, fine_ids=[1, 2, 3])
        result = collapse.apply(pd.Series([1, 2, 3], dtype="Int64"))
        assert list(result) == [0, 1, 1]
        assert collapse.levels == [0, 1]


class TestExposureClassifier:
    """Tests for ExposureClassifier."""

    def test_assign_drops_unclassified(self, small_cohort_config, small_frame):
        """Test that subjects outside the window are dropped and counted."""
        classified, report = ExposureClassifier(small_cohort_config).assign(small_frame)
        assert report.n_input == 6
        assert report.n_classified == 5
        assert report.n_unclassified == 1
        assert report.dropped[DropReason.UNCLASSIFIED_EXPOSURE] == 1
        assert 106 not in set(classified["eid"])
        assert list(classified["period"]) == [1, 1, 2, 2, 3]
        assert list(classified["exposed"]) == [0, 0, 1, 1, 1]

    def test_assign_adds_cluster_and_birth_date(self, small_cohort_config, small_frame):
        """Test the cluster key and first-of-month birth date."""
        classified, _ = ExposureClassifier(small_cohort_config).assign(small_frame)
        first = classified.iloc[0]
        assert first["birth_date"] == pd.Timestamp("1950-01-01")
        assert first["yearmobirth"] == (1950 - 1950) * 12

    def test_reclassification_is_deterministic(self, small_cohort_config, small_frame):
        """Test that classifying the same table twice gives identical labels."""
        classifier = ExposureClassifier(small_cohort_config)
        first, _ = classifier.assign(small_frame)
        second, _ = ExposureClassifier(small_cohort_config).assign(small_frame)
        pd.testing.assert_frame_equal(first, second)

    def test_input_not_modified(self, small_cohort_config, small_frame):
        """Test that assign returns a new frame."""
        original = small_frame.copy()
        ExposureClassifier(small_cohort_config).assign(small_frame)
        pd.testing.assert_frame_equal(small_frame, original)

    def test_missing_birth_column(self, small_cohort_config, small_frame):
        """Test that a missing birth column raises SchemaError."""
        with pytest.raises(SchemaError):
            ExposureClassifier(small_cohort_config).assign(small_frame.drop(columns=["birth_month"]))

    def test_rationing_preset_levels(self):
        """Test the preset: a July 1954 birth is in the reference period, January 1954 in utero."""
        cohort = EngineConfig.sugar_rationing().cohort
        frame = pd.DataFrame({"eid": [1, 2], "n_34_0_0": [1954, 1954], "n_52_0_0": [7, 1]})
        classified, _ = ExposureClassifier(cohort).assign(frame)
        assert list(classified["study"]) == [4, 5]
        assert list(classified["years_ration22"]) == [0, 1]
        assert list(classified["sugar_rationed2"]) == [0, 1]


class TestExclusions:
    """Tests for ExclusionRule and apply_exclusions."""

    def test_per_rule_counts_in_order(self):
        """Test that rules apply sequentially and report their own drops."""
        frame = pd.DataFrame({
            "country": [1, 5, 6, 1, 1],
            "adopted": [0, 1, 0, 1, 0],
            "arrived": [np.nan, np.nan, np.nan, np.nan, 1990],
        })
        rules = [
            ExclusionRule.from_spec(ExclusionSpec("abroad", "country", "in", (5.0, 6.0))),
            ExclusionRule.from_spec(ExclusionSpec("adopted", "adopted", "in", (1.0,))),
            ExclusionRule.from_spec(ExclusionSpec("immigrant", "arrived", "not_null")),
        ]
        retained, report = apply_exclusions(frame, rules)
        assert list(report.counts.items()) == [("abroad", 2), ("adopted", 1), ("immigrant", 1)]
        assert report.n_excluded == 4
        assert len(retained) == 1

    def test_missing_column_raises(self):
        """Test that a rule on an absent column raises SchemaError."""
        rule = ExclusionRule.from_spec(ExclusionSpec("abroad", "country", "in", (5.0,)))
        with pytest.raises(SchemaError):
            apply_exclusions(pd.DataFrame({"x": [1]}), [rule])

    def test_unknown_rule_rejected(self):
        """Test that an unknown rule kind is a configuration error."""
        with pytest.raises(ConfigurationError):
            ExclusionSpec("bad", "x", "between")

    def test_missing_value_rule(self):
        """Test that the missing-value rule drops only subjects lacking the column."""
        frame = pd.DataFrame({"Wales": [0.0, np.nan, 1.0], "zpgi": [0.2, 0.1, np.nan]})
        rule = ExclusionRule.missing_value("Wales")
        retained, report = apply_exclusions(frame, [rule])
        assert rule.name == "missing_Wales"
        assert report.counts == {"missing_Wales": 1}
        assert retained["Wales"].notna().all()
        assert len(retained) == 2


class TestDerivations:
    """Tests for the covariate derivation helpers."""

    def test_standardize_uses_sample_sd(self):
        """Test z-scores with ddof=1, NaN kept."""
        result = standardize(pd.Series([1.0, 2.0, 3.0, np.nan]))
        assert result.iloc[:3].tolist() == pytest.approx([-1.0, 0.0, 1.0])
        assert np.isnan(result.iloc[3])

    def test_threshold_indicator(self):
        """Test strict threshold with missing preserved."""
        result = threshold_indicator(pd.Series([-1.0, -0.5, 0.0, np.nan]), -0.5)
        assert result.iloc[:3].tolist() == [0.0, 0.0, 1.0]
        assert np.isnan(result.iloc[3])

    def test_set_indicator_negative_codes_missing(self):
        """Test that negative codes are missing and negate flips membership."""
        codes = pd.Series([2, 3, -1, np.nan])
        result = set_indicator(codes, [2], negative_missing=True)
        assert result.iloc[:2].tolist() == [1.0, 0.0]
        assert result.iloc[2:].isna().all()
        negated = set_indicator(pd.Series([1001, 4001]), [1001, 1002, 1003], negate=True)
        assert negated.tolist() == [0.0, 1.0]

    def test_quantile_bins_with_indicator(self):
        """Test equal-count deciles, zero imputation and the missing indicator."""
        values = pd.Series(list(range(20)) + [np.nan, -5.0])
        bins, missing = quantile_bins_with_indicator(values, q=10, negative_missing=True)
        assert bins.iloc[:20].value_counts().to_dict() == {level: 2 for level in range(1, 11)}
        assert bins.iloc[20] == 0 and bins.iloc[21] == 0
        assert missing.tolist() == [0] * 20 + [1, 1]

    def test_indicator_dummies(self):
        """Test dummies for rank positions of the distinct years."""
        dummies = indicator_dummies(pd.Series([2006, 2007, 2008, 2009, np.nan]), (2, 3, 4), "fsy")
        assert list(dummies.columns) == ["fsy_2", "fsy_3", "fsy_4"]
        assert dummies["fsy_2"].iloc[:4].tolist() == [0.0, 1.0, 0.0, 0.0]
        assert dummies["fsy_4"].iloc[3] == 1.0
        assert dummies.iloc[4].isna().all()

    def test_indicator_dummies_beyond_last_level(self):
        """Test that a position past the last distinct value refers to the last value."""
        dummies = indicator_dummies(pd.Series([2006, 2007]), (2, 3), "fsy")
        assert dummies["fsy_3"].tolist() == [0.0, 1.0]

    def test_derive_covariates_chains(self):
        """Test that later derivations read earlier outputs."""
        frame = pd.DataFrame({"score": [1.0, 2.0, 3.0, 4.0]})
        derived = derive_covariates(frame, [
            DerivationSpec("z", "standardize", "score"),
            DerivationSpec("z_high", "threshold", "z", (("value", 0.0),)),
        ])
        assert derived["z_high"].tolist() == [0.0, 0.0, 1.0, 1.0]
        assert "z" not in frame.columns

    def test_unknown_method_raises(self):
        """Test that an unknown derivation method is a configuration error."""
        with pytest.raises(ConfigurationError):
            derive_covariates(pd.DataFrame({"x": [1]}), [DerivationSpec("y", "magic", "x")])
