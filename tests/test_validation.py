"""Unit tests for cohort_survival.validation module.

Tests hazard ratio extraction by term name and the validation verdicts.
"""
import pytest
import numpy as np
import pandas as pd

from cohort_survival.config import ReferenceTarget, VarianceType
from cohort_survival.models import FitStatus, FittedModel
from cohort_survival.validation import (
    Verdict,
    extract_hazard_ratios,
    validate_against_reference,
)


@pytest.fixture
def fitted():
    """Gompertz-shaped fit with a three-level exposure and one adjustment term."""
    coef = np.array([0.08, -7.0, np.log(0.65), np.log(0.60), 0.2])
    cov = np.diag([1e-6, 0.01, 0.0025, 0.0036, 0.0004])
    return FittedModel(
        family="gompertz",
        names=["shape", "intercept", "years_ration22_1", "years_ration22_3", "male"],
        coef=coef,
        cov=cov,
        cov_model=cov,
        variance_type=VarianceType.MODEL,
        loglik=-1000.0,
        n_obs=5000,
        n_events=400,
        status=FitStatus.CONVERGED,
        n_iter=8,
        grad_norm=1e-9,
    )


LABELS = {0: "Never", 1: "In-utero", 2: "In-utero+1yr", 3: "In-utero+2yr"}


class TestExtractHazardRatios:
    """Tests for extract_hazard_ratios function."""

    def test_selects_exposure_terms_by_name(self, fitted):
        """Test that only terms of the named covariate are returned, labelled."""
        table = extract_hazard_ratios(fitted, "years_ration22", labels=LABELS, outcome="T2DM")
        assert table["term"].tolist() == ["years_ration22_1", "years_ration22_3"]
        assert table["exposure"].tolist() == ["In-utero", "In-utero+2yr"]
        assert table["hr"].tolist() == pytest.approx([0.65, 0.60])
        assert set(table["outcome"]) == {"T2DM"}

    def test_wald_interval(self, fitted):
        """Test CI = exp(coef +/- 1.96 se)."""
        row = extract_hazard_ratios(fitted, "years_ration22").iloc[0]
        assert row["ci_lower"] == pytest.approx(0.65 * np.exp(-1.959964 * 0.05), rel=1e-5)
        assert row["ci_upper"] == pytest.approx(0.65 * np.exp(1.959964 * 0.05), rel=1e-5)

    def test_reference_row(self, fitted):
        """Test that the reference level is appended with HR 1 and no p-value."""
        table = extract_hazard_ratios(
            fitted, "years_ration22", labels=LABELS, include_reference=True, reference_level=0
        )
        first = table.iloc[0]
        assert first["exposure"] == "Never"
        assert first["hr"] == 1.0
        assert np.isnan(first["p"])
        assert len(table) == 3

    def test_unknown_prefix_gives_empty_table(self, fitted):
        table = extract_hazard_ratios(fitted, "study")
        assert table.empty

    def test_model_not_modified(self, fitted):
        """Test that extraction leaves the fit untouched."""
        before = fitted.coef.copy()
        extract_hazard_ratios(fitted, "years_ration22")
        np.testing.assert_array_equal(fitted.coef, before)


def _table(estimates):
    return pd.DataFrame({
        "outcome": ["T2DM"] * len(estimates),
        "model": ["gompertz"] * len(estimates),
        "term_prefix": ["years_ration22"] * len(estimates),
        "exposure": list(estimates),
        "hr": list(estimates.values()),
    })


def _targets(values):
    return [
        ReferenceTarget("T2DM", exposure, value, tolerance=0.05, exposure_column="years_ration22")
        for exposure, value in values.items()
    ]


class TestValidateAgainstReference:
    """Tests for validate_against_reference and its verdicts."""

    def test_replicated(self):
        """Test that every estimate within tolerance gives REPLICATED."""
        result = validate_against_reference(
            _table({"In-utero": 0.66, "In-utero+2yr": 0.58}),
            _targets({"In-utero": 0.65, "In-utero+2yr": 0.60}),
        )
        assert result.verdict == Verdict.REPLICATED
        assert result.n_passed == 2

    def test_boundary_passes(self):
        """Test that a difference equal to the tolerance passes."""
        result = validate_against_reference(_table({"In-utero": 0.70}), _targets({"In-utero": 0.65}))
        assert result.rows[0].passed

    def test_partial(self):
        """Test that a miss within twice the tolerance gives PARTIAL."""
        result = validate_against_reference(
            _table({"In-utero": 0.65, "In-utero+2yr": 0.68}),
            _targets({"In-utero": 0.65, "In-utero+2yr": 0.60}),
        )
        assert result.verdict == Verdict.PARTIAL
        assert result.rows[1].miss_ratio == pytest.approx(1.6)

    def test_failed(self):
        """Test that a miss beyond twice the tolerance gives FAILED."""
        result = validate_against_reference(_table({"In-utero": 0.80}), _targets({"In-utero": 0.65}))
        assert result.verdict == Verdict.FAILED

    def test_missing_estimate_fails(self):
        """Test that a target with no estimate is FAILED with an infinite miss ratio."""
        result = validate_against_reference(_table({"In-utero": 0.65}), _targets({"In-utero+1yr": 0.64}))
        row = result.rows[0]
        assert not row.passed
        assert np.isnan(row.estimate)
        assert row.miss_ratio == np.inf
        assert result.verdict == Verdict.FAILED

    def test_other_model_not_matched(self):
        """Test that a Cox estimate does not satisfy a Gompertz target."""
        table = _table({"In-utero": 0.65}).assign(model="cox")
        result = validate_against_reference(table, _targets({"In-utero": 0.65}))
        assert result.verdict == Verdict.FAILED

    def test_no_targets_is_vacuously_replicated(self):
        result = validate_against_reference(_table({"In-utero": 0.65}), [])
        assert result.verdict == Verdict.REPLICATED
        assert result.rows == []

    def test_to_frame(self):
        """Test the tabular form carries the verdict on every row."""
        result = validate_against_reference(_table({"In-utero": 0.65}), _targets({"In-utero": 0.65}))
        frame = result.to_frame()
        assert frame.loc[0, "verdict"] == "REPLICATED"
        assert bool(frame.loc[0, "passed"])
