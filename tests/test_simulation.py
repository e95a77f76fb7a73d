"""Unit tests for cohort_survival.simulation module.

Tests that the simulated cohorts follow their generating models and carry
the columns the sugar-rationing configuration reads.
"""
import pytest
import numpy as np

from cohort_survival.config import EngineConfig
from cohort_survival.data import engine_schema, validate_schema
from cohort_survival.simulation import gompertz_event_times, simulate_gompertz, simulate_rationing_extract


class TestGompertzEventTimes:
    """Tests for gompertz_event_times function."""

    @pytest.mark.slow
    def test_survival_matches_closed_form(self):
        """Test P(T > t) = exp(-b (exp(a t) - 1) / a) at a few ages."""
        rng = np.random.default_rng(0)
        shape, baseline = 0.08, 0.001
        t = gompertz_event_times(rng, shape, baseline, np.zeros(200_000))
        for age in (30.0, 45.0, 60.0):
            expected = np.exp(-baseline * np.expm1(shape * age) / shape)
            assert np.mean(t > age) == pytest.approx(expected, abs=0.005)

    def test_zero_shape_is_exponential(self):
        """Test that a = 0 gives exponential times with mean 1 / b."""
        rng = np.random.default_rng(1)
        t = gompertz_event_times(rng, 0.0, 0.05, np.zeros(50_000))
        assert t.mean() == pytest.approx(20.0, rel=0.03)


class TestSimulateGompertz:
    """Tests for simulate_gompertz function."""

    def test_columns_and_censoring(self):
        df = simulate_gompertz(1000, effects={"exposure": -0.4}, censor_age=60.0, n_clusters=20, seed=3)
        assert list(df.columns) == ["id", "time", "event", "cluster_key", "exposure"]
        assert df["time"].max() <= 60.0
        assert (df.loc[~df["event"], "time"] == 60.0).all()
        assert df["cluster_key"].nunique() <= 20

    def test_seeded(self):
        first = simulate_gompertz(500, effects={"x": 0.2}, seed=9)
        second = simulate_gompertz(500, effects={"x": 0.2}, seed=9)
        assert first.equals(second)


class TestSimulateRationingExtract:
    """Tests for simulate_rationing_extract function."""

    @pytest.fixture(scope="class")
    def extract(self):
        return simulate_rationing_extract(n=2000, seed=4)

    def test_matches_preset_schema(self, extract):
        """Test that the extract passes the preset's schema validation."""
        validate_schema(extract, engine_schema(EngineConfig.sugar_rationing()))

    def test_births_span_beyond_window(self, extract):
        """Test that some births fall outside the nine study periods."""
        assert extract["n_34_0_0"].min() == 1951
        assert extract["n_34_0_0"].max() == 1956

    def test_contains_implausible_onsets(self, extract):
        """Test that coding-error onset ages of 20 are present."""
        assert (extract["n_2976"] == 20).any()

    def test_insulin_flag_only_with_onset(self, extract):
        """Test that the insulin field is only recorded for cases."""
        has_onset = extract["ts_130708_0_0"].notna() | extract["n_2976"].notna()
        assert extract.loc[~has_onset, "n_2986"].isna().all()
