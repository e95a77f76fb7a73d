"""Unit tests for cohort_survival.cox module.

Tests the Newton-Raphson Cox fitter against lifelines, tie handling, left
truncation and score residuals.
"""
import threading

import pytest
import numpy as np
import pandas as pd
from lifelines import CoxPHFitter

from cohort_survival.config import TieMethod
from cohort_survival.cox import CoxPH
from cohort_survival.errors import SingularDesign
from cohort_survival.models import FitStatus


@pytest.fixture(scope="module")
def cox_records():
    """3,000 records with a binary and a continuous covariate, no tied event times."""
    rng = np.random.default_rng(42)
    n = 3000
    exposure = rng.binomial(1, 0.5, size=n).astype(float)
    z = rng.normal(size=n)
    eta = -0.4 * exposure + 0.3 * z
    t = np.log1p(0.08 * -np.log(rng.uniform(size=n)) / (0.001 * np.exp(eta))) / 0.08
    return pd.DataFrame({
        "time": np.minimum(t, 60.0),
        "event": t <= 60.0,
        "exposure": exposure,
        "z": z,
        "cluster_key": rng.integers(0, 100, size=n),
    })


def _fit(records, **kwargs):
    variance = kwargs.pop("variance", "model")
    entry = kwargs.pop("entry", None)
    clusters = kwargs.pop("clusters", None)
    model = CoxPH(variance=variance, **kwargs)
    X = records[["exposure", "z"]].to_numpy()
    return model.fit(X, ["exposure", "z"], records["time"], records["event"], entry=entry, clusters=clusters)


def _lifelines(records, **kwargs):
    columns = ["time", "event", "exposure", "z"] + list(kwargs.pop("extra", []))
    cph = CoxPHFitter()
    cph.fit(records[columns], duration_col="time", event_col="event", **kwargs)
    return cph


class TestCoxAgainstLifelines:
    """Agreement with lifelines.CoxPHFitter."""

    def test_coefficients_and_model_se(self, cox_records):
        """Test estimates and model-based SEs on tie-free data."""
        fitted = _fit(cox_records)
        reference = _lifelines(cox_records)
        np.testing.assert_allclose(fitted.coef, reference.params_[["exposure", "z"]].to_numpy(), atol=1e-4)
        np.testing.assert_allclose(
            fitted.se, reference.standard_errors_[["exposure", "z"]].to_numpy(), rtol=1e-3
        )
        assert fitted.status == FitStatus.CONVERGED

    def test_partial_loglik(self, cox_records):
        """Test the partial log likelihood at the optimum."""
        fitted = _fit(cox_records)
        reference = _lifelines(cox_records)
        assert fitted.loglik == pytest.approx(reference.log_likelihood_, rel=1e-6)

    def test_robust_se(self, cox_records):
        """Test the White sandwich against lifelines' robust variance."""
        fitted = _fit(cox_records, variance="robust")
        reference = _lifelines(cox_records, robust=True)
        np.testing.assert_allclose(
            fitted.se, reference.standard_errors_[["exposure", "z"]].to_numpy(), rtol=1e-2
        )

    def test_efron_with_ties(self, cox_records):
        """Test Efron tie handling on ages rounded to whole years."""
        tied = cox_records.assign(time=np.ceil(cox_records["time"]))
        fitted = _fit(tied, ties=TieMethod.EFRON)
        reference = _lifelines(tied)
        np.testing.assert_allclose(fitted.coef, reference.params_[["exposure", "z"]].to_numpy(), atol=1e-4)

    def test_left_truncation(self, cox_records):
        """Test delayed entry against lifelines' entry_col."""
        rng = np.random.default_rng(5)
        records = cox_records.assign(entry=rng.uniform(0, 40, size=len(cox_records)))
        records = records.loc[records["time"] > records["entry"]].reset_index(drop=True)
        fitted = _fit(records, entry=records["entry"].to_numpy())
        reference = _lifelines(records, extra=["entry"], entry_col="entry")
        np.testing.assert_allclose(fitted.coef, reference.params_[["exposure", "z"]].to_numpy(), atol=1e-4)


class TestCoxTies:
    """Tests for Breslow versus Efron."""

    def test_identical_without_ties(self, cox_records):
        """Test that the two methods agree when no event times are tied."""
        efron = _fit(cox_records, ties="efron")
        breslow = _fit(cox_records, ties="breslow")
        np.testing.assert_allclose(efron.coef, breslow.coef, atol=1e-8)

    def test_breslow_attenuated_with_heavy_ties(self, cox_records):
        """Test that Breslow shrinks estimates towards zero under heavy ties."""
        tied = cox_records.assign(time=np.ceil(cox_records["time"] / 5) * 5)
        efron = _fit(tied, ties="efron")
        breslow = _fit(tied, ties="breslow")
        assert abs(breslow.coef[0]) < abs(efron.coef[0])
        assert breslow.info["ties"] == "breslow"


class TestCoxResiduals:
    """Tests for score residuals and cluster variance."""

    def test_residuals_sum_to_zero_at_mle(self, cox_records):
        """Test that score residual column sums vanish at the optimum."""
        fitted = _fit(cox_records, ties="efron")
        resid = fitted.info["score_residuals"]
        assert resid.shape == (len(cox_records), 2)
        np.testing.assert_allclose(resid.sum(axis=0), 0.0, atol=5e-3)

    def test_singleton_clusters_equal_robust(self, cox_records):
        """Test that one subject per cluster reproduces the White estimator."""
        robust = _fit(cox_records, variance="robust")
        cluster = _fit(cox_records, variance="cluster", clusters=np.arange(len(cox_records)))
        np.testing.assert_allclose(robust.cov, cluster.cov, rtol=1e-10)
        assert cluster.n_clusters == len(cox_records)

    def test_cluster_variance(self, cox_records):
        """Test that cluster variance reports the cluster count."""
        fitted = _fit(cox_records, variance="cluster", clusters=cox_records["cluster_key"].to_numpy())
        assert fitted.n_clusters == cox_records["cluster_key"].nunique()
        assert np.isfinite(fitted.se).all()


class TestCoxControl:
    """Tests for convergence reporting, cancellation and argument checks."""

    def test_cancelled(self, cox_records):
        """Test that a set cancellation event stops before the first step."""
        cancel = threading.Event()
        cancel.set()
        X = cox_records[["exposure", "z"]].to_numpy()
        fitted = CoxPH(variance="model").fit(
            X, ["exposure", "z"], cox_records["time"], cox_records["event"], cancel_event=cancel
        )
        assert fitted.status == FitStatus.CANCELLED
        assert fitted.n_iter == 0

    def test_bootstrap_rejected(self):
        """Test that bootstrap variance is not offered for Cox."""
        with pytest.raises(ValueError):
            CoxPH(variance="bootstrap")

    def test_cluster_needs_labels(self, cox_records):
        """Test that the default cluster variance requires labels."""
        X = cox_records[["exposure", "z"]].to_numpy()
        with pytest.raises(ValueError, match="cluster"):
            CoxPH().fit(X, ["exposure", "z"], cox_records["time"], cox_records["event"])

    def test_linear_predictor(self, cox_records):
        """Test the risk score is X @ beta."""
        model = CoxPH(variance="model")
        X = cox_records[["exposure", "z"]].to_numpy()
        fitted = model.fit(X, ["exposure", "z"], cox_records["time"], cox_records["event"])
        np.testing.assert_allclose(model.linear_predictor(fitted, X), X @ fitted.coef)

    def test_singular_column_dropped(self, cox_records, caplog):
        """Test that a duplicated covariate is dropped before Newton-Raphson."""
        X = cox_records[["exposure", "z", "z"]].to_numpy()
        with caplog.at_level("WARNING", logger="cohort_survival.data"):
            fitted = CoxPH(variance="model").fit(X, ["exposure", "z", "z_copy"], cox_records["time"], cox_records["event"])
        reference = _fit(cox_records, variance="model")
        assert fitted.dropped_columns == ["z_copy"]
        assert fitted.names == ["exposure", "z"]
        np.testing.assert_allclose(fitted.coef, reference.coef)
        assert "z_copy" in caplog.text

    def test_singular_column_raises(self, cox_records):
        """Test that on_singular=raise names the dependent column."""
        X = cox_records[["exposure", "z"]].to_numpy()
        X = np.column_stack([X, 1.0 - X[:, 0]])
        with pytest.raises(SingularDesign) as exc_info:
            CoxPH(variance="model", on_singular="raise").fit(
                X, ["exposure", "z", "unexposed"], cox_records["time"], cox_records["event"]
            )
        assert exc_info.value.column == "unexposed"
        assert exc_info.value.model == "cox"
