"""Unit tests for cohort_survival.sandwich module."""
import pytest
import numpy as np

from cohort_survival.sandwich import (
    cluster_robust_variance,
    cluster_scores,
    invert_information,
    meat,
    robust_variance,
    sandwich_variance,
)


@pytest.fixture
def residuals():
    """Score residuals for six subjects and two parameters."""
    rng = np.random.default_rng(3)
    return rng.normal(size=(6, 2))


@pytest.fixture
def bread():
    return np.array([[2.0, 0.3], [0.3, 1.0]])


class TestClusterScores:
    """Tests for cluster_scores function."""

    def test_sums_within_clusters_in_label_order(self, residuals):
        """Test per-cluster sums ordered by sorted label."""
        scores = cluster_scores(residuals, ["b", "a", "b", "c", "a", "c"])
        np.testing.assert_allclose(scores[0], residuals[1] + residuals[4])
        np.testing.assert_allclose(scores[1], residuals[0] + residuals[2])
        np.testing.assert_allclose(scores[2], residuals[3] + residuals[5])

    def test_opposite_residuals_cancel(self):
        """Test that residuals of +0.5 and -0.5 in one cluster give a zero cluster score."""
        scores = cluster_scores(np.array([[0.5], [-0.5], [0.2]]), [1, 1, 2])
        np.testing.assert_allclose(scores[:, 0], [0.0, 0.2])
        assert meat(scores)[0, 0] == pytest.approx(0.04)

    def test_length_mismatch(self, residuals):
        """Test that label and residual counts must agree."""
        with pytest.raises(ValueError):
            cluster_scores(residuals, [1, 2, 3])

    def test_missing_label(self, residuals):
        """Test that a missing cluster label is rejected."""
        with pytest.raises(ValueError, match="missing"):
            cluster_scores(residuals, [1, 1, 2, 2, None, 3])


class TestSandwich:
    """Tests for the sandwich estimators."""

    def test_singletons_equal_white(self, bread, residuals):
        """Test that one subject per cluster reproduces the White estimator."""
        cov, n_clusters = cluster_robust_variance(bread, residuals, np.arange(6))
        np.testing.assert_allclose(cov, robust_variance(bread, residuals))
        assert n_clusters == 6

    def test_small_sample_factor(self, bread, residuals):
        """Test the G/(G-1) adjustment."""
        clusters = [0, 0, 1, 1, 2, 2]
        plain, _ = cluster_robust_variance(bread, residuals, clusters)
        adjusted, n_clusters = cluster_robust_variance(bread, residuals, clusters, small_sample=True)
        assert n_clusters == 3
        np.testing.assert_allclose(adjusted, plain * 1.5)

    def test_symmetric(self, bread, residuals):
        """Test that the result is exactly symmetric."""
        cov = sandwich_variance(bread, meat(residuals))
        np.testing.assert_array_equal(cov, cov.T)


class TestInvertInformation:
    """Tests for invert_information function."""

    def test_inverse(self, bread):
        np.testing.assert_allclose(invert_information(bread) @ bread, np.eye(2), atol=1e-12)

    def test_singular_returns_none(self):
        """Test that a singular information matrix gives None."""
        assert invert_information(np.zeros((2, 2))) is None
