"""Sandwich variance estimators.

    V = I^-1 (sum_c U_c U_c') I^-1

where ``I^-1`` is the inverse observed information ("bread") and ``U_c`` is
the sum of per-subject score residuals over cluster ``c`` ("meat"). With one
subject per cluster this is the ordinary White estimator.
"""
from __future__ import annotations
from typing import Optional, Tuple
import numpy as np
import pandas as pd


def cluster_scores(residuals: np.ndarray, clusters) -> np.ndarray:
    """Sum per-subject score residuals within each cluster.

    Args:
        residuals: Array (n_subjects, n_params)
        clusters: Cluster label per subject

    Returns:
        Array (n_clusters, n_params), clusters in sorted label order

    Raises:
        ValueError: If lengths differ or a cluster label is missing
    """
    residuals = np.asarray(residuals, dtype=float)
    if residuals.ndim == 1:
        residuals = residuals[:, None]
    labels = pd.Series(np.asarray(clusters))
    if len(labels) != residuals.shape[0]:
        raise ValueError(
            f"{len(labels)} cluster labels for {residuals.shape[0]} residual rows"
        )
    if labels.isna().any():
        raise ValueError("Cluster labels must not be missing")
    codes, _ = pd.factorize(labels, sort=True)
    n_clusters = codes.max() + 1 if len(codes) else 0
    out = np.zeros((n_clusters, residuals.shape[1]))
    np.add.at(out, codes, residuals)
    return out


def meat(scores: np.ndarray) -> np.ndarray:
    """Outer-product sum of (cluster) scores."""
    scores = np.asarray(scores, dtype=float)
    return scores.T @ scores


def sandwich_variance(bread: np.ndarray, meat_matrix: np.ndarray, scale: float = 1.0) -> np.ndarray:
    """Symmetrised ``scale * bread @ meat @ bread``."""
    v = scale * (bread @ meat_matrix @ bread)
    return (v + v.T) / 2


def robust_variance(bread: np.ndarray, residuals: np.ndarray) -> np.ndarray:
    """White sandwich estimator from per-subject score residuals."""
    return sandwich_variance(bread, meat(residuals))


def cluster_robust_variance(
    bread: np.ndarray,
    residuals: np.ndarray,
    clusters,
    small_sample: bool = False,
) -> Tuple[np.ndarray, int]:
    """Cluster-robust sandwich estimator.

    Args:
        bread: Inverse observed information
        residuals: Per-subject score residuals (n_subjects, n_params)
        clusters: Cluster label per subject
        small_sample: Multiply by G / (G - 1) for G clusters

    Returns:
        Tuple of (covariance matrix, number of clusters)
    """
    scores = cluster_scores(residuals, clusters)
    n_clusters = scores.shape[0]
    scale = 1.0
    if small_sample and n_clusters > 1:
        scale = n_clusters / (n_clusters - 1)
    return sandwich_variance(bread, meat(scores), scale=scale), n_clusters


def invert_information(information: np.ndarray) -> Optional[np.ndarray]:
    """Inverse of a symmetric information matrix, None when singular."""
    try:
        inv = np.linalg.inv(information)
    except np.linalg.LinAlgError:
        return None
    return (inv + inv.T) / 2
