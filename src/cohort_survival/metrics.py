from __future__ import annotations
from typing import Dict
import numpy as np
from sksurv.metrics import concordance_index_censored

from cohort_survival.models import FittedModel


def compute_cindex(y, risk_scores) -> float:
    """Calculate Harrell's concordance index.

    The C-index measures how well risk scores order pairs of subjects by
    their survival times; censored subjects only enter pairs in which they
    are known to have survived longer.

    Args:
        y: Structured array with dtype=[('event', bool), ('time', float)]
        risk_scores: Array of shape (n,) with risk scores. Higher values
            indicate higher hazard

    Returns:
        Concordance index between 0.5 (random) and 1.0 (perfect discrimination)

    Example:
        >>> cindex = compute_cindex(to_structured_y(records), X @ fitted.coef)
        >>> print(f"C-index: {cindex:.3f}")
        C-index: 0.581
    """
    result = concordance_index_censored(y["event"], y["time"], np.asarray(risk_scores, dtype=float))
    return float(result[0])  # (cindex, concordant, discordant, tied_risk, tied_time)


def fit_metrics(fitted: FittedModel, y, risk_scores) -> Dict[str, float]:
    """Summary diagnostics of one fit: C-index, log likelihood and AIC."""
    k = len(fitted.coef)
    return {
        "cindex": compute_cindex(y, risk_scores),
        "loglik": float(fitted.loglik),
        "aic": float(2 * k - 2 * fitted.loglik),
        "n_obs": float(fitted.n_obs),
        "n_events": float(fitted.n_events),
        "n_iter": float(fitted.n_iter),
    }
