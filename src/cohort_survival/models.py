from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple
import numpy as np
import pandas as pd
from scipy import stats

from cohort_survival.config import SingularPolicy, VarianceType
from cohort_survival.data import check_design_rank
from cohort_survival.errors import NonConvergence


class FitStatus(str, Enum):
    """Outcome of an optimisation."""
    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"
    CANCELLED = "cancelled"


@dataclass
class FittedModel:
    """Read-only result of a hazard-model fit.

    Attributes:
        family: Model family ("gompertz" or "cox")
        names: Parameter names in coefficient order
        coef: Estimated coefficients (log hazard ratios for covariate terms)
        cov: Covariance used for reported standard errors
        cov_model: Model-based covariance (inverse observed information)
        variance_type: Estimator that produced ``cov``
        loglik: Log likelihood (partial log likelihood for Cox) at ``coef``
        n_obs: Records used in the fit
        n_events: Events among them
        status: Convergence status
        n_iter: Optimiser iterations
        grad_norm: Norm of the score at ``coef``
        dropped_columns: Design columns removed by the rank check
        n_clusters: Number of clusters for cluster-based variance
        seed: Seed used by stochastic variance estimation
        info: Further diagnostics (tie method, bootstrap replicates used, ...)

    Example:
        >>> fitted = GompertzPH().fit(X, names, time, event)
        >>> fitted.summary().loc["exposure_1", "hr"]
        0.651
    """
    family: str
    names: List[str]
    coef: np.ndarray
    cov: np.ndarray
    cov_model: np.ndarray
    variance_type: VarianceType
    loglik: float
    n_obs: int
    n_events: int
    status: FitStatus
    n_iter: int
    grad_norm: float
    dropped_columns: List[str] = field(default_factory=list)
    n_clusters: Optional[int] = None
    seed: Optional[int] = None
    info: Dict[str, Any] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.status == FitStatus.CONVERGED

    @property
    def se(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.cov), 0.0, None))

    def summary(self, alpha: float = 0.05) -> pd.DataFrame:
        """Coefficient table with hazard ratios, Wald CIs and p-values.

        Args:
            alpha: Significance level; CIs are exp(coef +/- z_{1-alpha/2} * se)

        Returns:
            DataFrame indexed by parameter name with columns coef, se, hr,
            ci_lower, ci_upper, z, p
        """
        z_crit = stats.norm.ppf(1 - alpha / 2)
        se = self.se
        with np.errstate(divide="ignore", invalid="ignore"):
            z = self.coef / se
        return pd.DataFrame(
            {
                "coef": self.coef,
                "se": se,
                "hr": np.exp(self.coef),
                "ci_lower": np.exp(self.coef - z_crit * se),
                "ci_upper": np.exp(self.coef + z_crit * se),
                "z": z,
                "p": 2 * stats.norm.sf(np.abs(z)),
            },
            index=pd.Index(self.names, name="term"),
        )

    def raise_for_status(self) -> "FittedModel":
        """Raise NonConvergence unless the fit converged; returns self otherwise."""
        if self.status != FitStatus.CONVERGED:
            raise NonConvergence(
                self.family, self.n_iter, self.grad_norm,
                message=self.status.value,
            )
        return self


class BaseHazardModel:
    """Base class for proportional-hazards fitters with a unified interface.

    Attributes:
        name: String identifier for the model family
    """

    name: str = "base"
    on_singular: SingularPolicy = SingularPolicy.DROP
    rank_tol: float = 1e-10

    def fit(self, X, names, time, event, entry=None, clusters=None, cancel_event=None) -> FittedModel:
        """Fit the model.

        Args:
            X: Design matrix (n_samples, n_terms), no intercept; rank checked
                before optimisation
            names: Term names
            time: Exit ages
            event: Event indicators
            entry: Entry ages for left truncation (zeros when None)
            clusters: Cluster labels for cluster-based variance
            cancel_event: ``threading.Event`` checked at each iteration

        Returns:
            FittedModel

        Raises:
            NotImplementedError: Must be implemented by subclass
        """
        raise NotImplementedError

    def _check_rank(self, X: np.ndarray, names: Sequence[str]) -> Tuple[np.ndarray, List[str], List[str]]:
        """Remove design columns that are linear combinations of earlier ones.

        Uses the subclass ``on_singular`` and ``rank_tol``. The check includes
        an implicit constant column: the Gompertz design has an intercept and
        the Cox partial likelihood does not identify constants.

        Raises:
            SingularDesign: If a column is dependent and ``on_singular`` is RAISE
        """
        names = list(names)
        kept, dropped = check_design_rank(X, names, self.on_singular, self.rank_tol, model=self.name)
        return X[:, kept], [names[j] for j in kept], dropped

    def linear_predictor(self, fitted: FittedModel, X) -> np.ndarray:
        """Risk score x'beta for the covariate terms of ``fitted``.

        Raises:
            NotImplementedError: Must be implemented by subclass
        """
        raise NotImplementedError
