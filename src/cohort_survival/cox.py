"""Cox proportional-hazards model fitted by Newton-Raphson.

The partial likelihood is evaluated in O(n log n + D p^2) per iteration:
risk-set sums come from reverse cumulative sums over subjects sorted by time,
and the Efron (or Breslow) correction for tied events is applied per tied
death. The same per-event quantities give the per-subject score residuals
needed for robust and cluster-robust sandwich variances.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import NamedTuple, Optional
import logging
import warnings
import numpy as np

from cohort_survival.config import ModelConfig, SingularPolicy, TieMethod, VarianceType
from cohort_survival.errors import NonConvergenceWarning
from cohort_survival.models import BaseHazardModel, FitStatus, FittedModel
from cohort_survival import sandwich

logger = logging.getLogger("cohort_survival.models.cox")


class _RiskSetTerms(NamedTuple):
    loglik: float
    score: np.ndarray
    information: np.ndarray
    residuals: Optional[np.ndarray]


def _partial_likelihood(X, time, event, entry, beta, ties: TieMethod, residuals: bool = False) -> _RiskSetTerms:
    """Partial log likelihood, score, information and optional score residuals.

    X is expected to be column-centred; centring and the max-shift of the
    linear predictor leave every returned quantity unchanged.
    """
    n, p = X.shape
    eta = X @ beta
    w = np.exp(eta - eta.max())

    asc = np.argsort(time, kind="mergesort")
    t_sorted = time[asc]
    w_sorted = w[asc]
    wx_sorted = w_sorted[:, None] * X[asc]
    # tail sums: index k holds sum over subjects k..n-1 in ascending time order
    tail0 = np.concatenate([np.cumsum(w_sorted[::-1])[::-1], [0.0]])
    tail1 = np.vstack([np.cumsum(wx_sorted[::-1], axis=0)[::-1], np.zeros((1, p))])

    event_times, codes = np.unique(time[event], return_inverse=True)
    n_times = len(event_times)

    at_or_after = np.searchsorted(t_sorted, event_times, side="left")
    S0 = tail0[at_or_after]
    S1 = tail1[at_or_after]
    if entry is not None:
        e_asc = np.argsort(entry, kind="mergesort")
        e_sorted = entry[e_asc]
        etail0 = np.concatenate([np.cumsum(w[e_asc][::-1])[::-1], [0.0]])
        etail1 = np.vstack([np.cumsum((w[:, None] * X)[e_asc][::-1], axis=0)[::-1], np.zeros((1, p))])
        # subjects entering at or after u are not yet at risk at u
        late = np.searchsorted(e_sorted, event_times, side="left")
        S0 = S0 - etail0[late]
        S1 = S1 - etail1[late]

    X_dead = X[event]
    w_dead = w[event]
    d_count = np.bincount(codes, minlength=n_times)
    D0 = np.bincount(codes, weights=w_dead, minlength=n_times)
    D1 = np.zeros((n_times, p))
    np.add.at(D1, codes, w_dead[:, None] * X_dead)

    # one term per death: l = 0..d-1 within each tied time
    term_time = np.repeat(np.arange(n_times), d_count)
    starts = np.cumsum(d_count) - d_count
    l_index = np.arange(len(term_time)) - starts[term_time]
    if ties == TieMethod.EFRON:
        phi = l_index / d_count[term_time]
    else:
        phi = np.zeros(len(term_time))

    s0 = S0[term_time] - phi * D0[term_time]
    s1 = S1[term_time] - phi[:, None] * D1[term_time]
    xbar = s1 / s0[:, None]

    loglik = float(eta[event].sum() - event.sum() * eta.max() - np.log(s0).sum())
    score = X_dead.sum(axis=0) - xbar.sum(axis=0)

    inv_s0 = 1.0 / s0
    inv_by_time = np.bincount(term_time, weights=inv_s0, minlength=n_times)
    phi_inv_by_time = np.bincount(term_time, weights=phi * inv_s0, minlength=n_times)
    cum_inv = np.concatenate([[0.0], np.cumsum(inv_by_time)])

    # A_i: sum of 1/s0 over death terms with entry_i < u <= t_i, Efron-adjusted at own death time
    upto = np.searchsorted(event_times, time, side="right")
    A = cum_inv[upto]
    if entry is not None:
        A = A - cum_inv[np.searchsorted(event_times, entry, side="right")]
    own = np.full(n, -1)
    own[event] = codes
    A = A - np.where(event, phi_inv_by_time[np.maximum(own, 0)], 0.0)

    information = (X * (w * A)[:, None]).T @ X - xbar.T @ xbar

    resid = None
    if residuals:
        B_by_time = np.zeros((n_times, p))
        np.add.at(B_by_time, term_time, xbar * inv_s0[:, None])
        phiB_by_time = np.zeros((n_times, p))
        np.add.at(phiB_by_time, term_time, xbar * (phi * inv_s0)[:, None])
        mean_xbar = np.zeros((n_times, p))
        np.add.at(mean_xbar, term_time, xbar)
        mean_xbar /= d_count[:, None]

        cum_B = np.vstack([np.zeros((1, p)), np.cumsum(B_by_time, axis=0)])
        B = cum_B[upto]
        if entry is not None:
            B = B - cum_B[np.searchsorted(event_times, entry, side="right")]
        B[event] -= phiB_by_time[codes]

        resid = -(w[:, None] * (X * A[:, None] - B))
        resid[event] += X_dead - mean_xbar[codes]

    return _RiskSetTerms(loglik, score, information, resid)


@dataclass
class CoxPH(BaseHazardModel):
    """Cox proportional-hazards fitter with model, robust or cluster variance.

    Attributes:
        name: Model identifier, "cox"
        ties: Tie handling, Efron (default) or Breslow
        max_iter: Newton-Raphson iteration cap
        gtol: Convergence threshold on the score norm per observation
        step_tol: Convergence threshold on the largest parameter step
        variance: MODEL, ROBUST or CLUSTER
        small_sample: Apply G/(G-1) to the cluster sandwich
        on_singular: Drop dependent design columns with a warning, or raise

    Example:
        >>> cox = CoxPH(ties=TieMethod.EFRON, variance=VarianceType.CLUSTER)
        >>> fitted = cox.fit(X, names, time, event, clusters=yearmobirth)
        >>> fitted.summary()[["hr", "ci_lower", "ci_upper"]]

    Notes:
        - Step halving guards every Newton step against a decrease of the
          partial likelihood
        - Non-convergence is reported through ``FitStatus.NOT_CONVERGED`` and
          a NonConvergenceWarning, never raised
    """
    name: str = "cox"
    ties: TieMethod = TieMethod.EFRON
    max_iter: int = 200
    gtol: float = 1e-6
    step_tol: float = 1e-9
    variance: VarianceType = VarianceType.CLUSTER
    small_sample: bool = False
    on_singular: SingularPolicy = SingularPolicy.DROP
    rank_tol: float = 1e-10
    max_halving: int = field(default=30, repr=False)

    def __post_init__(self):
        self.on_singular = SingularPolicy(self.on_singular)
        self.ties = TieMethod(self.ties)
        self.variance = VarianceType(self.variance)
        if self.variance == VarianceType.BOOTSTRAP:
            raise ValueError("Bootstrap variance is not available for the Cox model")

    @classmethod
    def from_config(cls, config: ModelConfig) -> "CoxPH":
        return cls(
            ties=config.tie_method,
            max_iter=config.max_iter,
            gtol=config.gtol,
            step_tol=config.step_tol,
            variance=config.cox_variance,
            small_sample=config.small_sample_adjustment,
            on_singular=config.on_singular,
            rank_tol=config.rank_tol,
        )

    def fit(self, X, names, time, event, entry=None, clusters=None, cancel_event=None) -> FittedModel:
        """Fit by Newton-Raphson with step halving.

        Raises:
            ValueError: If there are no events, inputs are non-finite or cluster
                variance is requested without cluster labels
            SingularDesign: If the design is rank deficient and ``on_singular``
                is RAISE
        """
        X = np.asarray(X, dtype=float)
        time = np.asarray(time, dtype=float)
        event = np.asarray(event, dtype=bool)
        entry = None if entry is None else np.asarray(entry, dtype=float)
        if not np.isfinite(X).all() or not np.isfinite(time).all():
            raise ValueError(f"{self.name}: Non-finite values detected before fitting")
        if event.sum() == 0:
            raise ValueError(f"{self.name}: Need at least one event to fit")
        X, names, dropped = self._check_rank(X, names)
        n, p = X.shape
        if self.variance == VarianceType.CLUSTER and clusters is None:
            raise ValueError(f"{self.name}: Cluster variance requested without cluster labels")

        Xc = X - X.mean(axis=0) if n else X
        beta = np.zeros(p)
        terms = _partial_likelihood(Xc, time, event, entry, beta, self.ties)
        status = FitStatus.NOT_CONVERGED
        n_iter = 0
        grad_norm = float(np.linalg.norm(terms.score) / n)

        if grad_norm < self.gtol:
            status = FitStatus.CONVERGED
        while status == FitStatus.NOT_CONVERGED and n_iter < self.max_iter:
            if cancel_event is not None and cancel_event.is_set():
                status = FitStatus.CANCELLED
                logger.info(f"{self.name}: cancelled after {n_iter} iterations")
                break
            n_iter += 1
            try:
                step = np.linalg.solve(terms.information, terms.score)
            except np.linalg.LinAlgError:
                step = np.linalg.lstsq(terms.information, terms.score, rcond=None)[0]

            candidate = _partial_likelihood(Xc, time, event, entry, beta + step, self.ties)
            halvings = 0
            while (not np.isfinite(candidate.loglik) or candidate.loglik < terms.loglik) and halvings < self.max_halving:
                step = step / 2
                halvings += 1
                candidate = _partial_likelihood(Xc, time, event, entry, beta + step, self.ties)

            beta = beta + step
            terms = candidate
            grad_norm = float(np.linalg.norm(terms.score) / n)
            if grad_norm < self.gtol or np.max(np.abs(step), initial=0.0) < self.step_tol:
                status = FitStatus.CONVERGED

        if status == FitStatus.NOT_CONVERGED:
            warnings.warn(
                f"{self.name} did not converge after {n_iter} iterations "
                f"(gradient norm {grad_norm:.3e}); reached maximum iterations",
                NonConvergenceWarning,
            )

        terms = _partial_likelihood(Xc, time, event, entry, beta, self.ties, residuals=True)
        bread = sandwich.invert_information(terms.information)
        if bread is None:
            bread = np.full((p, p), np.nan)

        n_clusters = None
        if self.variance == VarianceType.MODEL:
            cov = bread
        elif self.variance == VarianceType.ROBUST:
            cov = sandwich.robust_variance(bread, terms.residuals)
        else:
            cov, n_clusters = sandwich.cluster_robust_variance(
                bread, terms.residuals, clusters, small_sample=self.small_sample
            )

        return FittedModel(
            family=self.name,
            names=list(names),
            coef=beta,
            cov=cov,
            cov_model=bread,
            variance_type=self.variance,
            loglik=terms.loglik,
            n_obs=n,
            n_events=int(event.sum()),
            status=status,
            n_iter=n_iter,
            grad_norm=grad_norm,
            dropped_columns=dropped,
            n_clusters=n_clusters,
            info={"ties": self.ties.value, "score_residuals": terms.residuals},
        )

    def linear_predictor(self, fitted: FittedModel, X) -> np.ndarray:
        return np.asarray(X, dtype=float) @ fitted.coef
