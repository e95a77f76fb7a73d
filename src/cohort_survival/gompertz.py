"""Gompertz proportional-hazards model fitted by maximum likelihood.

    h(t | x) = exp(x'beta) * exp(a * t)
    H(t | x) = exp(x'beta) * (exp(a * t) - 1) / a

The design includes an intercept, so ``exp(beta_j)`` of every covariate term
is a hazard ratio. With entry age ``t0`` (left truncation) the log likelihood
of one subject is ``d * log h(t) - H(t) + H(t0)``.

The optimiser is scipy's ``trust-exact`` with the analytic gradient and
Hessian, run on the mean log likelihood so that ``gtol`` does not depend on
sample size.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple
import logging
import warnings
import numpy as np
from joblib import Parallel, delayed
from scipy import optimize

from cohort_survival.config import ModelConfig, SingularPolicy, VarianceType
from cohort_survival.errors import NonConvergenceWarning
from cohort_survival.models import BaseHazardModel, FitStatus, FittedModel
from cohort_survival import sandwich

logger = logging.getLogger("cohort_survival.models.gompertz")

SHAPE = "shape"
INTERCEPT = "intercept"

# |a * t| below this uses the power series of expm1(a t) / a and its derivatives
_SERIES_LIMIT = 1.0
_SERIES_TERMS = 30


def _g_terms(a: float, t: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """g(a, t) = expm1(a t) / a and its first two derivatives in ``a``.

    The limits as a -> 0 are t, t^2 / 2 and t^3 / 3.
    """
    t = np.asarray(t, dtype=float)
    at = a * t
    series = np.abs(at) < _SERIES_LIMIT

    g = np.empty_like(t)
    g1 = np.empty_like(t)
    g2 = np.empty_like(t)

    if series.any():
        ts = t[series]
        # p_k = t^(k+1) / (k+1)!
        p_k = ts.copy()
        s0 = p_k.copy()
        s1 = np.zeros_like(ts)
        s2 = np.zeros_like(ts)
        for k in range(1, _SERIES_TERMS):
            p_k = p_k * ts / (k + 1)
            s0 += a ** k * p_k
            s1 += k * a ** (k - 1) * p_k
            if k >= 2:
                s2 += k * (k - 1) * a ** (k - 2) * p_k
        g[series], g1[series], g2[series] = s0, s1, s2

    closed = ~series
    if closed.any():
        tc = t[closed]
        e = np.exp(a * tc)
        em1 = np.expm1(a * tc)
        g[closed] = em1 / a
        g1[closed] = tc * e / a - em1 / a ** 2
        g2[closed] = tc ** 2 * e / a - 2 * tc * e / a ** 2 + 2 * em1 / a ** 3
    return g, g1, g2


class _GompertzLikelihood:
    """Log likelihood of (a, beta) with gradient, Hessian and per-subject scores."""

    def __init__(self, Z, time, event, entry):
        self.Z = Z
        self.time = time
        self.event = event.astype(float)
        self.entry = entry
        self.n = len(time)

    def _parts(self, theta):
        a, beta = theta[0], theta[1:]
        eta = self.Z @ beta
        with np.errstate(over="ignore"):
            w = np.exp(eta)
        g, g1, g2 = _g_terms(a, self.time)
        if self.entry is not None:
            h0, h1, h2 = _g_terms(a, self.entry)
            g, g1, g2 = g - h0, g1 - h1, g2 - h2
        return a, eta, w, g, g1, g2

    def loglik(self, theta) -> float:
        a, eta, w, g, _, _ = self._parts(theta)
        with np.errstate(invalid="ignore"):
            value = float(np.sum(self.event * (eta + a * self.time)) - np.sum(w * g))
        return value if np.isfinite(value) else -np.inf

    def scores(self, theta) -> np.ndarray:
        """Per-subject score contributions, columns (a, beta...)."""
        a, eta, w, g, g1, _ = self._parts(theta)
        d_a = self.event * self.time - w * g1
        d_beta = (self.event - w * g)[:, None] * self.Z
        return np.column_stack([d_a, d_beta])

    def gradient(self, theta) -> np.ndarray:
        return self.scores(theta).sum(axis=0)

    def hessian(self, theta) -> np.ndarray:
        a, eta, w, g, g1, g2 = self._parts(theta)
        H_bb = -(self.Z * (w * g)[:, None]).T @ self.Z
        H_ba = -self.Z.T @ (w * g1)
        H_aa = -np.sum(w * g2)
        k = len(theta)
        H = np.empty((k, k))
        H[0, 0] = H_aa
        H[0, 1:] = H_ba
        H[1:, 0] = H_ba
        H[1:, 1:] = H_bb
        return H

    # mean negative log likelihood for the optimiser
    def objective(self, theta):
        value = -self.loglik(theta) / self.n
        return value if np.isfinite(value) else np.inf

    def jac(self, theta):
        grad = -self.gradient(theta) / self.n
        return np.nan_to_num(grad, nan=0.0, posinf=1e300, neginf=-1e300)

    def hess(self, theta):
        hess = -self.hessian(theta) / self.n
        return np.nan_to_num(hess, nan=0.0, posinf=1e300, neginf=-1e300)


def _start_values(time, event, entry, p: int, a0: float = 0.01) -> np.ndarray:
    g, _, _ = _g_terms(a0, time)
    if entry is not None:
        g = g - _g_terms(a0, entry)[0]
    theta = np.zeros(p + 2)
    theta[0] = a0
    theta[1] = np.log(max(event.sum(), 0.5) / max(g.sum(), 1e-12))
    return theta


def _optimise(lik: _GompertzLikelihood, theta0, max_iter, gtol, cancel_event=None):
    """Run trust-exact; returns (theta, status, n_iter, grad_norm, message)."""
    state = {"nit": 0, "cancelled": False}

    def _callback(intermediate_result):
        state["nit"] += 1
        if cancel_event is not None and cancel_event.is_set():
            state["cancelled"] = True
            raise StopIteration

    if cancel_event is not None and cancel_event.is_set():
        grad_norm = float(np.linalg.norm(lik.jac(theta0)))
        return theta0, FitStatus.CANCELLED, 0, grad_norm, "cancelled before start"

    result = optimize.minimize(
        lik.objective,
        theta0,
        method="trust-exact",
        jac=lik.jac,
        hess=lik.hess,
        callback=_callback,
        options={"maxiter": max_iter, "gtol": gtol},
    )
    theta = np.asarray(result.x, dtype=float)
    grad_norm = float(np.linalg.norm(lik.jac(theta)))
    n_iter = int(getattr(result, "nit", state["nit"]))
    if state["cancelled"]:
        status = FitStatus.CANCELLED
    elif result.success or grad_norm < gtol:
        status = FitStatus.CONVERGED
    else:
        status = FitStatus.NOT_CONVERGED
    return theta, status, n_iter, grad_norm, str(result.message)


def _bootstrap_replicate(Z, time, event, entry, clusters, theta0, max_iter, gtol, seed_seq):
    """One cluster bootstrap refit; returns the estimate or None when it fails."""
    rng = np.random.default_rng(seed_seq)
    labels, codes = np.unique(clusters, return_inverse=True)
    members = [np.flatnonzero(codes == c) for c in range(len(labels))]
    draw = rng.integers(0, len(labels), size=len(labels))
    idx = np.concatenate([members[c] for c in draw])
    if event[idx].sum() == 0:
        return None
    lik = _GompertzLikelihood(
        Z[idx], time[idx], event[idx], None if entry is None else entry[idx]
    )
    theta, status, _, _, _ = _optimise(lik, theta0, max_iter, gtol)
    if status != FitStatus.CONVERGED:
        return None
    return theta


@dataclass
class GompertzPH(BaseHazardModel):
    """Gompertz proportional-hazards fitter.

    Attributes:
        name: Model identifier, "gompertz"
        max_iter: Optimiser iteration cap
        gtol: Convergence threshold on the gradient norm of the mean log likelihood
        variance: MODEL (inverse information), ROBUST, CLUSTER or BOOTSTRAP
        n_bootstrap: Bootstrap replicates
        seed: Root seed of the bootstrap; replicate seeds are spawned from it
        n_jobs: Parallel jobs for the bootstrap
        small_sample: Apply G/(G-1) to the cluster sandwich
        on_singular: Drop dependent design columns with a warning, or raise
        rank_tol: Tolerance of the design rank check

    Example:
        >>> model = GompertzPH(variance=VarianceType.MODEL)
        >>> fitted = model.fit(X, names, time, event)
        >>> fitted.summary().loc["exposure_1", ["hr", "ci_lower", "ci_upper"]]
    """
    name: str = "gompertz"
    max_iter: int = 200
    gtol: float = 1e-6
    variance: VarianceType = VarianceType.MODEL
    n_bootstrap: int = 200
    seed: int = 20260220
    n_jobs: int = 1
    small_sample: bool = False
    on_singular: SingularPolicy = SingularPolicy.DROP
    rank_tol: float = 1e-10

    def __post_init__(self):
        self.on_singular = SingularPolicy(self.on_singular)
        self.variance = VarianceType(self.variance)

    @classmethod
    def from_config(cls, config: ModelConfig, n_jobs: int = 1) -> "GompertzPH":
        return cls(
            max_iter=config.max_iter,
            gtol=config.gtol,
            variance=config.gompertz_variance,
            n_bootstrap=config.n_bootstrap,
            seed=config.seed,
            n_jobs=n_jobs,
            small_sample=config.small_sample_adjustment,
            on_singular=config.on_singular,
            rank_tol=config.rank_tol,
        )

    def fit(self, X, names, time, event, entry=None, clusters=None, cancel_event=None) -> FittedModel:
        """Fit by maximum likelihood.

        Returns:
            FittedModel with parameters ("shape", "intercept", *names)

        Raises:
            ValueError: If there are no events, inputs are non-finite or a
                cluster-based variance is requested without cluster labels
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
        if self.variance in (VarianceType.CLUSTER, VarianceType.BOOTSTRAP) and clusters is None:
            if self.variance == VarianceType.CLUSTER:
                raise ValueError(f"{self.name}: Cluster variance requested without cluster labels")
            clusters = np.arange(n)

        Z = np.column_stack([np.ones(n), X])
        lik = _GompertzLikelihood(Z, time, event, entry)
        theta0 = _start_values(time, event, entry, p)
        theta, status, n_iter, grad_norm, message = _optimise(
            lik, theta0, self.max_iter, self.gtol, cancel_event
        )

        if status == FitStatus.NOT_CONVERGED:
            warnings.warn(
                f"{self.name} did not converge after {n_iter} iterations "
                f"(gradient norm {grad_norm:.3e}): {message}",
                NonConvergenceWarning,
            )
        elif status == FitStatus.CANCELLED:
            logger.info(f"{self.name}: cancelled after {n_iter} iterations")

        bread = sandwich.invert_information(-lik.hessian(theta))
        k = p + 2
        if bread is None:
            bread = np.full((k, k), np.nan)

        n_clusters = None
        seed = None
        info = {"message": message}
        if self.variance == VarianceType.MODEL or status == FitStatus.CANCELLED:
            cov = bread
        elif self.variance == VarianceType.ROBUST:
            cov = sandwich.robust_variance(bread, lik.scores(theta))
        elif self.variance == VarianceType.CLUSTER:
            cov, n_clusters = sandwich.cluster_robust_variance(
                bread, lik.scores(theta), clusters, small_sample=self.small_sample
            )
        else:
            cov, n_used, n_clusters = self._bootstrap(Z, time, event, entry, clusters, theta)
            seed = self.seed
            info["bootstrap_replicates"] = n_used

        return FittedModel(
            family=self.name,
            names=[SHAPE, INTERCEPT] + list(names),
            coef=theta,
            cov=cov,
            cov_model=bread,
            variance_type=self.variance,
            loglik=lik.loglik(theta),
            n_obs=n,
            n_events=int(event.sum()),
            status=status,
            n_iter=n_iter,
            grad_norm=grad_norm,
            dropped_columns=dropped,
            n_clusters=n_clusters,
            seed=seed,
            info=info,
        )

    def _bootstrap(self, Z, time, event, entry, clusters, theta) -> Tuple[np.ndarray, int, int]:
        """Block bootstrap over clusters; covariance of the replicate estimates."""
        clusters = np.asarray(clusters)
        children = np.random.SeedSequence(self.seed).spawn(self.n_bootstrap)
        estimates = Parallel(n_jobs=self.n_jobs)(
            delayed(_bootstrap_replicate)(
                Z, time, event, entry, clusters, theta, self.max_iter, self.gtol, child
            )
            for child in children
        )
        kept = np.array([est for est in estimates if est is not None])
        n_failed = self.n_bootstrap - len(kept)
        if n_failed:
            logger.warning(f"{self.name}: {n_failed} of {self.n_bootstrap} bootstrap replicates failed")
        if len(kept) < 2:
            k = len(theta)
            return np.full((k, k), np.nan), len(kept), len(np.unique(clusters))
        return np.cov(kept, rowvar=False), len(kept), len(np.unique(clusters))

    def linear_predictor(self, fitted: FittedModel, X) -> np.ndarray:
        return np.asarray(X, dtype=float) @ fitted.coef[2:]
