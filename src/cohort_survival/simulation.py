"""Seeded synthetic cohorts.

``simulate_gompertz`` draws survival records straight from a Gompertz
proportional-hazards model and is used to check estimator recovery and
calibration. ``simulate_rationing_extract`` produces a raw extract with the
columns the sugar-rationing preset reads, so the full pipeline can run
without access to the real data.
"""
from __future__ import annotations
from datetime import date
from typing import Mapping, Optional, Sequence
import numpy as np
import pandas as pd

from cohort_survival.cohort import ExposureClassifier
from cohort_survival.config import EngineConfig
from cohort_survival.dates import DAYS_PER_YEAR, date_from_year_month
from cohort_survival.records import CLUSTER_COL, EVENT_COL, ID_COL, TIME_COL


def gompertz_event_times(rng: np.random.Generator, shape: float, baseline: float, log_hr: np.ndarray) -> np.ndarray:
    """Inverse-transform draws from h(t) = baseline * exp(log_hr) * exp(shape * t)."""
    u = rng.uniform(size=len(log_hr))
    scaled = -np.log(u) / (baseline * np.exp(log_hr))
    if shape == 0:
        return scaled
    return np.log1p(shape * scaled) / shape


def simulate_gompertz(
    n: int,
    shape: float = 0.08,
    baseline: float = 0.001,
    effects: Optional[Mapping[str, float]] = None,
    prevalence: float = 0.5,
    censor_age: float = 60.0,
    n_clusters: Optional[int] = None,
    seed: int = 0,
) -> pd.DataFrame:
    """Simulate survival records with independent binary covariates.

    Args:
        n: Number of subjects
        shape: Gompertz shape ``a``
        baseline: Baseline hazard at age 0 (``exp(intercept)``)
        effects: Covariate name -> true log hazard ratio
        prevalence: Probability that each binary covariate equals 1
        censor_age: Administrative censoring age
        n_clusters: Number of cluster labels assigned at random (singletons when None)
        seed: Seed of the random generator

    Returns:
        DataFrame with id, time, event, cluster_key and one column per covariate

    Example:
        >>> df = simulate_gompertz(10_000, effects={"exposure": -0.4}, seed=7)
        >>> df.groupby("exposure")["event"].mean().round(2).tolist()
        [0.78, 0.64]
    """
    rng = np.random.default_rng(seed)
    effects = dict(effects or {})
    covariates = {name: rng.binomial(1, prevalence, size=n).astype(float) for name in effects}
    log_hr = np.zeros(n)
    for name, beta in effects.items():
        log_hr += beta * covariates[name]

    t = gompertz_event_times(rng, shape, baseline, log_hr)
    event = t <= censor_age
    df = pd.DataFrame({
        ID_COL: np.arange(n),
        TIME_COL: np.minimum(t, censor_age),
        EVENT_COL: event,
        CLUSTER_COL: rng.integers(0, n_clusters, size=n) if n_clusters else np.arange(n),
    })
    for name, values in covariates.items():
        df[name] = values
    return df


def _to_epoch_days(birth: pd.Series, ages: np.ndarray, epoch: date) -> np.ndarray:
    onset = birth + pd.to_timedelta(ages * DAYS_PER_YEAR, unit="D")
    return np.floor((onset - pd.Timestamp(epoch)).dt.days.to_numpy(dtype=float))


def simulate_rationing_extract(
    n: int = 5000,
    seed: int = 0,
    config: Optional[EngineConfig] = None,
    log_hr: Sequence[float] = (0.0, -0.43, -0.45, -0.51),
    hypertension_log_hr: Sequence[float] = (0.0, -0.26, -0.26, -0.30),
    shape: float = 0.08,
    baseline: float = 2e-4,
    hypertension_baseline: float = 1e-3,
) -> pd.DataFrame:
    """Raw extract shaped like the sugar-rationing source data.

    Birth dates span 1951-1956 so that some subjects fall outside the study
    window. Onset ages follow Gompertz models whose log hazard ratios depend
    on the ``years_ration22`` level (indexed 0..3). Onsets are recorded in
    the hospital or self-report columns, with a few implausible self-reported
    ages and insulin flags mixed in.

    Args:
        n: Number of subjects before exclusions
        seed: Seed of the random generator
        config: Configuration supplying column names (sugar-rationing preset when None)
        log_hr: Type 2 diabetes log hazard ratios per years_ration22 level
        hypertension_log_hr: Hypertension log hazard ratios per level
        shape: Gompertz shape for both outcomes
        baseline: Type 2 diabetes baseline hazard
        hypertension_baseline: Hypertension baseline hazard

    Returns:
        Raw subject frame
    """
    config = config or EngineConfig.sugar_rationing()
    cohort = config.cohort
    rng = np.random.default_rng(seed)

    df = pd.DataFrame({
        cohort.id_column: np.arange(1_000_000, 1_000_000 + n),
        cohort.birth_year_column: rng.integers(1951, 1957, size=n),
        cohort.birth_month_column: rng.integers(1, 13, size=n),
    })
    birth = date_from_year_month(df[cohort.birth_year_column], df[cohort.birth_month_column])

    classifier = ExposureClassifier(cohort)
    fine = classifier.table.classify_frame(classifier.birth_period_index(df))
    collapse = next(c for c in classifier.collapses if c.name == "years_ration22")
    level = fine.map(collapse.mapping).fillna(0).astype(int).to_numpy()

    # assessment waves: everyone attends the first, fewer attend later ones
    first = pd.Timestamp("2006-03-01") + pd.to_timedelta(rng.integers(0, 4 * 365, size=n), unit="D")
    waves = [first]
    for gap, attend in ((6, 0.2), (10, 0.3), (13, 0.1)):
        later = first + pd.to_timedelta(gap * 365 + rng.integers(0, 365, size=n), unit="D")
        waves.append(later.where(rng.uniform(size=n) < attend))
    for column, values in zip(cohort.assessment_columns, waves):
        df[column] = pd.Series(values).dt.strftime("%Y-%m-%d")
    last_visit = pd.concat([pd.Series(w) for w in waves], axis=1).max(axis=1)
    follow_up = ((last_visit - birth).dt.days / DAYS_PER_YEAR).to_numpy()

    df["n_31_0_0"] = rng.binomial(1, 0.46, size=n)
    df["n_1647"] = rng.choice([1, 2, 3, 5, 6, -1], size=n, p=[0.84, 0.05, 0.08, 0.015, 0.005, 0.01])
    df["n_1767"] = rng.binomial(1, 0.01, size=n)
    df["n_1777"] = rng.binomial(1, 0.02, size=n)
    df["n_3659"] = np.where(rng.uniform(size=n) < 0.01, rng.integers(1950, 1990, size=n), np.nan)
    df["n_21000"] = rng.choice([1001, 1002, 1003, 4001, 3001], size=n, p=[0.9, 0.03, 0.02, 0.03, 0.02])
    df["BMIscore"] = rng.normal(0.0, 1.0, size=n)
    for column in ("n_129_0_0", "n_130_0_0"):
        coord = rng.uniform(100_000, 900_000, size=n)
        df[column] = np.where(rng.uniform(size=n) < 0.02, np.nan, coord)

    # type 2 diabetes: hospital date or self-reported age
    t2dm = gompertz_event_times(rng, shape, baseline, np.asarray(log_hr)[level])
    observed = t2dm <= follow_up
    hospital = observed & (rng.uniform(size=n) < 0.5)
    self_report = observed & ~hospital
    df["ts_130708_0_0"] = np.where(hospital, _to_epoch_days(birth, t2dm, cohort.epoch), np.nan)
    df["n_2976"] = np.where(self_report, np.round(t2dm), np.nan)
    coding_error = ~observed & (rng.uniform(size=n) < 0.005)
    df.loc[coding_error, "n_2976"] = 20.0
    df["n_2986"] = np.where(observed & (rng.uniform(size=n) < 0.03), 1.0, np.where(observed, 0.0, np.nan))

    # hypertension: first hospital record, self-report sometimes earlier
    htn = gompertz_event_times(rng, shape, hypertension_baseline, np.asarray(hypertension_log_hr)[level])
    observed = htn <= follow_up
    in_hospital = observed & (rng.uniform(size=n) < 0.6)
    primary = in_hospital & (rng.uniform(size=n) < 0.8)
    secondary = in_hospital & ~primary
    df["ts_131286_0_0"] = np.where(primary, _to_epoch_days(birth, htn, cohort.epoch), np.nan)
    df["ts_131294_0_0"] = np.where(secondary, _to_epoch_days(birth, htn, cohort.epoch), np.nan)
    reported = observed & (~in_hospital | (rng.uniform(size=n) < 0.3))
    df["n_2966"] = np.where(reported, np.round(htn - rng.uniform(0, 2, size=n)), np.nan)
    return df
