"""Stratified Kaplan-Meier curves and log-rank tests.

Curves are left truncated at ``min_age``: records ending before ``min_age``
are excluded (and counted) and everybody else is at risk from ``min_age``
onward. Survival estimates and risk-set counts come from lifelines; the
Greenwood variance and the confidence band transform are applied here so the
band method is explicit in each curve's metadata.
"""
from __future__ import annotations
from typing import Dict, Iterator, NamedTuple, Optional
import logging
import numpy as np
import pandas as pd
from lifelines import KaplanMeierFitter
from lifelines.statistics import multivariate_logrank_test
from scipy import stats

from cohort_survival.config import CIMethod
from cohort_survival.errors import DropReason, SchemaError
from cohort_survival.records import EVENT_COL, TIME_COL

logger = logging.getLogger("cohort_survival.nonparametric")


class CurvePoint(NamedTuple):
    time: float
    survival: float
    lower: float
    upper: float


class HazardPoint(NamedTuple):
    time: float
    cumulative_hazard: float
    lower: float
    upper: float


class SurvivalCurve:
    """Kaplan-Meier curve of one stratum.

    Iterating yields ``CurvePoint`` values, starting at
    ``(min_age, 1.0, 1.0, 1.0)`` followed by one point per event time.
    Iteration can be repeated; confidence limits are computed on the fly.

    Args:
        label: Stratum label
        times: Event times (ascending, all >= min_age)
        survival: Survival estimate just after each event time
        greenwood: Cumulative Greenwood sum sum d / (n (n - d)) at each event time
        at_risk: Number at risk at each event time
        events: Number of events at each event time
        min_age: Truncation age where the curve starts
        ci_method: Band transform ("log-log" or "linear")
        alpha: Significance level of the band
        n_subjects: Records contributing to the curve
        n_below_min_age: Records excluded because they end before ``min_age``
    """

    def __init__(
        self,
        label,
        times,
        survival,
        greenwood,
        at_risk,
        events,
        min_age: float,
        ci_method: CIMethod = CIMethod.LOG_LOG,
        alpha: float = 0.05,
        n_subjects: int = 0,
        n_below_min_age: int = 0,
    ):
        self.label = label
        self.times = np.asarray(times, dtype=float)
        self.survival = np.asarray(survival, dtype=float)
        self.greenwood = np.asarray(greenwood, dtype=float)
        self.at_risk = np.asarray(at_risk, dtype=int)
        self.events = np.asarray(events, dtype=int)
        self.min_age = float(min_age)
        self.ci_method = CIMethod(ci_method)
        self.alpha = alpha
        self.n_subjects = n_subjects
        self.n_below_min_age = n_below_min_age

    @property
    def metadata(self) -> dict:
        return {
            "label": self.label,
            "ci_method": self.ci_method.value,
            "alpha": self.alpha,
            "min_age": self.min_age,
            "n_subjects": self.n_subjects,
            "n_events": int(self.events.sum()),
            "n_below_min_age": self.n_below_min_age,
            "dropped": {DropReason.BELOW_MIN_AGE.value: self.n_below_min_age},
        }

    def __len__(self) -> int:
        return len(self.times) + 1

    def _limits(self, s: float, gw: float):
        z = stats.norm.ppf(1 - self.alpha / 2)
        if s >= 1:
            return 1.0, 1.0
        if s <= 0:
            return 0.0, 0.0
        if not np.isfinite(gw):
            return 0.0, 1.0
        if self.ci_method == CIMethod.LINEAR:
            half = z * s * np.sqrt(gw)
            return max(0.0, s - half), min(1.0, s + half)
        se = np.sqrt(gw) / abs(np.log(s))
        return float(s ** np.exp(z * se)), float(s ** np.exp(-z * se))

    def __iter__(self) -> Iterator[CurvePoint]:
        yield CurvePoint(self.min_age, 1.0, 1.0, 1.0)
        for t, s, gw in zip(self.times, self.survival, self.greenwood):
            lower, upper = self._limits(float(s), float(gw))
            yield CurvePoint(float(t), float(s), lower, upper)

    def cumulative_hazard(self) -> Iterator[HazardPoint]:
        """Complementary cumulative hazard H = -log S with transformed limits."""
        with np.errstate(divide="ignore"):
            for point in self:
                yield HazardPoint(
                    point.time,
                    float(-np.log(point.survival)),
                    float(-np.log(point.upper)),
                    float(-np.log(point.lower)),
                )

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(list(self), columns=list(CurvePoint._fields))
        hazard = pd.DataFrame(list(self.cumulative_hazard()), columns=list(HazardPoint._fields))
        frame["cumulative_hazard"] = hazard["cumulative_hazard"]
        frame["hazard_lower"] = hazard["lower"]
        frame["hazard_upper"] = hazard["upper"]
        frame.insert(0, "stratum", self.label)
        return frame

    def __repr__(self) -> str:
        return (
            f"SurvivalCurve(label={self.label!r}, points={len(self)}, "
            f"ci_method={self.ci_method.value!r})"
        )


def _fit_curve(label, time, event, min_age, ci_method, alpha, n_below) -> SurvivalCurve:
    kmf = KaplanMeierFitter()
    kmf.fit(time, event_observed=event, label=str(label))
    table = kmf.event_table
    table = table[(table["observed"] > 0) & (table.index >= min_age)]
    n = table["at_risk"].to_numpy(dtype=float)
    d = table["observed"].to_numpy(dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        increments = d / (n * (n - d))
    greenwood = np.cumsum(increments)
    survival = kmf.survival_function_.iloc[:, 0].reindex(table.index).to_numpy()
    return SurvivalCurve(
        label=label,
        times=table.index.to_numpy(dtype=float),
        survival=survival,
        greenwood=greenwood,
        at_risk=n,
        events=d,
        min_age=min_age,
        ci_method=ci_method,
        alpha=alpha,
        n_subjects=len(time),
        n_below_min_age=n_below,
    )


def kaplan_meier(
    records: pd.DataFrame,
    group_column: Optional[str] = None,
    min_age: float = 0.0,
    ci_method: CIMethod = CIMethod.LOG_LOG,
    alpha: float = 0.05,
    labels: Optional[Dict] = None,
) -> Dict[object, SurvivalCurve]:
    """Kaplan-Meier curve per stratum of ``group_column``.

    Args:
        records: Survival records with time and event columns
        group_column: Stratifying column; a single "all" stratum when None
        min_age: Left-truncation age; records with time below it are excluded
        ci_method: "log-log" (default) or "linear" Greenwood-based band
        alpha: Significance level of the band
        labels: Optional mapping level -> display label

    Returns:
        Mapping stratum level -> SurvivalCurve, levels in sorted order

    Example:
        >>> curves = kaplan_meier(records, "utero", min_age=34)
        >>> curves[1].to_frame().head()
    """
    if group_column is not None and group_column not in records.columns:
        raise SchemaError(f"Group column {group_column!r} missing from records")
    ci_method = CIMethod(ci_method)

    groups = records[group_column] if group_column is not None else pd.Series("all", index=records.index)
    curves: Dict[object, SurvivalCurve] = {}
    for level in sorted(groups.dropna().unique()):
        stratum = records.loc[groups == level]
        time = stratum[TIME_COL].to_numpy(dtype=float)
        event = stratum[EVENT_COL].to_numpy(dtype=bool)
        keep = time >= min_age
        n_below = int((~keep).sum())
        if n_below:
            logger.info(f"Stratum {level}: {n_below:,} records end before age {min_age:g}")
        label = labels.get(level, level) if labels else level
        if keep.sum() == 0:
            curves[level] = SurvivalCurve(label, [], [], [], [], [], min_age, ci_method, alpha, 0, n_below)
            continue
        curves[level] = _fit_curve(label, time[keep], event[keep], min_age, ci_method, alpha, n_below)
    return curves


class LogRankResult(NamedTuple):
    statistic: float
    degrees_of_freedom: int
    p_value: float
    n_groups: int


def logrank_by_group(records: pd.DataFrame, group_column: str, min_age: Optional[float] = None) -> LogRankResult:
    """Multivariate log-rank test of equal survival across the levels of ``group_column``.

    Raises:
        SchemaError: If the group column is missing
        ValueError: If fewer than two groups are present
    """
    if group_column not in records.columns:
        raise SchemaError(f"Group column {group_column!r} missing from records")
    data = records.dropna(subset=[group_column])
    if min_age is not None:
        data = data.loc[data[TIME_COL] >= min_age]
    n_groups = data[group_column].nunique()
    if n_groups < 2:
        raise ValueError(f"Log-rank test needs at least two groups in {group_column!r}")
    result = multivariate_logrank_test(
        data[TIME_COL].to_numpy(dtype=float),
        data[group_column].to_numpy(),
        data[EVENT_COL].to_numpy(dtype=bool),
    )
    return LogRankResult(
        statistic=float(result.test_statistic),
        degrees_of_freedom=int(result.degrees_of_freedom),
        p_value=float(result.p_value),
        n_groups=int(n_groups),
    )
