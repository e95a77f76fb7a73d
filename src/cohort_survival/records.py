"""Survival record construction.

Turns classified subjects into one ``(time, event)`` record per subject for one
outcome. Onset ages come from several candidate sources that are cleaned,
suppressed and resolved according to the ``OutcomeSpec``; subjects without an
onset are censored at their administrative censoring age.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple
import logging
import numpy as np
import pandas as pd

from cohort_survival.cohort import BIRTH_DATE_COLUMN
from cohort_survival.config import CohortConfig, OutcomeSpec, ResolutionStrategy, SourceSpec
from cohort_survival.dates import age_in_years, censoring_age, date_from_year_month, normalize_date_column
from cohort_survival.errors import DropReason, SchemaError
from cohort_survival.timing import log_execution_time

logger = logging.getLogger("cohort_survival.records")

ID_COL = "id"
TIME_COL = "time"
EVENT_COL = "event"
CLUSTER_COL = "cluster_key"
ONSET_COL = "onset_age"
CENSOR_COL = "censoring_age"


@dataclass
class BuildReport:
    """Sample-size accounting for one outcome's survival records.

    Attributes:
        outcome: Outcome name
        n_input: Subjects offered to the builder
        n_records: Records produced
        n_events: Records with an observed onset
        dropped: Subjects removed, by reason
        implausible: Source values discarded as below the minimum plausible age
        suppressed: Source values discarded by the exclusion field
        n_capped: Onsets above the administrative cap turned into censored records
        n_winsorized: Resolved onsets raised to the winsorisation floor
    """
    outcome: str
    n_input: int
    n_records: int = 0
    n_events: int = 0
    dropped: Dict[DropReason, int] = field(default_factory=dict)
    implausible: Dict[str, int] = field(default_factory=dict)
    suppressed: Dict[str, int] = field(default_factory=dict)
    n_capped: int = 0
    n_winsorized: int = 0

    @property
    def n_dropped(self) -> int:
        return sum(self.dropped.values())

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "n_input": self.n_input,
            "n_records": self.n_records,
            "n_events": self.n_events,
            "dropped": {reason.value: n for reason, n in self.dropped.items()},
            "implausible": dict(self.implausible),
            "suppressed": dict(self.suppressed),
            "n_capped": self.n_capped,
            "n_winsorized": self.n_winsorized,
        }


def source_onset_age(frame: pd.DataFrame, source: SourceSpec, birth: pd.Series, epoch) -> pd.Series:
    """Onset age in years from one raw source column (NaN where absent)."""
    raw = frame[source.column]
    if source.kind == "age":
        return pd.to_numeric(raw, errors="coerce").astype(float)
    dates = normalize_date_column(raw, encoding=source.encoding, epoch=epoch)
    return pd.Series(age_in_years(dates, birth).to_numpy(), index=frame.index)


def _winsorize_lower(values: pd.Series, quantile: float) -> Tuple[pd.Series, int]:
    present = values.dropna()
    if present.empty:
        return values, 0
    floor = float(present.quantile(quantile))
    below = values.notna() & (values < floor)
    return values.where(~below, floor), int(below.sum())


def resolve_onset(
    ages: pd.DataFrame, outcome: OutcomeSpec
) -> Tuple[pd.Series, int]:
    """Resolve per-source onset ages to one onset age per subject.

    Args:
        ages: One column per source (named by source column), already cleaned
        outcome: Outcome definition supplying strategy and source flags

    Returns:
        Tuple of (resolved onset ages, number of winsorised values)
    """
    n_winsorized = 0
    if outcome.strategy == ResolutionStrategy.EARLIEST_WINS:
        onset = ages.min(axis=1, skipna=True)
        if outcome.winsorize_lower_quantile is not None:
            onset, n_winsorized = _winsorize_lower(onset, outcome.winsorize_lower_quantile)
        return onset, n_winsorized

    primary = [s.column for s in outcome.sources if not s.override_if_earlier]
    overrides = [s.column for s in outcome.sources if s.override_if_earlier]
    if primary:
        onset = ages[primary].bfill(axis=1).iloc[:, 0]
    else:
        onset = pd.Series(np.nan, index=ages.index)
    if outcome.winsorize_lower_quantile is not None:
        onset, n_winsorized = _winsorize_lower(onset, outcome.winsorize_lower_quantile)
    for column in overrides:
        candidate = ages[column]
        replace = candidate.notna() & (onset.isna() | (candidate < onset))
        onset = onset.where(~replace, candidate)
    return onset, n_winsorized


def _truthy(values: pd.Series) -> pd.Series:
    return pd.to_numeric(values, errors="coerce").fillna(0) > 0


@log_execution_time(logger, description="Survival record construction")
def build_survival_records(
    frame: pd.DataFrame,
    outcome: OutcomeSpec,
    cohort: CohortConfig,
    keep_columns: Iterable[str] = (),
    censor_age: Optional[pd.Series] = None,
) -> Tuple[pd.DataFrame, BuildReport]:
    """Build one survival record per subject for ``outcome``.

    Per subject: every source is converted to an onset age; values below the
    minimum plausible age are discarded, as are values of sources subject to
    the exclusion field when that field is set; the remaining values are
    resolved by the outcome's strategy. An onset above the administrative cap
    becomes a censored record at the cap. Subjects without onset are censored
    at their censoring age, capped. Subjects with no usable time are dropped
    and counted.

    Args:
        frame: Classified subject frame (output of ``ExposureClassifier.assign``)
        outcome: Outcome definition
        cohort: Cohort configuration (id, cluster and assessment columns)
        keep_columns: Extra columns copied onto the records (exposures, covariates)
        censor_age: Pre-computed censoring ages; derived from the assessment
            columns when None

    Returns:
        Tuple of (records frame with id, time, event, cluster_key, onset_age,
        censoring_age and ``keep_columns``; BuildReport)

    Raises:
        SchemaError: If a configured source or keep column is missing

    Example:
        >>> records, report = build_survival_records(classified, cfg.outcome("T2DM"), cfg.cohort)
        >>> bool((records["time"] > 0).all())
        True
    """
    keep_columns = list(keep_columns)
    needed = [s.column for s in outcome.sources] + keep_columns
    if outcome.exclusion_field:
        needed.append(outcome.exclusion_field)
    missing = [c for c in needed if c not in frame.columns]
    if missing:
        raise SchemaError(f"Outcome {outcome.name!r} needs missing columns {missing}")

    report = BuildReport(outcome=outcome.name, n_input=len(frame))
    cap = float(outcome.administrative_cap)

    if BIRTH_DATE_COLUMN in frame.columns:
        birth = pd.to_datetime(frame[BIRTH_DATE_COLUMN], errors="coerce")
    else:
        birth = date_from_year_month(frame[cohort.birth_year_column], frame[cohort.birth_month_column])

    excluded = _truthy(frame[outcome.exclusion_field]) if outcome.exclusion_field else None

    ages = pd.DataFrame(index=frame.index)
    for source in outcome.sources:
        values = source_onset_age(frame, source, birth, cohort.epoch)
        if outcome.min_plausible_age is not None:
            implausible = values.notna() & (values < outcome.min_plausible_age)
            report.implausible[source.column] = int(implausible.sum())
            values = values.where(~implausible)
        if excluded is not None and source.apply_exclusion:
            suppress = values.notna() & excluded
            report.suppressed[source.column] = int(suppress.sum())
            values = values.where(~suppress)
        ages[source.column] = values

    onset, report.n_winsorized = resolve_onset(ages, outcome)

    if censor_age is None:
        censor_age = censoring_age(frame, cohort.assessment_columns, birth, cap=cap)
    censor_age = pd.Series(np.asarray(censor_age, dtype=float), index=frame.index).clip(upper=cap)

    capped = onset.notna() & (onset > cap)
    report.n_capped = int(capped.sum())
    event = onset.notna() & ~capped
    time = pd.Series(np.where(event, onset, np.where(capped, cap, censor_age)), index=frame.index, dtype=float)

    no_time = time.isna()
    invalid = ~no_time & (~np.isfinite(time) | (time <= 0))
    report.dropped[DropReason.MISSING_DATE] = int(no_time.sum())
    report.dropped[DropReason.INVALID_SURVIVAL_TIME] = int(invalid.sum())
    keep = ~(no_time | invalid)

    records = pd.DataFrame({
        ID_COL: frame[cohort.id_column].to_numpy() if cohort.id_column in frame.columns else frame.index.to_numpy(),
        TIME_COL: time.to_numpy(),
        EVENT_COL: event.to_numpy(dtype=bool),
        CLUSTER_COL: frame[cohort.cluster_column].to_numpy() if cohort.cluster_column in frame.columns else np.nan,
        ONSET_COL: onset.to_numpy(dtype=float),
        CENSOR_COL: censor_age.to_numpy(),
    }, index=frame.index)
    for column in keep_columns:
        records[column] = frame[column].to_numpy()
    records = records.loc[keep].reset_index(drop=True)

    report.n_records = len(records)
    report.n_events = int(records[EVENT_COL].sum())
    logger.info(
        f"{outcome.name}: {report.n_records:,} records, {report.n_events:,} events "
        f"({report.n_dropped:,} dropped, {report.n_capped:,} onsets capped at {cap:g})"
    )
    return records, report
