"""Cohort construction: exclusion rules, exposure classification, covariates.

The exposure of every subject is a pure function of birth year, birth month
and the ``CohortConfig``: the birth-period index is mapped onto a table of
non-overlapping inclusive period ranges, and coarser classifications are
derived from the fine period through many-to-one mappings.
"""
from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging
import numpy as np
import pandas as pd

from cohort_survival.config import CohortConfig, CollapseSpec, DerivationSpec, ExclusionSpec, PeriodBoundary
from cohort_survival.dates import date_from_year_month
from cohort_survival.errors import (
    ConfigurationError,
    ConfigurationOverlap,
    DropReason,
    SchemaError,
    UNCLASSIFIED,
)

logger = logging.getLogger("cohort_survival.cohort")

INDEX_COLUMN = "birth_period_index"
BIRTH_DATE_COLUMN = "birth_date"


def birth_period_index(
    year,
    month,
    epoch_year: int = 1960,
    periods_per_year: int = 4,
    months_per_period: int = 3,
    offset: int = 0,
):
    """Ordinal birth period of a subject.

    index = (year - epoch_year) * periods_per_year
            + floor((month - 1) / months_per_period) + offset

    Works on scalars and array-likes. Months outside 1-12 or missing values
    give NaN.

    Example:
        >>> birth_period_index(1953, 9, offset=41)
        15.0
        >>> birth_period_index(1954, 7, offset=41)
        19.0
    """
    year = np.asarray(year, dtype=float)
    month = np.asarray(month, dtype=float)
    valid = np.isfinite(year) & np.isfinite(month) & (month >= 1) & (month <= 12)
    safe_month = np.where(valid, month, 1.0)
    index = (
        (year - epoch_year) * periods_per_year
        + np.floor((safe_month - 1) / months_per_period)
        + offset
    )
    index = np.where(valid, index, np.nan)
    if index.ndim == 0:
        return float(index)
    return index


def cluster_key(year, month, epoch_year: int = 1960):
    """Year-month-of-birth identifier, months since January of ``epoch_year``."""
    year = np.asarray(year, dtype=float)
    month = np.asarray(month, dtype=float)
    key = (year - epoch_year) * 12 + (month - 1)
    valid = np.isfinite(key) & (month >= 1) & (month <= 12)
    key = np.where(valid, key, np.nan)
    if key.ndim == 0:
        return float(key)
    return key


class PeriodTable:
    """Ordered, non-overlapping inclusive ranges of birth-period indices.

    Args:
        boundaries: Period boundaries in any order

    Raises:
        ConfigurationOverlap: If two periods share a birth-period index
        ConfigurationError: If two boundaries carry the same period id

    Example:
        >>> table = PeriodTable([PeriodBoundary(1, 25, 25), PeriodBoundary(2, 23, 24)])
        >>> table.classify(24)
        2
        >>> table.classify(30)
        UNCLASSIFIED
    """

    def __init__(self, boundaries: Iterable[PeriodBoundary]):
        self.boundaries: Tuple[PeriodBoundary, ...] = tuple(
            sorted(boundaries, key=lambda b: (b.lower, b.upper))
        )
        if not self.boundaries:
            raise ConfigurationError("PeriodTable needs at least one period")
        ids = [b.period_id for b in self.boundaries]
        if len(ids) != len(set(ids)):
            raise ConfigurationError(f"Duplicate period ids in {ids}")
        for prev, nxt in zip(self.boundaries, self.boundaries[1:]):
            if nxt.lower <= prev.upper:
                raise ConfigurationOverlap(prev.period_id, nxt.period_id)

    @property
    def period_ids(self) -> List[int]:
        return sorted(b.period_id for b in self.boundaries)

    @property
    def window(self) -> Tuple[float, float]:
        return self.boundaries[0].lower, self.boundaries[-1].upper

    def classify(self, index):
        """Period id containing ``index``, or ``UNCLASSIFIED``."""
        if index is None:
            return UNCLASSIFIED
        try:
            value = float(index)
        except (TypeError, ValueError):
            return UNCLASSIFIED
        if not np.isfinite(value):
            return UNCLASSIFIED
        for boundary in self.boundaries:
            if boundary.contains(value):
                return boundary.period_id
        return UNCLASSIFIED

    def classify_frame(self, index: pd.Series) -> pd.Series:
        """Vectorised ``classify``; unclassified subjects get <NA>."""
        values = pd.to_numeric(index, errors="coerce")
        result = pd.Series(pd.NA, index=values.index, dtype="Int64")
        for boundary in self.boundaries:
            mask = (values >= boundary.lower) & (values <= boundary.upper)
            result[mask] = boundary.period_id
        return result


class CollapsedClassification:
    """Many-to-one mapping from fine period ids to coarse levels.

    Args:
        name: Output column name
        mapping: Fine period id -> coarse level
        fine_ids: Every fine period id the mapping must cover
        labels: Coarse level -> display label
        reference: Reference level for regression designs

    Raises:
        ConfigurationError: If a fine period id has no coarse level
    """

    def __init__(
        self,
        name: str,
        mapping: Mapping[int, int],
        fine_ids: Iterable[int],
        labels: Optional[Mapping[int, str]] = None,
        reference: Optional[int] = None,
    ):
        self.name = name
        self.mapping = dict(mapping)
        self.labels = dict(labels or {})
        self.reference = reference
        missing = [fid for fid in fine_ids if fid not in self.mapping]
        if missing:
            raise ConfigurationError(
                f"Collapsed classification {name!r} does not map fine periods {missing}"
            )
        if reference is not None and reference not in set(self.mapping.values()):
            raise ConfigurationError(
                f"Reference level {reference!r} of {name!r} is not a coarse level"
            )

    @classmethod
    def from_spec(cls, spec: CollapseSpec, fine_ids: Iterable[int]) -> "CollapsedClassification":
        return cls(spec.name, spec.as_dict(), fine_ids, spec.label_map(), spec.reference)

    @property
    def levels(self) -> List[int]:
        return sorted(set(self.mapping.values()))

    def apply(self, fine: pd.Series) -> pd.Series:
        return fine.map(self.mapping).astype("Int64")


@dataclass
class ClassificationReport:
    """Sample-size accounting of one classification pass."""
    n_input: int
    n_classified: int
    counts: Dict[int, int] = field(default_factory=dict)
    dropped: Dict[DropReason, int] = field(default_factory=dict)

    @property
    def n_unclassified(self) -> int:
        return self.dropped.get(DropReason.UNCLASSIFIED_EXPOSURE, 0)


class ExposureClassifier:
    """Assigns the fine and all collapsed exposure classifications.

    Example:
        >>> classifier = ExposureClassifier(EngineConfig.sugar_rationing().cohort)
        >>> classified, report = classifier.assign(df)
        >>> report.n_unclassified
        412
    """

    def __init__(self, config: CohortConfig):
        self.config = config
        self.table = PeriodTable(config.periods)
        fine_ids = self.table.period_ids
        if config.fine_reference is not None and config.fine_reference not in fine_ids:
            raise ConfigurationError(
                f"Reference period {config.fine_reference!r} is not one of {fine_ids}"
            )
        self.collapses = [CollapsedClassification.from_spec(spec, fine_ids) for spec in config.collapses]

    def birth_period_index(self, frame: pd.DataFrame) -> pd.Series:
        spec = self.config.index
        values = birth_period_index(
            frame[self.config.birth_year_column].to_numpy(dtype=float),
            frame[self.config.birth_month_column].to_numpy(dtype=float),
            epoch_year=spec.epoch_year,
            periods_per_year=spec.periods_per_year,
            months_per_period=spec.months_per_period,
            offset=spec.offset,
        )
        return pd.Series(values, index=frame.index, name=INDEX_COLUMN)

    def assign(self, frame: pd.DataFrame) -> Tuple[pd.DataFrame, ClassificationReport]:
        """Classify every subject and drop the unclassified ones.

        Args:
            frame: Subject frame with birth year and month columns

        Returns:
            Tuple of (new frame with the index, birth date, cluster key and
            classification columns added; ClassificationReport)

        Raises:
            SchemaError: If the birth year or month column is absent
        """
        cfg = self.config
        for column in (cfg.birth_year_column, cfg.birth_month_column):
            if column not in frame.columns:
                raise SchemaError(f"Birth column {column!r} missing from input frame")

        out = frame.copy()
        years = pd.to_numeric(out[cfg.birth_year_column], errors="coerce")
        months = pd.to_numeric(out[cfg.birth_month_column], errors="coerce")
        out[INDEX_COLUMN] = self.birth_period_index(out)
        out[BIRTH_DATE_COLUMN] = date_from_year_month(years, months)
        out[cfg.cluster_column] = cluster_key(years.to_numpy(), months.to_numpy(), cfg.index.epoch_year)
        out[cfg.fine_column] = self.table.classify_frame(out[INDEX_COLUMN])

        classified = out[cfg.fine_column].notna()
        n_unclassified = int((~classified).sum())
        out = out.loc[classified].copy()
        for collapse in self.collapses:
            out[collapse.name] = collapse.apply(out[cfg.fine_column])

        counts = {int(k): int(v) for k, v in out[cfg.fine_column].value_counts().sort_index().items()}
        report = ClassificationReport(
            n_input=len(frame),
            n_classified=len(out),
            counts=counts,
            dropped={DropReason.UNCLASSIFIED_EXPOSURE: n_unclassified},
        )
        if n_unclassified:
            low, high = self.table.window
            logger.info(
                f"Dropped {n_unclassified:,} subjects outside the study window "
                f"[{low:g}, {high:g}] of the birth-period index"
            )
        return out, report


# ============================================================================
# Exclusion rules
# ============================================================================

@dataclass(frozen=True)
class ExclusionRule:
    """Named predicate selecting the subjects to exclude."""
    name: str
    predicate: Callable[[pd.DataFrame], pd.Series]
    columns: Tuple[str, ...] = ()

    @classmethod
    def from_spec(cls, spec: ExclusionSpec) -> "ExclusionRule":
        column = spec.column
        if spec.rule == "not_null":
            def predicate(df):
                return df[column].notna()
        else:
            values = list(spec.values)

            def predicate(df):
                return pd.to_numeric(df[column], errors="coerce").isin(values)
        return cls(spec.name, predicate, (column,))

    @classmethod
    def missing_value(cls, column: str) -> "ExclusionRule":
        """Rule excluding subjects whose ``column`` is missing."""
        return cls(f"missing_{column}", lambda df: df[column].isna(), (column,))


@dataclass
class ExclusionReport:
    """Per-rule drop counts, in application order."""
    n_input: int
    n_retained: int
    counts: "OrderedDict[str, int]" = field(default_factory=OrderedDict)

    @property
    def n_excluded(self) -> int:
        return self.n_input - self.n_retained


def apply_exclusions(
    frame: pd.DataFrame, rules: Sequence[ExclusionRule]
) -> Tuple[pd.DataFrame, ExclusionReport]:
    """Apply exclusion rules in order; each rule only sees survivors of the previous ones.

    Raises:
        SchemaError: If a rule reads a column the frame does not have
    """
    counts: "OrderedDict[str, int]" = OrderedDict()
    current = frame
    for rule in rules:
        missing = [c for c in rule.columns if c not in current.columns]
        if missing:
            raise SchemaError(f"Exclusion rule {rule.name!r} needs missing columns {missing}")
        excluded = rule.predicate(current).fillna(False).astype(bool)
        counts[rule.name] = int(excluded.sum())
        current = current.loc[~excluded]
        logger.info(f"Exclusion {rule.name}: -{counts[rule.name]:,} (remaining {len(current):,})")
    return current.copy(), ExclusionReport(len(frame), len(current), counts)


# ============================================================================
# Covariate derivation helpers
# ============================================================================

def standardize(series: pd.Series) -> pd.Series:
    """Z-score with the sample standard deviation; NaN is kept."""
    values = pd.to_numeric(series, errors="coerce")
    return (values - values.mean()) / values.std(ddof=1)


def threshold_indicator(series: pd.Series, value: float) -> pd.Series:
    """1.0 where ``series > value``, 0.0 otherwise, NaN where missing."""
    values = pd.to_numeric(series, errors="coerce")
    return (values > value).astype(float).where(values.notna())


def set_indicator(
    series: pd.Series,
    values: Iterable[float],
    negate: bool = False,
    negative_missing: bool = False,
) -> pd.Series:
    """1.0 where the code is in ``values`` (or not in, with ``negate``); NaN where missing.

    With ``negative_missing`` negative codes ("prefer not to answer" and
    similar) count as missing.
    """
    codes = pd.to_numeric(series, errors="coerce")
    if negative_missing:
        codes = codes.where(codes >= 0)
    hit = codes.isin(list(values))
    if negate:
        hit = ~hit
    return hit.astype(float).where(codes.notna())


def quantile_bins_with_indicator(
    series: pd.Series, q: int = 10, negative_missing: bool = False
) -> Tuple[pd.Series, pd.Series]:
    """Equal-count bins 1..q with zero imputation and a missingness indicator.

    Bins are assigned by rank with ties broken by position, so bin sizes
    differ by at most one. Missing values get bin 0 and indicator 1.

    Returns:
        Tuple of (bins, missing indicator), both integer series
    """
    values = pd.to_numeric(series, errors="coerce")
    if negative_missing:
        values = values.where(values >= 0)
    present = values.notna()
    n = int(present.sum())
    bins = pd.Series(0, index=series.index, dtype=int)
    if n:
        ranks = values[present].rank(method="first")
        bins[present] = (np.floor(q * (ranks.to_numpy() - 1) / n) + 1).astype(int)
    return bins, (~present).astype(int)


def indicator_dummies(
    series: pd.Series, levels: Sequence[int], prefix: str
) -> pd.DataFrame:
    """Dummies for chosen rank positions of the sorted distinct values.

    ``levels`` are 1-based positions in the sorted list of distinct observed
    values; a position beyond the last value refers to the last value. Missing
    inputs give NaN in every dummy.

    Example:
        >>> indicator_dummies(pd.Series([2006, 2007, 2008, 2009]), levels=(2, 3, 4), prefix="fsy")
           fsy_2  fsy_3  fsy_4
        0    0.0    0.0    0.0
        1    1.0    0.0    0.0
        2    0.0    1.0    0.0
        3    0.0    0.0    1.0
    """
    values = pd.to_numeric(series, errors="coerce")
    distinct = np.sort(values.dropna().unique())
    out = pd.DataFrame(index=series.index)
    for level in levels:
        name = f"{prefix}_{level}"
        if len(distinct) == 0:
            out[name] = np.nan
            continue
        target = distinct[min(level, len(distinct)) - 1]
        out[name] = (values == target).astype(float).where(values.notna())
    return out


def derive_covariates(frame: pd.DataFrame, derivations: Sequence[DerivationSpec]) -> pd.DataFrame:
    """Apply derivations in order and return a new frame with the derived columns.

    Later derivations may read columns produced by earlier ones.

    Raises:
        SchemaError: If a derivation reads a missing column
        ConfigurationError: If a derivation method is unknown
    """
    out = frame.copy()
    for spec in derivations:
        if spec.source not in out.columns:
            raise SchemaError(f"Derivation {spec.name!r} needs missing column {spec.source!r}")
        source = out[spec.source]
        if spec.method == "standardize":
            out[spec.name] = standardize(source)
        elif spec.method == "threshold":
            out[spec.name] = threshold_indicator(source, spec.param("value", 0.0))
        elif spec.method == "in_set":
            out[spec.name] = set_indicator(
                source,
                spec.param("values", ()),
                negate=spec.param("negate", False),
                negative_missing=spec.param("negative_missing", False),
            )
        elif spec.method == "deciles":
            bins, missing = quantile_bins_with_indicator(
                source, q=spec.param("q", 10), negative_missing=spec.param("negative_missing", False)
            )
            out[spec.name] = bins
            out[f"{spec.name}_imp"] = missing
        elif spec.method == "year_dummies":
            years = pd.to_datetime(source, errors="coerce").dt.year
            dummies = indicator_dummies(years, spec.param("levels", (2, 3, 4)), spec.name)
            for column in dummies.columns:
                out[column] = dummies[column]
        else:
            raise ConfigurationError(f"Unknown derivation method {spec.method!r} for {spec.name!r}")
    return out
