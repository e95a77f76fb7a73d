"""Normalisation of raw date fields and derived ages.

Raw cohort extracts mix three date encodings: ISO strings, integer day counts
since an epoch (1960-01-01 by default) and separate year/month fields. Every
malformed or absent value maps to ``MISSING_DATE`` (scalar API) or ``NaT``
(vectorised API); nothing here raises on bad data.
"""
from __future__ import annotations
from datetime import date, datetime, timedelta
from typing import Iterable, Literal, Union
import math
import numpy as np
import pandas as pd

from cohort_survival.errors import MISSING_DATE

DEFAULT_EPOCH = date(1960, 1, 1)
DAYS_PER_YEAR = 365.25
# pandas datetime64[ns] covers roughly +/- 292 years around 1970
MAX_EPOCH_DAYS = 100_000

DateEncoding = Literal["auto", "iso", "epoch_day", "year_month"]


def _is_blank(value) -> bool:
    if value is None or value is pd.NaT:
        return True
    if isinstance(value, float) and not math.isfinite(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _from_epoch_day(value, epoch: date):
    try:
        days = float(value)
    except (TypeError, ValueError):
        return MISSING_DATE
    if not math.isfinite(days):
        return MISSING_DATE
    try:
        return epoch + timedelta(days=math.floor(days))
    except OverflowError:
        return MISSING_DATE


def _from_iso(value: str):
    text = value.strip()[:10]
    try:
        return date.fromisoformat(text)
    except ValueError:
        return MISSING_DATE


def _from_year_month(value):
    try:
        year, month = value
        year, month = int(year), int(month)
        return date(year, month, 1)
    except (TypeError, ValueError, OverflowError):
        return MISSING_DATE


def normalize_date(value, encoding: DateEncoding = "auto", epoch: date = DEFAULT_EPOCH):
    """Convert one raw date value to a calendar date.

    Args:
        value: Raw value (ISO string, epoch-day number, (year, month) pair,
            date/datetime, or a missing marker)
        encoding: Expected encoding. "auto" infers it from the value type
        epoch: Day zero for epoch-day values

    Returns:
        A ``datetime.date`` or ``MISSING_DATE``

    Example:
        >>> normalize_date(17532)
        datetime.date(2008, 1, 1)
        >>> normalize_date("2008-01-01")
        datetime.date(2008, 1, 1)
        >>> normalize_date((1945, 13))
        MISSING_DATE
    """
    if value is MISSING_DATE or _is_blank(value):
        return MISSING_DATE
    try:
        if pd.isna(value):
            return MISSING_DATE
    except (TypeError, ValueError):
        pass

    if encoding == "iso":
        return _from_iso(value) if isinstance(value, str) else MISSING_DATE
    if encoding == "epoch_day":
        return _from_epoch_day(value, epoch)
    if encoding == "year_month":
        return _from_year_month(value)

    # auto
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (tuple, list)):
        return _from_year_month(value)
    if isinstance(value, str):
        parsed = _from_iso(value)
        if parsed is MISSING_DATE:
            return _from_epoch_day(value.strip(), epoch)
        return parsed
    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        return _from_epoch_day(value, epoch)
    return MISSING_DATE


def normalize_date_column(
    series: pd.Series,
    encoding: DateEncoding = "auto",
    epoch: date = DEFAULT_EPOCH,
) -> pd.Series:
    """Vectorised ``normalize_date`` returning a datetime64 series.

    Missing or malformed entries become ``NaT``. The input is not modified.
    """
    if encoding == "iso":
        text = series.astype("string").str.strip().str.slice(0, 10)
        return pd.to_datetime(text, format="%Y-%m-%d", errors="coerce")
    if encoding == "epoch_day":
        days = pd.to_numeric(series, errors="coerce")
        days = days.where(np.isfinite(days) & (days.abs() < MAX_EPOCH_DAYS))
        return pd.Timestamp(epoch) + pd.to_timedelta(np.floor(days), unit="D")

    values = [normalize_date(v, encoding=encoding, epoch=epoch) for v in series]
    # dates beyond the datetime64[ns] range are treated as malformed
    lowest, highest = pd.Timestamp.min.date(), pd.Timestamp.max.date()
    return pd.Series(
        pd.to_datetime([
            v if v is not MISSING_DATE and lowest < v < highest else pd.NaT
            for v in values
        ]),
        index=series.index,
        name=series.name,
        dtype="datetime64[ns]",
    )


def date_from_year_month(years: pd.Series, months: pd.Series) -> pd.Series:
    """Build first-of-month dates from year and month columns (NaT when invalid)."""
    year = pd.to_numeric(years, errors="coerce")
    month = pd.to_numeric(months, errors="coerce")
    valid = year.notna() & month.between(1, 12) & (year == np.floor(year)) & (month == np.floor(month))
    parts = pd.DataFrame({
        "year": year.where(valid, 2000).astype(int),
        "month": month.where(valid, 1).astype(int),
        "day": 1,
    }, index=years.index)
    result = pd.to_datetime(parts, errors="coerce")
    return result.where(valid)


def age_in_years(
    target: Union[pd.Series, Iterable],
    birth: Union[pd.Series, Iterable],
    round_to_int: bool = False,
) -> pd.Series:
    """Age at ``target`` for subjects born at ``birth``, in years.

    Age is ``(target - birth)`` in days divided by 365.25. With
    ``round_to_int`` the age is rounded to the nearest whole year, halves to
    even, which is how assessment ages are reported. Missing dates propagate as NaN.
    """
    target = pd.to_datetime(pd.Series(target), errors="coerce")
    birth = pd.to_datetime(pd.Series(birth), errors="coerce")
    birth.index = target.index
    age = (target - birth).dt.days / DAYS_PER_YEAR
    if round_to_int:
        age = np.round(age)
    return age.astype(float)


def censoring_age(
    frame: pd.DataFrame,
    assessment_columns: Iterable[str],
    birth: pd.Series,
    cap: float,
    encoding: DateEncoding = "iso",
    epoch: date = DEFAULT_EPOCH,
) -> pd.Series:
    """Administrative censoring age per subject.

    The maximum rounded age across all assessment waves, capped at ``cap``.
    Subjects with no usable assessment date get NaN.

    Args:
        frame: Subject frame holding the assessment columns
        assessment_columns: Columns with one assessment date per wave
        birth: Birth dates aligned with ``frame``
        cap: Administrative follow-up limit in years of age
        encoding: Encoding of the assessment columns
        epoch: Day zero for epoch-day encodings

    Returns:
        Float series of censoring ages indexed like ``frame``
    """
    ages = pd.DataFrame(index=frame.index)
    for column in assessment_columns:
        dates = normalize_date_column(frame[column], encoding=encoding, epoch=epoch)
        ages[column] = age_in_years(dates, birth, round_to_int=True).values
    if ages.shape[1] == 0:
        return pd.Series(np.nan, index=frame.index, dtype=float)
    return ages.max(axis=1, skipna=True).clip(upper=cap)
