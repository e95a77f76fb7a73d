"""Unit tests for cohort_survival.dates module.

Tests date normalisation across encodings and the derived ages.
"""
import pytest
import numpy as np
import pandas as pd
from datetime import date, datetime

from cohort_survival.dates import (
    age_in_years,
    censoring_age,
    date_from_year_month,
    normalize_date,
    normalize_date_column,
)
from cohort_survival.errors import MISSING_DATE


class TestNormalizeDate:
    """Tests for normalize_date function."""

    def test_epoch_day(self):
        """Test that day 0 is the epoch and 17532 is 2008-01-01."""
        assert normalize_date(0) == date(1960, 1, 1)
        assert normalize_date(17532) == date(2008, 1, 1)
        assert normalize_date(-1) == date(1959, 12, 31)

    def test_custom_epoch(self):
        """Test epoch-day decoding against a configured epoch."""
        assert normalize_date(31, encoding="epoch_day", epoch=date(1970, 1, 1)) == date(1970, 2, 1)

    def test_iso_string(self):
        """Test ISO strings, with and without a time part."""
        assert normalize_date("2008-06-15") == date(2008, 6, 15)
        assert normalize_date("2008-06-15T10:30:00", encoding="iso") == date(2008, 6, 15)

    def test_year_month_pair(self):
        """Test (year, month) pairs map to the first of the month."""
        assert normalize_date((1953, 9)) == date(1953, 9, 1)

    def test_datetime_passthrough(self):
        """Test that date and datetime values are returned as dates."""
        assert normalize_date(datetime(2010, 3, 4, 12, 0)) == date(2010, 3, 4)
        assert normalize_date(date(2010, 3, 4)) == date(2010, 3, 4)

    @pytest.mark.parametrize("value", [None, np.nan, "", "   ", "not a date", float("inf"), pd.NaT])
    def test_malformed_values_are_missing(self, value):
        """Test that blanks and garbage become MISSING_DATE without raising."""
        assert normalize_date(value) is MISSING_DATE

    def test_invalid_month_is_missing(self):
        """Test that month 13 is not a date."""
        assert normalize_date((1945, 13)) is MISSING_DATE

    def test_missing_marker_is_falsy(self):
        """Test that MISSING_DATE can be used in boolean context."""
        assert not MISSING_DATE


class TestNormalizeDateColumn:
    """Tests for normalize_date_column function."""

    def test_epoch_day_column(self):
        """Test vectorised epoch-day decoding with missing values."""
        s = pd.Series([0.0, np.nan, 17532.0])
        result = normalize_date_column(s, encoding="epoch_day")
        assert result.iloc[0] == pd.Timestamp("1960-01-01")
        assert pd.isna(result.iloc[1])
        assert result.iloc[2] == pd.Timestamp("2008-01-01")

    def test_out_of_range_epoch_day_is_missing(self):
        """Test that absurd day counts become NaT instead of overflowing."""
        result = normalize_date_column(pd.Series([1e12]), encoding="epoch_day")
        assert pd.isna(result.iloc[0])

    def test_auto_out_of_range_is_missing(self):
        """Test that mixed encodings beyond the datetime64 range become NaT."""
        s = pd.Series([17532, "2008-01-01", 400000, "9999-12-31"], dtype=object)
        result = normalize_date_column(s, encoding="auto")
        assert result.iloc[0] == pd.Timestamp("2008-01-01")
        assert result.iloc[1] == pd.Timestamp("2008-01-01")
        assert result.iloc[2:].isna().all()

    def test_iso_column(self):
        """Test vectorised ISO parsing."""
        s = pd.Series(["2008-01-01", None, "garbage"])
        result = normalize_date_column(s, encoding="iso")
        assert result.iloc[0] == pd.Timestamp("2008-01-01")
        assert result.iloc[1:].isna().all()

    def test_input_not_modified(self):
        """Test that the input series is left unchanged."""
        s = pd.Series(["2008-01-01", "2009-01-01"])
        original = s.copy()
        normalize_date_column(s, encoding="iso")
        pd.testing.assert_series_equal(s, original)


class TestAges:
    """Tests for date_from_year_month, age_in_years and censoring_age."""

    def test_date_from_year_month(self):
        """Test first-of-month birth dates with an invalid month."""
        result = date_from_year_month(pd.Series([1953, 1954]), pd.Series([9, 13]))
        assert result.iloc[0] == pd.Timestamp("1953-09-01")
        assert pd.isna(result.iloc[1])

    def test_age_in_years(self):
        """Test that ages use 365.25-day years."""
        age = age_in_years(pd.Series([pd.Timestamp("2010-01-01")]), pd.Series([pd.Timestamp("1950-01-01")]))
        assert age.iloc[0] == pytest.approx(21915 / 365.25)

    def test_rounded_age_is_nearest_year(self):
        """Test rounding to the nearest whole year."""
        birth = pd.Series([pd.Timestamp("1950-01-01"), pd.Timestamp("1950-01-01")])
        target = pd.Series([pd.Timestamp("2005-07-03"), pd.Timestamp("2005-06-01")])
        age = age_in_years(target, birth, round_to_int=True)
        assert list(age) == [56.0, 55.0]

    def test_censoring_age_is_max_over_waves_and_capped(self):
        """Test the maximum rounded age across waves, capped at the administrative cap."""
        frame = pd.DataFrame({
            "v1": ["2008-01-01", "2008-01-01", None],
            "v2": ["2014-01-01", "2030-01-01", None],
        })
        birth = pd.Series(pd.to_datetime(["1950-01-01", "1950-01-01", "1950-01-01"]))
        result = censoring_age(frame, ["v1", "v2"], birth, cap=66.0)
        assert result.iloc[0] == 64.0
        assert result.iloc[1] == 66.0
        assert np.isnan(result.iloc[2])
