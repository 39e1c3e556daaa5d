"""
Tests for date utilities and the injectable clock
"""

import pytest
from datetime import date, datetime, timezone, timedelta

from lending_core.dates import (
    FixedClock, SystemClock, add_business_days, days_between, days_late,
    is_weekend, parse_date_only
)
from lending_core.errors import ValidationError


class TestParseDateOnly:
    """Test date normalization"""

    def test_date_passthrough(self):
        assert parse_date_only(date(2024, 1, 15)) == date(2024, 1, 15)

    def test_iso_and_brazilian_formats(self):
        """Test ISO and DD/MM/YYYY strings"""
        assert parse_date_only("2024-01-15") == date(2024, 1, 15)
        assert parse_date_only("15/01/2024") == date(2024, 1, 15)

    def test_aware_timestamp_converted_to_utc(self):
        """Test that an aware timestamp lands on its UTC calendar day"""
        assert parse_date_only("2024-01-15T23:30:00-03:00") == date(2024, 1, 16)
        moment = datetime(2024, 1, 15, 23, 30, tzinfo=timezone(timedelta(hours=-3)))
        assert parse_date_only(moment) == date(2024, 1, 16)

    def test_invalid_values(self):
        """Test that unparseable input raises ValidationError"""
        with pytest.raises(ValidationError, match="Invalid date"):
            parse_date_only("not a date")
        with pytest.raises(ValidationError):
            parse_date_only("31/02/2024")
        with pytest.raises(ValidationError):
            parse_date_only("")


class TestBusinessDays:
    """Test day stepping with and without weekend skipping"""

    def test_calendar_addition_without_skip(self):
        """Test plain calendar addition"""
        assert add_business_days(date(2024, 1, 5), 1) == date(2024, 1, 6)
        assert add_business_days(date(2024, 1, 1), 30) == date(2024, 1, 31)

    def test_friday_plus_one_is_monday(self):
        """Test that weekends are skipped when asked"""
        friday = date(2024, 1, 5)
        assert add_business_days(friday, 1, skip_weekends=True) == date(2024, 1, 8)

    def test_thirty_business_days(self):
        """Test a monthly step counted in weekdays"""
        result = add_business_days(date(2024, 1, 1), 30, skip_weekends=True)
        assert result == date(2024, 2, 12)
        assert not is_weekend(result)

    def test_zero_days_keeps_start(self):
        """Test that zero days never moves the date, even on a weekend"""
        saturday = date(2024, 1, 6)
        assert add_business_days(saturday, 0, skip_weekends=True) == saturday

    def test_is_weekend(self):
        assert is_weekend(date(2024, 1, 6))
        assert is_weekend(date(2024, 1, 7))
        assert not is_weekend(date(2024, 1, 8))


class TestDayCounts:
    """Test days-between and days-late counting"""

    def test_days_between(self):
        assert days_between(date(2024, 1, 1), date(2024, 2, 10)) == 40
        assert days_between("2024-02-10", "2024-01-01") == -40

    def test_days_late(self):
        """Test that days late is zero on and negative before the due date"""
        due = date(2024, 1, 31)
        assert days_late(due, date(2024, 2, 10)) == 10
        assert days_late(due, due) == 0
        assert days_late(due, date(2024, 1, 30)) == -1


class TestClock:
    """Test clock implementations"""

    def test_fixed_clock(self):
        """Test that a fixed clock only moves when told to"""
        clock = FixedClock(date(2024, 1, 1))
        assert clock.today() == date(2024, 1, 1)
        assert clock.now().tzinfo is not None

        clock.advance(10)
        assert clock.today() == date(2024, 1, 11)

        clock.set("2024-03-01")
        assert clock.today() == date(2024, 3, 1)

    def test_system_clock_is_utc(self):
        now = SystemClock().now()
        assert now.tzinfo == timezone.utc
