"""
Date Utilities Module

Date-only arithmetic in UTC terms (business-day stepping with an optional
weekend-skip rule, days-late counting) and the injectable Clock that all
day-based accrual reads "today" from.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Union

from .errors import ValidationError

DateLike = Union[date, datetime, str]

SATURDAY = 5
SUNDAY = 6


class Clock(ABC):
    """Source of the current moment"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC datetime"""
        pass

    def today(self) -> date:
        """Current UTC calendar date"""
        return self.now().astimezone(timezone.utc).date()


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Clock pinned to a fixed moment, for deterministic tests and replays.

    ``advance`` moves the pinned moment forward by whole days.
    """

    def __init__(self, moment: DateLike):
        self._moment = _to_utc_datetime(moment)

    def now(self) -> datetime:
        return self._moment

    def set(self, moment: DateLike) -> None:
        self._moment = _to_utc_datetime(moment)

    def advance(self, days: int = 1) -> None:
        self._moment = self._moment + timedelta(days=days)


def _to_utc_datetime(moment: DateLike) -> datetime:
    if isinstance(moment, datetime):
        if moment.tzinfo is None:
            return moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc)
    day = parse_date_only(moment)
    return datetime(day.year, day.month, day.day, 12, 0, tzinfo=timezone.utc)


def parse_date_only(value: DateLike) -> date:
    """
    Normalize a date-like value to a calendar date.

    Accepts ``date``, ``datetime`` (converted to UTC first when aware), ISO
    strings (``2024-03-15`` or a full ISO timestamp) and ``DD/MM/YYYY``.

    Raises:
        ValidationError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid date: {value!r}")

    text = value.strip()
    try:
        if "/" in text:
            return datetime.strptime(text, "%d/%m/%Y").date()
        if len(text) == 10:
            return date.fromisoformat(text)
        return parse_date_only(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError as exc:
        raise ValidationError(f"Invalid date: {value!r}") from exc


def is_weekend(day: date) -> bool:
    return day.weekday() in (SATURDAY, SUNDAY)


def add_business_days(start: DateLike, days: int, skip_weekends: bool = False) -> date:
    """
    Add ``days`` to ``start``.

    Without ``skip_weekends`` this is plain calendar addition. With it, the
    date advances one day at a time and only weekdays count toward ``days``,
    so the result is always a weekday when ``days > 0``.

    Args:
        start: Starting date
        days: Number of days to add (negative values step backwards on the calendar)
        skip_weekends: Count only Monday-Friday

    Returns:
        The resulting calendar date
    """
    current = parse_date_only(start)
    if not skip_weekends or days <= 0:
        return current + timedelta(days=days)

    added = 0
    while added < days:
        current += timedelta(days=1)
        if not is_weekend(current):
            added += 1
    return current


def days_between(start: DateLike, end: DateLike) -> int:
    """Signed whole-day difference ``end - start``"""
    return (parse_date_only(end) - parse_date_only(start)).days


def days_late(due_date: DateLike, today: DateLike) -> int:
    """
    Days elapsed since ``due_date`` as of ``today``.

    Zero or negative when the installment is not yet due; callers clamp.
    """
    return days_between(due_date, today)
