'''
School year calendar: which (month, year) periods a school year is made of,
and which of them are already due on a given date.
'''
import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Protocol, Union
from uuid import UUID

from ..common.exceptions import ValidationError


class SchoolYearLike(Protocol):
    id: UUID
    name: str
    start_date: date
    end_date: date


@dataclass(frozen=True, order=True)
class LedgerPeriod:
    """
    One tuition obligation unit. Ordering is chronological: (year, month).
    """
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValidationError(f"Month must be between 1 and 12, got {self.month}.")

    @property
    def key(self) -> str:
        return f"{self.year}-{self.month:02d}"

    @property
    def label(self) -> str:
        return f"{calendar.month_name[self.month]} {self.year}"

    def matches(self, period: "LedgerPeriod") -> bool:
        return self == period


@dataclass(frozen=True)
class LegacyMonthOnly:
    """
    Period reference of a record written before payments carried a year.
    It matches any period with the same month.
    """
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValidationError(f"Month must be between 1 and 12, got {self.month}.")

    def matches(self, period: LedgerPeriod) -> bool:
        return self.month == period.month


PeriodRef = Union[LedgerPeriod, LegacyMonthOnly]


def period_ref(month: Optional[int], year: Optional[int]) -> Optional[PeriodRef]:
    """Builds the period reference stored on a payment row."""
    if month is None:
        return None
    if year is None:
        return LegacyMonthOnly(month=month)
    return LedgerPeriod(year=year, month=month)


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def _months_between(start: date, cutoff: date) -> list[LedgerPeriod]:
    periods = []
    year, month = start.year, start.month
    while (year, month) <= (cutoff.year, cutoff.month):
        periods.append(LedgerPeriod(year=year, month=month))
        month += 1
        if month > 12:
            month = 1
            year += 1
    return periods


class SchoolYearCalendar:
    """Enumerates the obligation periods of a school year."""

    @staticmethod
    def periods_due_as_of(school_year: SchoolYearLike, reference_date: Union[date, datetime]) -> list[LedgerPeriod]:
        """
        Every month from the start date's month through the month of
        min(reference_date, end_date), inclusive and ascending.
        Empty when the reference date is before the school year starts.
        """
        start = _as_date(school_year.start_date)
        end = _as_date(school_year.end_date)
        reference = _as_date(reference_date)
        if reference < start:
            return []
        return _months_between(start, min(reference, end))

    @staticmethod
    def all_periods(school_year: SchoolYearLike) -> list[LedgerPeriod]:
        """Every month of the school year, due or not."""
        start = _as_date(school_year.start_date)
        end = _as_date(school_year.end_date)
        if end < start:
            return []
        return _months_between(start, end)
