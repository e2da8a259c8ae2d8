'''
Per-period ledger: how much of each due month has been paid, and what is
still outstanding.
'''
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional
from uuid import UUID

from ..common.config import settings
from ..database.db_enums import MonthStatus, PaymentType
from .money import Money, MoneyLike
from .school_calendar import LedgerPeriod, PeriodRef, SchoolYearCalendar, SchoolYearLike, period_ref


@dataclass(frozen=True)
class PaymentEntry:
    """The slice of a payment record the ledger needs."""
    amount: Money
    payment_type: PaymentType
    school_year_id: UUID
    period: Optional[PeriodRef] = None

    @classmethod
    def from_record(cls, record: Any) -> "PaymentEntry":
        """Builds an entry from a payment row (or anything shaped like one)."""
        return cls(
            amount=Money.parse_non_negative(record.amount, label=f"amount of payment {record.id}"),
            payment_type=PaymentType(record.payment_type),
            school_year_id=record.school_year_id,
            period=period_ref(record.for_month, record.for_year),
        )


@dataclass(frozen=True)
class MonthStatusEntry:
    period: LedgerPeriod
    paid_amount: Money
    expected_amount: Money
    status: MonthStatus

    @property
    def owed(self) -> Money:
        if self.status == MonthStatus.PAID:
            return Money.zero()
        return max(Money.zero(), self.expected_amount - self.paid_amount)


@dataclass(frozen=True)
class OutstandingPeriod:
    """A due period that still has something owed on it."""
    period: LedgerPeriod
    owed: Money
    paid_to_date: Money
    fee: Money


class BalanceCalculator:
    """
    Turns a school year calendar, a monthly fee and a payment history into
    month statuses and an outstanding total. Pure: nothing here touches the
    database.
    """

    def __init__(self, epsilon: Optional[Decimal] = None):
        self.epsilon = Money(epsilon if epsilon is not None else settings.BALANCE_EPSILON)

    def classify(self, paid: Money, fee: Money) -> MonthStatus:
        if paid >= fee - self.epsilon:
            return MonthStatus.PAID
        if paid.is_positive():
            return MonthStatus.PARTIAL
        return MonthStatus.UNPAID

    def status_for_periods(
        self,
        monthly_fee: MoneyLike,
        school_year: SchoolYearLike,
        history: Iterable[PaymentEntry],
        periods: list[LedgerPeriod]
    ) -> list[MonthStatusEntry]:
        """
        Sums tuition payments of this school year into the given periods.
        A record with a full period matches that period exactly; a legacy
        record (month only) is credited to the earliest period with that month.
        """
        fee = Money.parse_non_negative(monthly_fee, label="monthly tuition fee")
        ordered = sorted(periods)
        paid_by_period: dict[LedgerPeriod, Money] = {period: Money.zero() for period in ordered}

        for entry in history:
            if entry.payment_type != PaymentType.TUITION:
                continue
            if entry.school_year_id != school_year.id or entry.period is None:
                continue
            match = next((period for period in ordered if entry.period.matches(period)), None)
            if match is not None:
                paid_by_period[match] = paid_by_period[match] + entry.amount

        return [
            MonthStatusEntry(
                period=period,
                paid_amount=paid_by_period[period],
                expected_amount=fee,
                status=self.classify(paid_by_period[period], fee)
            )
            for period in ordered
        ]

    def status_of(
        self,
        monthly_fee: MoneyLike,
        school_year: SchoolYearLike,
        history: Iterable[PaymentEntry],
        reference_date: date
    ) -> list[MonthStatusEntry]:
        """Status of every period due as of reference_date."""
        periods = SchoolYearCalendar.periods_due_as_of(school_year, reference_date)
        return self.status_for_periods(monthly_fee, school_year, history, periods)

    def outstanding_periods(
        self,
        monthly_fee: MoneyLike,
        school_year: SchoolYearLike,
        history: Iterable[PaymentEntry],
        reference_date: Optional[date] = None,
        periods: Optional[list[LedgerPeriod]] = None
    ) -> list[OutstandingPeriod]:
        """
        Periods with something still owed, oldest first. Defaults to the
        periods due as of reference_date; pass `periods` to price any other
        set (e.g. months selected ahead of their due date).
        """
        if periods is None:
            if reference_date is None:
                raise ValueError("Either reference_date or periods is required.")
            statuses = self.status_of(monthly_fee, school_year, history, reference_date)
        else:
            statuses = self.status_for_periods(monthly_fee, school_year, history, periods)
        return [
            OutstandingPeriod(
                period=entry.period,
                owed=entry.owed,
                paid_to_date=entry.paid_amount,
                fee=entry.expected_amount
            )
            for entry in statuses
            if entry.owed.is_positive()
        ]

    def outstanding_total(
        self,
        monthly_fee: MoneyLike,
        school_year: SchoolYearLike,
        history: Iterable[PaymentEntry],
        reference_date: date
    ) -> Money:
        """Sum of max(0, fee - paid) over the periods due as of reference_date."""
        statuses = self.status_of(monthly_fee, school_year, history, reference_date)
        return sum((entry.owed for entry in statuses), Money.zero())
