'''
Distribution of one incoming tuition payment across outstanding months.

This is the only implementation of the allocation math; the payment write
path and the preview endpoint both call it.
'''
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Union

from ..common.config import settings
from ..common.exceptions import AllocationError, ValidationError
from .ledger import OutstandingPeriod
from .money import Money, MoneyLike
from .school_calendar import LedgerPeriod


@dataclass(frozen=True)
class SpecificPeriods:
    """The caller chose which months to pay."""
    selected: tuple[LedgerPeriod, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class BulkOldestFirst:
    """Ignore any selection and clear the oldest debt first."""
    pass


AllocationMode = Union[SpecificPeriods, BulkOldestFirst]


@dataclass(frozen=True)
class Allocation:
    period: LedgerPeriod
    allocated: Money
    is_partial: bool


class PaymentAllocator:
    """
    Pure allocation policy. Guarantees that the returned allocations are
    positive, ordered chronologically, and sum exactly to the amount paid.
    """

    def __init__(self, epsilon: Optional[Decimal] = None):
        self.epsilon = Money(epsilon if epsilon is not None else settings.BALANCE_EPSILON)

    def allocate(
        self,
        total_amount: MoneyLike,
        outstanding: Iterable[OutstandingPeriod],
        mode: AllocationMode
    ) -> list[Allocation]:
        total = Money(total_amount)
        if not total.is_positive():
            raise ValidationError("Payment amount must be greater than zero.")

        ordered = sorted(outstanding, key=lambda item: item.period)

        if isinstance(mode, SpecificPeriods):
            targets, amounts = self._allocate_specific(total, ordered, mode.selected)
        elif isinstance(mode, BulkOldestFirst):
            targets, amounts = self._allocate_bulk(total, ordered)
        else:
            raise ValidationError(f"Unknown allocation mode: {mode!r}")

        return [
            Allocation(
                period=target.period,
                allocated=amount,
                is_partial=(target.paid_to_date + amount) < (target.fee - self.epsilon)
            )
            for target, amount in zip(targets, amounts)
            if amount.is_positive()
        ]

    def _allocate_specific(
        self,
        total: Money,
        ordered: list[OutstandingPeriod],
        selected: Iterable[LedgerPeriod]
    ) -> tuple[list[OutstandingPeriod], list[Money]]:
        selected_periods = sorted(set(selected))
        if not selected_periods:
            raise ValidationError("Select at least one period to pay.")

        by_period = {item.period: item for item in ordered}
        settled = [period for period in selected_periods if period not in by_period]
        if settled:
            labels = ", ".join(period.label for period in settled)
            raise AllocationError(f"Nothing is owed for: {labels}.")

        targets = [by_period[period] for period in selected_periods]
        total_owed = sum((target.owed for target in targets), Money.zero())

        if total > total_owed:
            raise AllocationError(
                f"Amount {total} exceeds the outstanding balance of {total_owed} "
                f"for the selected periods."
            )
        if total == total_owed:
            return targets, [target.owed for target in targets]

        # Proportional split, earliest period first.
        remaining = total
        amounts = []
        for target in targets:
            amount = min(remaining, total.share(target.owed, total_owed))
            amounts.append(amount)
            remaining = remaining - amount

        # Rounding leftovers go to the earliest period that can still take them.
        for index, target in enumerate(targets):
            if not remaining.is_positive():
                break
            headroom = target.owed - amounts[index]
            if headroom.is_positive():
                top_up = min(remaining, headroom)
                amounts[index] = amounts[index] + top_up
                remaining = remaining - top_up

        return targets, amounts

    def _allocate_bulk(
        self,
        total: Money,
        ordered: list[OutstandingPeriod]
    ) -> tuple[list[OutstandingPeriod], list[Money]]:
        if not ordered:
            raise AllocationError("Nothing to pay: there is no outstanding tuition for this school year.")

        remaining = total
        targets = []
        amounts = []
        for target in ordered:
            if not remaining.is_positive():
                break
            amount = min(remaining, target.owed)
            targets.append(target)
            amounts.append(amount)
            remaining = remaining - amount

        # More than everything owed: the excess stays on the last period paid.
        if remaining.is_positive():
            amounts[-1] = amounts[-1] + remaining

        return targets, amounts
