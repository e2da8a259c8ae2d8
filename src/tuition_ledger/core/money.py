'''
Fixed-point money value used for every amount that flows through the ledger.
'''
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import total_ordering
from typing import Union

from ..common.exceptions import DataIntegrityError

# Internal precision. Amounts are stored with 2 decimals, but fees and
# intermediate sums are kept at 4 so the 0.001 status tolerance is meaningful.
SCALE = Decimal("0.0001")
CENT = Decimal("0.01")

MoneyLike = Union["Money", Decimal, int, str, float]


def _to_decimal(value: MoneyLike) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, bool):
        raise DataIntegrityError(f"Cannot interpret boolean {value!r} as a monetary amount.")
    try:
        if isinstance(value, float):
            # go through repr so 0.1 becomes Decimal('0.1'), not its binary expansion
            value = repr(value)
        amount = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError):
        raise DataIntegrityError(f"Cannot interpret {value!r} as a monetary amount.")
    if not amount.is_finite():
        raise DataIntegrityError(f"Monetary amount must be a finite number, got {value!r}.")
    return amount.quantize(SCALE, rounding=ROUND_HALF_UP)


@total_ordering
class Money:
    """
    Immutable fixed-point amount.

    Construct once at the system boundary (request body, database row) and pass
    Money around from there; never re-parse downstream.
    """
    __slots__ = ("_amount",)

    def __init__(self, value: MoneyLike = 0):
        object.__setattr__(self, "_amount", _to_decimal(value))

    def __setattr__(self, name, value):
        raise AttributeError("Money is immutable")

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @classmethod
    def parse_non_negative(cls, value: object, label: str = "amount") -> "Money":
        """
        Parses a stored value that must be a valid, non-negative amount.
        Raises DataIntegrityError instead of falling back to zero.
        """
        if value is None:
            raise DataIntegrityError(f"The {label} is missing.")
        try:
            money = cls(value)
        except DataIntegrityError:
            raise DataIntegrityError(f"The {label} {value!r} is not a valid number.")
        if money.is_negative():
            raise DataIntegrityError(f"The {label} {value!r} is negative.")
        return money

    @property
    def amount(self) -> Decimal:
        return self._amount

    def to_decimal(self) -> Decimal:
        """Amount rounded to cents, the way it is persisted."""
        return self._amount.quantize(CENT, rounding=ROUND_HALF_UP)

    def round_cents(self) -> "Money":
        return Money(self.to_decimal())

    def is_zero(self) -> bool:
        return self._amount == 0

    def is_positive(self) -> bool:
        return self._amount > 0

    def is_negative(self) -> bool:
        return self._amount < 0

    def share(self, numerator: "Money", denominator: "Money") -> "Money":
        """self * numerator / denominator, rounded to cents."""
        ratio = self._amount * numerator.amount / denominator.amount
        return Money(ratio.quantize(CENT, rounding=ROUND_HALF_UP))

    # --- Arithmetic ---

    def __add__(self, other: MoneyLike) -> "Money":
        return Money(self._amount + _to_decimal(other))

    def __radd__(self, other: MoneyLike) -> "Money":
        # lets sum() start from 0
        return self.__add__(other)

    def __sub__(self, other: MoneyLike) -> "Money":
        return Money(self._amount - _to_decimal(other))

    def __rsub__(self, other: MoneyLike) -> "Money":
        return Money(_to_decimal(other) - self._amount)

    def __mul__(self, factor: Union[int, Decimal]) -> "Money":
        if isinstance(factor, Money):
            raise TypeError("Cannot multiply Money by Money")
        return Money(self._amount * Decimal(factor))

    __rmul__ = __mul__

    def __neg__(self) -> "Money":
        return Money(-self._amount)

    # --- Comparison ---

    def __eq__(self, other: object) -> bool:
        if isinstance(other, (Money, Decimal, int)) and not isinstance(other, bool):
            return self._amount == _to_decimal(other)
        return NotImplemented

    def __lt__(self, other: MoneyLike) -> bool:
        if isinstance(other, (Money, Decimal, int)) and not isinstance(other, bool):
            return self._amount < _to_decimal(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._amount)

    def __bool__(self) -> bool:
        return not self.is_zero()

    def __str__(self) -> str:
        return f"{self.to_decimal():.2f}"

    def __repr__(self) -> str:
        return f"Money('{self._amount}')"
