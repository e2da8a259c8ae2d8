'''
Pydantic models for payment submissions, ledgers, receipts and reports.
'''
import calendar
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Literal, Annotated, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator, TypeAdapter

from ..database.db_enums import PaymentType, PaymentMethod, MonthStatus

# --- 1. API Input Models (for POST) ---

PositiveAmount = Annotated[Decimal, Field(gt=0, max_digits=10, decimal_places=2)]


class PeriodInput(BaseModel):
    """A (month, year) the caller wants to pay."""
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=1900, le=9999)


class TuitionAllocationInput(BaseModel):
    """
    The part of a tuition submission that decides the allocation.
    Exactly one of `selected_periods` or `bulk` must be given.
    """
    student_id: UUID
    school_year_id: Optional[UUID] = None
    amount: PositiveAmount
    selected_periods: Optional[list[PeriodInput]] = None
    bulk: bool = False

    @model_validator(mode='after')
    def check_allocation_mode(self):
        if self.bulk and self.selected_periods:
            raise ValueError("Provide either selected_periods or bulk, not both.")
        if not self.bulk and not self.selected_periods:
            raise ValueError("Select at least one period to pay, or set bulk to true.")
        return self


class TuitionPaymentInput(TuitionAllocationInput):
    # 1. The 'discriminator' field. Must be a Literal.
    payment_type: Literal[PaymentType.TUITION.value]

    payment_method: PaymentMethod
    clerk_id: UUID
    notes: Optional[str] = None


class InscriptionPaymentInput(BaseModel):
    payment_type: Literal[PaymentType.INSCRIPTION.value]

    student_id: UUID
    school_year_id: Optional[UUID] = None
    amount: PositiveAmount
    payment_method: PaymentMethod
    clerk_id: UUID
    description: Optional[str] = None
    notes: Optional[str] = None


class DiscretionaryPaymentInput(BaseModel):
    payment_type: Literal[PaymentType.DISCRETIONARY.value]

    student_id: UUID
    school_year_id: Optional[UUID] = None
    amount: PositiveAmount
    payment_method: PaymentMethod
    clerk_id: UUID
    description: str = Field(min_length=1)
    notes: Optional[str] = None

    @model_validator(mode='after')
    def check_description(self):
        if not self.description.strip():
            raise ValueError("A description is required for discretionary payments.")
        return self


PaymentCreateHint = Annotated[
    Union[TuitionPaymentInput, InscriptionPaymentInput, DiscretionaryPaymentInput],
    Field(discriminator='payment_type')
]

# The services validate raw dicts with this adapter.
PaymentCreateValidator = TypeAdapter(PaymentCreateHint)


class AllocationPreviewRequest(TuitionAllocationInput):
    """Body of the preview endpoint: a tuition submission without side effects."""
    pass


# --- 2. API Output Models (for GET) ---

class PaymentRead(BaseModel):
    id: UUID
    student_id: UUID
    school_year_id: UUID
    amount: Decimal
    payment_type: PaymentType
    payment_method: PaymentMethod
    receipt_number: str
    receipt_sequence: Optional[int] = None
    transaction_id: UUID
    clerk_id: UUID
    is_partial: bool
    payment_date: datetime
    for_month: Optional[int] = None
    for_year: Optional[int] = None
    description: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentBatchRead(BaseModel):
    """Everything one submission created."""
    transaction_id: UUID
    student_id: UUID
    school_year_id: UUID
    payment_type: PaymentType
    total_amount: Decimal
    student_balance: Decimal
    payments: list[PaymentRead]


class AllocationRead(BaseModel):
    month: int
    year: int
    owed: Decimal
    allocated: Decimal
    is_partial: bool

    @computed_field
    @property
    def label(self) -> str:
        return f"{calendar.month_name[self.month]} {self.year}"


class AllocationPreviewRead(BaseModel):
    student_id: UUID
    school_year_id: UUID
    amount: Decimal
    mode: Literal['specific', 'bulk']
    outstanding_total: Decimal
    allocations: list[AllocationRead]


class MonthStatusRead(BaseModel):
    month: int
    year: int
    paid_amount: Decimal
    expected_amount: Decimal
    owed: Decimal
    status: MonthStatus

    @computed_field
    @property
    def label(self) -> str:
        return f"{calendar.month_name[self.month]} {self.year}"


class StudentLedgerRead(BaseModel):
    student_id: UUID
    student_name: str
    school_year_id: UUID
    school_year_name: str
    as_of: date
    monthly_fee: Decimal
    months: list[MonthStatusRead]
    outstanding_total: Decimal
    cached_balance: Decimal

    @computed_field
    @property
    def balance_drift(self) -> bool:
        """True when the cached balance no longer matches the ledger."""
        return self.outstanding_total != self.cached_balance


class BalanceSyncRead(BaseModel):
    student_id: UUID
    school_year_id: UUID
    previous_balance: Decimal
    balance: Decimal

    @computed_field
    @property
    def changed(self) -> bool:
        return self.previous_balance != self.balance


class BalanceSyncFailureRead(BaseModel):
    student_id: UUID
    error: str


class BalanceSyncBatchRead(BaseModel):
    """Outcome of a resync over every active student."""
    results: list[BalanceSyncRead]
    failures: list[BalanceSyncFailureRead] = []


class TransactionReceiptRead(BaseModel):
    """The data a printed receipt is built from."""
    transaction_id: UUID
    student_id: UUID
    student_name: str
    school_year_id: UUID
    school_year_name: str
    payment_type: PaymentType
    payment_method: PaymentMethod
    payment_date: datetime
    clerk_id: UUID
    total_amount: Decimal
    months_covered: list[str]
    payments: list[PaymentRead]


# --- 3. Report Models ---

class PaymentSummaryRead(BaseModel):
    """A payment row as listed in reports."""
    id: UUID
    receipt_number: str
    student_id: UUID
    student_name: str
    amount: Decimal
    payment_type: PaymentType
    payment_method: PaymentMethod
    payment_date: datetime
    for_month: Optional[int] = None
    for_year: Optional[int] = None


class MethodPaymentsRead(BaseModel):
    payment_method: PaymentMethod
    total: Decimal
    payments: list[PaymentSummaryRead]

    @computed_field
    @property
    def count(self) -> int:
        return len(self.payments)


class MonthlyPaymentsReportRead(BaseModel):
    month: str
    total: Decimal
    by_method: list[MethodPaymentsRead]


class AvailableMonthsRead(BaseModel):
    months: list[str]


class OutstandingBalanceRead(BaseModel):
    student_id: UUID
    student_name: str
    grade_name: str
    balance: Decimal
