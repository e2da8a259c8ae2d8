'''
Payment recording and the student ledger.

PaymentService owns the only write path into the ledger: every submission
runs as one unit of work (records, receipt numbers and balance commit or
roll back together), retried as a whole when the receipt counter is
contended.
'''
import uuid
from datetime import date, datetime, timezone
from typing import Annotated, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from fastapi import Depends
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.config import settings
from ..common.exceptions import ConcurrencyConflict, DataIntegrityError, LedgerError, ValidationError
from ..common.logger import log
from ..core.allocation import Allocation, BulkOldestFirst, PaymentAllocator, SpecificPeriods
from ..core.ledger import BalanceCalculator, OutstandingPeriod, PaymentEntry
from ..core.money import Money
from ..core.school_calendar import LedgerPeriod, SchoolYearCalendar
from ..database import models as db_models
from ..database.db_enums import PaymentType
from ..database.engine import get_session_factory
from ..database.repository import LedgerRepository
from ..models import finance as finance_models
from .receipt_service import ReceiptSequencer

T = TypeVar("T")


def is_receipt_counter_race(error: IntegrityError) -> bool:
    """
    True when two units created the same school year's counter row at once.
    Every other unique violation is deterministic and retrying cannot clear it.
    """
    return "receipt_counters" in str(error.orig)


def format_validation_error(error: PydanticValidationError) -> str:
    """Flattens pydantic errors into one actionable message."""
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != "__root__")
        message = item.get("msg", "Invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or "Invalid payment request."


class PaymentService:
    """
    Records payments (tuition, inscription, discretionary), previews
    allocations, resyncs cached balances and serves the student ledger.
    """
    def __init__(
        self,
        session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
    ):
        self.session_factory = session_factory
        self.calculator = BalanceCalculator()
        self.allocator = PaymentAllocator()
        # Replaced in tests to pin "now"
        self.today: Callable[[], date] = date.today

    # --- 1. Unit of work helpers ---

    async def _run_unit(self, work: Callable[[LedgerRepository], Awaitable[T]], label: str) -> T:
        """
        Runs `work` in its own transaction. Lock contention and the receipt
        counter creation race retry the whole unit. Other constraint
        violations become a DataIntegrityError.
        """
        max_attempts = max(1, settings.RECEIPT_MAX_RETRIES)
        last_error: Optional[Exception] = None
        for attempt in range(1, max_attempts + 1):
            try:
                async with self.session_factory() as db:
                    async with db.begin():
                        return await work(LedgerRepository(db))
            except IntegrityError as e:
                if not is_receipt_counter_race(e):
                    log.error(f"{label}: constraint violation, not retrying. Error: {e.orig}")
                    raise DataIntegrityError(f"{label} conflicts with data already stored: {e.orig}") from e
                last_error = e
                log.warning(f"{label}: receipt counter race on attempt {attempt}/{max_attempts}, retrying. Error: {e}")
            except OperationalError as e:
                last_error = e
                log.warning(f"{label}: conflict on attempt {attempt}/{max_attempts}, retrying. Error: {e}")

        log.error(f"{label}: giving up after {max_attempts} attempts.", exc_info=last_error)
        raise ConcurrencyConflict(
            "The payment could not be recorded because of concurrent activity. Please try again."
        ) from last_error

    async def _read(self, work: Callable[[LedgerRepository], Awaitable[T]]) -> T:
        async with self.session_factory() as db:
            return await work(LedgerRepository(db))

    # --- 2. Shared ledger computations ---

    @staticmethod
    def _monthly_fee(student: db_models.Students) -> Money:
        return Money.parse_non_negative(
            student.grade.tuition_amount,
            label=f"monthly tuition fee of grade '{student.grade.name}'"
        )

    @staticmethod
    def _previous_balance(student: db_models.Students) -> Money:
        return Money.parse_non_negative(student.balance, label=f"balance of student {student.id}")

    async def _history(self, repo: LedgerRepository, student_id: UUID, school_year_id: UUID) -> list[PaymentEntry]:
        records = await repo.list_payments(student_id, school_year_id)
        return [PaymentEntry.from_record(record) for record in records]

    def _plan_tuition(
        self,
        school_year: db_models.SchoolYears,
        fee: Money,
        history: list[PaymentEntry],
        request: finance_models.TuitionAllocationInput,
        today: date
    ) -> tuple[list[Allocation], list[OutstandingPeriod]]:
        """
        Outstanding periods for the requested mode and their allocation.
        Pure: raises before anything is written.
        """
        if request.bulk:
            outstanding = self.calculator.outstanding_periods(
                fee, school_year, history, reference_date=today
            )
            mode = BulkOldestFirst()
        else:
            selected = [LedgerPeriod(year=item.year, month=item.month) for item in request.selected_periods]
            in_year = set(SchoolYearCalendar.all_periods(school_year))
            outside = [period for period in selected if period not in in_year]
            if outside:
                labels = ", ".join(period.label for period in outside)
                raise ValidationError(f"{labels} is not part of school year {school_year.name}.")
            outstanding = self.calculator.outstanding_periods(
                fee, school_year, history, periods=selected
            )
            mode = SpecificPeriods(selected=tuple(selected))

        allocations = self.allocator.allocate(Money(request.amount), outstanding, mode)
        return allocations, outstanding

    # --- 3. Write path ---

    async def create_payments(self, data: dict) -> finance_models.PaymentBatchRead:
        """
        Validates a raw submission and records it atomically.
        Returns the created records and the student's new cached balance.
        """
        log.info(f"Recording payment submission: {data}")
        try:
            payment = finance_models.PaymentCreateValidator.validate_python(data)
        except PydanticValidationError as e:
            log.warning(f"Rejected payment submission. Data: {data}, Error: {e}")
            raise ValidationError(format_validation_error(e))

        try:
            return await self._run_unit(
                lambda repo: self._apply(repo, payment),
                label=f"Payment for student {payment.student_id}"
            )
        except LedgerError as e:
            log.warning(f"Payment for student {payment.student_id} rejected: {e.message}")
            raise
        except Exception as e:
            log.error(f"Error recording payment for student {payment.student_id}: {e}", exc_info=True)
            raise

    async def _apply(self, repo: LedgerRepository, payment) -> finance_models.PaymentBatchRead:
        # 1. Load and validate; nothing below this block may fail on input
        student = await repo.get_student(payment.student_id, for_update=True)
        school_year = await repo.resolve_school_year(payment.school_year_id)
        previous_balance = self._previous_balance(student)
        amount = Money(payment.amount)
        today = self.today()

        if isinstance(payment, finance_models.TuitionPaymentInput):
            fee = self._monthly_fee(student)
            history = await self._history(repo, student.id, school_year.id)
            allocations, _ = self._plan_tuition(school_year, fee, history, payment, today)
        else:
            fee, history, allocations = None, [], []

        # 2. Receipt numbers and records
        sequencer = ReceiptSequencer(repo)
        transaction_id = uuid.uuid4()
        payment_date = datetime.now(timezone.utc)
        records: list[db_models.Payments] = []

        def new_record(**fields) -> db_models.Payments:
            return db_models.Payments(
                id=uuid.uuid4(),
                student_id=student.id,
                school_year_id=school_year.id,
                payment_type=payment.payment_type,
                payment_method=payment.payment_method.value,
                transaction_id=transaction_id,
                clerk_id=payment.clerk_id,
                payment_date=payment_date,
                notes=payment.notes,
                **fields
            )

        if allocations:
            for allocation in allocations:
                issued = await sequencer.next(school_year.id, allocation.period)
                records.append(new_record(
                    amount=allocation.allocated.to_decimal(),
                    receipt_number=issued.receipt_number,
                    receipt_sequence=issued.sequence,
                    is_partial=allocation.is_partial,
                    for_month=allocation.period.month,
                    for_year=allocation.period.year,
                ))
        else:
            issued = await sequencer.next(school_year.id)
            records.append(new_record(
                amount=amount.to_decimal(),
                receipt_number=issued.receipt_number,
                receipt_sequence=issued.sequence,
                is_partial=False,
                description=payment.description,
            ))

        repo.add_payments(records)
        await repo.flush()

        # 3. Cached balance. It mirrors tuition debt only (see students.balance), so other kinds leave it unchanged
        new_balance = previous_balance
        if payment.payment_type == PaymentType.TUITION.value:
            if settings.AUTHORITATIVE_BALANCE_WRITEBACK:
                new_history = history + [PaymentEntry.from_record(record) for record in records]
                new_balance = self.calculator.outstanding_total(fee, school_year, new_history, today)
            else:
                new_balance = max(Money.zero(), previous_balance - amount)
            await repo.update_student_balance(student, new_balance.to_decimal())

        log.info(
            f"Recorded {len(records)} payment(s) for student {student.id} in transaction {transaction_id}. "
            f"Balance {previous_balance} -> {new_balance}."
        )
        return finance_models.PaymentBatchRead(
            transaction_id=transaction_id,
            student_id=student.id,
            school_year_id=school_year.id,
            payment_type=payment.payment_type,
            total_amount=amount.to_decimal(),
            student_balance=new_balance.to_decimal(),
            payments=[finance_models.PaymentRead.model_validate(record) for record in records]
        )

    async def preview_allocation(self, data: dict) -> finance_models.AllocationPreviewRead:
        """The allocation a tuition submission would produce. Writes nothing."""
        log.info(f"Previewing allocation: {data}")
        try:
            request = finance_models.AllocationPreviewRequest.model_validate(data)
        except PydanticValidationError as e:
            log.warning(f"Rejected preview request. Data: {data}, Error: {e}")
            raise ValidationError(format_validation_error(e))

        async def work(repo: LedgerRepository) -> finance_models.AllocationPreviewRead:
            student = await repo.get_student(request.student_id)
            school_year = await repo.resolve_school_year(request.school_year_id)
            fee = self._monthly_fee(student)
            history = await self._history(repo, student.id, school_year.id)
            today = self.today()
            allocations, outstanding = self._plan_tuition(school_year, fee, history, request, today)
            owed_by_period = {item.period: item.owed for item in outstanding}
            return finance_models.AllocationPreviewRead(
                student_id=student.id,
                school_year_id=school_year.id,
                amount=Money(request.amount).to_decimal(),
                mode='bulk' if request.bulk else 'specific',
                outstanding_total=self.calculator.outstanding_total(fee, school_year, history, today).to_decimal(),
                allocations=[
                    finance_models.AllocationRead(
                        month=allocation.period.month,
                        year=allocation.period.year,
                        owed=owed_by_period[allocation.period].to_decimal(),
                        allocated=allocation.allocated.to_decimal(),
                        is_partial=allocation.is_partial
                    )
                    for allocation in allocations
                ]
            )

        return await self._read(work)

    async def resync_balance(self, student_id: UUID) -> finance_models.BalanceSyncRead:
        """
        Recomputes the student's balance against the active school year and
        overwrites the cached value, under the same locking as payments.
        """
        log.info(f"Resyncing balance for student {student_id}.")

        async def work(repo: LedgerRepository) -> finance_models.BalanceSyncRead:
            student = await repo.get_student(student_id, for_update=True)
            school_year = await repo.get_active_school_year()
            previous_balance = self._previous_balance(student)
            fee = self._monthly_fee(student)
            history = await self._history(repo, student.id, school_year.id)
            balance = self.calculator.outstanding_total(fee, school_year, history, self.today())
            await repo.update_student_balance(student, balance.to_decimal())
            if balance != previous_balance:
                log.info(f"Balance of student {student.id} resynced: {previous_balance} -> {balance}.")
            return finance_models.BalanceSyncRead(
                student_id=student.id,
                school_year_id=school_year.id,
                previous_balance=previous_balance.to_decimal(),
                balance=balance.to_decimal()
            )

        try:
            return await self._run_unit(work, label=f"Balance resync for student {student_id}")
        except LedgerError:
            raise
        except Exception as e:
            log.error(f"Error resyncing balance for student {student_id}: {e}", exc_info=True)
            raise

    async def resync_all_balances(self) -> finance_models.BalanceSyncBatchRead:
        """
        Resyncs every active student, one unit of work each. A student whose
        ledger cannot be recomputed is reported and skipped.
        """
        student_ids = await self._read(lambda repo: repo.list_active_student_ids())
        log.info(f"Resyncing balances for {len(student_ids)} active students.")
        batch = finance_models.BalanceSyncBatchRead(results=[], failures=[])
        for student_id in student_ids:
            try:
                batch.results.append(await self.resync_balance(student_id))
            except LedgerError as e:
                log.error(f"Skipping balance resync for student {student_id}: {e.message}")
                batch.failures.append(finance_models.BalanceSyncFailureRead(student_id=student_id, error=e.message))
        return batch

    # --- 4. Read side ---

    async def get_student_ledger(
        self,
        student_id: UUID,
        school_year_id: Optional[UUID] = None,
        as_of: Optional[date] = None
    ) -> finance_models.StudentLedgerRead:
        """Per-month statuses and the authoritative outstanding total."""
        log.info(f"Fetching ledger for student {student_id} (school year: {school_year_id}, as of: {as_of}).")

        async def work(repo: LedgerRepository) -> finance_models.StudentLedgerRead:
            student = await repo.get_student(student_id)
            school_year = await repo.resolve_school_year(school_year_id)
            fee = self._monthly_fee(student)
            history = await self._history(repo, student.id, school_year.id)
            reference_date = as_of or self.today()
            statuses = self.calculator.status_of(fee, school_year, history, reference_date)
            outstanding_total = sum((entry.owed for entry in statuses), Money.zero())
            return finance_models.StudentLedgerRead(
                student_id=student.id,
                student_name=student.name,
                school_year_id=school_year.id,
                school_year_name=school_year.name,
                as_of=reference_date,
                monthly_fee=fee.to_decimal(),
                months=[
                    finance_models.MonthStatusRead(
                        month=entry.period.month,
                        year=entry.period.year,
                        paid_amount=entry.paid_amount.to_decimal(),
                        expected_amount=entry.expected_amount.to_decimal(),
                        owed=entry.owed.to_decimal(),
                        status=entry.status
                    )
                    for entry in statuses
                ],
                outstanding_total=outstanding_total.to_decimal(),
                cached_balance=self._previous_balance(student).to_decimal()
            )

        return await self._read(work)

    async def list_payments(
        self,
        student_id: Optional[UUID] = None,
        school_year_id: Optional[UUID] = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
        limit: Optional[int] = None
    ) -> list[finance_models.PaymentRead]:
        log.info(f"Listing payments (student: {student_id}, school year: {school_year_id}, month: {month}, year: {year}).")
        records = await self._read(lambda repo: repo.list_payments_filtered(
            student_id=student_id,
            school_year_id=school_year_id,
            month=month,
            year=year,
            limit=limit
        ))
        return [finance_models.PaymentRead.model_validate(record) for record in records]

    async def get_transaction(self, transaction_id: UUID) -> finance_models.TransactionReceiptRead:
        """Every record of one submission, shaped for a receipt."""
        log.info(f"Fetching transaction {transaction_id}.")
        records = await self._read(lambda repo: repo.get_transaction_payments(transaction_id))
        first = records[0]
        months_covered = [
            LedgerPeriod(year=record.for_year, month=record.for_month).label
            for record in records
            if record.for_month is not None and record.for_year is not None
        ]
        total = sum(
            (Money.parse_non_negative(record.amount, label=f"amount of payment {record.id}") for record in records),
            Money.zero()
        )
        return finance_models.TransactionReceiptRead(
            transaction_id=transaction_id,
            student_id=first.student_id,
            student_name=first.student.name,
            school_year_id=first.school_year_id,
            school_year_name=first.school_year.name,
            payment_type=first.payment_type,
            payment_method=first.payment_method,
            payment_date=first.payment_date,
            clerk_id=first.clerk_id,
            total_amount=total.to_decimal(),
            months_covered=months_covered,
            payments=[finance_models.PaymentRead.model_validate(record) for record in records]
        )
