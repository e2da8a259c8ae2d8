'''
Persistence context for the ledger.

Every query the services need goes through LedgerRepository, which wraps
one AsyncSession. Services never reach for a global connection.
'''
import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..common.exceptions import NotFoundError
from ..common.logger import log
from . import models as db_models

# receipt_number is text and past the padding width it no longer sorts numerically
RECEIPT_ORDER = (db_models.Payments.payment_date, db_models.Payments.receipt_sequence, db_models.Payments.id)
NEWEST_RECEIPT_ORDER = (
    db_models.Payments.payment_date.desc(),
    db_models.Payments.receipt_sequence.desc(),
    db_models.Payments.id.desc()
)


class LedgerRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # --- Reference data ---

    async def get_student(self, student_id: UUID, for_update: bool = False) -> db_models.Students:
        """
        Fetches a student with its grade loaded.
        With for_update the row stays locked until the unit of work ends.
        """
        stmt = select(db_models.Students).options(
            selectinload(db_models.Students.grade)
        ).filter(db_models.Students.id == student_id)
        if for_update:
            stmt = stmt.with_for_update(of=db_models.Students)
        result = await self.db.execute(stmt)
        student = result.scalars().first()
        if not student:
            log.warning(f"Student {student_id} not found.")
            raise NotFoundError(f"Student {student_id} not found.")
        return student

    async def get_school_year(self, school_year_id: UUID) -> db_models.SchoolYears:
        school_year = await self.db.get(db_models.SchoolYears, school_year_id)
        if not school_year:
            log.warning(f"School year {school_year_id} not found.")
            raise NotFoundError(f"School year {school_year_id} not found.")
        return school_year

    async def get_active_school_year(self) -> db_models.SchoolYears:
        stmt = select(db_models.SchoolYears).filter(
            db_models.SchoolYears.is_active.is_(True)
        ).order_by(db_models.SchoolYears.start_date.desc())
        result = await self.db.execute(stmt)
        school_year = result.scalars().first()
        if not school_year:
            log.warning("No active school year found.")
            raise NotFoundError("No active school year found.")
        return school_year

    async def resolve_school_year(self, school_year_id: Optional[UUID]) -> db_models.SchoolYears:
        """The given school year, or the active one when none is given."""
        if school_year_id is None:
            return await self.get_active_school_year()
        return await self.get_school_year(school_year_id)

    async def list_active_student_ids(self) -> list[UUID]:
        stmt = select(db_models.Students.id).filter(
            db_models.Students.is_active.is_(True)
        ).order_by(db_models.Students.name)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # --- Payments ---

    async def list_payments(self, student_id: UUID, school_year_id: UUID) -> list[db_models.Payments]:
        """The full payment history of a student for one school year."""
        stmt = select(db_models.Payments).filter(
            db_models.Payments.student_id == student_id,
            db_models.Payments.school_year_id == school_year_id
        ).order_by(*RECEIPT_ORDER)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_payments_filtered(
        self,
        student_id: Optional[UUID] = None,
        school_year_id: Optional[UUID] = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
        limit: Optional[int] = None
    ) -> list[db_models.Payments]:
        """Payments matching every given filter, newest first."""
        stmt = select(db_models.Payments).options(
            selectinload(db_models.Payments.student),
            selectinload(db_models.Payments.school_year)
        )
        if student_id:
            stmt = stmt.filter(db_models.Payments.student_id == student_id)
        if school_year_id:
            stmt = stmt.filter(db_models.Payments.school_year_id == school_year_id)
        if month:
            stmt = stmt.filter(db_models.Payments.for_month == month)
        if year:
            stmt = stmt.filter(db_models.Payments.for_year == year)
        stmt = stmt.order_by(*NEWEST_RECEIPT_ORDER)
        if limit:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_transaction_payments(self, transaction_id: UUID) -> list[db_models.Payments]:
        stmt = select(db_models.Payments).options(
            selectinload(db_models.Payments.student),
            selectinload(db_models.Payments.school_year)
        ).filter(
            db_models.Payments.transaction_id == transaction_id
        ).order_by(db_models.Payments.for_year, db_models.Payments.for_month, db_models.Payments.receipt_sequence)
        result = await self.db.execute(stmt)
        payments = list(result.scalars().all())
        if not payments:
            log.warning(f"Transaction {transaction_id} not found.")
            raise NotFoundError(f"Transaction {transaction_id} not found.")
        return payments

    def add_payments(self, payments: list[db_models.Payments]) -> None:
        self.db.add_all(payments)

    async def flush(self) -> None:
        await self.db.flush()

    async def update_student_balance(self, student: db_models.Students, balance: Decimal) -> None:
        student.balance = balance
        await self.db.flush()

    # --- Receipt counters ---

    async def get_or_create_counter(self, school_year_id: UUID) -> db_models.ReceiptCounters:
        """
        Returns the school year's counter row, locked for update.
        Creates it at 0 the first time a school year issues a receipt; a
        concurrent creator loses on the unique constraint and is retried.
        """
        stmt = select(db_models.ReceiptCounters).filter(
            db_models.ReceiptCounters.school_year_id == school_year_id
        ).with_for_update()
        result = await self.db.execute(stmt)
        counter = result.scalars().first()
        if counter is None:
            log.info(f"Creating receipt counter for school year {school_year_id}.")
            counter = db_models.ReceiptCounters(school_year_id=school_year_id, last_number=0)
            self.db.add(counter)
            await self.db.flush()
        return counter

    async def increment_counter(self, counter: db_models.ReceiptCounters) -> int:
        """Bumps a counter returned by get_or_create_counter and returns the new value."""
        counter.last_number = counter.last_number + 1
        await self.db.flush()
        return counter.last_number

    async def get_counter_value(self, school_year_id: UUID) -> int:
        """Last issued number, 0 when the school year never issued one."""
        stmt = select(db_models.ReceiptCounters.last_number).filter(
            db_models.ReceiptCounters.school_year_id == school_year_id
        )
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    # --- Reports ---

    async def list_payment_months(self) -> list[tuple[int, int]]:
        """Distinct (year, month) of payment dates, newest first."""
        year_col = func.extract('year', db_models.Payments.payment_date)
        month_col = func.extract('month', db_models.Payments.payment_date)
        stmt = select(year_col, month_col).distinct().order_by(year_col.desc(), month_col.desc())
        result = await self.db.execute(stmt)
        return [(int(year), int(month)) for year, month in result.all()]

    async def list_payments_between(
        self,
        start: datetime.datetime,
        end: datetime.datetime
    ) -> list[db_models.Payments]:
        """Payments with start <= payment_date < end, oldest first."""
        stmt = select(db_models.Payments).options(
            selectinload(db_models.Payments.student),
            selectinload(db_models.Payments.school_year)
        ).filter(
            db_models.Payments.payment_date >= start,
            db_models.Payments.payment_date < end
        ).order_by(*RECEIPT_ORDER)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_recent_payments_by_method(self, method: str, limit: int) -> list[db_models.Payments]:
        stmt = select(db_models.Payments).options(
            selectinload(db_models.Payments.student),
            selectinload(db_models.Payments.school_year)
        ).filter(
            db_models.Payments.payment_method == method
        ).order_by(*NEWEST_RECEIPT_ORDER).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_students_with_balance(self) -> list[db_models.Students]:
        stmt = select(db_models.Students).options(
            selectinload(db_models.Students.grade)
        ).filter(
            db_models.Students.is_active.is_(True),
            db_models.Students.balance > 0
        ).order_by(db_models.Students.balance.desc(), db_models.Students.name)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
