'''
Read-only payment reports for the front office.
'''
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.config import settings
from ..common.exceptions import ValidationError
from ..common.logger import log
from ..core.money import Money
from ..database import models as db_models
from ..database.db_enums import PaymentMethod
from ..database.engine import get_session_factory
from ..database.repository import LedgerRepository
from ..models import finance as finance_models

MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


def parse_month(value: str) -> tuple[int, int]:
    """'2024-09' -> (2024, 9)."""
    match = MONTH_PATTERN.match(value or "")
    if not match or not 1 <= int(match.group(2)) <= 12:
        raise ValidationError(f"Invalid month '{value}'. Expected the format YYYY-MM.")
    return int(match.group(1)), int(match.group(2))


def _summary(record: db_models.Payments) -> finance_models.PaymentSummaryRead:
    return finance_models.PaymentSummaryRead(
        id=record.id,
        receipt_number=record.receipt_number,
        student_id=record.student_id,
        student_name=record.student.name,
        amount=record.amount,
        payment_type=record.payment_type,
        payment_method=record.payment_method,
        payment_date=record.payment_date,
        for_month=record.for_month,
        for_year=record.for_year
    )


def _group_total(records: list[db_models.Payments]) -> Money:
    return sum(
        (Money.parse_non_negative(record.amount, label=f"amount of payment {record.id}") for record in records),
        Money.zero()
    )


class ReportService:
    def __init__(
        self,
        session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
    ):
        self.session_factory = session_factory

    async def available_months(self) -> finance_models.AvailableMonthsRead:
        log.info("Listing months with payments.")
        async with self.session_factory() as db:
            months = await LedgerRepository(db).list_payment_months()
        return finance_models.AvailableMonthsRead(
            months=[f"{year:04d}-{month:02d}" for year, month in months]
        )

    async def payments_by_month(self, month: str) -> finance_models.MonthlyPaymentsReportRead:
        """Payments received in one calendar month, grouped by payment method."""
        log.info(f"Building payments report for {month}.")
        year, month_number = parse_month(month)
        start = datetime(year, month_number, 1, tzinfo=timezone.utc)
        if month_number == 12:
            end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
        else:
            end = datetime(year, month_number + 1, 1, tzinfo=timezone.utc)

        async with self.session_factory() as db:
            records = await LedgerRepository(db).list_payments_between(start, end)

        grouped: dict[str, list[db_models.Payments]] = defaultdict(list)
        for record in records:
            grouped[record.payment_method].append(record)

        by_method = [
            finance_models.MethodPaymentsRead(
                payment_method=method,
                total=_group_total(grouped[method.value]).to_decimal(),
                payments=[_summary(record) for record in grouped[method.value]]
            )
            for method in PaymentMethod
            if grouped[method.value]
        ]
        return finance_models.MonthlyPaymentsReportRead(
            month=f"{year:04d}-{month_number:02d}",
            total=_group_total(records).to_decimal(),
            by_method=by_method
        )

    async def payments_by_method(self, limit: Optional[int] = None) -> list[finance_models.MethodPaymentsRead]:
        """The most recent payments of every method."""
        limit = limit or settings.REPORT_RECENT_PAYMENTS_LIMIT
        log.info(f"Building recent payments report (last {limit} per method).")
        report = []
        async with self.session_factory() as db:
            repo = LedgerRepository(db)
            for method in PaymentMethod:
                records = await repo.list_recent_payments_by_method(method.value, limit)
                report.append(finance_models.MethodPaymentsRead(
                    payment_method=method,
                    total=_group_total(records).to_decimal(),
                    payments=[_summary(record) for record in records]
                ))
        return report

    async def outstanding_balances(self) -> list[finance_models.OutstandingBalanceRead]:
        """Active students whose cached balance is above zero, largest first."""
        log.info("Building outstanding balances report.")
        async with self.session_factory() as db:
            students = await LedgerRepository(db).list_students_with_balance()
        return [
            finance_models.OutstandingBalanceRead(
                student_id=student.id,
                student_name=student.name,
                grade_name=student.grade.name,
                balance=student.balance
            )
            for student in students
        ]
