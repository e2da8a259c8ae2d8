'''
Per-school-year receipt numbering.
'''
from typing import NamedTuple, Optional
from uuid import UUID

from ..common.config import settings
from ..common.logger import log
from ..core.school_calendar import LedgerPeriod
from ..database.repository import LedgerRepository


def format_receipt_number(
    school_year_name: str,
    sequence: int,
    period: Optional[LedgerPeriod] = None
) -> str:
    """
    "{school year}-{sequence}" with the sequence zero-padded, plus
    "-{month}-{year}" for records credited to a period.
    """
    receipt = f"{school_year_name}-{sequence:0{settings.RECEIPT_NUMBER_PADDING}d}"
    if period is not None:
        receipt = f"{receipt}-{period.month:02d}-{period.year}"
    return receipt


class IssuedReceipt(NamedTuple):
    sequence: int
    receipt_number: str


class ReceiptSequencer:
    """
    Issues receipt numbers from the school year's counter row.

    Must be called inside the unit of work that persists the payments
    using the numbers: the increment commits or rolls back with them.
    """
    def __init__(self, repo: LedgerRepository):
        self.repo = repo

    async def next(self, school_year_id: UUID, period: Optional[LedgerPeriod] = None) -> IssuedReceipt:
        school_year = await self.repo.get_school_year(school_year_id)
        counter = await self.repo.get_or_create_counter(school_year_id)
        sequence = await self.repo.increment_counter(counter)
        receipt_number = format_receipt_number(school_year.name, sequence, period)
        log.info(f"Issued receipt {receipt_number} for school year {school_year_id}.")
        return IssuedReceipt(sequence, receipt_number)
