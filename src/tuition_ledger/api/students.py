'''
API endpoints for a student's ledger and cached balance.
'''
from datetime import date
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, Query

from ..models import finance as finance_models
from ..services.payment_service import PaymentService

class StudentsAPI:
    def __init__(self):
        self.router = APIRouter(
            prefix="/students",
            tags=["Students"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/{student_id}/ledger",
                self.get_ledger,
                methods=["GET"],
                response_model=finance_models.StudentLedgerRead)
        self.router.add_api_route(
                "/{student_id}/sync-balance",
                self.sync_balance,
                methods=["POST"],
                response_model=finance_models.BalanceSyncRead)

    async def get_ledger(
        self,
        student_id: UUID,
        payment_service: Annotated[PaymentService, Depends(PaymentService)],
        school_year_id: Annotated[UUID | None, Query(description="Defaults to the active school year")] = None,
        as_of: Annotated[date | None, Query(description="Reference date, defaults to today")] = None
    ) -> Any:
        """
        Month-by-month payment status, the outstanding total and whether the
        cached balance has drifted from it.
        """
        return await payment_service.get_student_ledger(student_id, school_year_id=school_year_id, as_of=as_of)

    async def sync_balance(
        self,
        student_id: UUID,
        payment_service: Annotated[PaymentService, Depends(PaymentService)]
    ) -> Any:
        """
        Recomputes the student's balance for the active school year and stores it.
        """
        return await payment_service.resync_balance(student_id)

# Instantiate the class and export its router
students_api = StudentsAPI()
router = students_api.router
