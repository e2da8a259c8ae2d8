'''
API endpoints for recording and looking up payments.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, status, Query

from ..models import finance as finance_models
from ..services.payment_service import PaymentService

class PaymentsAPI:
    """
    A class to encapsulate endpoints for Payments.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/payments",
            tags=["Payments"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/",
                self.list_payments,
                methods=["GET"],
                response_model=list[finance_models.PaymentRead])
        self.router.add_api_route(
                "/",
                self.create_payment,
                methods=["POST"],
                status_code=status.HTTP_201_CREATED,
                response_model=finance_models.PaymentBatchRead)
        self.router.add_api_route(
                "/preview",
                self.preview_allocation,
                methods=["POST"],
                response_model=finance_models.AllocationPreviewRead)
        self.router.add_api_route(
                "/transactions/{transaction_id}",
                self.get_transaction,
                methods=["GET"],
                response_model=finance_models.TransactionReceiptRead)

    async def list_payments(
        self,
        payment_service: Annotated[PaymentService, Depends(PaymentService)],
        student_id: Annotated[UUID | None, Query(description="Optional filter for Student ID")] = None,
        school_year_id: Annotated[UUID | None, Query(description="Optional filter for School Year ID")] = None,
        month: Annotated[int | None, Query(ge=1, le=12, description="Month the payment is credited to")] = None,
        year: Annotated[int | None, Query(description="Year the payment is credited to")] = None,
        limit: Annotated[int | None, Query(ge=1, le=500)] = None
    ) -> list[Any]:
        """
        Lists payments, newest first.
        """
        return await payment_service.list_payments(
            student_id=student_id,
            school_year_id=school_year_id,
            month=month,
            year=year,
            limit=limit
        )

    async def create_payment(
        self,
        payment_data: finance_models.PaymentCreateHint,
        payment_service: Annotated[PaymentService, Depends(PaymentService)]
    ) -> Any:
        """
        Records a tuition, inscription or discretionary payment.
        A tuition payment may create one record per month it covers.
        """
        return await payment_service.create_payments(payment_data.model_dump())

    async def preview_allocation(
        self,
        preview_data: finance_models.AllocationPreviewRequest,
        payment_service: Annotated[PaymentService, Depends(PaymentService)]
    ) -> Any:
        """
        Shows how a tuition payment would be split across months, without recording it.
        """
        return await payment_service.preview_allocation(preview_data.model_dump())

    async def get_transaction(
        self,
        transaction_id: UUID,
        payment_service: Annotated[PaymentService, Depends(PaymentService)]
    ) -> Any:
        """
        Retrieves every record of one submission, for printing its receipt.
        """
        return await payment_service.get_transaction(transaction_id)

# Instantiate the class and export its router
payments_api = PaymentsAPI()
router = payments_api.router
