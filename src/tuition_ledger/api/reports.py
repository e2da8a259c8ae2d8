'''
API endpoints for payment reports.
'''
from typing import Annotated, Any
from fastapi import APIRouter, Depends, Query

from ..models import finance as finance_models
from ..services.report_service import ReportService

class ReportsAPI:
    """
    A class to encapsulate the read-only report endpoints.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/reports",
            tags=["Reports"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/payments-by-month",
                self.payments_by_month,
                methods=["GET"],
                response_model=finance_models.MonthlyPaymentsReportRead | finance_models.AvailableMonthsRead)
        self.router.add_api_route(
                "/payments-by-method",
                self.payments_by_method,
                methods=["GET"],
                response_model=list[finance_models.MethodPaymentsRead])
        self.router.add_api_route(
                "/outstanding-balances",
                self.outstanding_balances,
                methods=["GET"],
                response_model=list[finance_models.OutstandingBalanceRead])

    async def payments_by_month(
        self,
        report_service: Annotated[ReportService, Depends(ReportService)],
        month: Annotated[str | None, Query(description="Month as YYYY-MM")] = None
    ) -> Any:
        """
        With `month`, that month's payments grouped by method.
        Without it, the months that have payments.
        """
        if month is None:
            return await report_service.available_months()
        return await report_service.payments_by_month(month)

    async def payments_by_method(
        self,
        report_service: Annotated[ReportService, Depends(ReportService)],
        limit: Annotated[int | None, Query(ge=1, le=100)] = None
    ) -> Any:
        """
        The most recent payments for every payment method.
        """
        return await report_service.payments_by_method(limit)

    async def outstanding_balances(
        self,
        report_service: Annotated[ReportService, Depends(ReportService)]
    ) -> Any:
        """
        Active students who still owe tuition.
        """
        return await report_service.outstanding_balances()

# Instantiate the class and export its router
reports_api = ReportsAPI()
router = reports_api.router
