from typing import Optional

import structlog
from fastapi import APIRouter, HTTPException, Query, Request

from kodi.core.mongo import MongoORJSONResponse
from kodi.plugins.pms.accounting.rollover import MonthlyRollover
from kodi.plugins.pms.services.payment_status import PaymentStatusService
from kodi.plugins.pms.services.reconciliation import ReconciliationService
from kodi.plugins.pms.models.models import TenantSummary
from kodi.utils.date_helper import is_valid_period
from kodi.utils.exceptions import ReconciliationError

logger = structlog.get_logger(__name__)


def _reconciliation(request: Request) -> ReconciliationService:
    return request.app.state.reconciliation


def _rollover(request: Request) -> MonthlyRollover:
    return request.app.state.rollover


def _payment_status(request: Request) -> PaymentStatusService:
    return request.app.state.payment_status


def _check_period(period: Optional[str]) -> Optional[str]:
    if period is not None and not is_valid_period(period):
        raise HTTPException(400, f"Invalid period format: {period}. Expected YYYY-MM")
    return period


def init_plugin(app) -> APIRouter:
    router = APIRouter(prefix="/pms", tags=["Rent Payments"])

    @router.post("/webhook/mpesa")
    async def mpesa_webhook(request: Request):
        """
        Inbound M-Pesa confirmation SMS, forwarded as {"body": "<sms text>"}.
        200 processed, 400 unparseable, 404 no tenant/unit, 409 duplicate,
        500 store failure (nothing committed).
        """
        try:
            payload = await request.json()
        except ValueError:
            logger.warning("webhook_non_json_payload")
            payload = {}
        outcome = await _reconciliation(request).process_webhook(payload)
        return MongoORJSONResponse(outcome.to_response(), status_code=outcome.status_code)

    @router.post("/admin/reset-monthly-payments")
    async def reset_monthly_payments(request: Request):
        """Manual trigger for the month-start rollover. Idempotent."""
        try:
            return await _rollover(request).reset_monthly_tracking()
        except ReconciliationError as e:
            raise HTTPException(e.status_code, e.message)

    @router.get("/tenants/{tenant_id}/payment-status")
    async def payment_status(
        request: Request,
        tenant_id: str,
        period: Optional[str] = Query(None, description="YYYY-MM, defaults to the current month"),
        persist: bool = Query(False),
    ):
        _check_period(period)
        try:
            status = await _payment_status(request).get_payment_status(tenant_id, period, persist=persist)
        except ReconciliationError as e:
            raise HTTPException(e.status_code, e.message)
        return {"success": True, "data": status}

    @router.get("/payments/outstanding")
    async def outstanding(request: Request, period: Optional[str] = Query(None)):
        _check_period(period)
        try:
            items = await _payment_status(request).list_outstanding(period)
        except ReconciliationError as e:
            raise HTTPException(e.status_code, e.message)
        data = [
            {
                "tenant": TenantSummary(
                    id=i["tenant"].id, name=i["tenant"].name, phone=i["tenant"].phone, unit_code=i["tenant"].unit_code
                ).model_dump(by_alias=True),
                "period": i["ledger"].period,
                "status": i["ledger"].status.value,
                "expectedAmount": i["ledger"].expected_amount,
                "paidAmount": i["ledger"].paid_amount,
                "remainingAmount": i["ledger"].remaining_amount,
            }
            for i in items
        ]
        return {"success": True, "count": len(data), "data": data}

    @router.post("/payments/send-reminders")
    async def send_reminders(request: Request, period: Optional[str] = Query(None)):
        _check_period(period)
        try:
            return await _payment_status(request).send_reminders(period)
        except ReconciliationError as e:
            raise HTTPException(e.status_code, e.message)

    @router.post("/tenants/{tenant_id}/welcome-sms")
    async def welcome(request: Request, tenant_id: str):
        try:
            return await _payment_status(request).send_welcome(tenant_id)
        except ReconciliationError as e:
            raise HTTPException(e.status_code, e.message)

    return router
