from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from kodi.plugins.pms.accounting.ledger import compute_expected_obligation, get_or_init_ledger
from kodi.plugins.pms.helpers import ZERO
from kodi.plugins.pms.models.models import DepositStatus, LedgerStatus, MonthlyLedger, Tenant, Unit
from kodi.plugins.pms.services.store import Mutation, Store
from kodi.plugins.pms.utils.tenant_message_generator import rent_reminder_sms, welcome_sms
from kodi.plugins.sms.services.notifier import NotificationSender
from kodi.utils.date_helper import current_period, format_period, is_valid_period, local_tz, period_of
from kodi.utils.exceptions import TenantNotFoundError, UnitNotFoundError

logger = structlog.get_logger(__name__)


class PaymentStatusService:
    """Read side of the ledger: per-tenant status, outstanding list and reminders."""

    def __init__(
        self,
        store: Store,
        notifier: Optional[NotificationSender] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock or (lambda: datetime.now(local_tz()))

    def _period(self, period: Optional[str]) -> str:
        if period is None:
            return current_period(self.clock())
        if not is_valid_period(period):
            raise ValueError(f"Invalid period format: {period}. Expected YYYY-MM")
        return period

    async def _tenant_and_unit(self, tenant_id: str):
        tenant = await self.store.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found", {"tenantId": tenant_id})
        unit = await self.store.get_unit(tenant.unit_code) if tenant.unit_code else None
        if unit is None:
            raise UnitNotFoundError(
                f"Unit {tenant.unit_code} not found", {"tenantId": tenant_id, "unitCode": tenant.unit_code}
            )
        return tenant, unit

    async def get_payment_status(self, tenant_id: str, period: Optional[str] = None, persist: bool = False) -> Dict[str, Any]:
        """
        Ledger for `period` (default: this month), computed lazily when the
        stored one is for another month. With persist=True a stale ledger is
        replaced in the store; the read-check-write goes through
        transactional_update so a concurrent payment is never overwritten.
        """
        period = self._period(period)
        tenant, unit = await self._tenant_and_unit(tenant_id)
        ledger = get_or_init_ledger(tenant, unit, period)

        stale = tenant.monthly_ledger is None or tenant.monthly_ledger.period != period
        # never move a stored ledger backwards to an older month
        if persist and stale and (tenant.monthly_ledger is None or tenant.monthly_ledger.period < period):
            def install(t: Tenant, u: Unit) -> Optional[Mutation]:
                if t.monthly_ledger is not None and t.monthly_ledger.period >= period:
                    return None
                t = t.model_copy(deep=True)
                t.monthly_ledger = get_or_init_ledger(t, u, period)
                return Mutation(tenant=t, unit=u)

            mutation = await self.store.transactional_update(tenant.id, unit.unit_id, install)
            if mutation is not None:
                logger.info("ledger_initialized", tenant_id=tenant.id, period=period)

        return self._status_view(tenant, unit, ledger)

    @staticmethod
    def _status_view(tenant: Tenant, unit: Unit, ledger: MonthlyLedger) -> Dict[str, Any]:
        return {
            "tenantId": tenant.id,
            "tenantName": tenant.name,
            "unitCode": unit.unit_id,
            "currentMonth": ledger.period,
            "monthLabel": format_period(ledger.period),
            "paymentStatus": ledger.status.value,
            "expectedAmount": ledger.expected_amount,
            "paidAmount": ledger.paid_amount,
            "remainingAmount": ledger.remaining_amount,
            "breakdown": ledger.breakdown,
            "depositRequired": ledger.deposit_required,
            "payments": ledger.payments,
            "financialSummary": tenant.financial_summary,
            "depositStatus": tenant.deposit_state.status.value,
        }

    async def list_outstanding(self, period: Optional[str] = None) -> List[Dict[str, Any]]:
        """Active tenants whose ledger for the period is not yet paid."""
        period = self._period(period)
        outstanding = []
        for tenant in await self.store.list_active_tenants():
            unit = await self.store.get_unit(tenant.unit_code) if tenant.unit_code else None
            if unit is None:
                logger.warning("outstanding_unit_missing", tenant_id=tenant.id, unit_code=tenant.unit_code)
                continue
            ledger = get_or_init_ledger(tenant, unit, period)
            if ledger.status == LedgerStatus.PAID:
                continue
            outstanding.append({"tenant": tenant, "unit": unit, "ledger": ledger})
        return outstanding

    async def send_reminders(self, period: Optional[str] = None) -> Dict[str, Any]:
        """Rent reminder SMS to every outstanding tenant. One failed send never stops the rest."""
        if self.notifier is None:
            raise RuntimeError("No notification sender configured")

        period = self._period(period)
        sent, failed, details = 0, 0, []
        for item in await self.list_outstanding(period):
            tenant: Tenant = item["tenant"]
            unit: Unit = item["unit"]
            ledger: MonthlyLedger = item["ledger"]

            outstanding_deposit = ZERO
            if tenant.deposit_state.status == DepositStatus.PENDING:
                outstanding_deposit = max(ledger.deposit_required - ledger.breakdown.deposit, ZERO)
            rent_due = max(ledger.remaining_amount - outstanding_deposit, ZERO)

            result = await self.notifier.send(
                tenant.phone,
                rent_reminder_sms(tenant, unit, rent_due, outstanding_deposit),
                kind="rent_reminder",
                tenant_id=tenant.id,
            )
            if result.success:
                sent += 1
            else:
                failed += 1
            details.append({
                "tenantId": tenant.id,
                "name": tenant.name,
                "phone": tenant.phone,
                "success": result.success,
                "messageId": result.message_id,
                "error": result.error,
            })

        logger.info("rent_reminders_sent", period=period, sent=sent, failed=failed)
        return {"success": True, "period": period, "sent": sent, "failed": failed, "details": details}

    async def send_welcome(self, tenant_id: str) -> Dict[str, Any]:
        """Welcome SMS with monthly charges, first-month deposit and paybill details."""
        if self.notifier is None:
            raise RuntimeError("No notification sender configured")
        tenant, unit = await self._tenant_and_unit(tenant_id)
        first_period = period_of(tenant.move_in_date) if tenant.move_in_date else self._period(None)
        obligation = compute_expected_obligation(unit, tenant, first_period)
        result = await self.notifier.send(tenant.phone, welcome_sms(tenant, unit), kind="welcome", tenant_id=tenant.id)
        return {
            "success": result.success,
            "messageId": result.message_id,
            "error": result.error,
            "firstPayment": obligation.total,
        }
