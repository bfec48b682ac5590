from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from kodi.metrics.metrics import MetricsCollector, get_metrics
from kodi.plugins.pms.accounting.ledger import get_or_init_ledger
from kodi.plugins.pms.helpers import ZERO
from kodi.plugins.pms.models.models import LedgerStatus, Tenant, Unit
from kodi.plugins.pms.models.payment import RolloverResult
from kodi.plugins.pms.services.store import Mutation, Store
from kodi.utils.date_helper import current_period, local_tz
from kodi.utils.exceptions import ReconciliationError

logger = structlog.get_logger(__name__)


class MonthlyRollover:
    """
    Month-end reset: every active tenant gets a fresh ledger for the new
    period and its unit's running counters go back to zero.

    Safe to run more than once for the same period and alongside live
    webhooks; each tenant is updated through a read-check-write transaction.
    """

    def __init__(
        self,
        store: Store,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.clock = clock or (lambda: datetime.now(local_tz()))
        self.metrics = metrics or get_metrics()

    async def rollover_period(self, period: str) -> RolloverResult:
        result = RolloverResult(period=period)
        tenants = await self.store.list_active_tenants()
        log = logger.bind(period=period)
        log.info("rollover_started", tenants=len(tenants))

        for tenant in tenants:
            if tenant.monthly_ledger is not None and tenant.monthly_ledger.period >= period:
                result.skipped += 1
                continue

            if not tenant.unit_code:
                result.failures.append({"tenantId": tenant.id, "reason": "tenant has no unit"})
                continue

            unit = await self.store.get_unit(tenant.unit_code)
            if unit is None:
                log.warning("rollover_unit_missing", tenant_id=tenant.id, unit_code=tenant.unit_code)
                result.failures.append({"tenantId": tenant.id, "reason": f"unit {tenant.unit_code} not found"})
                continue

            try:
                mutation = await self.store.transactional_update(
                    tenant.id, unit.unit_id, lambda t, u: self._roll(t, u, period)
                )
            except ReconciliationError as e:
                log.error("rollover_tenant_failed", tenant_id=tenant.id, error=e.message)
                result.failures.append({"tenantId": tenant.id, "reason": e.message})
                continue

            if mutation is None:
                # a concurrent webhook already opened this period
                result.skipped += 1
            else:
                result.tenants_updated += 1

        self.metrics.record_rollover(result.tenants_updated, result.skipped, len(result.failures))
        log.info(
            "rollover_finished",
            updated=result.tenants_updated,
            skipped=result.skipped,
            failed=len(result.failures),
        )
        return result

    @staticmethod
    def _roll(tenant: Tenant, unit: Unit, period: str) -> Optional[Mutation]:
        if tenant.monthly_ledger is not None and tenant.monthly_ledger.period >= period:
            return None
        tenant = tenant.model_copy(deep=True)
        unit = unit.model_copy(deep=True)
        tenant.monthly_ledger = get_or_init_ledger(tenant, unit, period)
        unit.current_period_paid = ZERO
        unit.current_period_status = LedgerStatus.UNPAID
        return Mutation(tenant=tenant, unit=unit)

    async def reset_monthly_tracking(self) -> Dict[str, Any]:
        period = current_period(self.clock())
        result = await self.rollover_period(period)
        return {
            "success": True,
            "resetCount": result.tenants_updated,
            "skipped": result.skipped,
            "failures": result.failures,
            "period": period,
        }
