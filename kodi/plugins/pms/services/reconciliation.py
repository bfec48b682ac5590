import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Optional, Set

import structlog

from kodi.core.config import settings
from kodi.metrics.metrics import MetricsCollector, get_metrics
from kodi.plugins.pms.accounting.ledger import allocate_payment, get_or_init_ledger
from kodi.plugins.pms.models.models import PaymentLogEntry, Tenant, Unit
from kodi.plugins.pms.models.payment import (
    AllocationResult,
    MatchStrategy,
    PaymentEvent,
    ReconciliationOutcome,
    ReconciliationStage,
    RentalPayment,
    UnmatchedPayment,
)
from kodi.plugins.pms.services.sms_parser import SmsParser
from kodi.plugins.pms.services.store import Mutation, Store
from kodi.plugins.pms.services.tenant_matcher import TenantMatcher
from kodi.plugins.pms.utils.tenant_message_generator import (
    deposit_confirmation_sms,
    payment_confirmation_sms,
)
from kodi.plugins.sms.services.notifier import NotificationSender
from kodi.utils.date_helper import current_period, local_tz
from kodi.utils.exceptions import (
    DuplicateTransactionError,
    ReconciliationError,
    TenantNotFoundError,
    UnitNotFoundError,
)

logger = structlog.get_logger(__name__)

SUCCESS_MESSAGE = "Payment processed successfully"


class ReconciliationService:
    """
    Webhook entry point: raw M-Pesa SMS in, committed ledger update out.

    received -> parsed -> dedup_checked -> tenant_matched -> unit_loaded
    -> allocated -> persisted -> notified -> done

    Any failure stops the pipeline at `rejected` and is reported with the
    status code of the error that caused it. The tenant, unit and payment
    record are written in one store transaction, so a failure before commit
    leaves nothing behind and a success is only reported after commit.
    """

    def __init__(
        self,
        store: Store,
        notifier: Optional[NotificationSender] = None,
        parser: Optional[SmsParser] = None,
        matcher: Optional[TenantMatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsCollector] = None,
        notify_in_background: Optional[bool] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.parser = parser or SmsParser()
        self.matcher = matcher or TenantMatcher(store)
        self.clock = clock or (lambda: datetime.now(local_tz()))
        self.metrics = metrics or get_metrics()
        self.notify_in_background = (
            settings.NOTIFY_IN_BACKGROUND if notify_in_background is None else notify_in_background
        )
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def process_webhook(self, payload: Any) -> ReconciliationOutcome:
        started = time.perf_counter()
        stage = ReconciliationStage.RECEIVED
        event: Optional[PaymentEvent] = None
        log = logger.bind(stage=stage.value)

        try:
            parsed = self.parser.parse_payload(payload)
            if not parsed.ok:
                raise parsed.error
            event = parsed.event
            stage = ReconciliationStage.PARSED
            log = log.bind(transaction_id=event.transaction_id)

            if await self.store.get_payment(event.transaction_id) is not None:
                raise DuplicateTransactionError(event.transaction_id)
            stage = ReconciliationStage.DEDUP_CHECKED

            match = await self.matcher.match(event.account_reference, event.sender_phone)
            if match is None:
                error = TenantNotFoundError(
                    "No tenant matches this payment",
                    {"accountReference": event.account_reference, "senderPhone": event.sender_phone},
                )
                await self._record_unmatched(event, payload, error)
                raise error
            tenant = match.tenant
            self.metrics.record_match(match.strategy.value)
            stage = ReconciliationStage.TENANT_MATCHED
            log = log.bind(tenant_id=tenant.id, strategy=match.strategy.value)

            unit = await self.store.get_unit(tenant.unit_code) if tenant.unit_code else None
            if unit is None:
                error = UnitNotFoundError(
                    f"Unit {tenant.unit_code} not found for tenant {tenant.name}",
                    {"tenantId": tenant.id, "unitCode": tenant.unit_code},
                )
                await self._record_unmatched(event, payload, error)
                raise error
            stage = ReconciliationStage.UNIT_LOADED

            holder: dict = {}
            mutator = self._build_mutator(event, match.strategy, _raw_body(payload), holder)
            mutation = await self.store.transactional_update(tenant.id, unit.unit_id, mutator)
            stage = ReconciliationStage.PERSISTED
            allocation_result: AllocationResult = holder["result"]

        except ReconciliationError as e:
            log.warning(
                "webhook_rejected",
                failed_stage=stage.value,
                reason=e.reason,
                error=e.message,
            )
            self.metrics.record_webhook("rejected", e.reason)
            return ReconciliationOutcome(
                status_code=e.status_code,
                stage=ReconciliationStage.REJECTED,
                transaction_id=event.transaction_id if event else None,
                error=e,
                message=e.message,
            )
        except Exception as e:
            log.exception("webhook_failed", failed_stage=stage.value, error_type=type(e).__name__)
            error = ReconciliationError("Internal error processing payment")
            self.metrics.record_webhook("rejected", error.reason)
            return ReconciliationOutcome(
                status_code=error.status_code,
                stage=ReconciliationStage.REJECTED,
                transaction_id=event.transaction_id if event else None,
                error=error,
                message=error.message,
            )
        finally:
            self.metrics.reconciliation_duration.observe(time.perf_counter() - started)

        for bucket, amount in allocation_result.allocation.as_dict().items():
            self.metrics.record_allocation(bucket, amount)
        self.metrics.record_webhook("processed")
        log.info(
            "payment_reconciled",
            amount=str(event.amount),
            period=mutation.payment.ledger_period,
            ledger_status=allocation_result.ledger.status.value,
            allocation={k: str(v) for k, v in allocation_result.allocation.as_dict().items()},
        )

        await self._dispatch_notifications(mutation, allocation_result)

        return ReconciliationOutcome(
            status_code=200,
            stage=ReconciliationStage.DONE,
            transaction_id=event.transaction_id,
            payment=mutation.payment,
            message=SUCCESS_MESSAGE,
        )

    def _build_mutator(self, event: PaymentEvent, strategy: MatchStrategy, raw_body: Optional[str], holder: dict):
        """
        The read-modify-write applied inside the store transaction. Pure: it
        only sees the freshly read tenant and unit and returns their new state.
        """
        recorded_at = self.clock()
        this_period = current_period(recorded_at)

        def mutator(tenant: Tenant, unit: Unit) -> Mutation:
            tenant = tenant.model_copy(deep=True)
            unit = unit.model_copy(deep=True)

            # a late SMS for an older month lands on the current ledger
            period = event.payment_period
            if tenant.monthly_ledger is not None and tenant.monthly_ledger.period > period:
                period = tenant.monthly_ledger.period

            ledger = get_or_init_ledger(tenant, unit, period)
            result = allocate_payment(
                ledger, unit, tenant, event.amount, event.transaction_id, event.occurred_at, recorded_at
            )
            holder["result"] = result

            summary = tenant.financial_summary
            previous_arrears = summary.arrears
            applied_to_arrears = min(result.allocation.excess, previous_arrears)
            summary.arrears = previous_arrears - applied_to_arrears
            summary.credit_balance = summary.credit_balance + (result.allocation.excess - applied_to_arrears)
            summary.total_paid = summary.total_paid + event.amount
            summary.last_updated = recorded_at

            tenant.monthly_ledger = result.ledger
            tenant.deposit_state = result.deposit_state
            tenant.last_payment_date = event.occurred_at
            tenant.payment_log.append(
                PaymentLogEntry(
                    transaction_id=event.transaction_id,
                    amount=event.amount,
                    occurred_at=event.occurred_at,
                    payment_period=event.payment_period,
                    timestamp=recorded_at,
                    previous_arrears=previous_arrears,
                    new_arrears=summary.arrears,
                    sender_name=event.sender_name,
                    allocation=result.allocation,
                    ledger_status=result.ledger.status,
                )
            )

            unit.last_payment_date = event.occurred_at
            unit.last_payment_amount = event.amount
            unit.last_payment_transaction_id = event.transaction_id
            if result.ledger.period == this_period:
                unit.current_period_paid = result.ledger.paid_amount
                unit.current_period_status = result.ledger.status

            payment = RentalPayment(
                transaction_id=event.transaction_id,
                amount=event.amount,
                sender_name=event.sender_name,
                sender_phone=event.sender_phone,
                account_reference=event.account_reference,
                occurred_at=event.occurred_at,
                payment_period=event.payment_period,
                ledger_period=result.ledger.period,
                tenant_id=tenant.id,
                tenant_name=tenant.name,
                unit_id=unit.unit_id,
                property_id=tenant.property_id or unit.property_id,
                match_strategy=strategy,
                allocation=result.allocation,
                ledger_status=result.ledger.status,
                previous_arrears=previous_arrears,
                new_arrears=summary.arrears,
                processed_at=recorded_at,
                raw_body=raw_body,
            )
            return Mutation(tenant=tenant, unit=unit, payment=payment)

        return mutator

    async def _record_unmatched(self, event: PaymentEvent, payload: Any, error: ReconciliationError) -> None:
        record = UnmatchedPayment(
            transaction_id=event.transaction_id,
            reason=error.reason,
            raw_body=_raw_body(payload) or "",
            event=event,
            created_at=self.clock(),
        )
        try:
            await self.store.record_unmatched(record)
        except ReconciliationError as e:
            logger.error("unmatched_record_failed", transaction_id=event.transaction_id, error=e.message)

    # ------------------------------------------------------------------
    # Notifications (best effort, never affect the committed ledger)
    # ------------------------------------------------------------------
    async def _dispatch_notifications(self, mutation: Mutation, result: AllocationResult) -> None:
        if self.notifier is None:
            return
        if not self.notify_in_background:
            await self._notify(mutation, result)
            return
        task = asyncio.create_task(self._notify(mutation, result))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _notify(self, mutation: Mutation, result: AllocationResult) -> None:
        tenant, payment = mutation.tenant, mutation.payment
        log = logger.bind(transaction_id=payment.transaction_id, tenant_id=tenant.id)
        try:
            await self.notifier.send(
                tenant.phone,
                payment_confirmation_sms(tenant, payment.unit_id, payment.amount, result.allocation, payment.transaction_id),
                kind="payment_confirmation",
                tenant_id=tenant.id,
            )
            if result.deposit_became_paid:
                await self.notifier.send(
                    tenant.phone,
                    deposit_confirmation_sms(tenant, payment.unit_id, result.deposit_state.paid_date),
                    kind="deposit_confirmation",
                    tenant_id=tenant.id,
                )
            log.info("payment_notified", stage=ReconciliationStage.NOTIFIED.value)
        except Exception:
            log.exception("payment_notification_failed")

    async def drain(self) -> None:
        """Wait for notifications still in flight (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def _raw_body(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        body = payload.get("body")
        return str(body) if body is not None else None
    return None
