"""
Monthly ledger engine.

Pure functions over the pydantic models: nothing here touches the database,
the clock or the network, so the orchestrator can run them inside a store
transaction and tests can run them directly.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict

from kodi.plugins.pms.helpers import ZERO, clamp_zero, money
from kodi.plugins.pms.models.models import (
    ALLOCATION_PRIORITY,
    Allocation,
    AllocationBucket,
    Breakdown,
    DepositStatus,
    LedgerPayment,
    LedgerStatus,
    MonthlyLedger,
    Tenant,
    Unit,
)
from kodi.plugins.pms.models.payment import AllocationResult, Obligation
from kodi.utils.date_helper import is_in_period
from kodi.utils.exceptions import DuplicateTransactionError


def compute_expected_obligation(unit: Unit, tenant: Tenant, period: str) -> Obligation:
    """
    What the tenant owes for `period`.

    The deposit is a first-month charge: it counts only when the move-in date
    falls inside `period`, the deposit is still pending and the unit asks for
    one. It is never carried into later months.
    """
    deposit = ZERO
    if (
        tenant.move_in_date is not None
        and is_in_period(tenant.move_in_date, period)
        and tenant.deposit_state.status == DepositStatus.PENDING
        and unit.deposit_amount > ZERO
    ):
        deposit = unit.deposit_amount

    return Obligation(
        rent=money(unit.rent_amount),
        utilities=money(unit.utility_fees.total),
        deposit=money(deposit),
    )


def recompute_status(paid: Decimal, expected: Decimal) -> LedgerStatus:
    if paid >= expected:
        return LedgerStatus.PAID
    if paid > ZERO:
        return LedgerStatus.PARTIAL
    return LedgerStatus.UNPAID


def get_or_init_ledger(tenant: Tenant, unit: Unit, period: str) -> MonthlyLedger:
    """
    The tenant's ledger for `period`. A stored ledger is returned (as a copy)
    only if it is for that period; anything else yields a fresh unpaid one.
    """
    current = tenant.monthly_ledger
    if current is not None and current.period == period:
        return current.model_copy(deep=True)

    obligation = compute_expected_obligation(unit, tenant, period)
    return MonthlyLedger(
        period=period,
        expected_amount=obligation.total,
        paid_amount=ZERO,
        remaining_amount=obligation.total,
        status=LedgerStatus.UNPAID,
        breakdown=Breakdown(),
        deposit_required=obligation.deposit,
        payments=[],
    )


def _bucket_needs(ledger: MonthlyLedger, obligation: Obligation) -> Dict[AllocationBucket, Decimal]:
    return {
        AllocationBucket.DEPOSIT: clamp_zero(obligation.deposit - ledger.breakdown.deposit),
        AllocationBucket.RENT: clamp_zero(obligation.rent - ledger.breakdown.rent),
        AllocationBucket.UTILITIES: clamp_zero(obligation.utilities - ledger.breakdown.utilities),
    }


def allocate_payment(
    ledger: MonthlyLedger,
    unit: Unit,
    tenant: Tenant,
    amount: Decimal,
    transaction_id: str,
    timestamp: datetime,
    recorded_at: datetime,
) -> AllocationResult:
    """
    Spread one payment over the ledger's buckets.

    Handles:
    - Priority deposit -> rent -> utilities, each capped at what is still owed
    - Whatever is left over is reported as excess and kept out of the breakdown
    - paidAmount grows by the full amount, excess included
    - Deposit pending -> paid once its bucket covers the requirement

    The inputs are left untouched; the updated ledger and deposit state come
    back in the result.
    """
    amount = money(amount)
    if amount <= ZERO:
        raise ValueError("Payment amount must be positive.")
    if ledger.has_payment(transaction_id):
        raise DuplicateTransactionError(transaction_id)

    obligation = compute_expected_obligation(unit, tenant, ledger.period)
    needs = _bucket_needs(ledger, obligation)

    remaining = amount
    allocated: Dict[AllocationBucket, Decimal] = {}
    for bucket in ALLOCATION_PRIORITY:
        share = min(remaining, needs[bucket])
        allocated[bucket] = share
        remaining -= share

    allocation = Allocation(
        deposit=allocated[AllocationBucket.DEPOSIT],
        rent=allocated[AllocationBucket.RENT],
        utilities=allocated[AllocationBucket.UTILITIES],
        excess=remaining,
    )

    updated = ledger.model_copy(deep=True)
    updated.breakdown = Breakdown(
        rent=ledger.breakdown.rent + allocation.rent,
        utilities=ledger.breakdown.utilities + allocation.utilities,
        deposit=ledger.breakdown.deposit + allocation.deposit,
    )
    updated.paid_amount = ledger.paid_amount + amount
    updated.remaining_amount = clamp_zero(updated.expected_amount - updated.paid_amount)
    updated.status = recompute_status(updated.paid_amount, updated.expected_amount)
    updated.payments.append(
        LedgerPayment(
            transaction_id=transaction_id,
            amount=amount,
            timestamp=timestamp,
            recorded_at=recorded_at,
            allocation=allocation,
        )
    )

    deposit_state = tenant.deposit_state.model_copy(deep=True)
    if (
        obligation.deposit > ZERO
        and allocation.deposit > ZERO
        and updated.breakdown.deposit >= obligation.deposit
    ):
        deposit_state.status = DepositStatus.PAID
        deposit_state.paid_date = timestamp
        if deposit_state.amount <= ZERO:
            deposit_state.amount = obligation.deposit

    return AllocationResult(ledger=updated, allocation=allocation, deposit_state=deposit_state)
