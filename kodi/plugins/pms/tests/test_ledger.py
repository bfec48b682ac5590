"""
Ledger engine tests

1. Expected obligation (rent + utilities + first-month deposit)
2. Lazy ledger initialisation
3. Priority allocation, partial and overpayment
4. Conservation, monotonic status and idempotency on transaction id
"""
from datetime import datetime
from decimal import Decimal

import pytest

from kodi.plugins.pms.accounting.ledger import (
    allocate_payment,
    compute_expected_obligation,
    get_or_init_ledger,
    recompute_status,
)
from kodi.plugins.pms.models.models import DepositStatus, LedgerStatus, MonthlyLedger
from kodi.utils.exceptions import DuplicateTransactionError

from .conftest import NAIROBI

TS = datetime(2025, 1, 15, 10, 15, tzinfo=NAIROBI)


def _pay(ledger, unit, tenant, amount, txid):
    return allocate_payment(ledger, unit, tenant, Decimal(amount), txid, TS, TS)


def _after(tenant, result):
    """Tenant as it would be stored after a committed allocation."""
    return tenant.model_copy(update={"monthly_ledger": result.ledger, "deposit_state": result.deposit_state})


class TestExpectedObligation:
    def test_move_in_month_includes_pending_deposit(self, unit, tenant):
        ob = compute_expected_obligation(unit, tenant, "2025-01")
        assert (ob.rent, ob.utilities, ob.deposit) == (Decimal("5000.00"), Decimal("500.00"), Decimal("3000.00"))
        assert ob.total == Decimal("8500.00")

    def test_deposit_not_rebilled_after_move_in_month(self, unit, tenant):
        ob = compute_expected_obligation(unit, tenant, "2025-02")
        assert ob.deposit == Decimal("0")
        assert ob.total == Decimal("5500.00")

    def test_paid_deposit_not_billed(self, unit, tenant):
        tenant.deposit_state.status = DepositStatus.PAID
        assert compute_expected_obligation(unit, tenant, "2025-01").deposit == Decimal("0")

    def test_unit_without_deposit(self, unit, tenant):
        unit.deposit_amount = Decimal("0")
        assert compute_expected_obligation(unit, tenant, "2025-01").total == Decimal("5500.00")

    def test_unknown_move_in(self, unit, tenant):
        tenant.move_in_date = None
        assert compute_expected_obligation(unit, tenant, "2025-01").deposit == Decimal("0")


class TestLazyInit:
    def test_fresh_ledger(self, unit, tenant):
        ledger = get_or_init_ledger(tenant, unit, "2025-01")
        assert ledger.period == "2025-01"
        assert ledger.expected_amount == Decimal("8500.00")
        assert ledger.paid_amount == Decimal("0")
        assert ledger.remaining_amount == Decimal("8500.00")
        assert ledger.status == LedgerStatus.UNPAID
        assert ledger.breakdown.rent == ledger.breakdown.utilities == ledger.breakdown.deposit == Decimal("0")
        assert ledger.deposit_required == Decimal("3000.00")
        assert ledger.payments == []

    def test_current_ledger_is_returned_unchanged(self, unit, tenant):
        result = _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, "4000", "TX1")
        tenant = _after(tenant, result)

        again = get_or_init_ledger(tenant, unit, "2025-01")
        assert again == tenant.monthly_ledger
        assert again is not tenant.monthly_ledger

    def test_stale_ledger_is_superseded(self, unit, tenant):
        result = _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, "4000", "TX1")
        tenant = _after(tenant, result)

        february = get_or_init_ledger(tenant, unit, "2025-02")
        assert february.period == "2025-02"
        assert february.payments == []
        assert february.expected_amount == Decimal("5500.00")
        # stored ledger untouched
        assert tenant.monthly_ledger.period == "2025-01"

    def test_idempotent(self, unit, tenant):
        assert get_or_init_ledger(tenant, unit, "2025-03") == get_or_init_ledger(tenant, unit, "2025-03")


class TestAllocation:
    def test_first_payment_covers_deposit_then_rent(self, unit, tenant):
        ledger = get_or_init_ledger(tenant, unit, "2025-01")
        result = _pay(ledger, unit, tenant, "4000", "TX1")

        a = result.allocation
        assert (a.deposit, a.rent, a.utilities, a.excess) == (
            Decimal("3000.00"), Decimal("1000.00"), Decimal("0"), Decimal("0"),
        )
        assert result.ledger.status == LedgerStatus.PARTIAL
        assert result.ledger.paid_amount == Decimal("4000.00")
        assert result.ledger.remaining_amount == Decimal("4500.00")
        assert result.deposit_state.status == DepositStatus.PAID
        assert result.deposit_state.paid_date == TS
        assert result.deposit_became_paid

    def test_second_payment_completes_month_with_excess(self, unit, tenant):
        first = _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, "4000", "TX1")
        tenant = _after(tenant, first)

        second = _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, "5000", "TX2")

        a = second.allocation
        assert (a.deposit, a.rent, a.utilities, a.excess) == (
            Decimal("0"), Decimal("4000.00"), Decimal("500.00"), Decimal("500.00"),
        )
        ledger = second.ledger
        assert ledger.status == LedgerStatus.PAID
        assert ledger.paid_amount == Decimal("9000.00")
        assert ledger.remaining_amount == Decimal("0")
        assert ledger.breakdown.rent == Decimal("5000.00")
        assert ledger.breakdown.utilities == Decimal("500.00")
        assert ledger.breakdown.deposit == Decimal("3000.00")
        assert [p.transaction_id for p in ledger.payments] == ["TX1", "TX2"]
        assert not second.deposit_became_paid

    def test_partial_deposit_stays_pending(self, unit, tenant):
        result = _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, "1000", "TX1")
        assert result.allocation.deposit == Decimal("1000.00")
        assert result.deposit_state.status == DepositStatus.PENDING
        assert result.deposit_state.paid_date is None

    def test_deposit_completed_by_later_payment(self, unit, tenant):
        first = _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, "1000", "TX1")
        tenant = _after(tenant, first)
        second = _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, "2500", "TX2")

        assert second.allocation.deposit == Decimal("2000.00")
        assert second.allocation.rent == Decimal("500.00")
        assert second.deposit_state.status == DepositStatus.PAID

    def test_utilities_only_after_rent(self, unit, tenant):
        ledger = get_or_init_ledger(tenant, unit, "2025-02")
        result = _pay(ledger, unit, tenant, "5200", "TX1")
        assert result.allocation.rent == Decimal("5000.00")
        assert result.allocation.utilities == Decimal("200.00")
        assert result.allocation.deposit == Decimal("0")

    def test_inputs_not_mutated(self, unit, tenant):
        ledger = get_or_init_ledger(tenant, unit, "2025-01")
        before_ledger = ledger.model_copy(deep=True)
        before_tenant = tenant.model_copy(deep=True)

        _pay(ledger, unit, tenant, "4000", "TX1")

        assert ledger == before_ledger
        assert tenant == before_tenant

    def test_duplicate_transaction_rejected(self, unit, tenant):
        first = _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, "4000", "TX1")
        with pytest.raises(DuplicateTransactionError) as exc:
            _pay(first.ledger, unit, _after(tenant, first), "4000", "TX1")
        assert exc.value.transaction_id == "TX1"
        assert exc.value.status_code == 409

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount(self, unit, tenant, amount):
        with pytest.raises(ValueError):
            _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, amount, "TX1")


class TestLedgerProperties:
    AMOUNTS = ["1500", "0.50", "2999.50", "4000", "250.25", "10000"]

    def test_conservation_and_monotonic_status(self, unit, tenant):
        order = {LedgerStatus.UNPAID: 0, LedgerStatus.PARTIAL: 1, LedgerStatus.PAID: 2}
        ledger = get_or_init_ledger(tenant, unit, "2025-01")
        last = order[ledger.status]
        excess_total = Decimal("0")

        for i, amount in enumerate(self.AMOUNTS):
            result = _pay(ledger, unit, tenant, amount, f"TX{i}")
            a = result.allocation
            assert a.deposit + a.rent + a.utilities + a.excess == Decimal(amount)
            assert min(a.deposit, a.rent, a.utilities, a.excess) >= 0

            assert order[result.ledger.status] >= last
            last = order[result.ledger.status]

            excess_total += a.excess
            b = result.ledger.breakdown
            assert b.rent + b.utilities + b.deposit == result.ledger.paid_amount - excess_total
            assert b.rent <= unit.rent_amount
            assert b.utilities <= unit.utility_fees.total

            tenant = _after(tenant, result)
            ledger = get_or_init_ledger(tenant, unit, "2025-01")

        assert ledger.paid_amount == sum(Decimal(a) for a in self.AMOUNTS)

    def test_recompute_status(self):
        assert recompute_status(Decimal("0"), Decimal("100")) == LedgerStatus.UNPAID
        assert recompute_status(Decimal("1"), Decimal("100")) == LedgerStatus.PARTIAL
        assert recompute_status(Decimal("100"), Decimal("100")) == LedgerStatus.PAID
        assert recompute_status(Decimal("150"), Decimal("100")) == LedgerStatus.PAID

    def test_document_round_trip(self, unit, tenant):
        result = _pay(get_or_init_ledger(tenant, unit, "2025-01"), unit, tenant, "4000", "TX1")
        doc = result.ledger.to_document()

        assert doc["month"] == "2025-01"
        assert doc["status"] == "partial"
        assert MonthlyLedger.from_document(doc) == result.ledger
