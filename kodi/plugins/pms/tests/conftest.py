import asyncio
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import pytest
from prometheus_client import CollectorRegistry

from kodi.metrics.metrics import MetricsCollector
from kodi.plugins.pms.models.models import DepositState, DepositStatus, Tenant, Unit, UtilityFees
from kodi.plugins.pms.models.payment import RentalPayment, UnmatchedPayment
from kodi.plugins.pms.services.store import Mutation, Mutator, Store
from kodi.plugins.sms.models.models import SendResult
from kodi.plugins.sms.services.notifier import NotificationSender
from kodi.utils.exceptions import (
    DuplicateTransactionError,
    PersistenceError,
    TenantNotFoundError,
    UnitNotFoundError,
)

NAIROBI = ZoneInfo("Africa/Nairobi")


class InMemoryStore(Store):
    """Store double: same contract as MongoStore, per-tenant lock instead of a transaction."""

    def __init__(self):
        self.tenants: Dict[str, Tenant] = {}
        self.units: Dict[str, Unit] = {}
        self.payments: Dict[str, RentalPayment] = {}
        self.unmatched: List[UnmatchedPayment] = []
        self.sms_logs: List[Dict[str, Any]] = []
        self.commits = 0
        self.fail_commit = False
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def add_tenant(self, tenant: Tenant) -> Tenant:
        self.tenants[tenant.id] = tenant.model_copy(deep=True)
        return tenant

    def add_unit(self, unit: Unit) -> Unit:
        self.units[unit.unit_id] = unit.model_copy(deep=True)
        return unit

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        tenant = self.tenants.get(tenant_id)
        return tenant.model_copy(deep=True) if tenant else None

    async def find_tenant_by_phone(self, phone: str) -> Optional[Tenant]:
        for tenant in self.tenants.values():
            if tenant.phone == phone:
                return tenant.model_copy(deep=True)
        return None

    async def list_tenants(self) -> List[Tenant]:
        return [t.model_copy(deep=True) for t in self.tenants.values()]

    async def list_active_tenants(self) -> List[Tenant]:
        return [t.model_copy(deep=True) for t in self.tenants.values() if t.is_active]

    async def get_unit(self, unit_id: str) -> Optional[Unit]:
        unit = self.units.get(unit_id)
        return unit.model_copy(deep=True) if unit else None

    async def get_payment(self, transaction_id: str) -> Optional[RentalPayment]:
        return self.payments.get(transaction_id)

    async def create_if_absent(self, payment: RentalPayment) -> bool:
        if payment.transaction_id in self.payments:
            return False
        self.payments[payment.transaction_id] = payment
        return True

    async def transactional_update(self, tenant_id: str, unit_id: str, mutator: Mutator) -> Optional[Mutation]:
        async with self._locks[tenant_id]:
            tenant = await self.get_tenant(tenant_id)
            if tenant is None:
                raise TenantNotFoundError(f"Tenant {tenant_id} not found")
            unit = await self.get_unit(unit_id)
            if unit is None:
                raise UnitNotFoundError(f"Unit {unit_id} not found")

            mutation = mutator(tenant, unit)
            if mutation is None:
                return None
            if self.fail_commit:
                raise PersistenceError("simulated store outage")
            if mutation.payment is not None and mutation.payment.transaction_id in self.payments:
                raise DuplicateTransactionError(mutation.payment.transaction_id)

            if mutation.payment is not None:
                self.payments[mutation.payment.transaction_id] = mutation.payment
            self.tenants[tenant_id] = mutation.tenant.model_copy(deep=True)
            self.units[unit_id] = mutation.unit.model_copy(deep=True)
            self.commits += 1
            return mutation

    async def record_unmatched(self, record: UnmatchedPayment) -> None:
        self.unmatched.append(record)

    async def log_notification(self, entry: Dict[str, Any]) -> None:
        self.sms_logs.append(entry)


class FakeNotifier(NotificationSender):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    async def send(self, phone, message, kind="generic", tenant_id=None) -> SendResult:
        self.sent.append({"phone": phone, "message": message, "kind": kind, "tenant_id": tenant_id})
        if self.fail:
            return SendResult(success=False, error="gateway down")
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}")


def mpesa_sms(
    code: str = "QK12ABC3DE",
    amount: str = "4,000.00",
    name: str = "JOHN DOE",
    phone: str = "254712345678",
    date: str = "15/1/25",
    account: str = "0712345678",
) -> str:
    return (
        f"{code} Confirmed. Ksh{amount} received from {name} {phone} on {date} at 10:15 AM. "
        f"New Utility balance is Ksh12,345.00. Account Number {account}"
    )


@pytest.fixture
def metrics():
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def now():
    return datetime(2025, 1, 15, 10, 30, tzinfo=NAIROBI)


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def unit():
    return Unit(
        unit_id="A1",
        property_id="prop-1",
        rent_amount=Decimal("5000"),
        deposit_amount=Decimal("3000"),
        utility_fees=UtilityFees(garbage=Decimal("300"), water=Decimal("200")),
        is_vacant=False,
        tenant_id="t-1",
    )


@pytest.fixture
def tenant():
    return Tenant(
        id="t-1",
        name="John Doe",
        phone="0712345678",
        unit_code="A1",
        property_id="prop-1",
        move_in_date=datetime(2025, 1, 3, tzinfo=NAIROBI),
        deposit_state=DepositState(amount=Decimal("3000"), status=DepositStatus.PENDING),
    )


@pytest.fixture
def store(tenant, unit):
    s = InMemoryStore()
    s.add_tenant(tenant)
    s.add_unit(unit)
    return s


@pytest.fixture
def notifier():
    return FakeNotifier()
