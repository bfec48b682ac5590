from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from kodi.core.database import transaction_context
from kodi.core.mongo import to_bson
from kodi.plugins.pms.models.models import Tenant, TenantStatus, Unit
from kodi.plugins.pms.models.payment import RentalPayment, UnmatchedPayment
from kodi.utils.exceptions import (
    DuplicateTransactionError,
    PersistenceError,
    TenantNotFoundError,
    UnitNotFoundError,
)

logger = structlog.get_logger(__name__)

TENANTS_COLL = "tenants"
UNITS_COLL = "units"
PAYMENTS_COLL = "rental_payments"
UNMATCHED_COLL = "unmatched_payments"
SMS_LOGS_COLL = "sms_logs"


@dataclass
class Mutation:
    """New state produced by a mutator; `payment` is inserted in the same transaction."""
    tenant: Tenant
    unit: Unit
    payment: Optional[RentalPayment] = None


# (fresh tenant, fresh unit) -> Mutation, or None to leave both untouched
Mutator = Callable[[Tenant, Unit], Optional[Mutation]]


class Store(ABC):
    """Persistence capability the reconciliation core depends on."""

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        ...

    @abstractmethod
    async def find_tenant_by_phone(self, phone: str) -> Optional[Tenant]:
        """Exact match on the stored phone string."""

    @abstractmethod
    async def list_tenants(self) -> List[Tenant]:
        ...

    @abstractmethod
    async def list_active_tenants(self) -> List[Tenant]:
        ...

    @abstractmethod
    async def get_unit(self, unit_id: str) -> Optional[Unit]:
        """Lookup by business key (unitId), which is what tenants reference."""

    @abstractmethod
    async def get_payment(self, transaction_id: str) -> Optional[RentalPayment]:
        ...

    @abstractmethod
    async def create_if_absent(self, payment: RentalPayment) -> bool:
        """Insert keyed by transaction id. False if one already exists."""

    @abstractmethod
    async def transactional_update(self, tenant_id: str, unit_id: str, mutator: Mutator) -> Optional[Mutation]:
        """
        Re-read tenant and unit, run `mutator` on them and commit the result
        (tenant, unit and optional payment) atomically.

        Raises:
            TenantNotFoundError / UnitNotFoundError: a record vanished
            DuplicateTransactionError: the mutation's payment already exists
            PersistenceError: the store failed; nothing was written
        """

    @abstractmethod
    async def record_unmatched(self, record: UnmatchedPayment) -> None:
        ...

    @abstractmethod
    async def log_notification(self, entry: Dict[str, Any]) -> None:
        ...

    async def ensure_indexes(self) -> None:
        return None


def _id_filter(tenant_id: str) -> Dict[str, Any]:
    # Tenants created by other tools may carry either ObjectId or string ids
    if ObjectId.is_valid(tenant_id):
        return {"_id": {"$in": [ObjectId(tenant_id), tenant_id]}}
    return {"_id": tenant_id}


def _without_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k != "_id"}


class MongoStore(Store):
    """Store backed by MongoDB through Motor. Transactions need a replica set."""

    def __init__(self, db: AsyncIOMotorDatabase, client: AsyncIOMotorClient):
        self.db = db
        self.client = client

    async def ensure_indexes(self) -> None:
        try:
            await self.db[PAYMENTS_COLL].create_index([("transactionId", ASCENDING)], unique=True)
            await self.db[UNMATCHED_COLL].create_index([("transactionId", ASCENDING)], unique=True)
            await self.db[UNITS_COLL].create_index([("unitId", ASCENDING)], unique=True)
            await self.db[TENANTS_COLL].create_index([("phone", ASCENDING)])
            await self.db[TENANTS_COLL].create_index([("status", ASCENDING)])
            await self.db[SMS_LOGS_COLL].create_index([("createdAt", ASCENDING)])
        except PyMongoError as e:
            raise PersistenceError("Failed to create indexes", {"error": str(e)}) from e
        logger.info("indexes_ensured")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_tenant(self, tenant_id: str, session: Optional[AsyncIOMotorClientSession] = None) -> Optional[Tenant]:
        try:
            doc = await self.db[TENANTS_COLL].find_one(_id_filter(tenant_id), session=session)
        except PyMongoError as e:
            raise PersistenceError("Failed to load tenant", {"tenantId": tenant_id, "error": str(e)}) from e
        return Tenant.from_document(doc)

    async def find_tenant_by_phone(self, phone: str) -> Optional[Tenant]:
        try:
            doc = await self.db[TENANTS_COLL].find_one({"phone": phone})
        except PyMongoError as e:
            raise PersistenceError("Failed to look up tenant by phone", {"error": str(e)}) from e
        return Tenant.from_document(doc)

    async def _list(self, query: Dict[str, Any]) -> List[Tenant]:
        try:
            docs = await self.db[TENANTS_COLL].find(query).to_list(length=None)
        except PyMongoError as e:
            raise PersistenceError("Failed to list tenants", {"error": str(e)}) from e
        return [Tenant.from_document(d) for d in docs]

    async def list_tenants(self) -> List[Tenant]:
        return await self._list({})

    async def list_active_tenants(self) -> List[Tenant]:
        # a missing status means active
        return await self._list({"status": {"$in": [TenantStatus.ACTIVE.value, None]}})

    async def get_unit(self, unit_id: str, session: Optional[AsyncIOMotorClientSession] = None) -> Optional[Unit]:
        try:
            doc = await self.db[UNITS_COLL].find_one({"unitId": unit_id}, session=session)
        except PyMongoError as e:
            raise PersistenceError("Failed to load unit", {"unitId": unit_id, "error": str(e)}) from e
        return Unit.from_document(doc)

    async def get_payment(self, transaction_id: str) -> Optional[RentalPayment]:
        try:
            doc = await self.db[PAYMENTS_COLL].find_one({"transactionId": transaction_id})
        except PyMongoError as e:
            raise PersistenceError("Failed to load payment", {"transactionId": transaction_id, "error": str(e)}) from e
        return RentalPayment.from_document(doc)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def create_if_absent(self, payment: RentalPayment, session: Optional[AsyncIOMotorClientSession] = None) -> bool:
        try:
            await self.db[PAYMENTS_COLL].insert_one(_without_id(payment.to_document()), session=session)
        except DuplicateKeyError:
            return False
        except PyMongoError as e:
            raise PersistenceError("Failed to record payment", {"transactionId": payment.transaction_id, "error": str(e)}) from e
        return True

    async def transactional_update(self, tenant_id: str, unit_id: str, mutator: Mutator) -> Optional[Mutation]:
        try:
            async with transaction_context(self.client) as session:
                tenant = await self.get_tenant(tenant_id, session=session)
                if tenant is None:
                    raise TenantNotFoundError(f"Tenant {tenant_id} not found", {"tenantId": tenant_id})
                unit = await self.get_unit(unit_id, session=session)
                if unit is None:
                    raise UnitNotFoundError(f"Unit {unit_id} not found", {"unitId": unit_id})

                mutation = mutator(tenant, unit)
                if mutation is None:
                    return None

                if mutation.payment is not None:
                    inserted = await self.create_if_absent(mutation.payment, session=session)
                    if not inserted:
                        raise DuplicateTransactionError(mutation.payment.transaction_id)

                now = datetime.now(timezone.utc)
                tenant_doc = _without_id(mutation.tenant.to_document())
                tenant_doc["updatedAt"] = now
                unit_doc = _without_id(mutation.unit.to_document())
                unit_doc["updatedAt"] = now

                await self.db[TENANTS_COLL].update_one(_id_filter(tenant_id), {"$set": tenant_doc}, session=session)
                await self.db[UNITS_COLL].update_one({"unitId": unit_id}, {"$set": unit_doc}, session=session)
                return mutation
        except PyMongoError as e:
            logger.error("transactional_update_failed", tenant_id=tenant_id, unit_id=unit_id, error=str(e))
            raise PersistenceError("Failed to commit ledger update", {"tenantId": tenant_id, "error": str(e)}) from e

    async def record_unmatched(self, record: UnmatchedPayment) -> None:
        doc = _without_id(record.to_document())
        created_at = doc.pop("createdAt")
        try:
            await self.db[UNMATCHED_COLL].update_one(
                {"transactionId": record.transaction_id},
                {
                    "$set": doc,
                    "$setOnInsert": {"createdAt": created_at, "resolved": False},
                    "$inc": {"attempts": 1},
                },
                upsert=True,
            )
        except PyMongoError as e:
            raise PersistenceError("Failed to record unmatched payment", {"transactionId": record.transaction_id, "error": str(e)}) from e

    async def log_notification(self, entry: Dict[str, Any]) -> None:
        try:
            await self.db[SMS_LOGS_COLL].insert_one(to_bson(entry))
        except PyMongoError as e:
            raise PersistenceError("Failed to log notification", {"error": str(e)}) from e
