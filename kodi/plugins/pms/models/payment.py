from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import Field

from kodi.core.mongo import MongoModel
from kodi.plugins.pms.helpers import ZERO
from kodi.plugins.pms.models.models import (
    Allocation,
    DepositState,
    DepositStatus,
    LedgerStatus,
    Money,
    MonthlyLedger,
)
from kodi.utils.exceptions import ParseError, ReconciliationError


class MatchStrategy(str, Enum):
    ACCOUNT_REFERENCE = "account_reference"
    SENDER_PHONE = "sender_phone"
    FULL_SCAN = "full_scan"


class ReconciliationStage(str, Enum):
    RECEIVED = "received"
    PARSED = "parsed"
    DEDUP_CHECKED = "dedup_checked"
    TENANT_MATCHED = "tenant_matched"
    UNIT_LOADED = "unit_loaded"
    ALLOCATED = "allocated"
    PERSISTED = "persisted"
    NOTIFIED = "notified"
    DONE = "done"
    REJECTED = "rejected"


# ============================================
# Inbound event
# ============================================

class PaymentEvent(MongoModel):
    transaction_id: str = Field(alias="transactionId")
    amount: Money
    sender_name: str = Field(alias="senderName")
    sender_phone: str = Field(alias="senderPhone")
    account_reference: str = Field(alias="accountReference")
    occurred_at: datetime = Field(alias="occurredAt")
    payment_period: str = Field(alias="paymentPeriod")
    sender_phone_variants: Set[str] = Field(default_factory=set, alias="senderPhoneVariants")
    account_reference_variants: Set[str] = Field(default_factory=set, alias="accountReferenceVariants")


@dataclass
class ParseResult:
    event: Optional[PaymentEvent] = None
    error: Optional[ParseError] = None

    @property
    def ok(self) -> bool:
        return self.event is not None


# ============================================
# Ledger engine results
# ============================================

@dataclass(frozen=True)
class Obligation:
    rent: Decimal
    utilities: Decimal
    deposit: Decimal

    @property
    def total(self) -> Decimal:
        return self.rent + self.utilities + self.deposit


@dataclass
class AllocationResult:
    ledger: MonthlyLedger
    allocation: Allocation
    deposit_state: DepositState

    @property
    def deposit_became_paid(self) -> bool:
        return self.allocation.deposit > ZERO and self.deposit_state.status == DepositStatus.PAID


@dataclass
class RolloverResult:
    period: str
    tenants_updated: int = 0
    skipped: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)


# ============================================
# Persisted records
# ============================================

class RentalPayment(MongoModel):
    """One row per M-Pesa transaction; transactionId is the idempotency key."""
    transaction_id: str = Field(alias="transactionId")
    amount: Money
    sender_name: str = Field(alias="senderName")
    sender_phone: str = Field(alias="senderPhone")
    account_reference: str = Field(alias="accountReference")
    occurred_at: datetime = Field(alias="occurredAt")
    payment_period: str = Field(alias="paymentMonth")
    ledger_period: str = Field(alias="ledgerMonth")
    tenant_id: str = Field(alias="tenantId")
    tenant_name: str = Field("", alias="tenantName")
    unit_id: str = Field(alias="unitId")
    property_id: Optional[str] = Field(None, alias="propertyId")
    match_strategy: MatchStrategy = Field(alias="matchStrategy")
    allocation: Allocation = Field(default_factory=Allocation)
    ledger_status: LedgerStatus = Field(alias="monthlyStatus")
    previous_arrears: Money = Field(ZERO, alias="previousArrears")
    new_arrears: Money = Field(ZERO, alias="newArrears")
    processed_at: datetime = Field(alias="processedAt")
    raw_body: Optional[str] = Field(None, alias="rawBody")


class UnmatchedPayment(MongoModel):
    """Dead letter for payments that need a human to assign them."""
    transaction_id: str = Field(alias="transactionId")
    reason: str
    raw_body: str = Field(alias="rawBody")
    event: Optional[PaymentEvent] = None
    created_at: datetime = Field(alias="createdAt")


# ============================================
# Orchestrator outcome
# ============================================

@dataclass
class ReconciliationOutcome:
    status_code: int
    stage: ReconciliationStage
    transaction_id: Optional[str] = None
    payment: Optional[RentalPayment] = None
    error: Optional[ReconciliationError] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.error is None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "transactionId": self.transaction_id,
        }
        if self.success:
            body["payment"] = self.payment
        else:
            body["error"] = self.error.to_dict()
        return body
