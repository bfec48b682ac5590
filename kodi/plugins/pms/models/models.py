from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel, BeforeValidator, Field, field_validator

from kodi.core.mongo import MongoModel
from kodi.plugins.pms.helpers import money, ZERO

# Amounts are read leniently: null, missing or numeric strings all become Decimal.
Money = Annotated[Decimal, BeforeValidator(money)]


def _id_to_str(v: Any) -> Any:
    return str(v) if isinstance(v, ObjectId) else v


DocumentId = Annotated[Optional[str], BeforeValidator(_id_to_str)]


# ============================================
# Enums
# ============================================

class TenantStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MOVED_OUT = "moved_out"


class DepositStatus(str, Enum):
    """Lifecycle of the security deposit"""
    PENDING = "pending"
    PAID = "paid"
    NOT_REQUIRED = "not_required"
    REFUNDED = "refunded"


class LedgerStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class AllocationBucket(str, Enum):
    DEPOSIT = "deposit"
    RENT = "rent"
    UTILITIES = "utilities"
    EXCESS = "excess"


# Order in which one payment is spread across what is owed
ALLOCATION_PRIORITY = [
    AllocationBucket.DEPOSIT,
    AllocationBucket.RENT,
    AllocationBucket.UTILITIES,
]


# ============================================
# Units
# ============================================

class UtilityFees(MongoModel):
    garbage: Money = Field(ZERO, alias="garbageFee")
    water: Money = Field(ZERO, alias="waterBill")

    @property
    def total(self) -> Decimal:
        return self.garbage + self.water


class Unit(MongoModel):
    id: DocumentId = Field(None, alias="_id")
    unit_id: str = Field(alias="unitId")
    property_id: Optional[str] = Field(None, alias="propertyId")
    rent_amount: Money = Field(ZERO, alias="rentAmount")
    deposit_amount: Money = Field(ZERO, alias="depositAmount")
    utility_fees: UtilityFees = Field(default_factory=UtilityFees, alias="utilityFees")
    is_vacant: bool = Field(True, alias="isVacant")
    tenant_id: DocumentId = Field(None, alias="tenantId")
    current_period_paid: Money = Field(ZERO, alias="currentMonthPaid")
    current_period_status: LedgerStatus = Field(LedgerStatus.UNPAID, alias="currentMonthStatus")
    last_payment_date: Optional[datetime] = Field(None, alias="lastPaymentDate")
    last_payment_amount: Optional[Money] = Field(None, alias="lastPaymentAmount")
    last_payment_transaction_id: Optional[str] = Field(None, alias="lastPaymentTransactionId")

    @field_validator("utility_fees", mode="before")
    @classmethod
    def _default_fees(cls, v):
        return v if v is not None else {}

    @field_validator("current_period_status", mode="before")
    @classmethod
    def _default_status(cls, v):
        return v or LedgerStatus.UNPAID


# ============================================
# Tenant ledger
# ============================================

class DepositState(MongoModel):
    amount: Money = ZERO
    status: DepositStatus = DepositStatus.NOT_REQUIRED
    paid_date: Optional[datetime] = Field(None, alias="paidDate")

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, v):
        return v or DepositStatus.NOT_REQUIRED


class FinancialSummary(MongoModel):
    arrears: Money = ZERO
    total_paid: Money = Field(ZERO, alias="totalPaid")
    credit_balance: Money = Field(ZERO, alias="creditBalance")
    last_updated: Optional[datetime] = Field(None, alias="lastUpdated")


class Breakdown(MongoModel):
    rent: Money = ZERO
    utilities: Money = ZERO
    deposit: Money = ZERO


class Allocation(MongoModel):
    deposit: Money = ZERO
    rent: Money = ZERO
    utilities: Money = ZERO
    excess: Money = ZERO

    @property
    def total(self) -> Decimal:
        return self.deposit + self.rent + self.utilities + self.excess

    def as_dict(self) -> Dict[str, Decimal]:
        return {
            AllocationBucket.DEPOSIT.value: self.deposit,
            AllocationBucket.RENT.value: self.rent,
            AllocationBucket.UTILITIES.value: self.utilities,
            AllocationBucket.EXCESS.value: self.excess,
        }


class LedgerPayment(MongoModel):
    transaction_id: str = Field(alias="transactionId")
    amount: Money
    timestamp: datetime
    recorded_at: datetime = Field(alias="recordedAt")
    allocation: Allocation = Field(default_factory=Allocation)


class MonthlyLedger(MongoModel):
    """
    One tenant's obligation for one calendar month. Only authoritative while
    `period` is the month being asked about; otherwise it is superseded.
    """
    period: str = Field(alias="month")
    expected_amount: Money = Field(ZERO, alias="expectedAmount")
    paid_amount: Money = Field(ZERO, alias="paidAmount")
    remaining_amount: Money = Field(ZERO, alias="remainingAmount")
    status: LedgerStatus = LedgerStatus.UNPAID
    breakdown: Breakdown = Field(default_factory=Breakdown)
    deposit_required: Money = Field(ZERO, alias="depositRequired")
    payments: List[LedgerPayment] = Field(default_factory=list)

    def has_payment(self, transaction_id: str) -> bool:
        return any(p.transaction_id == transaction_id for p in self.payments)


class PaymentLogEntry(MongoModel):
    transaction_id: str = Field(alias="transactionId")
    amount: Money
    occurred_at: datetime = Field(alias="date")
    payment_period: str = Field(alias="paymentMonth")
    timestamp: datetime
    previous_arrears: Money = Field(ZERO, alias="previousArrears")
    new_arrears: Money = Field(ZERO, alias="newArrears")
    sender_name: Optional[str] = Field(None, alias="senderName")
    allocation: Allocation = Field(default_factory=Allocation)
    ledger_status: LedgerStatus = Field(LedgerStatus.UNPAID, alias="monthlyStatus")


class Tenant(MongoModel):
    id: DocumentId = Field(None, alias="_id")
    name: str = ""
    phone: Optional[str] = None
    unit_code: Optional[str] = Field(None, alias="unitCode")
    property_id: Optional[str] = Field(None, alias="propertyId")
    move_in_date: Optional[datetime] = Field(None, alias="moveInDate")
    move_out_date: Optional[datetime] = Field(None, alias="moveOutDate")
    tenant_status: TenantStatus = Field(TenantStatus.ACTIVE, alias="status")
    deposit_state: DepositState = Field(default_factory=DepositState, alias="rentDeposit")
    financial_summary: FinancialSummary = Field(default_factory=FinancialSummary, alias="financialSummary")
    monthly_ledger: Optional[MonthlyLedger] = Field(None, alias="monthlyPaymentTracking")
    payment_log: List[PaymentLogEntry] = Field(default_factory=list, alias="paymentLogs")
    last_payment_date: Optional[datetime] = Field(None, alias="lastPaymentDate")

    @field_validator("deposit_state", "financial_summary", mode="before")
    @classmethod
    def _default_nested(cls, v):
        return v if v is not None else {}

    @field_validator("payment_log", mode="before")
    @classmethod
    def _default_log(cls, v):
        return v if v is not None else []

    @field_validator("tenant_status", mode="before")
    @classmethod
    def _default_status(cls, v):
        return v or TenantStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.tenant_status == TenantStatus.ACTIVE


class TenantSummary(BaseModel):
    """Slim projection used in list responses"""
    id: Optional[str] = None
    name: str
    phone: Optional[str] = None
    unit_code: Optional[str] = Field(None, alias="unitCode")

    model_config = {"populate_by_name": True}
