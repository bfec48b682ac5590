from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base for failures that end a webhook reconciliation with a known status."""
    status_code: int = 500
    reason: str = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason, "message": self.message, "details": self.details}


class ParseError(ReconciliationError):
    """SMS body missing or not an M-Pesa confirmation. Not retryable."""
    status_code = 400
    reason = "parse_error"


class DuplicateTransactionError(ReconciliationError):
    status_code = 409
    reason = "duplicate_transaction"

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} already processed", {"transactionId": transaction_id})
        self.transaction_id = transaction_id


class TenantNotFoundError(ReconciliationError):
    """No tenant matched by any strategy. Routed to manual review."""
    status_code = 404
    reason = "tenant_not_found"


class UnitNotFoundError(ReconciliationError):
    status_code = 404
    reason = "unit_not_found"


class PersistenceError(ReconciliationError):
    """The store failed; nothing was committed."""
    status_code = 500
    reason = "persistence_error"
