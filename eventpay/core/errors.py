"""
Settlement error hierarchy.

Validation and calculation errors surface to the charge caller, webhook-path
inconsistencies are absorbed and logged, payout failures are recorded on the
payout itself and reported in the settlement run summary.
"""
from enum import Enum
from typing import Optional


class SettlementError(Exception):
    """Base exception for all settlement errors."""

    pass


class ValidationError(SettlementError):
    """Raised when a request is malformed or violates a business rule."""

    pass


class InvalidAmount(ValidationError):
    """Raised when an amount is below the gateway minimum or yields a negative split."""

    pass


class IdempotencyConflict(ValidationError):
    """Raised when an idempotency key is reused with a different request payload."""

    pass


class GatewayErrorCategory(str, Enum):
    """Classification of provider errors for retry and HTTP mapping."""

    DECLINED = "declined"  # Payer or provider refused; do not retry
    CONFIG = "config"  # Credentials, account or request shape; do not retry
    TRANSIENT = "transient"  # Network, timeout, 5xx, rate limit; retry


class GatewayError(SettlementError):
    """Raised when a payment provider call fails."""

    def __init__(
        self,
        message: str,
        code: str,
        category: GatewayErrorCategory,
        gateway_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Human-readable error message
            code: Provider or internal error code
            category: Error classification
            gateway_id: Gateway that raised the error
            original_error: Underlying exception, if any
        """
        super().__init__(message)
        self.code = code
        self.category = category
        self.gateway_id = gateway_id
        self.original_error = original_error

    @property
    def is_transient(self) -> bool:
        return self.category == GatewayErrorCategory.TRANSIENT


class SecurityError(SettlementError):
    """Raised when an inbound notification fails its authenticity check."""

    pass


class ConsistencyError(SettlementError):
    """A provider reported an outcome that contradicts a recorded terminal state.

    Logged by the ledger, never raised to webhook callers.
    """

    def __init__(self, message: str, transaction_id: str, current: str, reported: str):
        super().__init__(message)
        self.transaction_id = transaction_id
        self.current = current
        self.reported = reported


class NoPaymentProfile(SettlementError):
    """Raised when a creator has no payment profile to disburse to."""

    pass


class DisbursementError(SettlementError):
    """Raised by a disbursement rail when a transfer is definitively rejected."""

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


class NotFoundError(SettlementError):
    """Raised when a transaction, payout or gateway does not exist."""

    pass


class InvalidStateError(SettlementError):
    """Raised when an operation is not allowed in the entity's current state."""

    pass
