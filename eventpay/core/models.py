"""
Domain models for settlement and payouts.

Entities are immutable dataclasses; every change produces a new value through
``dataclasses.replace`` and is persisted by the repository with a conditional
write. Amounts are integers in the currency's minor unit.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class GatewayId(str, Enum):
    """Payment gateways accepted at checkout."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
    MOBILE_MONEY = "mobilemoney"


class TransactionStatus(str, Enum):
    """Transaction lifecycle states."""

    CREATED = "created"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.REFUNDED,
        )


class PayoutStatus(str, Enum):
    """Payout lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CreatorTier(str, Enum):
    """Creator subscription tiers; each carries a commission rate."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    CUSTOM = "custom"


class PayoutMethod(str, Enum):
    """How a creator prefers to receive payouts."""

    MOMO = "momo"
    STRIPE_CONNECT = "stripe_connect"
    PAYPAL = "paypal"


class PayoutSchedule(str, Enum):
    """How often a creator may be paid out."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class EventOutcome(str, Enum):
    """Gateway-independent outcome carried by a normalized payment event."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class ApplyOutcome(str, Enum):
    """Result of applying a payment event to the ledger."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    STALE = "stale"
    UNKNOWN = "unknown"
    IGNORED = "ignored"


class DisbursementStatus(str, Enum):
    """State of a transfer as reported by a disbursement rail."""

    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PaymentSplit:
    """How a gross amount divides between processor, platform and creator."""

    gross_amount: int
    processor_fee: int
    platform_commission: int
    creator_net: int
    customer_total: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "gross_amount": self.gross_amount,
            "processor_fee": self.processor_fee,
            "platform_commission": self.platform_commission,
            "creator_net": self.creator_net,
            "customer_total": self.customer_total,
        }


@dataclass(frozen=True)
class Transaction:
    """A single ticket sale routed through one gateway."""

    id: str
    event_id: str
    ticket_id: str
    creator_id: str
    gateway_id: GatewayId
    gross_amount: int
    currency: str
    status: TransactionStatus
    idempotency_key: str
    created_at: datetime
    updated_at: datetime
    creator_tier: CreatorTier = CreatorTier.FREE
    pass_fee_to_customer: bool = False
    gateway_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    payout_id: Optional[str] = None
    direct_payout: bool = False
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PayoutAttempt:
    """One disbursement attempt of a payout."""

    number: int
    reference: str
    rail: str
    started_at: datetime
    outcome: Optional[str] = None
    reason: Optional[str] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "reference": self.reference,
            "rail": self.rail,
            "started_at": self.started_at.isoformat(),
            "outcome": self.outcome,
            "reason": self.reason,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PayoutAttempt":
        finished_at = data.get("finished_at")
        return cls(
            number=int(data["number"]),
            reference=data["reference"],
            rail=data["rail"],
            started_at=datetime.fromisoformat(data["started_at"]),
            outcome=data.get("outcome"),
            reason=data.get("reason"),
            finished_at=datetime.fromisoformat(finished_at) if finished_at else None,
        )


@dataclass(frozen=True)
class Payout:
    """An aggregated transfer of owed money to one creator."""

    id: str
    creator_id: str
    amount: int
    currency: str
    included_transaction_ids: Tuple[str, ...]
    status: PayoutStatus
    scheduled_date: datetime
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    disbursement_reference: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    attempts: Tuple[PayoutAttempt, ...] = ()

    @property
    def current_attempt(self) -> Optional[PayoutAttempt]:
        return self.attempts[-1] if self.attempts else None


@dataclass(frozen=True)
class CreatorPaymentProfile:
    """Where and how a creator receives payouts."""

    creator_id: str
    preferred_method: PayoutMethod
    momo_number: Optional[str] = None
    momo_network: Optional[str] = None
    stripe_connect_account_id: Optional[str] = None
    paypal_email: Optional[str] = None
    minimum_payout_amount: Optional[int] = None
    payout_schedule: PayoutSchedule = PayoutSchedule.WEEKLY
    is_verified: bool = False
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentEvent:
    """A provider notification normalized to the gateway-independent vocabulary."""

    gateway_id: GatewayId
    outcome: EventOutcome
    gateway_transaction_id: Optional[str] = None
    transaction_id: Optional[str] = None  # our id echoed back in provider metadata
    failure_reason: Optional[str] = None
    provider_event_id: Optional[str] = None
    amount: Optional[int] = None


@dataclass(frozen=True)
class ProviderHandle:
    """What a gateway returns when a charge is initiated."""

    ref: str
    acknowledged: bool = False  # provider accepted the request, outcome pending
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    direct_payout: bool = False

    def continuation(self) -> Dict[str, Any]:
        """Data the client needs to continue the payment."""
        data: Dict[str, Any] = {"gateway_reference": self.ref}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.approval_url:
            data["approval_url"] = self.approval_url
        if self.acknowledged:
            data["awaiting_confirmation"] = True
        return data


@dataclass(frozen=True)
class RawWebhook:
    """An inbound webhook as received over HTTP."""

    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        body: bytes,
        headers: Optional[Dict[str, str]] = None,
        query: Optional[Dict[str, str]] = None,
    ) -> "RawWebhook":
        """Build with lower-cased header names."""
        return cls(
            body=body,
            headers={k.lower(): v for k, v in (headers or {}).items()},
            query=dict(query or {}),
        )

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class DisbursementResult:
    """Outcome of a disbursement submission or status query."""

    status: DisbursementStatus
    provider_reference: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class TransactionEvent:
    """Audit trail entry for one applied transaction status change."""

    transaction_id: str
    from_status: Optional[TransactionStatus]
    to_status: TransactionStatus
    source: str
    created_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None


@dataclass(frozen=True)
class OutboxMessage:
    """A notification waiting in the outbox for delivery."""

    aggregate_id: str
    aggregate_type: str
    event_type: str
    payload: Dict[str, Any]
    created_at: datetime
    id: Optional[int] = None
    published_at: Optional[datetime] = None
