"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from eventpay.core.models import (
    CreatorPaymentProfile,
    CreatorTier,
    GatewayId,
    PaymentSplit,
    Payout,
    PayoutMethod,
    PayoutSchedule,
    Transaction,
)


class ChargeMetadata(BaseModel):
    """Identifiers of what is being sold."""

    event_id: str = Field(..., min_length=1, description="Event identifier")
    ticket_id: str = Field(..., min_length=1, description="Ticket identifier")
    creator_id: str = Field(..., min_length=1, description="Creator receiving the proceeds")


class QuoteRequest(BaseModel):
    """Request schema for a fee quote."""

    gross_amount: int = Field(..., gt=0, description="Ticket price in minor units")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., GHS)")
    gateway_id: GatewayId = Field(..., description="Gateway processing the charge")
    creator_tier: CreatorTier = Field(default=CreatorTier.FREE, description="Creator's tier")
    pass_fee_to_customer: bool = Field(
        default=False, description="Add the processor fee on top of the ticket price"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()


class CreateChargeRequest(QuoteRequest):
    """Request schema for initiating a charge."""

    metadata: ChargeMetadata
    payer_msisdn: Optional[str] = Field(
        default=None, description="Payer's mobile money number (mobile money only)"
    )
    connected_account_id: Optional[str] = Field(
        default=None, description="Stripe connected account paid directly (Stripe only)"
    )
    description: Optional[str] = Field(default=None, max_length=127)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "gross_amount": 5000,
                    "currency": "GHS",
                    "gateway_id": "mobilemoney",
                    "metadata": {"event_id": "evt_1", "ticket_id": "tkt_1", "creator_id": "cr_1"},
                    "creator_tier": "free",
                    "pass_fee_to_customer": False,
                    "payer_msisdn": "233241234567",
                }
            ]
        }
    }


class SplitResponse(BaseModel):
    """How a gross amount divides between processor, platform and creator."""

    gross_amount: int
    processor_fee: int
    platform_commission: int
    creator_net: int
    customer_total: int

    @classmethod
    def from_domain(cls, split: PaymentSplit) -> "SplitResponse":
        return cls(**split.to_dict())


class QuoteResponse(BaseModel):
    """Response schema for a fee quote."""

    gateway_id: GatewayId
    currency: str
    split: SplitResponse


class TransactionResponse(BaseModel):
    """Response schema for a transaction."""

    id: str = Field(..., description="Transaction ID")
    event_id: str
    ticket_id: str
    creator_id: str
    gateway_id: GatewayId
    gross_amount: int = Field(..., description="Ticket price in minor units")
    currency: str
    status: str = Field(..., description="Transaction status")
    creator_tier: CreatorTier
    pass_fee_to_customer: bool
    gateway_transaction_id: Optional[str] = Field(default=None, description="Provider reference")
    failure_reason: Optional[str] = None
    payout_id: Optional[str] = None
    direct_payout: bool = False
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, t: Transaction) -> "TransactionResponse":
        return cls(
            id=t.id,
            event_id=t.event_id,
            ticket_id=t.ticket_id,
            creator_id=t.creator_id,
            gateway_id=t.gateway_id,
            gross_amount=t.gross_amount,
            currency=t.currency,
            status=t.status.value,
            creator_tier=t.creator_tier,
            pass_fee_to_customer=t.pass_fee_to_customer,
            gateway_transaction_id=t.gateway_transaction_id,
            failure_reason=t.failure_reason,
            payout_id=t.payout_id,
            direct_payout=t.direct_payout,
            created_at=t.created_at,
            updated_at=t.updated_at,
            completed_at=t.completed_at,
            refunded_at=t.refunded_at,
        )


class ChargeResponse(BaseModel):
    """Response schema for charge initiation."""

    transaction: TransactionResponse
    split: SplitResponse
    continuation: Dict[str, Any] = Field(
        default_factory=dict,
        description="Client secret, approval URL or pending marker needed to continue",
    )
    replayed: bool = Field(default=False, description="True if the idempotency key was seen before")


class RefundRequest(BaseModel):
    """Request schema for refunding a transaction."""

    reason: Optional[str] = Field(
        default=None, description="Refund reason (requested_by_customer, duplicate, event_cancelled)"
    )


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="applied, duplicate, conflict, stale, unknown or ignored")
    gateway: str
    provider_event_id: Optional[str] = Field(default=None, description="Provider event ID")


class PayoutResponse(BaseModel):
    """Response schema for a payout."""

    id: str
    creator_id: str
    amount: int
    currency: str
    status: str
    included_transaction_ids: List[str]
    scheduled_date: datetime
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    disbursement_reference: Optional[str] = None
    attempts: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, p: Payout) -> "PayoutResponse":
        return cls(
            id=p.id,
            creator_id=p.creator_id,
            amount=p.amount,
            currency=p.currency,
            status=p.status.value,
            included_transaction_ids=list(p.included_transaction_ids),
            scheduled_date=p.scheduled_date,
            created_at=p.created_at,
            updated_at=p.updated_at,
            completed_at=p.completed_at,
            failure_reason=p.failure_reason,
            disbursement_reference=p.disbursement_reference,
            attempts=[a.to_dict() for a in p.attempts],
        )


class PaymentProfileRequest(BaseModel):
    """Request schema for creating or replacing a creator payment profile."""

    preferred_method: PayoutMethod
    momo_number: Optional[str] = None
    momo_network: Optional[str] = None
    stripe_connect_account_id: Optional[str] = None
    paypal_email: Optional[str] = None
    minimum_payout_amount: Optional[int] = Field(default=None, ge=0)
    payout_schedule: PayoutSchedule = PayoutSchedule.WEEKLY
    is_verified: bool = False

    @model_validator(mode="after")
    def require_destination(self) -> "PaymentProfileRequest":
        """The preferred method must come with its destination."""
        required = {
            PayoutMethod.MOMO: self.momo_number,
            PayoutMethod.STRIPE_CONNECT: self.stripe_connect_account_id,
            PayoutMethod.PAYPAL: self.paypal_email,
        }
        if not required[self.preferred_method]:
            raise ValueError(f"{self.preferred_method.value} payouts need a destination")
        return self


class PaymentProfileResponse(PaymentProfileRequest):
    """Response schema for a creator payment profile."""

    creator_id: str
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, p: CreatorPaymentProfile) -> "PaymentProfileResponse":
        return cls(
            creator_id=p.creator_id,
            preferred_method=p.preferred_method,
            momo_number=p.momo_number,
            momo_network=p.momo_network,
            stripe_connect_account_id=p.stripe_connect_account_id,
            paypal_email=p.paypal_email,
            minimum_payout_amount=p.minimum_payout_amount,
            payout_schedule=p.payout_schedule,
            is_verified=p.is_verified,
            updated_at=p.updated_at,
        )


class BalanceResponse(BaseModel):
    """Balance of a creator in one currency (minor units)."""

    creator_id: str
    currency: str
    available: int
    in_payout: int
    paid_out: int
    total_earned: int


class SettlementRunResponse(BaseModel):
    """Response schema for a settlement run."""

    window_end: datetime
    transactions_polled: int
    payouts_recovered: int
    payouts_created: int
    payouts_processed: int
    payouts_retried: int
    failures: List[Dict[str, Any]]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
