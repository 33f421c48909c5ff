"""SQLAlchemy database models for settlement and payouts."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TransactionRecord(Base):
    """
    Ticket sale transactions.

    Status is advanced only through conditional updates on the current value.
    gateway_transaction_id is written once and is unique per gateway.
    payout_id is the claim marker set when the transaction joins a payout.
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(255), nullable=False)
    creator_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    gateway_id: Mapped[str] = mapped_column(String(32), nullable=False)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gross_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    creator_tier: Mapped[str] = mapped_column(String(32), nullable=False)
    pass_fee_to_customer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    direct_payout: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payout_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("gateway_id", "gateway_transaction_id", name="uq_transactions_gateway_ref"),
        CheckConstraint("gross_amount > 0", name="positive_gross_amount"),
        CheckConstraint(
            "status IN ('created', 'pending', 'completed', 'failed', 'refunded')",
            name="valid_transaction_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_transactions_claimable", "status", "payout_id", "created_at"),
        Index("idx_transactions_creator_created", "creator_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionRecord(id={self.id}, gateway={self.gateway_id}, "
            f"amount={self.gross_amount}, status={self.status})>"
        )


class TransactionEventRecord(Base):
    """
    Transaction audit trail.

    One row per applied status transition. Immutable once written.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionEventRecord(id={self.id}, transaction_id={self.transaction_id}, "
            f"{self.from_status}->{self.to_status})>"
        )


class PayoutRecord(Base):
    """
    Creator payouts.

    included_transaction_ids is fixed at creation; attempts is an append-only
    history of disbursement attempts.
    """

    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    creator_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    included_transaction_ids: Mapped[List[str]] = mapped_column(JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disbursement_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    attempts: Mapped[List[Dict[str, Any]]] = mapped_column(JsonType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_payout_amount"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="valid_payout_status",
        ),
        Index("idx_payouts_creator_created", "creator_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PayoutRecord(id={self.id}, creator_id={self.creator_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class CreatorPaymentProfileRecord(Base):
    """Creator payout destinations and preferences."""

    __tablename__ = "creator_payment_profiles"

    creator_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    preferred_method: Mapped[str] = mapped_column(String(32), nullable=False)
    momo_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    momo_network: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stripe_connect_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paypal_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    minimum_payout_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payout_schedule: Mapped[str] = mapped_column(String(16), nullable=False, default="weekly")
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "preferred_method IN ('momo', 'stripe_connect', 'paypal')",
            name="valid_preferred_method",
        ),
    )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Creator and customer notifications are written here and delivered
    asynchronously by the outbox publisher.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),)

    def __repr__(self) -> str:
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
