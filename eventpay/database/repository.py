"""
Settlement repository.

The interface the settlement core depends on, and its SQLAlchemy
implementation. Every mutation the core needs for correctness under
concurrency is a conditional write that reports whether it took effect:

- transaction status changes compare-and-set on the current status
- a gateway reference is written only while none is set
- payout creation claims its transactions in the same database transaction
  and is rolled back if any of them was claimed concurrently
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventpay.core.models import (
    CreatorPaymentProfile,
    CreatorTier,
    GatewayId,
    OutboxMessage,
    Payout,
    PayoutAttempt,
    PayoutMethod,
    PayoutSchedule,
    PayoutStatus,
    Transaction,
    TransactionEvent,
    TransactionStatus,
)
from eventpay.database.models import (
    CreatorPaymentProfileRecord,
    OutboxEvent,
    PayoutRecord,
    TransactionEventRecord,
    TransactionRecord,
)

logger = structlog.get_logger(__name__)


class SettlementRepository(ABC):
    """Persistence operations used by the settlement core."""

    # Transactions

    @abstractmethod
    async def insert_transaction(self, transaction: Transaction) -> bool:
        """Insert a new transaction. Returns False if the idempotency key is taken."""

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def get_transaction_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def get_transaction_by_gateway_ref(
        self, gateway_id: GatewayId, gateway_transaction_id: str
    ) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def assign_gateway_reference(
        self,
        transaction_id: str,
        gateway_transaction_id: str,
        *,
        updated_at: datetime,
        direct_payout: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Set the gateway reference if none is set yet.

        Returns False if a reference is already set or the reference is in use
        by another transaction of the same gateway.
        """

    @abstractmethod
    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        new: TransactionStatus,
        *,
        updated_at: datetime,
        failure_reason: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        refunded_at: Optional[datetime] = None,
    ) -> bool:
        """Move a transaction from ``expected`` to ``new``. Returns False if the status moved on."""

    @abstractmethod
    async def list_claimable_transactions(self, window_end: datetime) -> List[Transaction]:
        """Completed, unclaimed, non-direct transactions created at or before window_end."""

    @abstractmethod
    async def list_transactions(
        self,
        *,
        status: Optional[TransactionStatus] = None,
        gateway_id: Optional[GatewayId] = None,
        creator_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        ...

    @abstractmethod
    async def append_transaction_event(self, event: TransactionEvent) -> None:
        ...

    @abstractmethod
    async def list_transaction_events(self, transaction_id: str) -> List[TransactionEvent]:
        ...

    # Payouts

    @abstractmethod
    async def create_payout_with_claims(self, payout: Payout) -> bool:
        """
        Insert a payout and claim its transactions atomically.

        Returns False, writing nothing, if any included transaction is no
        longer claimable.
        """

    @abstractmethod
    async def get_payout(self, payout_id: str) -> Optional[Payout]:
        ...

    @abstractmethod
    async def list_payouts(
        self,
        *,
        status: Optional[PayoutStatus] = None,
        creator_id: Optional[str] = None,
        processing_started_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Payout]:
        ...

    @abstractmethod
    async def latest_payout_for_creator(
        self, creator_id: str, currency: Optional[str] = None
    ) -> Optional[Payout]:
        ...

    @abstractmethod
    async def compare_and_set_payout(
        self,
        payout: Payout,
        expected_status: PayoutStatus,
        expected_reference: Optional[str],
    ) -> bool:
        """
        Persist the mutable fields of ``payout``.

        Applies only while the stored payout still has ``expected_status`` and
        ``expected_reference`` as its disbursement reference.
        """

    # Payment profiles

    @abstractmethod
    async def get_profile(self, creator_id: str) -> Optional[CreatorPaymentProfile]:
        ...

    @abstractmethod
    async def save_profile(self, profile: CreatorPaymentProfile) -> None:
        ...

    # Outbox

    @abstractmethod
    async def add_outbox_message(self, message: OutboxMessage) -> OutboxMessage:
        ...

    @abstractmethod
    async def fetch_unpublished_outbox(self, limit: int = 100) -> List[OutboxMessage]:
        ...

    @abstractmethod
    async def mark_outbox_published(self, message_id: int, published_at: datetime) -> None:
        ...

    @abstractmethod
    async def count_unpublished_outbox(self) -> int:
        ...

    # Lifecycle

    @abstractmethod
    async def ping(self) -> None:
        """Raise if the store is unreachable."""

    async def close(self) -> None:
        return None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; all stored times are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_transaction(record: TransactionRecord) -> Transaction:
    return Transaction(
        id=record.id,
        event_id=record.event_id,
        ticket_id=record.ticket_id,
        creator_id=record.creator_id,
        gateway_id=GatewayId(record.gateway_id),
        gross_amount=record.gross_amount,
        currency=record.currency,
        status=TransactionStatus(record.status),
        idempotency_key=record.idempotency_key,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
        creator_tier=CreatorTier(record.creator_tier),
        pass_fee_to_customer=record.pass_fee_to_customer,
        gateway_transaction_id=record.gateway_transaction_id,
        failure_reason=record.failure_reason,
        payout_id=record.payout_id,
        direct_payout=record.direct_payout,
        completed_at=_aware(record.completed_at),
        refunded_at=_aware(record.refunded_at),
        details=dict(record.details or {}),
    )


def _to_payout(record: PayoutRecord) -> Payout:
    return Payout(
        id=record.id,
        creator_id=record.creator_id,
        amount=record.amount,
        currency=record.currency,
        included_transaction_ids=tuple(record.included_transaction_ids),
        status=PayoutStatus(record.status),
        scheduled_date=_aware(record.scheduled_date),
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
        completed_at=_aware(record.completed_at),
        failure_reason=record.failure_reason,
        disbursement_reference=record.disbursement_reference,
        processing_started_at=_aware(record.processing_started_at),
        attempts=tuple(PayoutAttempt.from_dict(a) for a in record.attempts or []),
    )


def _to_profile(record: CreatorPaymentProfileRecord) -> CreatorPaymentProfile:
    return CreatorPaymentProfile(
        creator_id=record.creator_id,
        preferred_method=PayoutMethod(record.preferred_method),
        momo_number=record.momo_number,
        momo_network=record.momo_network,
        stripe_connect_account_id=record.stripe_connect_account_id,
        paypal_email=record.paypal_email,
        minimum_payout_amount=record.minimum_payout_amount,
        payout_schedule=PayoutSchedule(record.payout_schedule),
        is_verified=record.is_verified,
        updated_at=_aware(record.updated_at),
    )


def _to_outbox_message(record: OutboxEvent) -> OutboxMessage:
    return OutboxMessage(
        id=record.id,
        aggregate_id=record.aggregate_id,
        aggregate_type=record.aggregate_type,
        event_type=record.event_type,
        payload=dict(record.payload),
        created_at=_aware(record.created_at),
        published_at=_aware(record.published_at),
    )


class _ClaimConflict(Exception):
    def __init__(self, claimed: int):
        super().__init__(f"claimed {claimed} transactions")
        self.claimed = claimed


class SqlSettlementRepository(SettlementRepository):
    """
    SQLAlchemy implementation.

    Each operation runs in its own short database transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert_transaction(self, transaction: Transaction) -> bool:
        record = TransactionRecord(
            id=transaction.id,
            idempotency_key=transaction.idempotency_key,
            event_id=transaction.event_id,
            ticket_id=transaction.ticket_id,
            creator_id=transaction.creator_id,
            gateway_id=transaction.gateway_id.value,
            gateway_transaction_id=transaction.gateway_transaction_id,
            gross_amount=transaction.gross_amount,
            currency=transaction.currency,
            status=transaction.status.value,
            creator_tier=transaction.creator_tier.value,
            pass_fee_to_customer=transaction.pass_fee_to_customer,
            direct_payout=transaction.direct_payout,
            payout_id=transaction.payout_id,
            failure_reason=transaction.failure_reason,
            details=transaction.details,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )
        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "transaction_insert_conflict",
                    transaction_id=transaction.id,
                    idempotency_key=transaction.idempotency_key,
                )
                return False
        return True

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        async with self.session_factory() as session:
            record = await session.get(TransactionRecord, transaction_id)
            return _to_transaction(record) if record else None

    async def get_transaction_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        stmt = select(TransactionRecord).where(TransactionRecord.idempotency_key == key)
        async with self.session_factory() as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _to_transaction(record) if record else None

    async def get_transaction_by_gateway_ref(
        self, gateway_id: GatewayId, gateway_transaction_id: str
    ) -> Optional[Transaction]:
        stmt = select(TransactionRecord).where(
            TransactionRecord.gateway_id == GatewayId(gateway_id).value,
            TransactionRecord.gateway_transaction_id == gateway_transaction_id,
        )
        async with self.session_factory() as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _to_transaction(record) if record else None

    async def assign_gateway_reference(
        self,
        transaction_id: str,
        gateway_transaction_id: str,
        *,
        updated_at: datetime,
        direct_payout: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        values: Dict[str, Any] = {
            "gateway_transaction_id": gateway_transaction_id,
            "updated_at": updated_at,
        }
        if direct_payout is not None:
            values["direct_payout"] = direct_payout

        async with self.session_factory() as session:
            try:
                if details:
                    # Row lock held until commit so concurrent detail writes are not lost
                    record = (
                        await session.execute(
                            select(TransactionRecord)
                            .where(TransactionRecord.id == transaction_id)
                            .with_for_update()
                        )
                    ).scalar_one_or_none()
                    if record is None:
                        return False
                    values["details"] = {**(record.details or {}), **details}
                stmt = (
                    update(TransactionRecord)
                    .where(
                        TransactionRecord.id == transaction_id,
                        TransactionRecord.gateway_transaction_id.is_(None),
                    )
                    .values(**values)
                )
                result = await session.execute(stmt)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(
                    "gateway_reference_in_use",
                    transaction_id=transaction_id,
                    gateway_transaction_id=gateway_transaction_id,
                )
                return False
            return result.rowcount == 1

    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        new: TransactionStatus,
        *,
        updated_at: datetime,
        failure_reason: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        refunded_at: Optional[datetime] = None,
    ) -> bool:
        values: Dict[str, Any] = {"status": new.value, "updated_at": updated_at}
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        if completed_at is not None:
            values["completed_at"] = completed_at
        if refunded_at is not None:
            values["refunded_at"] = refunded_at

        stmt = (
            update(TransactionRecord)
            .where(
                TransactionRecord.id == transaction_id,
                TransactionRecord.status == expected.value,
            )
            .values(**values)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def list_claimable_transactions(self, window_end: datetime) -> List[Transaction]:
        stmt = (
            select(TransactionRecord)
            .where(
                TransactionRecord.status == TransactionStatus.COMPLETED.value,
                TransactionRecord.payout_id.is_(None),
                TransactionRecord.direct_payout.is_(False),
                TransactionRecord.created_at <= window_end,
            )
            .order_by(TransactionRecord.created_at, TransactionRecord.id)
        )
        async with self.session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
            return [_to_transaction(r) for r in records]

    async def list_transactions(
        self,
        *,
        status: Optional[TransactionStatus] = None,
        gateway_id: Optional[GatewayId] = None,
        creator_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        stmt = select(TransactionRecord)
        if status is not None:
            stmt = stmt.where(TransactionRecord.status == status.value)
        if gateway_id is not None:
            stmt = stmt.where(TransactionRecord.gateway_id == GatewayId(gateway_id).value)
        if creator_id is not None:
            stmt = stmt.where(TransactionRecord.creator_id == creator_id)
        if updated_before is not None:
            stmt = stmt.where(TransactionRecord.updated_at < updated_before)
        if created_from is not None:
            stmt = stmt.where(TransactionRecord.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(TransactionRecord.created_at <= created_to)
        stmt = stmt.order_by(TransactionRecord.created_at.desc(), TransactionRecord.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
            return [_to_transaction(r) for r in records]

    async def append_transaction_event(self, event: TransactionEvent) -> None:
        async with self.session_factory() as session:
            session.add(
                TransactionEventRecord(
                    transaction_id=event.transaction_id,
                    from_status=event.from_status.value if event.from_status else None,
                    to_status=event.to_status.value,
                    source=event.source,
                    details=event.details,
                    created_at=event.created_at,
                )
            )
            await session.commit()

    async def list_transaction_events(self, transaction_id: str) -> List[TransactionEvent]:
        stmt = (
            select(TransactionEventRecord)
            .where(TransactionEventRecord.transaction_id == transaction_id)
            .order_by(TransactionEventRecord.id)
        )
        async with self.session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
            return [
                TransactionEvent(
                    id=r.id,
                    transaction_id=r.transaction_id,
                    from_status=TransactionStatus(r.from_status) if r.from_status else None,
                    to_status=TransactionStatus(r.to_status),
                    source=r.source,
                    details=dict(r.details or {}),
                    created_at=_aware(r.created_at),
                )
                for r in records
            ]

    async def create_payout_with_claims(self, payout: Payout) -> bool:
        ids = list(payout.included_transaction_ids)
        try:
            await self._insert_payout_and_claim(payout, ids)
        except _ClaimConflict as conflict:
            logger.warning(
                "payout_claim_conflict",
                payout_id=payout.id,
                creator_id=payout.creator_id,
                expected=len(ids),
                claimed=conflict.claimed,
            )
            return False
        return True

    async def _insert_payout_and_claim(self, payout: Payout, ids: List[str]) -> None:
        # Raising inside begin() rolls back both the insert and the partial claim
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    PayoutRecord(
                        id=payout.id,
                        creator_id=payout.creator_id,
                        amount=payout.amount,
                        currency=payout.currency,
                        included_transaction_ids=ids,
                        status=payout.status.value,
                        scheduled_date=payout.scheduled_date,
                        attempts=[a.to_dict() for a in payout.attempts],
                        created_at=payout.created_at,
                        updated_at=payout.updated_at,
                    )
                )
                await session.flush()

                claim = (
                    update(TransactionRecord)
                    .where(
                        TransactionRecord.id.in_(ids),
                        TransactionRecord.payout_id.is_(None),
                        TransactionRecord.status == TransactionStatus.COMPLETED.value,
                        TransactionRecord.direct_payout.is_(False),
                    )
                    .values(payout_id=payout.id)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(claim)
                if result.rowcount != len(ids):
                    raise _ClaimConflict(result.rowcount)

    async def get_payout(self, payout_id: str) -> Optional[Payout]:
        async with self.session_factory() as session:
            record = await session.get(PayoutRecord, payout_id)
            return _to_payout(record) if record else None

    async def list_payouts(
        self,
        *,
        status: Optional[PayoutStatus] = None,
        creator_id: Optional[str] = None,
        processing_started_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Payout]:
        stmt = select(PayoutRecord)
        if status is not None:
            stmt = stmt.where(PayoutRecord.status == status.value)
        if creator_id is not None:
            stmt = stmt.where(PayoutRecord.creator_id == creator_id)
        if processing_started_before is not None:
            stmt = stmt.where(PayoutRecord.processing_started_at < processing_started_before)
        stmt = stmt.order_by(PayoutRecord.created_at, PayoutRecord.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
            return [_to_payout(r) for r in records]

    async def latest_payout_for_creator(
        self, creator_id: str, currency: Optional[str] = None
    ) -> Optional[Payout]:
        stmt = select(PayoutRecord).where(PayoutRecord.creator_id == creator_id)
        if currency is not None:
            stmt = stmt.where(PayoutRecord.currency == currency)
        stmt = stmt.order_by(PayoutRecord.created_at.desc()).limit(1)
        async with self.session_factory() as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _to_payout(record) if record else None

    async def compare_and_set_payout(
        self,
        payout: Payout,
        expected_status: PayoutStatus,
        expected_reference: Optional[str],
    ) -> bool:
        reference_matches = (
            PayoutRecord.disbursement_reference.is_(None)
            if expected_reference is None
            else PayoutRecord.disbursement_reference == expected_reference
        )
        stmt = (
            update(PayoutRecord)
            .where(
                PayoutRecord.id == payout.id,
                PayoutRecord.status == expected_status.value,
                reference_matches,
            )
            .values(
                status=payout.status.value,
                completed_at=payout.completed_at,
                failure_reason=payout.failure_reason,
                disbursement_reference=payout.disbursement_reference,
                processing_started_at=payout.processing_started_at,
                attempts=[a.to_dict() for a in payout.attempts],
                updated_at=payout.updated_at,
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def get_profile(self, creator_id: str) -> Optional[CreatorPaymentProfile]:
        async with self.session_factory() as session:
            record = await session.get(CreatorPaymentProfileRecord, creator_id)
            return _to_profile(record) if record else None

    async def save_profile(self, profile: CreatorPaymentProfile) -> None:
        async with self.session_factory() as session:
            await session.merge(
                CreatorPaymentProfileRecord(
                    creator_id=profile.creator_id,
                    preferred_method=profile.preferred_method.value,
                    momo_number=profile.momo_number,
                    momo_network=profile.momo_network,
                    stripe_connect_account_id=profile.stripe_connect_account_id,
                    paypal_email=profile.paypal_email,
                    minimum_payout_amount=profile.minimum_payout_amount,
                    payout_schedule=profile.payout_schedule.value,
                    is_verified=profile.is_verified,
                    updated_at=profile.updated_at or datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def add_outbox_message(self, message: OutboxMessage) -> OutboxMessage:
        record = OutboxEvent(
            aggregate_id=message.aggregate_id,
            aggregate_type=message.aggregate_type,
            event_type=message.event_type,
            payload=message.payload,
            published=False,
            created_at=message.created_at,
        )
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()
            return _to_outbox_message(record)

    async def fetch_unpublished_outbox(self, limit: int = 100) -> List[OutboxMessage]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
        )
        async with self.session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
            return [_to_outbox_message(r) for r in records]

    async def mark_outbox_published(self, message_id: int, published_at: datetime) -> None:
        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id == message_id)
            .values(published=True, published_at=published_at)
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def count_unpublished_outbox(self) -> int:
        stmt = select(func.count()).select_from(OutboxEvent).where(OutboxEvent.published.is_(False))
        async with self.session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def ping(self) -> None:
        async with self.session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
