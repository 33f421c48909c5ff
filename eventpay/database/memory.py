"""
In-process settlement repository.

Used for development (``database_url=memory://``) and tests. Each operation
yields to the event loop before touching state, like a real I/O round trip,
then performs its check-and-write without awaiting, so conditional writes
are atomic with respect to other coroutines.
"""
import asyncio
import dataclasses
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog

from eventpay.core.models import (
    CreatorPaymentProfile,
    GatewayId,
    OutboxMessage,
    Payout,
    PayoutStatus,
    Transaction,
    TransactionEvent,
    TransactionStatus,
)
from eventpay.database.repository import SettlementRepository

logger = structlog.get_logger(__name__)


class InMemorySettlementRepository(SettlementRepository):
    """Dictionary-backed repository with the same conditional-write semantics as SQL."""

    def __init__(self) -> None:
        self.transactions: Dict[str, Transaction] = {}
        self.payouts: Dict[str, Payout] = {}
        self.profiles: Dict[str, CreatorPaymentProfile] = {}
        self.transaction_events: List[TransactionEvent] = []
        self.outbox: Dict[int, OutboxMessage] = {}
        self._idempotency_index: Dict[str, str] = {}
        self._gateway_ref_index: Dict[Tuple[str, str], str] = {}
        self._next_event_id = 1
        self._next_outbox_id = 1

    @staticmethod
    async def _io() -> None:
        await asyncio.sleep(0)

    async def insert_transaction(self, transaction: Transaction) -> bool:
        await self._io()
        if transaction.idempotency_key in self._idempotency_index:
            return False
        self.transactions[transaction.id] = transaction
        self._idempotency_index[transaction.idempotency_key] = transaction.id
        if transaction.gateway_transaction_id:
            key = (transaction.gateway_id.value, transaction.gateway_transaction_id)
            self._gateway_ref_index[key] = transaction.id
        return True

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        await self._io()
        return self.transactions.get(transaction_id)

    async def get_transaction_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        await self._io()
        transaction_id = self._idempotency_index.get(key)
        return self.transactions.get(transaction_id) if transaction_id else None

    async def get_transaction_by_gateway_ref(
        self, gateway_id: GatewayId, gateway_transaction_id: str
    ) -> Optional[Transaction]:
        await self._io()
        transaction_id = self._gateway_ref_index.get(
            (GatewayId(gateway_id).value, gateway_transaction_id)
        )
        return self.transactions.get(transaction_id) if transaction_id else None

    async def assign_gateway_reference(
        self,
        transaction_id: str,
        gateway_transaction_id: str,
        *,
        updated_at: datetime,
        direct_payout: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        await self._io()
        current = self.transactions.get(transaction_id)
        if current is None or current.gateway_transaction_id is not None:
            return False
        key = (current.gateway_id.value, gateway_transaction_id)
        if key in self._gateway_ref_index:
            logger.warning(
                "gateway_reference_in_use",
                transaction_id=transaction_id,
                gateway_transaction_id=gateway_transaction_id,
            )
            return False

        changes: Dict[str, Any] = {
            "gateway_transaction_id": gateway_transaction_id,
            "updated_at": updated_at,
        }
        if direct_payout is not None:
            changes["direct_payout"] = direct_payout
        if details:
            changes["details"] = {**current.details, **details}
        self.transactions[transaction_id] = dataclasses.replace(current, **changes)
        self._gateway_ref_index[key] = transaction_id
        return True

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
        await self._io()
        current = self.transactions.get(transaction_id)
        if current is None or current.status != expected:
            return False
        changes: Dict[str, Any] = {"status": new, "updated_at": updated_at}
        if failure_reason is not None:
            changes["failure_reason"] = failure_reason
        if completed_at is not None:
            changes["completed_at"] = completed_at
        if refunded_at is not None:
            changes["refunded_at"] = refunded_at
        self.transactions[transaction_id] = dataclasses.replace(current, **changes)
        return True

    async def list_claimable_transactions(self, window_end: datetime) -> List[Transaction]:
        await self._io()
        claimable = [
            t
            for t in self.transactions.values()
            if t.status == TransactionStatus.COMPLETED
            and t.payout_id is None
            and not t.direct_payout
            and t.created_at <= window_end
        ]
        return sorted(claimable, key=lambda t: (t.created_at, t.id))

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
        await self._io()
        results = []
        for t in self.transactions.values():
            if status is not None and t.status != status:
                continue
            if gateway_id is not None and t.gateway_id != GatewayId(gateway_id):
                continue
            if creator_id is not None and t.creator_id != creator_id:
                continue
            if updated_before is not None and not t.updated_at < updated_before:
                continue
            if created_from is not None and t.created_at < created_from:
                continue
            if created_to is not None and t.created_at > created_to:
                continue
            results.append(t)
        results.sort(key=lambda t: (-t.created_at.timestamp(), t.id))
        return results[:limit] if limit is not None else results

    async def append_transaction_event(self, event: TransactionEvent) -> None:
        await self._io()
        self.transaction_events.append(dataclasses.replace(event, id=self._next_event_id))
        self._next_event_id += 1

    async def list_transaction_events(self, transaction_id: str) -> List[TransactionEvent]:
        await self._io()
        return [e for e in self.transaction_events if e.transaction_id == transaction_id]

    async def create_payout_with_claims(self, payout: Payout) -> bool:
        await self._io()
        for transaction_id in payout.included_transaction_ids:
            t = self.transactions.get(transaction_id)
            if (
                t is None
                or t.payout_id is not None
                or t.status != TransactionStatus.COMPLETED
                or t.direct_payout
            ):
                logger.warning(
                    "payout_claim_conflict",
                    payout_id=payout.id,
                    creator_id=payout.creator_id,
                    transaction_id=transaction_id,
                )
                return False

        self.payouts[payout.id] = payout
        for transaction_id in payout.included_transaction_ids:
            self.transactions[transaction_id] = dataclasses.replace(
                self.transactions[transaction_id], payout_id=payout.id
            )
        return True

    async def get_payout(self, payout_id: str) -> Optional[Payout]:
        await self._io()
        return self.payouts.get(payout_id)

    async def list_payouts(
        self,
        *,
        status: Optional[PayoutStatus] = None,
        creator_id: Optional[str] = None,
        processing_started_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Payout]:
        await self._io()
        results = []
        for p in self.payouts.values():
            if status is not None and p.status != status:
                continue
            if creator_id is not None and p.creator_id != creator_id:
                continue
            if processing_started_before is not None and (
                p.processing_started_at is None
                or not p.processing_started_at < processing_started_before
            ):
                continue
            results.append(p)
        results.sort(key=lambda p: (p.created_at, p.id))
        return results[:limit] if limit is not None else results

    async def latest_payout_for_creator(
        self, creator_id: str, currency: Optional[str] = None
    ) -> Optional[Payout]:
        await self._io()
        candidates = [
            p
            for p in self.payouts.values()
            if p.creator_id == creator_id and (currency is None or p.currency == currency)
        ]
        return max(candidates, key=lambda p: p.created_at, default=None)

    async def compare_and_set_payout(
        self,
        payout: Payout,
        expected_status: PayoutStatus,
        expected_reference: Optional[str],
    ) -> bool:
        await self._io()
        current = self.payouts.get(payout.id)
        if (
            current is None
            or current.status != expected_status
            or current.disbursement_reference != expected_reference
        ):
            return False
        # Identity fields are immutable
        self.payouts[payout.id] = dataclasses.replace(
            payout,
            creator_id=current.creator_id,
            amount=current.amount,
            currency=current.currency,
            included_transaction_ids=current.included_transaction_ids,
            created_at=current.created_at,
        )
        return True

    async def get_profile(self, creator_id: str) -> Optional[CreatorPaymentProfile]:
        await self._io()
        return self.profiles.get(creator_id)

    async def save_profile(self, profile: CreatorPaymentProfile) -> None:
        await self._io()
        self.profiles[profile.creator_id] = profile

    async def add_outbox_message(self, message: OutboxMessage) -> OutboxMessage:
        await self._io()
        stored = dataclasses.replace(message, id=self._next_outbox_id)
        self.outbox[stored.id] = stored
        self._next_outbox_id += 1
        return stored

    async def fetch_unpublished_outbox(self, limit: int = 100) -> List[OutboxMessage]:
        await self._io()
        pending = [m for m in self.outbox.values() if m.published_at is None]
        return sorted(pending, key=lambda m: (m.created_at, m.id))[:limit]

    async def mark_outbox_published(self, message_id: int, published_at: datetime) -> None:
        await self._io()
        message = self.outbox.get(message_id)
        if message is not None:
            self.outbox[message_id] = dataclasses.replace(message, published_at=published_at)

    async def count_unpublished_outbox(self) -> int:
        await self._io()
        return sum(1 for m in self.outbox.values() if m.published_at is None)

    async def ping(self) -> None:
        return None
