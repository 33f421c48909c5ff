"""
Transaction ledger.

Sole owner of Transaction.status. Applies normalized payment events to
transactions under the lifecycle

    created -> pending -> {completed, failed}
    created -> {completed, failed}
    completed -> refunded

Every change is a compare-and-set on the current status, so duplicated,
reordered and concurrent notifications converge on one history: a
transition is applied at most once, terminal states never regress, and a
provider report contradicting a terminal state is logged, not applied.
"""
from typing import Any, Dict, Optional

import structlog

from eventpay.core.errors import (
    ConsistencyError,
    InvalidStateError,
    NotFoundError,
    SettlementError,
)
from eventpay.core.fees import FeeCalculator
from eventpay.core.models import (
    ApplyOutcome,
    EventOutcome,
    PaymentEvent,
    Transaction,
    TransactionEvent,
    TransactionStatus,
    utcnow,
)
from eventpay.core.outbox import TRANSACTION_COMPLETED, TRANSACTION_REFUNDED, NotificationSink
from eventpay.database.repository import SettlementRepository
from eventpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    TransactionStatus.CREATED: {
        TransactionStatus.PENDING,
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
    },
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
    TransactionStatus.COMPLETED: {TransactionStatus.REFUNDED},
}

EVENT_TARGETS = {
    EventOutcome.PENDING: TransactionStatus.PENDING,
    EventOutcome.SUCCEEDED: TransactionStatus.COMPLETED,
    EventOutcome.FAILED: TransactionStatus.FAILED,
    EventOutcome.REFUNDED: TransactionStatus.REFUNDED,
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


class TransactionLedger:
    """Applies payment events to transactions with per-transaction compare-and-set."""

    def __init__(
        self,
        repository: SettlementRepository,
        notifications: Optional[NotificationSink] = None,
        fee_calculator: Optional[FeeCalculator] = None,
        max_cas_attempts: int = 5,
    ):
        """
        Initialize ledger.

        Args:
            repository: Settlement store
            notifications: Sink for receipt notifications
            fee_calculator: Used to include the split in receipts
            max_cas_attempts: Re-reads allowed when a concurrent writer moves the status
        """
        self.repository = repository
        self.notifications = notifications
        self.fee_calculator = fee_calculator
        self.max_cas_attempts = max_cas_attempts

    async def open_transaction(self, transaction: Transaction) -> bool:
        """
        Record a new transaction in ``created``.

        Returns:
            bool: False if a transaction with the same idempotency key exists
        """
        if transaction.status != TransactionStatus.CREATED:
            raise InvalidStateError("New transactions must start in 'created'")
        inserted = await self.repository.insert_transaction(transaction)
        if inserted:
            await self._audit(transaction.id, None, TransactionStatus.CREATED, "charge")
            logger.info(
                "transaction_opened",
                transaction_id=transaction.id,
                gateway=transaction.gateway_id.value,
                gross_amount=transaction.gross_amount,
                currency=transaction.currency,
            )
        return inserted

    async def attach_reference(
        self,
        transaction_id: str,
        gateway_transaction_id: str,
        direct_payout: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """
        Attach the provider's reference to a transaction.

        The reference is written once; attaching the same reference again is
        a no-op and a different one is refused.

        Raises:
            NotFoundError: If the transaction does not exist
            ConsistencyError: If a different reference is already attached
        """
        attached = await self.repository.assign_gateway_reference(
            transaction_id,
            gateway_transaction_id,
            updated_at=utcnow(),
            direct_payout=direct_payout,
            details=details,
        )
        transaction = await self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if transaction.gateway_transaction_id != gateway_transaction_id:
            logger.error(
                "gateway_reference_conflict",
                transaction_id=transaction_id,
                existing=transaction.gateway_transaction_id,
                offered=gateway_transaction_id,
            )
            raise ConsistencyError(
                f"Transaction {transaction_id} already has a different gateway reference",
                transaction_id=transaction_id,
                current=str(transaction.gateway_transaction_id),
                reported=gateway_transaction_id,
            )
        if attached:
            logger.info(
                "gateway_reference_attached",
                transaction_id=transaction_id,
                gateway_transaction_id=gateway_transaction_id,
            )
        return transaction

    async def fail_initiation(self, transaction_id: str, reason: str) -> Optional[Transaction]:
        """Mark a transaction failed because the gateway refused to start the charge."""
        changed = await self.repository.compare_and_set_status(
            transaction_id,
            TransactionStatus.CREATED,
            TransactionStatus.FAILED,
            updated_at=utcnow(),
            failure_reason=reason,
        )
        if changed:
            metrics.record_ledger_transition(TransactionStatus.CREATED.value, TransactionStatus.FAILED.value)
            await self._audit(
                transaction_id,
                TransactionStatus.CREATED,
                TransactionStatus.FAILED,
                "charge",
                {"failure_reason": reason},
            )
        return await self.repository.get_transaction(transaction_id)

    async def apply(self, event: PaymentEvent, source: str = "webhook") -> ApplyOutcome:
        """
        Apply a normalized payment event.

        Args:
            event: Normalized provider event
            source: Where the event came from (webhook, poll, capture, refund)

        Returns:
            ApplyOutcome: applied, duplicate, conflict, stale, unknown or ignored (partial refund)
        """
        target = EVENT_TARGETS[event.outcome]
        transaction = await self._resolve(event)
        if transaction is None:
            logger.warning(
                "ledger_unknown_transaction",
                gateway=event.gateway_id.value,
                gateway_transaction_id=event.gateway_transaction_id,
                transaction_id=event.transaction_id,
            )
            return ApplyOutcome.UNKNOWN

        log = logger.bind(
            transaction_id=transaction.id,
            gateway=event.gateway_id.value,
            provider_event_id=event.provider_event_id,
            target=target.value,
        )
        if self._is_partial_refund(transaction, event):
            # Only a refund of the full charged amount moves a sale to refunded
            log.info("ledger_partial_refund_ignored", refunded_amount=event.amount)
            return ApplyOutcome.IGNORED

        applied_any = False

        for _ in range(self.max_cas_attempts):
            current = transaction.status
            if current == target:
                if applied_any:
                    return ApplyOutcome.APPLIED
                log.info("ledger_duplicate_event", current=current.value)
                return ApplyOutcome.DUPLICATE

            step = target
            if not can_transition(current, target):
                if (
                    target == TransactionStatus.REFUNDED
                    and current in (TransactionStatus.CREATED, TransactionStatus.PENDING)
                ):
                    # A refund proves the payment succeeded; record the completion first
                    step = TransactionStatus.COMPLETED
                else:
                    return self._reject(transaction, target, event, log)

            changed = await self._transition(transaction, step, event, source)
            if changed:
                applied_any = True
                if step == target:
                    return ApplyOutcome.APPLIED

            refreshed = await self.repository.get_transaction(transaction.id)
            if refreshed is None:
                return ApplyOutcome.UNKNOWN
            transaction = refreshed

        log.error("ledger_cas_retries_exhausted", current=transaction.status.value)
        return ApplyOutcome.APPLIED if applied_any else ApplyOutcome.STALE

    def _reject(
        self,
        transaction: Transaction,
        target: TransactionStatus,
        event: PaymentEvent,
        log: Any,
    ) -> ApplyOutcome:
        current = transaction.status
        # Reports that lag behind the recorded history
        if target == TransactionStatus.PENDING or (
            target == TransactionStatus.COMPLETED and current == TransactionStatus.REFUNDED
        ):
            log.info("ledger_stale_event", current=current.value)
            return ApplyOutcome.STALE

        error = ConsistencyError(
            f"Provider reported {target.value} for transaction in {current.value}",
            transaction_id=transaction.id,
            current=current.value,
            reported=target.value,
        )
        metrics.record_ledger_conflict(event.gateway_id.value)
        log.error(
            "ledger_terminal_conflict",
            current=current.value,
            reported=target.value,
            failure_reason=event.failure_reason,
            error=str(error),
        )
        return ApplyOutcome.CONFLICT

    async def _transition(
        self,
        transaction: Transaction,
        new: TransactionStatus,
        event: PaymentEvent,
        source: str,
    ) -> bool:
        now = utcnow()
        changed = await self.repository.compare_and_set_status(
            transaction.id,
            transaction.status,
            new,
            updated_at=now,
            failure_reason=event.failure_reason if new == TransactionStatus.FAILED else None,
            completed_at=now if new == TransactionStatus.COMPLETED else None,
            refunded_at=now if new == TransactionStatus.REFUNDED else None,
        )
        if not changed:
            return False

        metrics.record_ledger_transition(transaction.status.value, new.value)
        logger.info(
            "transaction_status_changed",
            transaction_id=transaction.id,
            from_status=transaction.status.value,
            to_status=new.value,
            source=source,
        )
        await self._audit(
            transaction.id,
            transaction.status,
            new,
            source,
            {
                "provider_event_id": event.provider_event_id,
                "failure_reason": event.failure_reason,
            },
        )
        if new == TransactionStatus.REFUNDED and transaction.payout_id:
            logger.warning(
                "refund_after_payout",
                transaction_id=transaction.id,
                payout_id=transaction.payout_id,
            )
        await self._notify(transaction, new)
        return True

    async def _resolve(self, event: PaymentEvent) -> Optional[Transaction]:
        """Find the transaction an event refers to."""
        if event.gateway_transaction_id:
            transaction = await self.repository.get_transaction_by_gateway_ref(
                event.gateway_id, event.gateway_transaction_id
            )
            if transaction is not None:
                return transaction

        if not event.transaction_id:
            return None
        candidate = await self.repository.get_transaction(event.transaction_id)
        if candidate is None or candidate.gateway_id != event.gateway_id:
            return None
        if event.gateway_transaction_id is None:
            return candidate
        if candidate.gateway_transaction_id is None:
            # The event outran the charge response; attach the reference it carries
            try:
                return await self.attach_reference(candidate.id, event.gateway_transaction_id)
            except ConsistencyError:
                return None
        if candidate.gateway_transaction_id != event.gateway_transaction_id:
            logger.warning(
                "ledger_reference_mismatch",
                transaction_id=candidate.id,
                recorded=candidate.gateway_transaction_id,
                reported=event.gateway_transaction_id,
            )
            return None
        return candidate

    async def _audit(
        self,
        transaction_id: str,
        from_status: Optional[TransactionStatus],
        to_status: TransactionStatus,
        source: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.repository.append_transaction_event(
            TransactionEvent(
                transaction_id=transaction_id,
                from_status=from_status,
                to_status=to_status,
                source=source,
                created_at=utcnow(),
                details={k: v for k, v in (details or {}).items() if v is not None},
            )
        )

    def charged_split(self, transaction: Transaction) -> Optional[Dict[str, int]]:
        """
        The split the customer was charged under.

        Prefers the split recorded at charge time; recomputing with the
        current fee schedule is the fallback for transactions without one.
        """
        recorded = transaction.details.get("split")
        if recorded:
            return dict(recorded)
        if self.fee_calculator is None:
            return None
        try:
            return self.fee_calculator.split(
                transaction.gross_amount,
                transaction.gateway_id,
                transaction.creator_tier,
                transaction.pass_fee_to_customer,
            ).to_dict()
        except SettlementError as e:
            logger.warning("ledger_split_unavailable", transaction_id=transaction.id, error=str(e))
            return None

    def _is_partial_refund(self, transaction: Transaction, event: PaymentEvent) -> bool:
        if event.outcome != EventOutcome.REFUNDED or event.amount is None:
            return False
        split = self.charged_split(transaction)
        charged = split["customer_total"] if split else transaction.gross_amount
        return event.amount < charged

    async def _notify(self, transaction: Transaction, new: TransactionStatus) -> None:
        if self.notifications is None:
            return
        if new not in (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED):
            return

        payload: Dict[str, Any] = {
            "transaction_id": transaction.id,
            "creator_id": transaction.creator_id,
            "event_id": transaction.event_id,
            "ticket_id": transaction.ticket_id,
            "gateway": transaction.gateway_id.value,
            "gross_amount": transaction.gross_amount,
            "currency": transaction.currency,
        }
        split = self.charged_split(transaction)
        if split is not None:
            payload["split"] = split

        event_type = (
            TRANSACTION_COMPLETED if new == TransactionStatus.COMPLETED else TRANSACTION_REFUNDED
        )
        await self.notifications.notify(event_type, "transaction", transaction.id, payload)
