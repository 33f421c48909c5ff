"""
Tests for the transaction ledger: idempotent, order-tolerant status changes.
"""
import asyncio
from typing import Any, Callable

import pytest

from eventpay.core.errors import ConsistencyError, InvalidAmount, InvalidStateError
from eventpay.core.ledger import TransactionLedger, can_transition
from eventpay.core.models import (
    ApplyOutcome,
    EventOutcome,
    GatewayId,
    PaymentEvent,
    Transaction,
    TransactionStatus,
)
from eventpay.database.memory import InMemorySettlementRepository


def stripe_event(outcome: EventOutcome, ref: str = "pi_1", **kwargs: Any) -> PaymentEvent:
    return PaymentEvent(
        gateway_id=GatewayId.STRIPE, outcome=outcome, gateway_transaction_id=ref, **kwargs
    )


async def open_created(
    ledger: TransactionLedger, make_transaction: Callable[..., Transaction], **overrides: Any
) -> Transaction:
    transaction = make_transaction(status=TransactionStatus.CREATED, **overrides)
    assert await ledger.open_transaction(transaction)
    return transaction


class TestTransactionLedger:
    """Test suite for TransactionLedger."""

    @pytest.mark.unit
    def test_transition_table(self) -> None:
        assert can_transition(TransactionStatus.CREATED, TransactionStatus.COMPLETED)
        assert can_transition(TransactionStatus.PENDING, TransactionStatus.FAILED)
        assert can_transition(TransactionStatus.COMPLETED, TransactionStatus.REFUNDED)
        assert not can_transition(TransactionStatus.COMPLETED, TransactionStatus.FAILED)
        assert not can_transition(TransactionStatus.FAILED, TransactionStatus.COMPLETED)
        assert not can_transition(TransactionStatus.REFUNDED, TransactionStatus.COMPLETED)
        assert not can_transition(TransactionStatus.PENDING, TransactionStatus.REFUNDED)

    @pytest.mark.asyncio
    async def test_success_then_duplicate(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = await open_created(ledger, make_transaction)

        first = await ledger.apply(stripe_event(EventOutcome.SUCCEEDED, provider_event_id="evt_a"))
        second = await ledger.apply(stripe_event(EventOutcome.SUCCEEDED, provider_event_id="evt_b"))

        assert first == ApplyOutcome.APPLIED
        assert second == ApplyOutcome.DUPLICATE
        stored = await repository.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.completed_at is not None

        messages = await repository.fetch_unpublished_outbox()
        assert [m.event_type for m in messages] == ["transaction.completed"]
        assert messages[0].payload["split"]["creator_net"] == 4225

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicates_complete_once(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        """Ten deliveries of the same success race; exactly one is applied."""
        transaction = await open_created(ledger, make_transaction)

        results = await asyncio.gather(
            *[ledger.apply(stripe_event(EventOutcome.SUCCEEDED)) for _ in range(10)]
        )

        assert results.count(ApplyOutcome.APPLIED) == 1
        assert results.count(ApplyOutcome.DUPLICATE) == 9
        history = await repository.list_transaction_events(transaction.id)
        assert [e.to_status for e in history] == [
            TransactionStatus.CREATED,
            TransactionStatus.COMPLETED,
        ]
        assert await repository.count_unpublished_outbox() == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_success_and_failure_pick_one(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = await open_created(ledger, make_transaction)

        results = await asyncio.gather(
            ledger.apply(stripe_event(EventOutcome.SUCCEEDED)),
            ledger.apply(stripe_event(EventOutcome.FAILED, failure_reason="card_declined")),
        )

        assert results.count(ApplyOutcome.APPLIED) == 1
        assert results.count(ApplyOutcome.CONFLICT) == 1
        stored = await repository.get_transaction(transaction.id)
        assert stored.status in (TransactionStatus.COMPLETED, TransactionStatus.FAILED)

    @pytest.mark.asyncio
    async def test_failure_after_completion_is_conflict(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = await open_created(ledger, make_transaction)
        await ledger.apply(stripe_event(EventOutcome.SUCCEEDED))

        outcome = await ledger.apply(stripe_event(EventOutcome.FAILED, failure_reason="late"))

        assert outcome == ApplyOutcome.CONFLICT
        stored = await repository.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.failure_reason is None

    @pytest.mark.asyncio
    async def test_late_pending_is_stale(
        self, ledger: TransactionLedger, make_transaction: Callable[..., Transaction]
    ) -> None:
        await open_created(ledger, make_transaction)
        await ledger.apply(stripe_event(EventOutcome.SUCCEEDED))

        assert await ledger.apply(stripe_event(EventOutcome.PENDING)) == ApplyOutcome.STALE

    @pytest.mark.asyncio
    async def test_completion_after_refund_is_stale(
        self, ledger: TransactionLedger, make_transaction: Callable[..., Transaction]
    ) -> None:
        await open_created(ledger, make_transaction)
        await ledger.apply(stripe_event(EventOutcome.SUCCEEDED))
        await ledger.apply(stripe_event(EventOutcome.REFUNDED))

        assert await ledger.apply(stripe_event(EventOutcome.SUCCEEDED)) == ApplyOutcome.STALE

    @pytest.mark.asyncio
    async def test_failure_records_reason(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = await open_created(ledger, make_transaction)

        outcome = await ledger.apply(
            stripe_event(EventOutcome.FAILED, failure_reason="insufficient_funds")
        )

        assert outcome == ApplyOutcome.APPLIED
        stored = await repository.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.FAILED
        assert stored.failure_reason == "insufficient_funds"
        # Failures do not send receipts
        assert await repository.count_unpublished_outbox() == 0

    @pytest.mark.asyncio
    async def test_refund_before_completion_steps_through_completed(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        """A refund that outran the success notification still lands on refunded."""
        transaction = await open_created(ledger, make_transaction)
        await ledger.apply(stripe_event(EventOutcome.PENDING))

        outcome = await ledger.apply(stripe_event(EventOutcome.REFUNDED))

        assert outcome == ApplyOutcome.APPLIED
        stored = await repository.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.REFUNDED
        assert stored.refunded_at is not None
        history = await repository.list_transaction_events(transaction.id)
        assert [(e.from_status, e.to_status) for e in history] == [
            (None, TransactionStatus.CREATED),
            (TransactionStatus.CREATED, TransactionStatus.PENDING),
            (TransactionStatus.PENDING, TransactionStatus.COMPLETED),
            (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED),
        ]

    @pytest.mark.asyncio
    async def test_unknown_reference(self, ledger: TransactionLedger) -> None:
        outcome = await ledger.apply(stripe_event(EventOutcome.SUCCEEDED, ref="pi_missing"))

        assert outcome == ApplyOutcome.UNKNOWN

    @pytest.mark.asyncio
    async def test_event_before_reference_attaches_it(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        """A webhook that beats the charge response is matched by our transaction id."""
        transaction = await open_created(ledger, make_transaction, gateway_transaction_id=None)

        outcome = await ledger.apply(
            stripe_event(EventOutcome.SUCCEEDED, ref="pi_new", transaction_id=transaction.id)
        )

        assert outcome == ApplyOutcome.APPLIED
        stored = await repository.get_transaction(transaction.id)
        assert stored.gateway_transaction_id == "pi_new"
        assert stored.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_mismatched_reference_is_unknown(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = await open_created(ledger, make_transaction)

        outcome = await ledger.apply(
            stripe_event(EventOutcome.SUCCEEDED, ref="pi_other", transaction_id=transaction.id)
        )

        assert outcome == ApplyOutcome.UNKNOWN
        stored = await repository.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.CREATED

    @pytest.mark.asyncio
    async def test_open_transaction_requires_created(
        self, ledger: TransactionLedger, make_transaction: Callable[..., Transaction]
    ) -> None:
        with pytest.raises(InvalidStateError):
            await ledger.open_transaction(make_transaction(status=TransactionStatus.PENDING))

    @pytest.mark.asyncio
    async def test_open_transaction_duplicate_key(
        self, ledger: TransactionLedger, make_transaction: Callable[..., Transaction]
    ) -> None:
        await open_created(ledger, make_transaction, idempotency_key="same")
        duplicate = make_transaction(
            status=TransactionStatus.CREATED, idempotency_key="same", gateway_transaction_id=None
        )

        assert await ledger.open_transaction(duplicate) is False

    @pytest.mark.asyncio
    async def test_attach_reference_is_write_once(
        self, ledger: TransactionLedger, make_transaction: Callable[..., Transaction]
    ) -> None:
        transaction = await open_created(ledger, make_transaction, gateway_transaction_id=None)

        attached = await ledger.attach_reference(transaction.id, "pi_first")
        again = await ledger.attach_reference(transaction.id, "pi_first")

        assert attached.gateway_transaction_id == "pi_first"
        assert again.gateway_transaction_id == "pi_first"
        with pytest.raises(ConsistencyError):
            await ledger.attach_reference(transaction.id, "pi_second")

    @pytest.mark.asyncio
    async def test_fail_initiation(
        self, ledger: TransactionLedger, make_transaction: Callable[..., Transaction]
    ) -> None:
        transaction = await open_created(ledger, make_transaction, gateway_transaction_id=None)

        failed = await ledger.fail_initiation(transaction.id, "declined:card_declined")

        assert failed.status == TransactionStatus.FAILED
        assert failed.failure_reason == "declined:card_declined"

    @pytest.mark.asyncio
    async def test_partial_refund_is_ignored(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = await open_created(ledger, make_transaction)
        await ledger.apply(stripe_event(EventOutcome.SUCCEEDED))

        partial = await ledger.apply(stripe_event(EventOutcome.REFUNDED, amount=100))

        assert partial == ApplyOutcome.IGNORED
        assert (await repository.get_transaction(transaction.id)).status == TransactionStatus.COMPLETED

        full = await ledger.apply(stripe_event(EventOutcome.REFUNDED, amount=5000))

        assert full == ApplyOutcome.APPLIED
        assert (await repository.get_transaction(transaction.id)).status == TransactionStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_receipt_uses_split_recorded_at_charge_time(
        self,
        ledger: TransactionLedger,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
        mocker: Any,
    ) -> None:
        recorded = {
            "gross_amount": 5000,
            "processor_fee": 175,
            "platform_commission": 600,
            "creator_net": 4225,
            "customer_total": 5000,
        }
        await open_created(ledger, make_transaction, details={"split": recorded})
        await open_created(ledger, make_transaction)
        # The fee schedule changed since the charges were taken
        mocker.patch.object(
            ledger.fee_calculator, "split", side_effect=InvalidAmount("Amount does not cover fees")
        )

        assert await ledger.apply(stripe_event(EventOutcome.SUCCEEDED, ref="pi_1")) == ApplyOutcome.APPLIED
        assert await ledger.apply(stripe_event(EventOutcome.SUCCEEDED, ref="pi_2")) == ApplyOutcome.APPLIED

        first, second = await repository.fetch_unpublished_outbox()
        assert first.payload["split"] == recorded
        assert "split" not in second.payload
