"""
Tests for payout disbursement, recovery and retries.
"""
import asyncio
import dataclasses
from datetime import timedelta
from typing import Callable

import pytest

from eventpay.core.errors import (
    DisbursementError,
    GatewayError,
    GatewayErrorCategory,
    InvalidStateError,
    NoPaymentProfile,
    NotFoundError,
)
from eventpay.core.models import (
    CreatorPaymentProfile,
    DisbursementResult,
    DisbursementStatus,
    Payout,
    PayoutMethod,
    PayoutStatus,
    Transaction,
    utcnow,
)
from eventpay.core.payouts import PayoutProcessor
from eventpay.database.memory import InMemorySettlementRepository
from eventpay.integrations.disbursement import RailRouter

from .conftest import FakeRail


async def pending_payout(
    repository: InMemorySettlementRepository,
    make_transaction: Callable[..., Transaction],
    creator_id: str = "creator_1",
) -> Payout:
    transactions = [make_transaction(creator_id=creator_id) for _ in range(2)]
    for transaction in transactions:
        await repository.insert_transaction(transaction)
    now = utcnow()
    payout = Payout(
        id=f"payout_{transactions[0].id}",
        creator_id=creator_id,
        amount=8450,
        currency="USD",
        included_transaction_ids=tuple(t.id for t in transactions),
        status=PayoutStatus.PENDING,
        scheduled_date=now,
        created_at=now,
        updated_at=now,
    )
    assert await repository.create_payout_with_claims(payout)
    return payout


def transient_error() -> GatewayError:
    return GatewayError("connection reset", code="network", category=GatewayErrorCategory.TRANSIENT)


class TestPayoutProcessor:
    """Test suite for PayoutProcessor."""

    @pytest.mark.asyncio
    async def test_disburse_to_verified_profile(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)

        result = await processor.process(payout.id)

        assert result.status == PayoutStatus.COMPLETED
        assert result.completed_at is not None
        assert rail.submissions == [result.disbursement_reference]
        (attempt,) = result.attempts
        assert attempt.number == 1
        assert attempt.rail == "fake_transfer"
        assert attempt.outcome == "completed"

        messages = await repository.fetch_unpublished_outbox()
        assert [m.event_type for m in messages] == ["payout.completed"]
        assert messages[0].payload["amount"] == 8450

    @pytest.mark.asyncio
    async def test_no_payment_profile(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        payout = await pending_payout(repository, make_transaction)

        result = await processor.process(payout.id)

        assert result.status == PayoutStatus.FAILED
        assert result.failure_reason == "no_payment_profile"
        assert result.attempts == ()
        assert rail.submissions == []
        messages = await repository.fetch_unpublished_outbox()
        assert [m.event_type for m in messages] == ["payout.failed"]

    @pytest.mark.asyncio
    async def test_unverified_profile(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(dataclasses.replace(verified_profile, is_verified=False))
        payout = await pending_payout(repository, make_transaction)

        result = await processor.process(payout.id)

        assert result.failure_reason == "payment_profile_unverified"

    @pytest.mark.asyncio
    async def test_method_without_rail(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(
            dataclasses.replace(
                verified_profile,
                preferred_method=PayoutMethod.PAYPAL,
                paypal_email="creator@example.com",
            )
        )
        payout = await pending_payout(repository, make_transaction)

        result = await processor.process(payout.id)

        assert result.failure_reason == "payout_method_unsupported"

    @pytest.mark.asyncio
    async def test_process_is_idempotent(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)

        await processor.process(payout.id)
        again = await processor.process(payout.id)

        assert again.status == PayoutStatus.COMPLETED
        assert len(rail.submissions) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_processing_submits_once(
        self,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        """Two workers picking up the same payout disburse it once."""
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)
        workers = [PayoutProcessor(repository, RailRouter([rail])) for _ in range(3)]

        results = await asyncio.gather(*[w.process(payout.id) for w in workers])

        assert len(rail.submissions) == 1
        stored = await repository.get_payout(payout.id)
        assert stored.status == PayoutStatus.COMPLETED
        assert len(stored.attempts) == 1
        assert {r.id for r in results} == {payout.id}

    @pytest.mark.asyncio
    async def test_transient_error_leaves_payout_processing(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)
        rail.outcomes.append(transient_error())

        result = await processor.process(payout.id)

        assert result.status == PayoutStatus.PROCESSING
        assert result.disbursement_reference == rail.submissions[0]
        assert result.processing_started_at is not None

    @pytest.mark.asyncio
    async def test_rejected_disbursement_fails(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)
        rail.outcomes.append(DisbursementError("account closed", "account_closed"))

        result = await processor.process(payout.id)

        assert result.status == PayoutStatus.FAILED
        assert result.failure_reason == "account_closed"
        assert result.attempts[0].outcome == "failed"
        assert result.attempts[0].reason == "account_closed"

    @pytest.mark.asyncio
    async def test_rail_pending_result_stays_processing(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)
        rail.outcomes.append(DisbursementResult(status=DisbursementStatus.PENDING))

        result = await processor.process(payout.id)

        assert result.status == PayoutStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_recover_resubmits_unseen_reference(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        """A submission the provider never saw is re-driven under the same reference."""
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)
        rail.outcomes.append(transient_error())
        stuck = await processor.process(payout.id)

        recovered = await processor.recover(stuck)

        assert recovered.status == PayoutStatus.COMPLETED
        assert rail.submissions == [stuck.disbursement_reference, stuck.disbursement_reference]
        assert len(recovered.attempts) == 1

    @pytest.mark.asyncio
    async def test_recover_settles_from_lookup(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        """A submission that did reach the provider is never paid twice."""
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)
        rail.outcomes.append(transient_error())
        stuck = await processor.process(payout.id)
        rail.lookups[stuck.disbursement_reference] = DisbursementResult(
            status=DisbursementStatus.SUCCEEDED, provider_reference="tr_1"
        )

        recovered = await processor.recover(stuck)

        assert recovered.status == PayoutStatus.COMPLETED
        assert len(rail.submissions) == 1

    @pytest.mark.asyncio
    async def test_recover_lookup_failure(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)
        rail.outcomes.append(transient_error())
        stuck = await processor.process(payout.id)
        rail.lookups[stuck.disbursement_reference] = DisbursementResult(
            status=DisbursementStatus.FAILED, reason="transfer_reversed"
        )

        recovered = await processor.recover(stuck)

        assert recovered.status == PayoutStatus.FAILED
        assert recovered.failure_reason == "transfer_reversed"

    @pytest.mark.asyncio
    async def test_stale_payouts(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)
        rail.outcomes.append(transient_error())
        await processor.process(payout.id)

        assert await processor.stale_payouts(utcnow()) == []
        later = utcnow() + timedelta(seconds=901)
        assert [p.id for p in await processor.stale_payouts(later)] == [payout.id]

        recovered = await processor.recover_stale(later)
        assert [p.status for p in recovered] == [PayoutStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_retry_appends_attempt(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await repository.save_profile(verified_profile)
        payout = await pending_payout(repository, make_transaction)
        rail.outcomes.append(DisbursementError("limit exceeded", "limit_exceeded"))
        failed = await processor.process(payout.id)

        retried = await processor.retry(payout.id)

        assert retried.id == failed.id
        assert retried.status == PayoutStatus.COMPLETED
        assert retried.failure_reason is None
        assert [a.number for a in retried.attempts] == [1, 2]
        assert [a.outcome for a in retried.attempts] == ["failed", "completed"]
        assert retried.attempts[0].reference != retried.attempts[1].reference
        assert retried.included_transaction_ids == payout.included_transaction_ids

    @pytest.mark.asyncio
    async def test_retry_requires_failed(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        payout = await pending_payout(repository, make_transaction)

        with pytest.raises(InvalidStateError, match="Cannot retry"):
            await processor.retry(payout.id)

    @pytest.mark.asyncio
    async def test_retry_without_profile(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        payout = await pending_payout(repository, make_transaction)
        await processor.process(payout.id)

        with pytest.raises(NoPaymentProfile):
            await processor.retry(payout.id)

    @pytest.mark.asyncio
    async def test_retry_after_profile_added(
        self,
        processor: PayoutProcessor,
        repository: InMemorySettlementRepository,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        payout = await pending_payout(repository, make_transaction)
        await processor.process(payout.id)
        await repository.save_profile(verified_profile)

        retried = await processor.retry(payout.id)

        assert retried.status == PayoutStatus.COMPLETED
        assert len(retried.attempts) == 1

    @pytest.mark.asyncio
    async def test_unknown_payout(self, processor: PayoutProcessor) -> None:
        with pytest.raises(NotFoundError):
            await processor.process("missing")

    @pytest.mark.asyncio
    async def test_retry_candidates(
        self,
        repository: InMemorySettlementRepository,
        rail: FakeRail,
        make_transaction: Callable[..., Transaction],
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        processor = PayoutProcessor(repository, RailRouter([rail]), auto_retry_max_attempts=2)
        await repository.save_profile(verified_profile)

        retryable = await pending_payout(repository, make_transaction)
        rail.outcomes.append(DisbursementError("limit", "limit_exceeded"))
        await processor.process(retryable.id)

        exhausted = await pending_payout(repository, make_transaction)
        rail.outcomes.extend(
            [DisbursementError("limit", "limit_exceeded"), DisbursementError("limit", "limit_exceeded")]
        )
        await processor.process(exhausted.id)
        await processor.retry(exhausted.id)

        no_profile = await pending_payout(repository, make_transaction, creator_id="creator_2")
        await processor.process(no_profile.id)

        candidates = await processor.retry_candidates()

        assert [p.id for p in candidates] == [retryable.id]
