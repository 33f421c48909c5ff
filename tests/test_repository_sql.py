"""
Tests for the SQLAlchemy settlement repository on SQLite.
"""
import dataclasses
from typing import AsyncIterator, Callable

import pytest
import pytest_asyncio

from eventpay.core.models import (
    CreatorPaymentProfile,
    OutboxMessage,
    Payout,
    PayoutAttempt,
    PayoutStatus,
    Transaction,
    TransactionEvent,
    TransactionStatus,
    utcnow,
)
from eventpay.database.connection import build_engine, build_session_factory, init_db
from eventpay.database.repository import SqlSettlementRepository


@pytest_asyncio.fixture
async def sql_repository(tmp_path) -> AsyncIterator[SqlSettlementRepository]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/settlement.db")
    await init_db(engine)
    yield SqlSettlementRepository(build_session_factory(engine))
    await engine.dispose()


def payout_for(*transactions: Transaction, payout_id: str = "payout_1") -> Payout:
    now = utcnow()
    return Payout(
        id=payout_id,
        creator_id=transactions[0].creator_id,
        amount=4225 * len(transactions),
        currency="USD",
        included_transaction_ids=tuple(t.id for t in transactions),
        status=PayoutStatus.PENDING,
        scheduled_date=now,
        created_at=now,
        updated_at=now,
    )


class TestSqlSettlementRepository:
    """Test suite for SqlSettlementRepository."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insert_and_read_transaction(
        self,
        sql_repository: SqlSettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = make_transaction(details={"continuation": {"client_secret": "s"}})

        assert await sql_repository.insert_transaction(transaction)
        assert not await sql_repository.insert_transaction(
            make_transaction(idempotency_key=transaction.idempotency_key)
        )

        stored = await sql_repository.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.gross_amount == 5000
        assert stored.details == {"continuation": {"client_secret": "s"}}
        assert stored.created_at.tzinfo is not None
        by_key = await sql_repository.get_transaction_by_idempotency_key(transaction.idempotency_key)
        assert by_key.id == transaction.id
        by_ref = await sql_repository.get_transaction_by_gateway_ref(
            transaction.gateway_id, transaction.gateway_transaction_id
        )
        assert by_ref.id == transaction.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_compare_and_set_status(
        self,
        sql_repository: SqlSettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = make_transaction(status=TransactionStatus.CREATED)
        await sql_repository.insert_transaction(transaction)
        now = utcnow()

        assert await sql_repository.compare_and_set_status(
            transaction.id,
            TransactionStatus.CREATED,
            TransactionStatus.COMPLETED,
            updated_at=now,
            completed_at=now,
        )
        assert not await sql_repository.compare_and_set_status(
            transaction.id,
            TransactionStatus.CREATED,
            TransactionStatus.FAILED,
            updated_at=now,
            failure_reason="late",
        )

        stored = await sql_repository.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.completed_at is not None
        assert stored.failure_reason is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_assign_gateway_reference_once(
        self,
        sql_repository: SqlSettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        first = make_transaction(status=TransactionStatus.CREATED, gateway_transaction_id=None)
        second = make_transaction(status=TransactionStatus.CREATED, gateway_transaction_id=None)
        await sql_repository.insert_transaction(first)
        await sql_repository.insert_transaction(second)

        assert await sql_repository.assign_gateway_reference(
            first.id, "pi_abc", updated_at=utcnow(), direct_payout=True, details={"k": "v"}
        )
        assert not await sql_repository.assign_gateway_reference(
            first.id, "pi_other", updated_at=utcnow()
        )
        # The same reference cannot be attached to another transaction of the gateway
        assert not await sql_repository.assign_gateway_reference(
            second.id, "pi_abc", updated_at=utcnow()
        )

        stored = await sql_repository.get_transaction(first.id)
        assert stored.gateway_transaction_id == "pi_abc"
        assert stored.direct_payout is True
        assert stored.details == {"k": "v"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_assign_gateway_reference_merges_details(
        self,
        sql_repository: SqlSettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = make_transaction(
            status=TransactionStatus.CREATED,
            gateway_transaction_id=None,
            details={"fingerprint": "abc", "split": {"customer_total": 5000}},
        )
        await sql_repository.insert_transaction(transaction)

        assert await sql_repository.assign_gateway_reference(
            transaction.id,
            "pi_abc",
            updated_at=utcnow(),
            details={"continuation": {"client_secret": "s"}},
        )

        stored = await sql_repository.get_transaction(transaction.id)
        assert stored.details == {
            "fingerprint": "abc",
            "split": {"customer_total": 5000},
            "continuation": {"client_secret": "s"},
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transaction_events(
        self,
        sql_repository: SqlSettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = make_transaction()
        await sql_repository.insert_transaction(transaction)
        for from_status, to_status in (
            (None, TransactionStatus.CREATED),
            (TransactionStatus.CREATED, TransactionStatus.COMPLETED),
        ):
            await sql_repository.append_transaction_event(
                TransactionEvent(
                    transaction_id=transaction.id,
                    from_status=from_status,
                    to_status=to_status,
                    source="webhook",
                    created_at=utcnow(),
                )
            )

        history = await sql_repository.list_transaction_events(transaction.id)

        assert [e.to_status for e in history] == [
            TransactionStatus.CREATED,
            TransactionStatus.COMPLETED,
        ]
        assert history[0].from_status is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_claims_are_all_or_nothing(
        self,
        sql_repository: SqlSettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        first, second = make_transaction(), make_transaction()
        await sql_repository.insert_transaction(first)
        await sql_repository.insert_transaction(second)

        assert await sql_repository.create_payout_with_claims(payout_for(second, payout_id="payout_a"))
        assert not await sql_repository.create_payout_with_claims(
            payout_for(first, second, payout_id="payout_b")
        )

        assert await sql_repository.get_payout("payout_b") is None
        assert (await sql_repository.get_transaction(first.id)).payout_id is None
        assert (await sql_repository.get_transaction(second.id)).payout_id == "payout_a"
        claimable = await sql_repository.list_claimable_transactions(utcnow())
        assert [t.id for t in claimable] == [first.id]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_compare_and_set_payout(
        self,
        sql_repository: SqlSettlementRepository,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = make_transaction()
        await sql_repository.insert_transaction(transaction)
        payout = payout_for(transaction)
        await sql_repository.create_payout_with_claims(payout)
        now = utcnow()
        processing = dataclasses.replace(
            payout,
            status=PayoutStatus.PROCESSING,
            disbursement_reference="ref_1",
            processing_started_at=now,
            updated_at=now,
            attempts=(PayoutAttempt(number=1, reference="ref_1", rail="stripe_transfer", started_at=now),),
        )

        assert await sql_repository.compare_and_set_payout(processing, PayoutStatus.PENDING, None)
        assert not await sql_repository.compare_and_set_payout(processing, PayoutStatus.PENDING, None)
        completed = dataclasses.replace(processing, status=PayoutStatus.COMPLETED, completed_at=now)
        assert not await sql_repository.compare_and_set_payout(
            completed, PayoutStatus.PROCESSING, "ref_other"
        )
        assert await sql_repository.compare_and_set_payout(
            completed, PayoutStatus.PROCESSING, "ref_1"
        )

        stored = await sql_repository.get_payout(payout.id)
        assert stored.status == PayoutStatus.COMPLETED
        assert stored.attempts[0].reference == "ref_1"
        assert stored.attempts[0].rail == "stripe_transfer"
        assert stored.included_transaction_ids == (transaction.id,)
        latest = await sql_repository.latest_payout_for_creator("creator_1", "USD")
        assert latest.id == payout.id
        assert [p.id for p in await sql_repository.list_payouts(status=PayoutStatus.COMPLETED)] == [
            payout.id
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_profile_upsert(
        self,
        sql_repository: SqlSettlementRepository,
        verified_profile: CreatorPaymentProfile,
    ) -> None:
        await sql_repository.save_profile(verified_profile)
        await sql_repository.save_profile(
            dataclasses.replace(verified_profile, minimum_payout_amount=5000)
        )

        stored = await sql_repository.get_profile("creator_1")

        assert stored.minimum_payout_amount == 5000
        assert stored.stripe_connect_account_id == "acct_creator_1"
        assert stored.is_verified is True
        assert await sql_repository.get_profile("creator_2") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_outbox(self, sql_repository: SqlSettlementRepository) -> None:
        message = await sql_repository.add_outbox_message(
            OutboxMessage(
                aggregate_id="payout_1",
                aggregate_type="payout",
                event_type="payout.completed",
                payload={"amount": 8450},
                created_at=utcnow(),
            )
        )

        assert message.id is not None
        assert await sql_repository.count_unpublished_outbox() == 1
        (pending,) = await sql_repository.fetch_unpublished_outbox()
        assert pending.payload == {"amount": 8450}

        await sql_repository.mark_outbox_published(message.id, utcnow())

        assert await sql_repository.count_unpublished_outbox() == 0
        assert await sql_repository.fetch_unpublished_outbox() == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ping(self, sql_repository: SqlSettlementRepository) -> None:
        await sql_repository.ping()
