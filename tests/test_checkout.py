"""
Tests for charge initiation, idempotency and follow-up operations.
"""
import asyncio
from typing import Any

import pytest

from eventpay.core.checkout import ChargeRequest, ChargeService
from eventpay.core.errors import (
    GatewayError,
    GatewayErrorCategory,
    IdempotencyConflict,
    InvalidAmount,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from eventpay.core.ledger import TransactionLedger
from eventpay.core.models import (
    EventOutcome,
    GatewayId,
    PaymentEvent,
    TransactionStatus,
)
from eventpay.database.memory import InMemorySettlementRepository

from .conftest import FakeGateway


def charge_request(**overrides: Any) -> ChargeRequest:
    data: dict[str, Any] = {
        "gross_amount": 5000,
        "currency": "usd",
        "gateway_id": GatewayId.STRIPE,
        "event_id": "evt_1",
        "ticket_id": "tkt_1",
        "creator_id": "creator_1",
        "idempotency_key": "idem_1",
    }
    data.update(overrides)
    return ChargeRequest(**data)


class TestChargeService:
    """Test suite for ChargeService."""

    @pytest.mark.asyncio
    async def test_initiate_stripe_charge(
        self, charges: ChargeService, stripe_gateway: FakeGateway
    ) -> None:
        result = await charges.initiate_charge(charge_request())

        transaction = result.transaction
        assert transaction.status == TransactionStatus.CREATED
        assert transaction.currency == "USD"
        assert transaction.gateway_transaction_id == "stripe_ref_1"
        assert result.split.creator_net == 4225
        assert result.continuation["client_secret"] == "stripe_ref_1_secret"
        assert result.replayed is False

        (call,) = stripe_gateway.begin_calls
        assert call["amount"] == 5000
        assert call["idempotency_key"] == "idem_1"
        assert call["metadata"]["transaction_id"] == transaction.id
        assert call["metadata"]["creator_id"] == "creator_1"

    @pytest.mark.asyncio
    async def test_customer_pays_fee_when_passed_on(
        self, charges: ChargeService, stripe_gateway: FakeGateway
    ) -> None:
        result = await charges.initiate_charge(charge_request(pass_fee_to_customer=True))

        assert stripe_gateway.begin_calls[0]["amount"] == 5175
        assert result.split.customer_total == 5175

    @pytest.mark.asyncio
    async def test_replay_returns_original(
        self, charges: ChargeService, stripe_gateway: FakeGateway
    ) -> None:
        first = await charges.initiate_charge(charge_request())
        second = await charges.initiate_charge(charge_request())

        assert second.replayed is True
        assert second.transaction.id == first.transaction.id
        assert second.continuation == first.continuation
        assert len(stripe_gateway.begin_calls) == 1

    @pytest.mark.asyncio
    async def test_key_reused_for_different_request(self, charges: ChargeService) -> None:
        await charges.initiate_charge(charge_request())

        with pytest.raises(IdempotencyConflict):
            await charges.initiate_charge(charge_request(gross_amount=6000))

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_requests_same_key(
        self, charges: ChargeService, repository: InMemorySettlementRepository
    ) -> None:
        """Concurrent submissions of one purchase open exactly one transaction."""
        results = await asyncio.gather(*[charges.initiate_charge(charge_request()) for _ in range(5)])

        assert len({r.transaction.id for r in results}) == 1
        assert len(repository.transactions) == 1
        assert sum(1 for r in results if not r.replayed) == 1

    @pytest.mark.asyncio
    async def test_mobile_money_charge_is_pending(
        self, charges: ChargeService, momo_gateway: FakeGateway
    ) -> None:
        result = await charges.initiate_charge(
            charge_request(
                gateway_id=GatewayId.MOBILE_MONEY, currency="GHS", payer_msisdn="233241234567"
            )
        )

        assert result.transaction.status == TransactionStatus.PENDING
        assert result.continuation["awaiting_confirmation"] is True
        assert momo_gateway.begin_calls[0]["metadata"]["payer_msisdn"] == "233241234567"

    @pytest.mark.asyncio
    async def test_mobile_money_requires_msisdn(
        self, charges: ChargeService, repository: InMemorySettlementRepository
    ) -> None:
        with pytest.raises(ValidationError, match="payer_msisdn"):
            await charges.initiate_charge(
                charge_request(gateway_id=GatewayId.MOBILE_MONEY, currency="GHS")
            )
        assert repository.transactions == {}

    @pytest.mark.asyncio
    async def test_invalid_amount_rejected_before_gateway(
        self, charges: ChargeService, stripe_gateway: FakeGateway
    ) -> None:
        with pytest.raises(InvalidAmount):
            await charges.initiate_charge(charge_request(gross_amount=10))
        assert stripe_gateway.begin_calls == []

    @pytest.mark.asyncio
    async def test_unsupported_currency(self, charges: ChargeService) -> None:
        with pytest.raises(ValidationError, match="not supported"):
            await charges.initiate_charge(charge_request(currency="JPY"))

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self, charges: ChargeService) -> None:
        with pytest.raises(ValidationError, match="not available"):
            await charges.initiate_charge(charge_request(gateway_id=GatewayId.PAYPAL))

    @pytest.mark.asyncio
    async def test_connected_account_sets_application_fee(
        self, charges: ChargeService, stripe_gateway: FakeGateway
    ) -> None:
        result = await charges.initiate_charge(charge_request(connected_account_id="acct_1"))

        metadata = stripe_gateway.begin_calls[0]["metadata"]
        assert metadata["connected_account_id"] == "acct_1"
        assert metadata["application_fee_amount"] == 775
        assert result.transaction.direct_payout is True

    @pytest.mark.asyncio
    async def test_connected_account_only_on_stripe(self, charges: ChargeService) -> None:
        with pytest.raises(ValidationError, match="only supported with Stripe"):
            await charges.initiate_charge(
                charge_request(
                    gateway_id=GatewayId.MOBILE_MONEY,
                    currency="GHS",
                    payer_msisdn="233241234567",
                    connected_account_id="acct_1",
                )
            )

    @pytest.mark.asyncio
    async def test_declined_charge_fails_transaction(
        self,
        charges: ChargeService,
        stripe_gateway: FakeGateway,
        repository: InMemorySettlementRepository,
    ) -> None:
        stripe_gateway.begin_error = GatewayError(
            "Your card was declined.", code="card_declined", category=GatewayErrorCategory.DECLINED
        )

        with pytest.raises(GatewayError):
            await charges.initiate_charge(charge_request())

        transaction = await repository.get_transaction_by_idempotency_key("idem_1")
        assert transaction.status == TransactionStatus.FAILED
        assert transaction.failure_reason == "declined:card_declined"

        # Replaying a failed charge returns it without calling the gateway again
        replay = await charges.initiate_charge(charge_request())
        assert replay.replayed is True
        assert replay.transaction.status == TransactionStatus.FAILED
        assert len(stripe_gateway.begin_calls) == 1

    @pytest.mark.asyncio
    async def test_transient_error_resumes_with_same_key(
        self,
        charges: ChargeService,
        stripe_gateway: FakeGateway,
        repository: InMemorySettlementRepository,
    ) -> None:
        stripe_gateway.begin_error = GatewayError(
            "timed out", code="timeout", category=GatewayErrorCategory.TRANSIENT
        )
        with pytest.raises(GatewayError):
            await charges.initiate_charge(charge_request())

        pending = await repository.get_transaction_by_idempotency_key("idem_1")
        assert pending.status == TransactionStatus.CREATED
        assert pending.gateway_transaction_id is None

        stripe_gateway.begin_error = None
        result = await charges.initiate_charge(charge_request())

        assert result.transaction.id == pending.id
        assert result.transaction.gateway_transaction_id == "stripe_ref_1"
        assert [c["idempotency_key"] for c in stripe_gateway.begin_calls] == ["idem_1", "idem_1"]

    @pytest.mark.asyncio
    async def test_poll_completes_pending_charge(
        self, charges: ChargeService, momo_gateway: FakeGateway
    ) -> None:
        result = await charges.initiate_charge(
            charge_request(
                gateway_id=GatewayId.MOBILE_MONEY, currency="GHS", payer_msisdn="233241234567"
            )
        )
        momo_gateway.poll_result = PaymentEvent(
            gateway_id=GatewayId.MOBILE_MONEY,
            outcome=EventOutcome.SUCCEEDED,
            gateway_transaction_id=result.transaction.gateway_transaction_id,
        )

        polled = await charges.poll(result.transaction.id)

        assert polled.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_poll_undecided_leaves_status(
        self, charges: ChargeService, momo_gateway: FakeGateway
    ) -> None:
        result = await charges.initiate_charge(
            charge_request(
                gateway_id=GatewayId.MOBILE_MONEY, currency="GHS", payer_msisdn="233241234567"
            )
        )

        polled = await charges.poll(result.transaction.id)

        assert polled.status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_capture_applies_finalized_outcome(
        self, charges: ChargeService, stripe_gateway: FakeGateway
    ) -> None:
        result = await charges.initiate_charge(charge_request())
        stripe_gateway.finalize_result = PaymentEvent(
            gateway_id=GatewayId.STRIPE,
            outcome=EventOutcome.SUCCEEDED,
            gateway_transaction_id=result.transaction.gateway_transaction_id,
        )

        captured = await charges.capture(result.transaction.id)

        assert captured.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_refund_completed_transaction(
        self,
        charges: ChargeService,
        ledger: TransactionLedger,
        stripe_gateway: FakeGateway,
    ) -> None:
        result = await charges.initiate_charge(charge_request())
        ref = result.transaction.gateway_transaction_id
        await ledger.apply(
            PaymentEvent(
                gateway_id=GatewayId.STRIPE,
                outcome=EventOutcome.SUCCEEDED,
                gateway_transaction_id=ref,
            )
        )
        stripe_gateway.refund_result = PaymentEvent(
            gateway_id=GatewayId.STRIPE,
            outcome=EventOutcome.REFUNDED,
            gateway_transaction_id=ref,
        )

        refunded = await charges.refund(result.transaction.id, reason="event_cancelled")

        assert refunded.status == TransactionStatus.REFUNDED
        assert stripe_gateway.refund_calls == [
            {
                "ref": ref,
                "amount": 5000,
                "currency": "USD",
                "idempotency_key": f"refund-{result.transaction.id}",
            }
        ]

    @pytest.mark.asyncio
    async def test_refund_still_processing(
        self,
        charges: ChargeService,
        ledger: TransactionLedger,
    ) -> None:
        result = await charges.initiate_charge(charge_request())
        await ledger.apply(
            PaymentEvent(
                gateway_id=GatewayId.STRIPE,
                outcome=EventOutcome.SUCCEEDED,
                gateway_transaction_id=result.transaction.gateway_transaction_id,
            )
        )

        refunded = await charges.refund(result.transaction.id)

        assert refunded.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_refund_requires_completed(self, charges: ChargeService) -> None:
        result = await charges.initiate_charge(charge_request())

        with pytest.raises(InvalidStateError, match="Cannot refund"):
            await charges.refund(result.transaction.id)

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, charges: ChargeService) -> None:
        with pytest.raises(NotFoundError):
            await charges.get_transaction("missing")
