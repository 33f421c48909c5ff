"""
Pytest configuration and fixtures.
"""
import itertools
import json
import os
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

# Settings are read from the environment the first time they are needed
os.environ.update(
    {
        "STRIPE_SECRET_KEY": "sk_test_fake_key_for_testing",
        "STRIPE_PUBLISHABLE_KEY": "pk_test_fake_key_for_testing",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_fake_secret",
        "CRON_SECRET": "test-cron-secret",
        "ADMIN_API_KEY": "test-admin-key",
        "DATABASE_URL": "memory://",
        "REDIS_URL": "",
        "APP_ENV": "test",
        "LOG_LEVEL": "DEBUG",
    }
)

import pytest  # noqa: E402

from eventpay.config import Settings  # noqa: E402
from eventpay.core.aggregator import PayoutAggregator  # noqa: E402
from eventpay.core.checkout import ChargeService  # noqa: E402
from eventpay.core.errors import SecurityError  # noqa: E402
from eventpay.core.fees import FeeCalculator  # noqa: E402
from eventpay.core.ledger import TransactionLedger  # noqa: E402
from eventpay.core.models import (  # noqa: E402
    CreatorPaymentProfile,
    DisbursementResult,
    DisbursementStatus,
    EventOutcome,
    GatewayId,
    PaymentEvent,
    Payout,
    PayoutMethod,
    PayoutSchedule,
    ProviderHandle,
    RawWebhook,
    Transaction,
    TransactionStatus,
    utcnow,
)
from eventpay.core.outbox import OutboxNotificationSink  # noqa: E402
from eventpay.core.payouts import PayoutProcessor  # noqa: E402
from eventpay.database.memory import InMemorySettlementRepository  # noqa: E402
from eventpay.integrations.base import GatewayAdapter, GatewayRegistry  # noqa: E402
from eventpay.integrations.disbursement import DisbursementRail, RailRouter  # noqa: E402
from eventpay.integrations.resilience import ResilientCaller  # noqa: E402


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O")
    config.addinivalue_line("markers", "race: concurrent access scenarios")
    config.addinivalue_line("markers", "integration: tests spanning several components")


class FakeGateway(GatewayAdapter):
    """
    Scriptable gateway adapter.

    Returns the same reference for the same idempotency key, like a real
    provider. Webhooks are authentic when ``X-Test-Signature: valid`` is set.
    """

    def __init__(self, gateway_id: GatewayId = GatewayId.STRIPE, acknowledged: bool = False):
        super().__init__(ResilientCaller(gateway_id.value, max_attempts=1, base_delay=0))
        self.gateway_id = gateway_id
        self.acknowledged = acknowledged
        self.begin_calls: List[Dict[str, Any]] = []
        self.begin_error: Optional[Exception] = None
        self.poll_result: Optional[PaymentEvent] = None
        self.finalize_result: Optional[PaymentEvent] = None
        self.refund_result: Optional[PaymentEvent] = None
        self.refund_calls: List[Dict[str, Any]] = []
        self._refs: Dict[str, str] = {}

    async def begin(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> ProviderHandle:
        self.begin_calls.append(
            {
                "amount": amount,
                "currency": currency,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
            }
        )
        if self.begin_error is not None:
            raise self.begin_error
        ref = self._refs.setdefault(
            idempotency_key, f"{self.gateway_id.value}_ref_{len(self._refs) + 1}"
        )
        return ProviderHandle(
            ref=ref,
            acknowledged=self.acknowledged,
            client_secret=None if self.acknowledged else f"{ref}_secret",
            direct_payout=bool(metadata.get("connected_account_id")),
        )

    async def verify(self, raw: RawWebhook) -> Dict[str, Any]:
        if raw.header("x-test-signature") != "valid":
            raise SecurityError("Invalid test signature")
        return json.loads(raw.body)

    def parse_event(self, payload: Dict[str, Any], raw: RawWebhook) -> Optional[PaymentEvent]:
        if payload.get("outcome") is None:
            return None
        return PaymentEvent(
            gateway_id=self.gateway_id,
            outcome=EventOutcome(payload["outcome"]),
            gateway_transaction_id=payload.get("ref"),
            transaction_id=payload.get("transaction_id"),
            failure_reason=payload.get("failure_reason"),
            provider_event_id=payload.get("id"),
        )

    async def poll_status(self, ref: str) -> Optional[PaymentEvent]:
        return self.poll_result

    async def finalize(self, ref: str) -> Optional[PaymentEvent]:
        return self.finalize_result

    async def refund(
        self, ref: str, amount: int, currency: str, idempotency_key: str
    ) -> Optional[PaymentEvent]:
        self.refund_calls.append(
            {"ref": ref, "amount": amount, "currency": currency, "idempotency_key": idempotency_key}
        )
        return self.refund_result


class FakeRail(DisbursementRail):
    """
    Scriptable disbursement rail paying Stripe connected accounts.

    ``outcomes`` is a queue of results (or exceptions) for successive
    submissions; submissions succeed when it is empty.
    """

    name = "fake_transfer"
    method = PayoutMethod.STRIPE_CONNECT

    def __init__(self) -> None:
        self.submissions: List[str] = []
        self.outcomes: List[Any] = []
        self.lookups: Dict[str, DisbursementResult] = {}

    def destination(self, profile: CreatorPaymentProfile) -> Optional[str]:
        return profile.stripe_connect_account_id

    async def submit(
        self, payout: Payout, profile: CreatorPaymentProfile, reference: str
    ) -> DisbursementResult:
        self.submissions.append(reference)
        outcome = self.outcomes.pop(0) if self.outcomes else DisbursementResult(
            status=DisbursementStatus.SUCCEEDED, provider_reference=f"tr_{reference}"
        )
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def lookup(self, payout: Payout, reference: str) -> DisbursementResult:
        return self.lookups.get(reference, DisbursementResult(status=DisbursementStatus.NOT_FOUND))


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_publishable_key="pk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        cron_secret="test-cron-secret",
        admin_api_key="test-admin-key",
        database_url="memory://",
        app_name="eventpay-settlement-test",
        app_env="test",
        log_level="DEBUG",
        minimum_payout_amount=1000,
    )


@pytest.fixture
def repository() -> InMemorySettlementRepository:
    return InMemorySettlementRepository()


@pytest.fixture
def fee_calculator(test_settings: Settings) -> FeeCalculator:
    return FeeCalculator.from_settings(test_settings)


@pytest.fixture
def notifications(repository: InMemorySettlementRepository) -> OutboxNotificationSink:
    return OutboxNotificationSink(repository)


@pytest.fixture
def ledger(
    repository: InMemorySettlementRepository,
    notifications: OutboxNotificationSink,
    fee_calculator: FeeCalculator,
) -> TransactionLedger:
    return TransactionLedger(repository, notifications, fee_calculator)


@pytest.fixture
def stripe_gateway() -> FakeGateway:
    return FakeGateway(GatewayId.STRIPE)


@pytest.fixture
def momo_gateway() -> FakeGateway:
    return FakeGateway(GatewayId.MOBILE_MONEY, acknowledged=True)


@pytest.fixture
def gateways(stripe_gateway: FakeGateway, momo_gateway: FakeGateway) -> GatewayRegistry:
    return GatewayRegistry([stripe_gateway, momo_gateway])


@pytest.fixture
def charges(
    repository: InMemorySettlementRepository,
    ledger: TransactionLedger,
    gateways: GatewayRegistry,
    fee_calculator: FeeCalculator,
) -> ChargeService:
    return ChargeService(repository, ledger, gateways, fee_calculator)


@pytest.fixture
def rail() -> FakeRail:
    return FakeRail()


@pytest.fixture
def processor(
    repository: InMemorySettlementRepository,
    rail: FakeRail,
    notifications: OutboxNotificationSink,
) -> PayoutProcessor:
    return PayoutProcessor(repository, RailRouter([rail]), notifications)


@pytest.fixture
def aggregator(
    repository: InMemorySettlementRepository, fee_calculator: FeeCalculator
) -> PayoutAggregator:
    return PayoutAggregator(repository, fee_calculator, minimum_payout_amount=1000)


@pytest.fixture
def make_transaction() -> Callable[..., Transaction]:
    """
    Factory for transactions.

    Defaults to a completed 50.00 USD Stripe sale by ``creator_1``
    created an hour ago (creator net 4225 on the free tier).
    """
    counter = itertools.count(1)

    def factory(**overrides: Any) -> Transaction:
        n = next(counter)
        created = utcnow() - timedelta(hours=1)
        data: Dict[str, Any] = {
            "id": f"tx_{n}",
            "event_id": "evt_1",
            "ticket_id": f"tkt_{n}",
            "creator_id": "creator_1",
            "gateway_id": GatewayId.STRIPE,
            "gross_amount": 5000,
            "currency": "USD",
            "status": TransactionStatus.COMPLETED,
            "idempotency_key": f"key_{n}",
            "created_at": created,
            "updated_at": created,
            "gateway_transaction_id": f"pi_{n}",
        }
        data.update(overrides)
        return Transaction(**data)

    return factory


@pytest.fixture
def verified_profile() -> CreatorPaymentProfile:
    return CreatorPaymentProfile(
        creator_id="creator_1",
        preferred_method=PayoutMethod.STRIPE_CONNECT,
        stripe_connect_account_id="acct_creator_1",
        payout_schedule=PayoutSchedule.DAILY,
        is_verified=True,
    )
