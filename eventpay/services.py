"""
Service wiring.

Builds the settlement components from settings so the API and the workers
share one construction path.
"""
from dataclasses import dataclass
from typing import List, Optional

import redis.asyncio as aioredis
import structlog

from eventpay.config import Settings
from eventpay.core.aggregator import PayoutAggregator
from eventpay.core.checkout import ChargeService
from eventpay.core.fees import FeeCalculator
from eventpay.core.ledger import TransactionLedger
from eventpay.core.outbox import NotificationSink, OutboxNotificationSink
from eventpay.core.payouts import PayoutProcessor
from eventpay.core.reporting import ReportingService
from eventpay.core.scheduler import SettlementScheduler
from eventpay.database.connection import get_session_factory
from eventpay.database.memory import InMemorySettlementRepository
from eventpay.database.repository import SettlementRepository, SqlSettlementRepository
from eventpay.integrations.base import GatewayAdapter, GatewayRegistry
from eventpay.integrations.disbursement import DisbursementRail, RailRouter
from eventpay.integrations.mobile_money import (
    MobileMoneyDisbursementRail,
    MobileMoneyGateway,
    build_mtn_clients,
)
from eventpay.integrations.paypal_gateway import PayPalGateway
from eventpay.integrations.stripe_gateway import StripeClient, StripeGateway, StripeTransferRail
from eventpay.integrations.webhook_handler import WebhookHandler
from eventpay.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything the API routes and workers need."""

    settings: Settings
    repository: SettlementRepository
    gateways: GatewayRegistry
    rails: RailRouter
    fee_calculator: FeeCalculator
    notifications: NotificationSink
    ledger: TransactionLedger
    charges: ChargeService
    aggregator: PayoutAggregator
    processor: PayoutProcessor
    scheduler: SettlementScheduler
    reporting: ReportingService
    webhooks: WebhookHandler
    health: HealthCheck
    redis_client: Optional[aioredis.Redis] = None

    async def close(self) -> None:
        await self.webhooks.close()
        await self.rails.close()
        await self.gateways.close()
        await self.repository.close()


def build_repository(settings: Settings) -> SettlementRepository:
    if settings.uses_memory_store:
        logger.warning("using_in_memory_store")
        return InMemorySettlementRepository()
    return SqlSettlementRepository(get_session_factory())


def build_integrations(settings: Settings) -> tuple[List[GatewayAdapter], List[DisbursementRail]]:
    """Adapters and rails for every provider with credentials configured."""
    stripe_client = StripeClient(settings)
    adapters: List[GatewayAdapter] = [StripeGateway(stripe_client, settings.stripe_webhook_secret)]
    rails: List[DisbursementRail] = [StripeTransferRail(stripe_client)]

    if settings.paypal_client_id and settings.paypal_client_secret:
        adapters.append(PayPalGateway(settings))

    if settings.mtn_collection_subscription_key:
        collection, disbursement = build_mtn_clients(settings)
        has_disbursement = bool(settings.mtn_disbursement_subscription_key)
        adapters.append(
            MobileMoneyGateway(
                collection,
                disbursement=disbursement if has_disbursement else None,
                callback_url=settings.mtn_callback_url,
                callback_secret=settings.mtn_callback_secret,
                confirm_callbacks=settings.mtn_confirm_callbacks,
            )
        )
        if has_disbursement:
            rails.append(MobileMoneyDisbursementRail(disbursement))

    return adapters, rails


def build_container(
    settings: Settings,
    repository: Optional[SettlementRepository] = None,
    adapters: Optional[List[GatewayAdapter]] = None,
    rails: Optional[List[DisbursementRail]] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> ServiceContainer:
    """
    Wire the settlement services.

    Args:
        settings: Application settings
        repository: Settlement store; chosen from ``database_url`` when omitted
        adapters: Gateway adapters; built from provider credentials when omitted
        rails: Disbursement rails; built alongside the adapters when omitted
        redis_client: Redis for webhook dedup; connected from ``redis_url`` when omitted
    """
    repository = repository or build_repository(settings)
    if adapters is None or rails is None:
        built_adapters, built_rails = build_integrations(settings)
        adapters = built_adapters if adapters is None else adapters
        rails = built_rails if rails is None else rails
    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)

    gateways = GatewayRegistry(adapters)
    router = RailRouter(rails)
    fee_calculator = FeeCalculator.from_settings(settings)
    notifications = OutboxNotificationSink(repository)
    ledger = TransactionLedger(repository, notifications, fee_calculator)
    charges = ChargeService(repository, ledger, gateways, fee_calculator)
    aggregator = PayoutAggregator(repository, fee_calculator, settings.minimum_payout_amount)
    processor = PayoutProcessor(
        repository,
        router,
        notifications,
        processing_timeout_seconds=settings.payout_processing_timeout_seconds,
        auto_retry_max_attempts=settings.payout_auto_retry_max_attempts,
    )

    # Gateways without callbacks are resolved by polling
    poll_gateways = [
        adapter.gateway_id
        for adapter in adapters
        if isinstance(adapter, MobileMoneyGateway) and not adapter.uses_callbacks
    ]
    scheduler = SettlementScheduler(
        repository,
        charges,
        aggregator,
        processor,
        poll_gateways=poll_gateways,
        pending_poll_min_age_seconds=settings.pending_poll_min_age_seconds,
    )

    logger.info(
        "services_initialized",
        gateways=[a.gateway_id.value for a in adapters],
        rails=[r.name for r in rails],
        polled=[g.value for g in poll_gateways],
        redis=redis_client is not None,
    )
    return ServiceContainer(
        settings=settings,
        repository=repository,
        gateways=gateways,
        rails=router,
        fee_calculator=fee_calculator,
        notifications=notifications,
        ledger=ledger,
        charges=charges,
        aggregator=aggregator,
        processor=processor,
        scheduler=scheduler,
        reporting=ReportingService(repository, fee_calculator),
        webhooks=WebhookHandler(gateways, ledger, redis_client, settings.webhook_dedup_ttl),
        health=HealthCheck(repository, gateways, redis_client),
        redis_client=redis_client,
    )
