"""
Inbound payment webhook handling.

Implements:
- Authenticity verification by the gateway adapter (before anything else)
- Delivery deduplication using Redis, failing open
- Application of the normalized event to the transaction ledger
"""
import time
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from eventpay.core.errors import SecurityError
from eventpay.core.ledger import TransactionLedger
from eventpay.core.models import ApplyOutcome, RawWebhook
from eventpay.integrations.base import GatewayRegistry
from eventpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookHandler:
    """
    Handles provider webhooks with verification, deduplication and ledger application.

    The ledger is idempotent on its own; the Redis check only avoids
    re-applying deliveries the provider retries. If Redis is down, events
    are processed anyway.
    """

    def __init__(
        self,
        gateways: GatewayRegistry,
        ledger: TransactionLedger,
        redis_client: Optional[aioredis.Redis] = None,
        dedup_ttl: int = 86400 * 7,
    ):
        """
        Initialize webhook handler.

        Args:
            gateways: Registered gateway adapters
            ledger: Transaction ledger
            redis_client: Optional Redis client for delivery deduplication
            dedup_ttl: How long processed deliveries are remembered (seconds)
        """
        self.gateways = gateways
        self.ledger = ledger
        self.redis_client = redis_client
        self.dedup_ttl = dedup_ttl

    @staticmethod
    def _dedup_key(gateway_id: str, provider_event_id: str) -> str:
        return f"webhook:processed:{gateway_id}:{provider_event_id}"

    async def is_event_processed(self, gateway_id: str, provider_event_id: str) -> bool:
        """Check if a delivery has already been processed."""
        if self.redis_client is None:
            return False
        try:
            exists = await self.redis_client.exists(self._dedup_key(gateway_id, provider_event_id))
            return bool(exists)
        except Exception as e:
            logger.warning(
                "webhook_dedup_check_error", error=str(e), provider_event_id=provider_event_id
            )
            # If Redis is down, process the event anyway to avoid losing it
            return False

    async def mark_event_processed(self, gateway_id: str, provider_event_id: str) -> None:
        """Mark a delivery as processed."""
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                self._dedup_key(gateway_id, provider_event_id), self.dedup_ttl, "1"
            )
        except Exception as e:
            logger.warning(
                "webhook_mark_processed_error", error=str(e), provider_event_id=provider_event_id
            )

    async def handle(self, gateway_id: str, raw: RawWebhook) -> Dict[str, Any]:
        """
        Verify, normalize and apply a webhook.

        Args:
            gateway_id: Gateway the webhook was delivered for
            raw: Body, headers and query of the delivery

        Returns:
            Dict[str, Any]: Processing result; ``status`` is the ledger outcome,
            ``duplicate`` for a remembered delivery, or ``ignored``

        Raises:
            NotFoundError: If the gateway is unknown
            SecurityError: If the delivery fails verification; the ledger is not invoked
        """
        adapter = self.gateways.get(gateway_id)
        started = time.perf_counter()

        try:
            event = await adapter.normalize_event(raw)
        except SecurityError as e:
            metrics.record_webhook_security_failure(adapter.gateway_id.value)
            logger.warning(
                "webhook_security_violation",
                gateway=adapter.gateway_id.value,
                error=str(e),
            )
            raise

        if event is None:
            metrics.record_webhook_event(
                adapter.gateway_id.value, "ignored", time.perf_counter() - started
            )
            return {"status": "ignored", "gateway": adapter.gateway_id.value}

        provider_event_id = event.provider_event_id
        if provider_event_id and await self.is_event_processed(
            adapter.gateway_id.value, provider_event_id
        ):
            logger.info(
                "webhook_event_already_processed",
                gateway=adapter.gateway_id.value,
                provider_event_id=provider_event_id,
            )
            metrics.record_webhook_event(
                adapter.gateway_id.value, ApplyOutcome.DUPLICATE.value, time.perf_counter() - started
            )
            return {
                "status": ApplyOutcome.DUPLICATE.value,
                "gateway": adapter.gateway_id.value,
                "provider_event_id": provider_event_id,
            }

        outcome = await self.ledger.apply(event)

        if provider_event_id:
            await self.mark_event_processed(adapter.gateway_id.value, provider_event_id)

        metrics.record_webhook_event(
            adapter.gateway_id.value, outcome.value, time.perf_counter() - started
        )
        logger.info(
            "webhook_event_processed",
            gateway=adapter.gateway_id.value,
            provider_event_id=provider_event_id,
            gateway_transaction_id=event.gateway_transaction_id,
            outcome=outcome.value,
        )
        return {
            "status": outcome.value,
            "gateway": adapter.gateway_id.value,
            "provider_event_id": provider_event_id,
        }

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
