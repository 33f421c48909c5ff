"""
Notification outbox.

Settlement components record notifications (receipts, payout results) in the
store; the publisher delivers them asynchronously and marks them published.
Delivery is at-least-once: a message is marked only after its delivery
succeeded, so receivers must tolerate repeats (the message id is stable).
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from eventpay.core.models import OutboxMessage, utcnow
from eventpay.database.repository import SettlementRepository
from eventpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRANSACTION_COMPLETED = "transaction.completed"
TRANSACTION_REFUNDED = "transaction.refunded"
PAYOUT_COMPLETED = "payout.completed"
PAYOUT_FAILED = "payout.failed"

Deliver = Callable[[Dict[str, Any]], Awaitable[None]]


class NotificationSink(ABC):
    """Receives notifications emitted by the settlement core."""

    @abstractmethod
    async def notify(
        self,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: Dict[str, Any],
    ) -> None:
        ...


class OutboxNotificationSink(NotificationSink):
    """Writes notifications to the outbox table."""

    def __init__(self, repository: SettlementRepository):
        self.repository = repository

    async def notify(
        self,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: Dict[str, Any],
    ) -> None:
        message = await self.repository.add_outbox_message(
            OutboxMessage(
                aggregate_id=aggregate_id,
                aggregate_type=aggregate_type,
                event_type=event_type,
                payload=payload,
                created_at=utcnow(),
            )
        )
        logger.info(
            "notification_queued",
            outbox_id=message.id,
            event_type=event_type,
            aggregate_id=aggregate_id,
        )


def http_delivery(url: str, client: Optional[httpx.AsyncClient] = None) -> Deliver:
    """Delivery callable POSTing each message as JSON to ``url``."""
    http = client or httpx.AsyncClient(timeout=10.0)

    async def deliver(event_data: Dict[str, Any]) -> None:
        response = await http.post(
            url,
            json=event_data,
            headers={"Idempotency-Key": f"outbox-{event_data['id']}"},
        )
        response.raise_for_status()

    return deliver


class OutboxPublisher:
    """
    Delivers outbox messages.

    1. Read unpublished messages from the outbox
    2. Deliver each through the delivery callable
    3. Mark delivered messages as published
    """

    def __init__(
        self,
        repository: SettlementRepository,
        deliver: Optional[Deliver] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            repository: Settlement store holding the outbox
            deliver: Coroutine delivering one message (logs when omitted)
            batch_size: Number of messages to process per batch
            poll_interval_seconds: Polling interval
        """
        self.repository = repository
        self.deliver = deliver or self._default_delivery
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    async def _default_delivery(self, event_data: Dict[str, Any]) -> None:
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _publish_event(self, message: OutboxMessage) -> bool:
        """
        Deliver a single message.

        Returns:
            bool: True if delivered, False otherwise
        """
        try:
            await self.deliver(
                {
                    "id": message.id,
                    "aggregate_id": message.aggregate_id,
                    "aggregate_type": message.aggregate_type,
                    "event_type": message.event_type,
                    "payload": message.payload,
                    "created_at": message.created_at.isoformat(),
                }
            )
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                outbox_id=message.id,
                event_type=message.event_type,
                error=str(e),
            )
            return False

        await self.repository.mark_outbox_published(message.id, utcnow())
        metrics.record_outbox_event_published(message.event_type)
        return True

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished messages.

        Returns:
            int: Number of messages published
        """
        messages = await self.repository.fetch_unpublished_outbox(self.batch_size)
        if not messages:
            metrics.set_outbox_queue_depth(0)
            return 0

        published = 0
        for message in messages:
            if await self._publish_event(message):
                published += 1

        metrics.set_outbox_queue_depth(await self.repository.count_unpublished_outbox())
        logger.info(
            "outbox_batch_processed",
            total=len(messages),
            published=published,
            failed=len(messages) - published,
        )
        return published

    async def start(self) -> None:
        """Poll and publish until stopped."""
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0

                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # Events were processed, check immediately for more
                    await asyncio.sleep(0.1)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")
