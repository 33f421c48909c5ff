"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers notifications to the
configured notification endpoint (or the log when none is configured).
"""
import asyncio
import signal
from typing import Any

import structlog

from eventpay.config import get_settings
from eventpay.core.outbox import OutboxPublisher, http_delivery
from eventpay.database.connection import close_db, init_db
from eventpay.monitoring.logging import setup_logging
from eventpay.services import build_repository

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()

    logger.info(
        "outbox_publisher_worker_starting",
        delivery="http" if settings.notification_webhook_url else "log",
    )
    if not settings.uses_memory_store:
        await init_db()

    repository = build_repository(settings)
    deliver = (
        http_delivery(settings.notification_webhook_url)
        if settings.notification_webhook_url
        else None
    )
    publisher = OutboxPublisher(
        repository,
        deliver=deliver,
        batch_size=100,
        poll_interval_seconds=1.0,
    )

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await repository.close()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
