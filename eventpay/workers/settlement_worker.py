"""
Settlement background worker.

Runs the settlement pipeline (recover, poll, aggregate, disburse, retry)
on a fixed interval, or once with ``--once``.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from eventpay.config import get_settings
from eventpay.database.connection import close_db, init_db
from eventpay.monitoring.logging import setup_logging
from eventpay.services import ServiceContainer, build_container

logger = structlog.get_logger(__name__)


async def run_settlement_once(container: ServiceContainer) -> dict[str, Any]:
    """Run one settlement pass and log its summary."""
    summary = await container.scheduler.run()
    result = summary.to_dict()
    if summary.failures:
        logger.warning(
            "settlement_failures_detected",
            failures=len(summary.failures),
            stages=sorted({f["stage"] for f in summary.failures}),
        )
    return result


async def start_settlement_worker(
    interval_seconds: Optional[int] = None, once: bool = False
) -> None:
    """
    Start the settlement worker.

    Args:
        interval_seconds: Seconds between runs (settings value when omitted)
        once: Run a single pass and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.settlement_interval_seconds

    logger.info("settlement_worker_starting", interval_seconds=interval, once=once)
    if settings.uses_memory_store:
        logger.warning("settlement_worker_memory_store", message="State is not shared with the API")
    else:
        await init_db()

    container = build_container(settings)
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("settlement_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_settlement_once(container)
            except Exception as e:
                logger.error("settlement_execution_error", error=str(e))
                # Continue running even if one pass fails

            if once:
                break

            # Wait for the next run (with periodic checks for shutdown signal)
            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await container.close()
        await close_db()
        logger.info("settlement_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Settlement worker")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between settlement runs")
    parser.add_argument("--once", action="store_true", help="Run a single settlement pass and exit")
    args = parser.parse_args()

    asyncio.run(start_settlement_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
