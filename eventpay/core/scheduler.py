"""
Settlement run.

One run of the periodic settlement trigger:
1. Recover payouts stuck in processing
2. Poll pending charges on gateways without callbacks
3. Aggregate owed amounts into payouts
4. Disburse pending payouts
5. Retry failed payouts within the attempt budget

Each unit of work is isolated: a failure is recorded in the run summary and
the run continues.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from eventpay.core.aggregator import PayoutAggregator
from eventpay.core.checkout import ChargeService
from eventpay.core.models import GatewayId, Payout, PayoutStatus, TransactionStatus, utcnow
from eventpay.core.payouts import PayoutProcessor
from eventpay.database.repository import SettlementRepository
from eventpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class SettlementSummary:
    """What a settlement run did."""

    window_end: datetime
    transactions_polled: int = 0
    payouts_recovered: int = 0
    payouts_created: int = 0
    payouts_processed: int = 0
    payouts_retried: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def add_failure(self, stage: str, error: str, **ids: Any) -> None:
        self.failures.append({"stage": stage, "error": error, **ids})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_end": self.window_end.isoformat(),
            "transactions_polled": self.transactions_polled,
            "payouts_recovered": self.payouts_recovered,
            "payouts_created": self.payouts_created,
            "payouts_processed": self.payouts_processed,
            "payouts_retried": self.payouts_retried,
            "failures": list(self.failures),
        }


class SettlementScheduler:
    """Runs the settlement pipeline end to end."""

    def __init__(
        self,
        repository: SettlementRepository,
        charges: ChargeService,
        aggregator: PayoutAggregator,
        processor: PayoutProcessor,
        poll_gateways: Iterable[GatewayId] = (),
        pending_poll_min_age_seconds: int = 60,
    ):
        """
        Initialize scheduler.

        Args:
            repository: Settlement store
            charges: Used to poll pending charges
            aggregator: Payout aggregator
            processor: Payout processor
            poll_gateways: Gateways whose pending charges are resolved by polling
            pending_poll_min_age_seconds: Minimum age of a pending charge before it is polled
        """
        self.repository = repository
        self.charges = charges
        self.aggregator = aggregator
        self.processor = processor
        self.poll_gateways = tuple(poll_gateways)
        self.pending_poll_min_age = timedelta(seconds=pending_poll_min_age_seconds)

    async def run(self, window_end: Optional[datetime] = None) -> SettlementSummary:
        """Execute one settlement run up to ``window_end`` (now by default)."""
        started = time.perf_counter()
        now = utcnow()
        summary = SettlementSummary(window_end=window_end or now)
        logger.info("settlement_run_started", window_end=summary.window_end.isoformat())

        # Payouts handled earlier in this run are not retried until the next one
        handled: Set[str] = set()
        await self._recover(summary, now, handled)
        await self._poll_pending(summary, now)
        await self._aggregate(summary)
        await self._process_pending(summary, handled)
        await self._retry_failed(summary, handled)

        duration = time.perf_counter() - started
        metrics.record_settlement_run(duration)
        logger.info(
            "settlement_run_completed",
            duration_seconds=round(duration, 3),
            **{k: v for k, v in summary.to_dict().items() if k != "failures"},
            failures=len(summary.failures),
        )
        return summary

    def _record_outcome(self, summary: SettlementSummary, stage: str, payout: Payout) -> None:
        if payout.status == PayoutStatus.FAILED:
            summary.add_failure(stage, payout.failure_reason or "failed", payout_id=payout.id)

    async def _recover(self, summary: SettlementSummary, now: datetime, handled: Set[str]) -> None:
        try:
            stale = await self.processor.stale_payouts(now)
        except Exception as e:
            logger.error("settlement_stage_failed", stage="recover", error=str(e))
            summary.add_failure("recover", str(e))
            return
        for payout in stale:
            handled.add(payout.id)
            try:
                result = await self.processor.recover(payout)
            except Exception as e:
                logger.error("payout_recovery_failed", payout_id=payout.id, error=str(e))
                summary.add_failure("recover", str(e), payout_id=payout.id)
                continue
            summary.payouts_recovered += 1
            self._record_outcome(summary, "recover", result)

    async def _poll_pending(self, summary: SettlementSummary, now: datetime) -> None:
        for gateway_id in self.poll_gateways:
            try:
                pending = await self.repository.list_transactions(
                    status=TransactionStatus.PENDING,
                    gateway_id=gateway_id,
                    updated_before=now - self.pending_poll_min_age,
                )
            except Exception as e:
                logger.error("settlement_stage_failed", stage="poll", error=str(e))
                summary.add_failure("poll", str(e), gateway=gateway_id.value)
                continue
            for transaction in pending:
                try:
                    await self.charges.poll(transaction.id)
                except Exception as e:
                    logger.error("transaction_poll_failed", transaction_id=transaction.id, error=str(e))
                    summary.add_failure("poll", str(e), transaction_id=transaction.id)
                    continue
                summary.transactions_polled += 1

    async def _aggregate(self, summary: SettlementSummary) -> None:
        try:
            result = await self.aggregator.aggregate(summary.window_end)
        except Exception as e:
            logger.error("settlement_stage_failed", stage="aggregate", error=str(e))
            summary.add_failure("aggregate", str(e))
            return
        summary.payouts_created = len(result.created)
        for failure in result.failures:
            summary.add_failure(
                "aggregate",
                failure["error"],
                creator_id=failure["creator_id"],
                currency=failure["currency"],
            )

    async def _process_pending(self, summary: SettlementSummary, handled: Set[str]) -> None:
        try:
            pending = await self.repository.list_payouts(status=PayoutStatus.PENDING)
        except Exception as e:
            logger.error("settlement_stage_failed", stage="process", error=str(e))
            summary.add_failure("process", str(e))
            return
        for payout in pending:
            handled.add(payout.id)
            try:
                result = await self.processor.process(payout.id)
            except Exception as e:
                logger.error("payout_processing_failed", payout_id=payout.id, error=str(e))
                summary.add_failure("process", str(e), payout_id=payout.id)
                continue
            summary.payouts_processed += 1
            self._record_outcome(summary, "process", result)

    async def _retry_failed(self, summary: SettlementSummary, handled: Set[str]) -> None:
        try:
            candidates = await self.processor.retry_candidates()
        except Exception as e:
            logger.error("settlement_stage_failed", stage="retry", error=str(e))
            summary.add_failure("retry", str(e))
            return
        for payout in candidates:
            if payout.id in handled:
                continue
            try:
                result = await self.processor.retry(payout.id)
            except Exception as e:
                logger.error("payout_retry_failed", payout_id=payout.id, error=str(e))
                summary.add_failure("retry", str(e), payout_id=payout.id)
                continue
            summary.payouts_retried += 1
            self._record_outcome(summary, "retry", result)
