"""
Payout aggregation.

Batches completed, unclaimed transactions into one pending payout per
creator and currency. Creating a payout and claiming its transactions is a
single conditional write, so concurrent aggregation runs can never put a
transaction into two payouts: the run that loses the race writes nothing.
"""
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog

from eventpay.core.fees import FeeCalculator
from eventpay.core.models import (
    CreatorPaymentProfile,
    Payout,
    PayoutSchedule,
    PayoutStatus,
    Transaction,
    utcnow,
)
from eventpay.database.repository import SettlementRepository
from eventpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SCHEDULE_INTERVALS = {
    PayoutSchedule.DAILY: timedelta(days=1),
    PayoutSchedule.WEEKLY: timedelta(days=7),
    PayoutSchedule.MONTHLY: timedelta(days=30),
}


@dataclass
class AggregationResult:
    """Payouts created by a run and the creator groups that could not be aggregated."""

    created: List[Payout] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)


def schedule_due(
    schedule: PayoutSchedule, last_payout_at: Optional[datetime], now: datetime
) -> bool:
    """Whether a creator on ``schedule`` may be paid again at ``now``."""
    if last_payout_at is None:
        return True
    return now - last_payout_at >= SCHEDULE_INTERVALS[schedule]


class PayoutAggregator:
    """Materializes pending payouts from completed transactions."""

    def __init__(
        self,
        repository: SettlementRepository,
        fee_calculator: FeeCalculator,
        minimum_payout_amount: int,
    ):
        """
        Initialize aggregator.

        Args:
            repository: Settlement store
            fee_calculator: Recomputes each transaction's creator share
            minimum_payout_amount: Global threshold in minor units
        """
        self.repository = repository
        self.fee_calculator = fee_calculator
        self.minimum_payout_amount = minimum_payout_amount

    def creator_net(self, transaction: Transaction) -> int:
        return self.fee_calculator.split(
            transaction.gross_amount,
            transaction.gateway_id,
            transaction.creator_tier,
            transaction.pass_fee_to_customer,
        ).creator_net

    def threshold_for(self, profile: Optional[CreatorPaymentProfile]) -> int:
        if profile is None or profile.minimum_payout_amount is None:
            return self.minimum_payout_amount
        return max(self.minimum_payout_amount, profile.minimum_payout_amount)

    async def run_aggregation(self, window_end: Optional[datetime] = None) -> List[Payout]:
        """
        Create pending payouts for everything owed up to ``window_end``.

        Returns:
            List[Payout]: Payouts created by this run
        """
        return (await self.aggregate(window_end)).created

    async def aggregate(self, window_end: Optional[datetime] = None) -> AggregationResult:
        """
        Create pending payouts for everything owed up to ``window_end``.

        Groups below their threshold, or whose creator's payout schedule is
        not yet due, stay unclaimed for a later run. A group that fails is
        skipped and reported; the other creators are still paid.
        """
        window_end = window_end or utcnow()
        transactions = await self.repository.list_claimable_transactions(window_end)

        groups: Dict[Tuple[str, str], List[Transaction]] = defaultdict(list)
        for transaction in transactions:
            if not transaction.creator_id:
                continue
            groups[(transaction.creator_id, transaction.currency)].append(transaction)

        result = AggregationResult()
        for (creator_id, currency), members in sorted(groups.items()):
            try:
                payout = await self._aggregate_group(creator_id, currency, members, window_end)
            except Exception as e:
                logger.error(
                    "aggregation_group_failed",
                    creator_id=creator_id,
                    currency=currency,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.failures.append(
                    {"creator_id": creator_id, "currency": currency, "error": str(e)}
                )
                continue
            if payout is not None:
                result.created.append(payout)

        logger.info(
            "aggregation_completed",
            window_end=window_end.isoformat(),
            claimable=len(transactions),
            groups=len(groups),
            payouts_created=len(result.created),
            groups_failed=len(result.failures),
        )
        return result

    async def _aggregate_group(
        self,
        creator_id: str,
        currency: str,
        members: List[Transaction],
        window_end: datetime,
    ) -> Optional[Payout]:
        log = logger.bind(creator_id=creator_id, currency=currency, transactions=len(members))
        amount = sum(self.creator_net(t) for t in members)

        profile = await self.repository.get_profile(creator_id)
        threshold = self.threshold_for(profile)
        if amount < threshold:
            log.info("payout_deferred_below_threshold", amount=amount, threshold=threshold)
            return None

        if profile is not None:
            latest = await self.repository.latest_payout_for_creator(creator_id, currency)
            if not schedule_due(
                profile.payout_schedule, latest.created_at if latest else None, window_end
            ):
                log.info(
                    "payout_deferred_by_schedule",
                    schedule=profile.payout_schedule.value,
                    last_payout_id=latest.id if latest else None,
                )
                return None

        now = utcnow()
        payout = Payout(
            id=str(uuid.uuid4()),
            creator_id=creator_id,
            amount=amount,
            currency=currency,
            included_transaction_ids=tuple(sorted(t.id for t in members)),
            status=PayoutStatus.PENDING,
            scheduled_date=window_end,
            created_at=now,
            updated_at=now,
        )
        if not await self.repository.create_payout_with_claims(payout):
            metrics.record_claim_conflict()
            log.warning("payout_claim_conflict", payout_id=payout.id)
            return None

        metrics.record_payout_created(currency, amount)
        log.info("payout_created", payout_id=payout.id, amount=amount)
        return payout
