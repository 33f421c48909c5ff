"""Creator earnings reports derived from transactions and payouts."""
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from eventpay.core.fees import FeeCalculator
from eventpay.core.models import PayoutStatus, Transaction, TransactionStatus
from eventpay.database.repository import SettlementRepository

OPEN_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.FAILED)


@dataclass
class CreatorBalance:
    """Money owed to and paid to a creator in one currency."""

    creator_id: str
    currency: str
    available: int = 0  # completed and not yet in a payout
    in_payout: int = 0  # in payouts that have not completed
    paid_out: int = 0
    total_earned: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReportingService:
    """Balance and analytics views for creators."""

    def __init__(self, repository: SettlementRepository, fee_calculator: FeeCalculator):
        self.repository = repository
        self.fee_calculator = fee_calculator

    def _split(self, transaction: Transaction):
        return self.fee_calculator.split(
            transaction.gross_amount,
            transaction.gateway_id,
            transaction.creator_tier,
            transaction.pass_fee_to_customer,
        )

    async def creator_balance(self, creator_id: str) -> List[CreatorBalance]:
        """
        Current balance per currency.

        Direct Stripe payouts count as paid out at charge time; refunded
        sales no longer count as earned.
        """
        balances: Dict[str, CreatorBalance] = {}

        def balance(currency: str) -> CreatorBalance:
            if currency not in balances:
                balances[currency] = CreatorBalance(creator_id=creator_id, currency=currency)
            return balances[currency]

        transactions = await self.repository.list_transactions(
            creator_id=creator_id, status=TransactionStatus.COMPLETED
        )
        for transaction in transactions:
            net = self._split(transaction).creator_net
            entry = balance(transaction.currency)
            entry.total_earned += net
            if transaction.direct_payout:
                entry.paid_out += net
            elif transaction.payout_id is None:
                entry.available += net

        for payout in await self.repository.list_payouts(creator_id=creator_id):
            entry = balance(payout.currency)
            if payout.status == PayoutStatus.COMPLETED:
                entry.paid_out += payout.amount
            elif payout.status in OPEN_PAYOUT_STATUSES:
                entry.in_payout += payout.amount

        return [balances[currency] for currency in sorted(balances)]

    async def creator_analytics(
        self,
        creator_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Sales totals for transactions created within [start, end].

        Amounts are reported per currency, each with a per-gateway breakdown.
        """
        transactions = await self.repository.list_transactions(
            creator_id=creator_id, created_from=start, created_to=end
        )

        status_counts: Dict[str, int] = defaultdict(int)
        currencies: Dict[str, Dict[str, Any]] = {}
        for transaction in transactions:
            status_counts[transaction.status.value] += 1
            if transaction.status != TransactionStatus.COMPLETED:
                continue

            split = self._split(transaction)
            totals = currencies.setdefault(
                transaction.currency,
                {
                    "sales": 0,
                    "gross_revenue": 0,
                    "processor_fees": 0,
                    "platform_commission": 0,
                    "net_earnings": 0,
                    "by_gateway": {},
                },
            )
            gateway = totals["by_gateway"].setdefault(
                transaction.gateway_id.value, {"sales": 0, "gross_revenue": 0, "net_earnings": 0}
            )
            totals["sales"] += 1
            totals["gross_revenue"] += split.gross_amount
            totals["processor_fees"] += split.processor_fee
            totals["platform_commission"] += split.platform_commission
            totals["net_earnings"] += split.creator_net
            gateway["sales"] += 1
            gateway["gross_revenue"] += split.gross_amount
            gateway["net_earnings"] += split.creator_net

        return {
            "creator_id": creator_id,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
            "transaction_count": len(transactions),
            "status_counts": dict(status_counts),
            "currencies": currencies,
        }
