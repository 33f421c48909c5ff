"""
Charge initiation and follow-up.

Orchestrates a ticket purchase:
1. Validate the request and compute the split (before any gateway call)
2. Resolve the idempotency key (replay, resume or conflict)
3. Open the transaction in the ledger
4. Begin the charge at the gateway
5. Attach the gateway reference and record an acknowledgement as pending
"""
import hashlib
import json
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

import structlog

from eventpay.core.errors import (
    GatewayError,
    IdempotencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from eventpay.core.fees import FeeCalculator
from eventpay.core.ledger import TransactionLedger
from eventpay.core.models import (
    CreatorTier,
    EventOutcome,
    GatewayId,
    PaymentEvent,
    PaymentSplit,
    Transaction,
    TransactionStatus,
    utcnow,
)
from eventpay.database.repository import SettlementRepository
from eventpay.integrations.base import GatewayRegistry
from eventpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChargeRequest:
    """A customer's request to pay for a ticket."""

    gross_amount: int
    currency: str
    gateway_id: GatewayId
    event_id: str
    ticket_id: str
    creator_id: str
    idempotency_key: str
    creator_tier: CreatorTier = CreatorTier.FREE
    pass_fee_to_customer: bool = False
    payer_msisdn: Optional[str] = None
    connected_account_id: Optional[str] = None
    description: Optional[str] = None

    def fingerprint(self) -> str:
        """Stable hash of everything but the idempotency key."""
        data = asdict(self)
        data.pop("idempotency_key")
        data["currency"] = (self.currency or "").upper()
        data["gateway_id"] = GatewayId(self.gateway_id).value
        data["creator_tier"] = CreatorTier(self.creator_tier).value
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass(frozen=True)
class ChargeResult:
    """The opened transaction and what the client needs to continue paying."""

    transaction: Transaction
    split: PaymentSplit
    continuation: Dict[str, Any] = field(default_factory=dict)
    replayed: bool = False


class ChargeService:
    """Starts charges and drives their follow-up operations."""

    def __init__(
        self,
        repository: SettlementRepository,
        ledger: TransactionLedger,
        gateways: GatewayRegistry,
        fee_calculator: FeeCalculator,
    ):
        self.repository = repository
        self.ledger = ledger
        self.gateways = gateways
        self.fee_calculator = fee_calculator

    def _validate(self, request: ChargeRequest) -> tuple[str, PaymentSplit]:
        """
        Validate a charge request.

        Returns:
            tuple: Normalized currency code and the computed split

        Raises:
            ValidationError: If the request is malformed
            InvalidAmount: If the amount cannot be charged
        """
        if not request.idempotency_key:
            raise ValidationError("Idempotency key is required")
        for name in ("event_id", "ticket_id", "creator_id"):
            if not getattr(request, name):
                raise ValidationError(f"{name} is required")
        if request.gateway_id not in self.gateways:
            raise ValidationError(f"Gateway {request.gateway_id} is not available")

        gateway = GatewayId(request.gateway_id)
        if gateway == GatewayId.MOBILE_MONEY and not request.payer_msisdn:
            raise ValidationError("payer_msisdn is required for mobile money payments")
        if request.connected_account_id and gateway != GatewayId.STRIPE:
            raise ValidationError("connected_account_id is only supported with Stripe")

        currency = self.fee_calculator.validate_currency(gateway, request.currency)
        split = self.fee_calculator.split(
            request.gross_amount, gateway, request.creator_tier, request.pass_fee_to_customer
        )
        return currency, split

    def split_for(self, transaction: Transaction) -> PaymentSplit:
        return self.fee_calculator.split(
            transaction.gross_amount,
            transaction.gateway_id,
            transaction.creator_tier,
            transaction.pass_fee_to_customer,
        )

    async def initiate_charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Initiate a charge.

        Repeating a request with the same idempotency key and payload returns
        the original transaction; a transaction whose gateway call never
        completed is resumed with the same key.

        Raises:
            ValidationError: If the request is invalid
            IdempotencyConflict: If the key was used for a different request
            GatewayError: If the gateway refused or could not be reached
        """
        currency, split = self._validate(request)
        fingerprint = request.fingerprint()
        log = logger.bind(idempotency_key=request.idempotency_key, gateway=GatewayId(request.gateway_id).value)

        existing = await self.repository.get_transaction_by_idempotency_key(request.idempotency_key)
        if existing is None:
            now = utcnow()
            transaction = Transaction(
                id=str(uuid.uuid4()),
                event_id=request.event_id,
                ticket_id=request.ticket_id,
                creator_id=request.creator_id,
                gateway_id=GatewayId(request.gateway_id),
                gross_amount=request.gross_amount,
                currency=currency,
                status=TransactionStatus.CREATED,
                idempotency_key=request.idempotency_key,
                created_at=now,
                updated_at=now,
                creator_tier=CreatorTier(request.creator_tier),
                pass_fee_to_customer=request.pass_fee_to_customer,
                details={"fingerprint": fingerprint, "split": split.to_dict()},
            )
            if await self.ledger.open_transaction(transaction):
                log.info("charge_started", transaction_id=transaction.id, amount=split.customer_total)
                return await self._begin(transaction, request, split, replayed=False)
            # Lost a race with a concurrent request carrying the same key
            existing = await self.repository.get_transaction_by_idempotency_key(request.idempotency_key)
            if existing is None:
                raise InvalidStateError("Transaction for idempotency key vanished")

        if existing.details.get("fingerprint") != fingerprint:
            log.warning("idempotency_key_conflict", transaction_id=existing.id)
            raise IdempotencyConflict(
                f"Idempotency key {request.idempotency_key} was used for a different request"
            )

        if existing.gateway_transaction_id is None and existing.status == TransactionStatus.CREATED:
            log.info("charge_resumed", transaction_id=existing.id)
            return await self._begin(existing, request, split, replayed=True)

        log.info("charge_replayed", transaction_id=existing.id, status=existing.status.value)
        return ChargeResult(
            transaction=existing,
            split=split,
            continuation=dict(existing.details.get("continuation") or {}),
            replayed=True,
        )

    async def _begin(
        self,
        transaction: Transaction,
        request: ChargeRequest,
        split: PaymentSplit,
        replayed: bool,
    ) -> ChargeResult:
        adapter = self.gateways.get(transaction.gateway_id.value)
        metadata: Dict[str, Any] = {
            "transaction_id": transaction.id,
            "event_id": transaction.event_id,
            "ticket_id": transaction.ticket_id,
            "creator_id": transaction.creator_id,
        }
        if request.description:
            metadata["description"] = request.description
        if request.payer_msisdn:
            metadata["payer_msisdn"] = request.payer_msisdn
        if request.connected_account_id:
            metadata["connected_account_id"] = request.connected_account_id
            # The platform keeps everything that is not the creator's share
            metadata["application_fee_amount"] = split.customer_total - split.creator_net

        try:
            handle = await adapter.begin(
                split.customer_total, transaction.currency, metadata, transaction.idempotency_key
            )
        except GatewayError as e:
            metrics.record_charge(transaction.gateway_id.value, "error", split.customer_total)
            if not e.is_transient:
                await self.ledger.fail_initiation(transaction.id, f"{e.category.value}:{e.code}")
            logger.error(
                "charge_gateway_error",
                transaction_id=transaction.id,
                gateway=transaction.gateway_id.value,
                code=e.code,
                category=e.category.value,
            )
            raise
        except ValidationError as e:
            await self.ledger.fail_initiation(transaction.id, f"validation:{e}")
            raise

        continuation = handle.continuation()
        updated = await self.ledger.attach_reference(
            transaction.id,
            handle.ref,
            direct_payout=handle.direct_payout,
            details={"continuation": continuation},
        )
        if handle.acknowledged:
            await self.ledger.apply(
                PaymentEvent(
                    gateway_id=transaction.gateway_id,
                    outcome=EventOutcome.PENDING,
                    gateway_transaction_id=handle.ref,
                    transaction_id=transaction.id,
                ),
                source="charge",
            )
            updated = await self.repository.get_transaction(transaction.id) or updated

        metrics.record_charge(transaction.gateway_id.value, "initiated", split.customer_total)
        logger.info(
            "charge_initiated",
            transaction_id=transaction.id,
            gateway=transaction.gateway_id.value,
            gateway_transaction_id=handle.ref,
            status=updated.status.value,
        )
        return ChargeResult(
            transaction=updated, split=split, continuation=continuation, replayed=replayed
        )

    async def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = await self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    async def _referenced(self, transaction_id: str) -> Transaction:
        transaction = await self.get_transaction(transaction_id)
        if transaction.gateway_transaction_id is None:
            raise InvalidStateError(f"Transaction {transaction_id} has no gateway reference yet")
        return transaction

    async def capture(self, transaction_id: str) -> Transaction:
        """Complete an approved payment (PayPal capture; other gateways re-query)."""
        transaction = await self._referenced(transaction_id)
        if transaction.status.is_terminal:
            return transaction
        adapter = self.gateways.get(transaction.gateway_id.value)
        event = await adapter.finalize(transaction.gateway_transaction_id)
        if event is not None:
            await self.ledger.apply(event, source="capture")
        return await self.get_transaction(transaction_id)

    async def poll(self, transaction_id: str) -> Transaction:
        """Query the gateway for the outcome of a non-terminal transaction."""
        transaction = await self._referenced(transaction_id)
        if transaction.status.is_terminal:
            return transaction
        adapter = self.gateways.get(transaction.gateway_id.value)
        event = await adapter.poll_status(transaction.gateway_transaction_id)
        if event is None:
            logger.info("charge_poll_undecided", transaction_id=transaction_id)
            return transaction
        await self.ledger.apply(event, source="poll")
        return await self.get_transaction(transaction_id)

    async def refund(self, transaction_id: str, reason: Optional[str] = None) -> Transaction:
        """
        Refund a completed transaction in full.

        The transaction moves to ``refunded`` once the gateway confirms; a
        refund still processing is confirmed later by webhook.

        Raises:
            InvalidStateError: If the transaction is not completed
        """
        transaction = await self._referenced(transaction_id)
        if transaction.status == TransactionStatus.REFUNDED:
            return transaction
        if transaction.status != TransactionStatus.COMPLETED:
            raise InvalidStateError(
                f"Cannot refund transaction with status: {transaction.status.value}"
            )

        split = self.split_for(transaction)
        adapter = self.gateways.get(transaction.gateway_id.value)
        logger.info(
            "refund_started",
            transaction_id=transaction_id,
            amount=split.customer_total,
            reason=reason,
        )
        event = await adapter.refund(
            transaction.gateway_transaction_id,
            split.customer_total,
            transaction.currency,
            f"refund-{transaction.id}",
        )
        if event is not None:
            await self.ledger.apply(event, source="refund")
        else:
            logger.info("refund_processing", transaction_id=transaction_id)
        return await self.get_transaction(transaction_id)
