"""
Stripe integration.

Implements:
- Stripe SDK client with error classification, timeout, circuit breaker and retries
- PaymentIntent charges, optionally paying a connected account directly
- Webhook signature verification and event translation
- Connected-account transfers as a payout rail
"""
import asyncio
import functools
import json
from typing import Any, Callable, Dict, Optional

import stripe
import structlog

from eventpay.config import Settings
from eventpay.core.errors import (
    DisbursementError,
    GatewayError,
    GatewayErrorCategory,
    SecurityError,
)
from eventpay.core.models import (
    CreatorPaymentProfile,
    DisbursementResult,
    DisbursementStatus,
    EventOutcome,
    GatewayId,
    PaymentEvent,
    Payout,
    PayoutMethod,
    ProviderHandle,
    RawWebhook,
)
from eventpay.integrations.base import GatewayAdapter
from eventpay.integrations.disbursement import DisbursementRail
from eventpay.integrations.resilience import ResilientCaller

logger = structlog.get_logger(__name__)

METADATA_KEYS = ("transaction_id", "event_id", "ticket_id", "creator_id")


class StripeClient:
    """
    Wrapper for the Stripe SDK with production-grade error handling.

    The SDK is synchronous; calls run in the default executor under the
    caller's timeout, circuit breaker and retry policy.
    """

    def __init__(self, settings: Settings, caller: Optional[ResilientCaller] = None) -> None:
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.caller = caller or ResilientCaller(
            GatewayId.STRIPE.value,
            timeout_seconds=settings.gateway_timeout_seconds,
            max_attempts=settings.gateway_retry_max_attempts,
            base_delay=settings.gateway_retry_base_delay,
        )

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def classify_error(error: stripe.StripeError) -> GatewayErrorCategory:
        """
        Classify a Stripe error for retry logic and HTTP mapping.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorCategory: Error classification
        """
        if isinstance(error, stripe.CardError):
            return GatewayErrorCategory.DECLINED
        elif isinstance(error, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorCategory.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return GatewayErrorCategory.CONFIG
        else:
            # Unknown errors are treated as transient
            return GatewayErrorCategory.TRANSIENT

    def _to_gateway_error(self, operation: str, error: stripe.StripeError) -> GatewayError:
        category = self.classify_error(error)
        code = getattr(error, "code", None) or type(error).__name__
        logger.error(
            "stripe_api_error",
            operation=operation,
            category=category.value,
            error_code=code,
            error_message=str(error),
        )
        return GatewayError(
            str(error) or f"Stripe {operation} failed",
            code=code,
            category=category,
            gateway_id=GatewayId.STRIPE.value,
            original_error=error,
        )

    async def _run(self, operation: str, func: Callable[[], Any]) -> Any:
        async def invoke() -> Any:
            loop = asyncio.get_running_loop()
            try:
                return await loop.run_in_executor(None, func)
            except stripe.StripeError as e:
                raise self._to_gateway_error(operation, e)

        return await self.caller(operation, invoke)

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, str],
        destination: Optional[str] = None,
        application_fee_amount: Optional[int] = None,
    ) -> Any:
        """
        Create a PaymentIntent with idempotency.

        Args:
            amount: Amount charged to the customer in minor units
            currency: ISO currency code
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Identifiers echoed back in webhooks
            destination: Connected account paid directly, if any
            application_fee_amount: Platform's share when paying a connected account

        Returns:
            stripe.PaymentIntent: Created payment intent
        """
        kwargs: Dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "idempotency_key": idempotency_key,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if destination:
            kwargs["transfer_data"] = {"destination": destination}
            if application_fee_amount is not None:
                kwargs["application_fee_amount"] = application_fee_amount

        logger.info(
            "creating_payment_intent",
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
            direct_destination=bool(destination),
        )
        intent = await self._run(
            "create_payment_intent", functools.partial(stripe.PaymentIntent.create, **kwargs)
        )
        logger.info("payment_intent_created", payment_intent_id=intent["id"], status=intent["status"])
        return intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        return await self._run(
            "retrieve_payment_intent",
            functools.partial(stripe.PaymentIntent.retrieve, payment_intent_id),
        )

    async def create_refund(
        self, payment_intent_id: str, amount: Optional[int], idempotency_key: str
    ) -> Any:
        kwargs: Dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "idempotency_key": idempotency_key,
        }
        if amount:
            kwargs["amount"] = amount
        logger.info("creating_refund", payment_intent_id=payment_intent_id, amount=amount)
        refund = await self._run("create_refund", functools.partial(stripe.Refund.create, **kwargs))
        logger.info("refund_created", refund_id=refund["id"], status=refund["status"])
        return refund

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        transfer_group: str,
        metadata: Dict[str, str],
    ) -> Any:
        return await self._run(
            "create_transfer",
            functools.partial(
                stripe.Transfer.create,
                amount=amount,
                currency=currency.lower(),
                destination=destination,
                transfer_group=transfer_group,
                metadata=metadata,
                idempotency_key=f"transfer-{transfer_group}",
            ),
        )

    async def find_transfer(self, transfer_group: str) -> Optional[Any]:
        result = await self._run(
            "list_transfers",
            functools.partial(stripe.Transfer.list, transfer_group=transfer_group, limit=1),
        )
        return result.data[0] if result.data else None


def _intent_event(intent: Any) -> Optional[PaymentEvent]:
    """Translate a PaymentIntent's status; None while the customer has not acted."""
    status = intent["status"]
    transaction_id = (intent.get("metadata") or {}).get("transaction_id")
    base = {
        "gateway_id": GatewayId.STRIPE,
        "gateway_transaction_id": intent["id"],
        "transaction_id": transaction_id,
        "amount": intent.get("amount"),
    }
    if status == "succeeded":
        return PaymentEvent(outcome=EventOutcome.SUCCEEDED, **base)
    if status == "processing":
        return PaymentEvent(outcome=EventOutcome.PENDING, **base)
    if status == "canceled":
        reason = intent.get("cancellation_reason") or "canceled"
        return PaymentEvent(outcome=EventOutcome.FAILED, failure_reason=reason, **base)
    last_error = intent.get("last_payment_error")
    if status == "requires_payment_method" and last_error:
        reason = last_error.get("message") or last_error.get("code") or "payment_failed"
        return PaymentEvent(outcome=EventOutcome.FAILED, failure_reason=reason, **base)
    return None


class StripeGateway(GatewayAdapter):
    """Card payments through Stripe PaymentIntents."""

    gateway_id = GatewayId.STRIPE

    def __init__(self, client: StripeClient, webhook_secret: str):
        super().__init__(client.caller)
        self.client = client
        self.webhook_secret = webhook_secret

    async def begin(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> ProviderHandle:
        destination = metadata.get("connected_account_id")
        intent = await self.client.create_payment_intent(
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
            metadata={k: str(metadata[k]) for k in METADATA_KEYS if metadata.get(k)},
            destination=destination,
            application_fee_amount=metadata.get("application_fee_amount") if destination else None,
        )
        return ProviderHandle(
            ref=intent["id"],
            client_secret=intent.get("client_secret"),
            direct_payout=bool(destination),
        )

    async def verify(self, raw: RawWebhook) -> Dict[str, Any]:
        signature = raw.header("stripe-signature")
        if not signature:
            logger.warning("stripe_webhook_missing_signature")
            raise SecurityError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(
                payload=raw.body,
                sig_header=signature,
                secret=self.webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            raise SecurityError(f"Invalid webhook signature: {str(e)}")
        except ValueError as e:
            raise SecurityError(f"Invalid webhook payload: {str(e)}")
        return json.loads(raw.body)

    def parse_event(self, payload: Dict[str, Any], raw: RawWebhook) -> Optional[PaymentEvent]:
        event_type = payload.get("type")
        obj = (payload.get("data") or {}).get("object") or {}
        event_id = payload.get("id")

        if event_type == "charge.refunded":
            if not obj.get("refunded"):
                # Partial refunds do not change the transaction state
                logger.info("stripe_partial_refund_ignored", charge_id=obj.get("id"))
                return None
            return PaymentEvent(
                gateway_id=GatewayId.STRIPE,
                outcome=EventOutcome.REFUNDED,
                gateway_transaction_id=obj.get("payment_intent"),
                transaction_id=(obj.get("metadata") or {}).get("transaction_id"),
                provider_event_id=event_id,
                amount=obj.get("amount_refunded"),
            )

        outcomes = {
            "payment_intent.succeeded": EventOutcome.SUCCEEDED,
            "payment_intent.processing": EventOutcome.PENDING,
            "payment_intent.payment_failed": EventOutcome.FAILED,
            "payment_intent.canceled": EventOutcome.FAILED,
        }
        outcome = outcomes.get(event_type)
        if outcome is None:
            logger.info("stripe_event_ignored", event_id=event_id, event_type=event_type)
            return None

        failure_reason = None
        if event_type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            failure_reason = last_error.get("message") or last_error.get("code") or "payment_failed"
        elif event_type == "payment_intent.canceled":
            failure_reason = obj.get("cancellation_reason") or "canceled"

        return PaymentEvent(
            gateway_id=GatewayId.STRIPE,
            outcome=outcome,
            gateway_transaction_id=obj.get("id"),
            transaction_id=(obj.get("metadata") or {}).get("transaction_id"),
            failure_reason=failure_reason,
            provider_event_id=event_id,
            amount=obj.get("amount"),
        )

    async def poll_status(self, ref: str) -> Optional[PaymentEvent]:
        intent = await self.client.retrieve_payment_intent(ref)
        return _intent_event(intent)

    async def finalize(self, ref: str) -> Optional[PaymentEvent]:
        # Stripe payments are confirmed client-side
        return await self.poll_status(ref)

    async def refund(
        self, ref: str, amount: int, currency: str, idempotency_key: str
    ) -> Optional[PaymentEvent]:
        refund = await self.client.create_refund(ref, amount, idempotency_key)
        if refund["status"] == "succeeded":
            return PaymentEvent(
                gateway_id=GatewayId.STRIPE,
                outcome=EventOutcome.REFUNDED,
                gateway_transaction_id=ref,
                amount=amount,
            )
        if refund["status"] in ("failed", "canceled"):
            raise GatewayError(
                f"Stripe refund {refund['id']} {refund['status']}",
                code=f"refund_{refund['status']}",
                category=GatewayErrorCategory.DECLINED,
                gateway_id=GatewayId.STRIPE.value,
            )
        return None


class StripeTransferRail(DisbursementRail):
    """Pays creators through transfers to their Stripe connected accounts."""

    name = "stripe_transfer"
    method = PayoutMethod.STRIPE_CONNECT

    def __init__(self, client: StripeClient):
        self.client = client

    def destination(self, profile: CreatorPaymentProfile) -> Optional[str]:
        return profile.stripe_connect_account_id

    async def submit(
        self, payout: Payout, profile: CreatorPaymentProfile, reference: str
    ) -> DisbursementResult:
        destination = self.destination(profile)
        if not destination:
            raise DisbursementError("Profile has no Stripe connected account", "missing_destination")
        try:
            transfer = await self.client.create_transfer(
                amount=payout.amount,
                currency=payout.currency,
                destination=destination,
                transfer_group=reference,
                metadata={"payout_id": payout.id, "creator_id": payout.creator_id},
            )
        except GatewayError as e:
            if e.is_transient:
                raise
            raise DisbursementError(str(e), e.code)
        return DisbursementResult(
            status=DisbursementStatus.SUCCEEDED, provider_reference=transfer["id"]
        )

    async def lookup(self, payout: Payout, reference: str) -> DisbursementResult:
        transfer = await self.client.find_transfer(reference)
        if transfer is None:
            return DisbursementResult(status=DisbursementStatus.NOT_FOUND)
        if transfer.get("reversed"):
            return DisbursementResult(
                status=DisbursementStatus.FAILED,
                provider_reference=transfer["id"],
                reason="transfer_reversed",
            )
        return DisbursementResult(
            status=DisbursementStatus.SUCCEEDED, provider_reference=transfer["id"]
        )
