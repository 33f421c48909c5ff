"""
MTN Mobile Money integration.

Implements:
- Per-product API clients (collection, disbursement), each with its own
  OAuth token cache
- Request-to-pay collections with deterministic reference ids
- Signed per-request callback URLs and callback verification
- Status polling for collections, refunds and transfers
- Disbursement transfers as a payout rail
"""
import hashlib
import hmac
import json
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import structlog

from eventpay.config import Settings
from eventpay.core.errors import (
    DisbursementError,
    GatewayError,
    GatewayErrorCategory,
    SecurityError,
    ValidationError,
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
from eventpay.integrations.base import (
    GatewayAdapter,
    from_major_units,
    http_error,
    to_major_units,
    transport_error,
)
from eventpay.integrations.disbursement import DisbursementRail
from eventpay.integrations.resilience import ResilientCaller
from eventpay.integrations.token_cache import TokenCache

logger = structlog.get_logger(__name__)

# Namespace for reference ids derived from idempotency keys
REFERENCE_NAMESPACE = uuid.UUID("6f1c2b4e-8a57-4d0b-9a3e-2f5d7c1e9b40")

STATUS_OUTCOMES = {
    "SUCCESSFUL": EventOutcome.SUCCEEDED,
    "FAILED": EventOutcome.FAILED,
    "REJECTED": EventOutcome.FAILED,
    "TIMEOUT": EventOutcome.FAILED,
    "PENDING": EventOutcome.PENDING,
}


def reference_for(idempotency_key: str) -> str:
    """Deterministic X-Reference-Id for an idempotency key."""
    return str(uuid.uuid5(REFERENCE_NAMESPACE, idempotency_key))


def sign_reference(secret: str, reference: str) -> str:
    return hmac.new(secret.encode(), reference.encode(), hashlib.sha256).hexdigest()


def _failure_reason(body: Dict[str, Any]) -> str:
    reason = body.get("reason")
    if isinstance(reason, dict):
        return reason.get("code") or reason.get("message") or "failed"
    return reason or str(body.get("status", "failed")).lower()


class MtnApiClient:
    """
    HTTP client for one MTN MoMo product (collection or disbursement).

    Every request carries the product's subscription key, the target
    environment and a bearer token from the product's own token cache.
    """

    def __init__(
        self,
        product: str,
        http_client: httpx.AsyncClient,
        subscription_key: str,
        user_id: str,
        api_key: str,
        target_environment: str,
        caller: ResilientCaller,
        safety_margin: int = 300,
        token_cache: Optional[TokenCache] = None,
    ):
        self.product = product
        self.http = http_client
        self.subscription_key = subscription_key
        self.user_id = user_id
        self.api_key = api_key
        self.target_environment = target_environment
        self.caller = caller
        self.tokens = token_cache or TokenCache(
            self._fetch_token,
            name=f"{GatewayId.MOBILE_MONEY.value}_{product}",
            safety_margin=safety_margin,
        )

    async def _fetch_token(self) -> tuple[str, int]:
        try:
            response = await self.http.post(
                f"/{self.product}/token/",
                auth=(self.user_id, self.api_key),
                headers={"Ocp-Apim-Subscription-Key": self.subscription_key},
            )
        except httpx.HTTPError as e:
            raise transport_error(GatewayId.MOBILE_MONEY, f"{self.product}_token", e)
        if response.status_code != 200:
            raise http_error(GatewayId.MOBILE_MONEY, f"{self.product}_token", response)
        body = response.json()
        return body["access_token"], int(body.get("expires_in", 3600))

    async def request(
        self,
        operation: str,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        async def send() -> httpx.Response:
            token = await self.tokens.get()
            request_headers = {
                "Authorization": f"Bearer {token}",
                "X-Target-Environment": self.target_environment,
                "Ocp-Apim-Subscription-Key": self.subscription_key,
                **(headers or {}),
            }
            try:
                response = await self.http.request(
                    method, f"/{self.product}{path}", json=json_body, headers=request_headers
                )
            except httpx.HTTPError as e:
                raise transport_error(GatewayId.MOBILE_MONEY, operation, e)
            if response.status_code == 401:
                self.tokens.invalidate()
                raise http_error(
                    GatewayId.MOBILE_MONEY,
                    operation,
                    response,
                    category=GatewayErrorCategory.TRANSIENT,
                )
            if response.status_code == 429 or response.status_code >= 500:
                raise http_error(GatewayId.MOBILE_MONEY, operation, response)
            return response

        return await self.caller(operation, send)


def build_mtn_clients(
    settings: Settings, http_client: Optional[httpx.AsyncClient] = None
) -> tuple[MtnApiClient, MtnApiClient]:
    """Collection and disbursement clients sharing one HTTP client and circuit breaker."""
    http = http_client or httpx.AsyncClient(
        base_url=settings.mtn_base_url, timeout=settings.gateway_timeout_seconds
    )
    caller = ResilientCaller(
        GatewayId.MOBILE_MONEY.value,
        timeout_seconds=settings.gateway_timeout_seconds,
        max_attempts=settings.gateway_retry_max_attempts,
        base_delay=settings.gateway_retry_base_delay,
    )
    collection = MtnApiClient(
        "collection",
        http,
        subscription_key=settings.mtn_collection_subscription_key,
        user_id=settings.mtn_collection_user_id,
        api_key=settings.mtn_collection_api_key,
        target_environment=settings.mtn_target_environment,
        caller=caller,
        safety_margin=settings.token_safety_margin_seconds,
    )
    disbursement = MtnApiClient(
        "disbursement",
        http,
        subscription_key=settings.mtn_disbursement_subscription_key,
        user_id=settings.mtn_disbursement_user_id,
        api_key=settings.mtn_disbursement_api_key,
        target_environment=settings.mtn_target_environment,
        caller=caller,
        safety_margin=settings.token_safety_margin_seconds,
    )
    return collection, disbursement


class MobileMoneyGateway(GatewayAdapter):
    """MTN MoMo request-to-pay collections."""

    gateway_id = GatewayId.MOBILE_MONEY

    def __init__(
        self,
        collection: MtnApiClient,
        disbursement: Optional[MtnApiClient] = None,
        callback_url: Optional[str] = None,
        callback_secret: str = "",
        confirm_callbacks: bool = False,
    ):
        """
        Initialize mobile money gateway.

        Args:
            collection: Collection product client
            disbursement: Disbursement product client, used for refunds
            callback_url: Public webhook URL; outcomes are polled when unset
            callback_secret: Key signing per-request callback URLs
            confirm_callbacks: Re-query the status endpoint before trusting a callback
        """
        super().__init__(collection.caller)
        self.collection = collection
        self.disbursement = disbursement
        self.callback_url = callback_url
        self.callback_secret = callback_secret
        self.confirm_callbacks = confirm_callbacks

    @property
    def uses_callbacks(self) -> bool:
        return bool(self.callback_url and self.callback_secret)

    def signed_callback_url(self, reference: str) -> str:
        query = urlencode({"ref": reference, "token": sign_reference(self.callback_secret, reference)})
        separator = "&" if "?" in self.callback_url else "?"
        return f"{self.callback_url}{separator}{query}"

    async def begin(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> ProviderHandle:
        msisdn = metadata.get("payer_msisdn")
        if not msisdn:
            raise ValidationError("payer_msisdn is required for mobile money payments")

        reference = reference_for(idempotency_key)
        headers = {"X-Reference-Id": reference}
        if self.uses_callbacks:
            headers["X-Callback-Url"] = self.signed_callback_url(reference)

        body = {
            "amount": to_major_units(amount),
            "currency": currency,
            "externalId": metadata["transaction_id"],
            "payer": {"partyIdType": "MSISDN", "partyId": str(msisdn)},
            "payerMessage": metadata.get("description") or f"Ticket {metadata.get('ticket_id')}",
            "payeeNote": f"Event {metadata.get('event_id')}",
        }
        response = await self.collection.request(
            "request_to_pay", "POST", "/v1_0/requesttopay", json_body=body, headers=headers
        )
        if response.status_code == 409:
            # Same reference already submitted: this is a replay of the same request
            logger.info("mtn_request_to_pay_replayed", reference=reference)
        elif response.status_code != 202:
            raise http_error(self.gateway_id, "request_to_pay", response)

        logger.info(
            "mtn_request_to_pay_accepted",
            reference=reference,
            transaction_id=metadata["transaction_id"],
        )
        return ProviderHandle(ref=reference, acknowledged=True)

    async def verify(self, raw: RawWebhook) -> Dict[str, Any]:
        reference = raw.query.get("ref")
        token = raw.query.get("token")
        if not self.callback_secret:
            raise SecurityError("Mobile money callbacks are not enabled")
        if not reference or not token:
            raise SecurityError("Callback URL is missing its reference or token")
        expected = sign_reference(self.callback_secret, reference)
        if not hmac.compare_digest(expected, token):
            raise SecurityError("Callback token does not match reference")
        try:
            body = json.loads(raw.body or b"{}")
        except ValueError:
            raise SecurityError("Callback body is not valid JSON")
        if not isinstance(body, dict):
            raise SecurityError("Callback body is not a JSON object")
        return {**body, "_reference": reference}

    def parse_event(self, payload: Dict[str, Any], raw: RawWebhook) -> Optional[PaymentEvent]:
        return self._status_event(payload["_reference"], payload)

    async def normalize_event(self, raw: RawWebhook) -> Optional[PaymentEvent]:
        event = await super().normalize_event(raw)
        if event is not None and self.confirm_callbacks:
            confirmed = await self.poll_status(event.gateway_transaction_id)
            logger.info(
                "mtn_callback_confirmed",
                reference=event.gateway_transaction_id,
                reported=event.outcome.value,
                confirmed=confirmed.outcome.value if confirmed else None,
            )
            return confirmed
        return event

    def _status_event(self, reference: str, body: Dict[str, Any]) -> Optional[PaymentEvent]:
        status = str(body.get("status", "")).upper()
        outcome = STATUS_OUTCOMES.get(status)
        if outcome is None:
            logger.warning("mtn_unknown_status", reference=reference, status=status)
            return None
        amount = None
        if body.get("amount") is not None:
            amount = from_major_units(str(body["amount"]))
        return PaymentEvent(
            gateway_id=GatewayId.MOBILE_MONEY,
            outcome=outcome,
            gateway_transaction_id=reference,
            transaction_id=body.get("externalId"),
            failure_reason=_failure_reason(body) if outcome == EventOutcome.FAILED else None,
            provider_event_id=f"{reference}:{status}",
            amount=amount,
        )

    async def poll_status(self, ref: str) -> Optional[PaymentEvent]:
        response = await self.collection.request(
            "request_to_pay_status", "GET", f"/v1_0/requesttopay/{ref}"
        )
        if response.status_code == 404:
            logger.warning("mtn_request_to_pay_not_found", reference=ref)
            return None
        if not response.is_success:
            raise http_error(self.gateway_id, "request_to_pay_status", response)
        return self._status_event(ref, response.json())

    async def finalize(self, ref: str) -> Optional[PaymentEvent]:
        return await self.poll_status(ref)

    async def refund(
        self, ref: str, amount: int, currency: str, idempotency_key: str
    ) -> Optional[PaymentEvent]:
        """Refund through the disbursement product, then check the refund's status once."""
        if self.disbursement is None:
            raise GatewayError(
                "Mobile money refunds require disbursement credentials",
                code="refund_unavailable",
                category=GatewayErrorCategory.CONFIG,
                gateway_id=self.gateway_id.value,
            )
        refund_reference = reference_for(f"refund:{idempotency_key}")
        response = await self.disbursement.request(
            "refund",
            "POST",
            "/v1_0/refund",
            json_body={
                "amount": to_major_units(amount),
                "currency": currency,
                "externalId": idempotency_key,
                "payerMessage": "Ticket refund",
                "payeeNote": "Ticket refund",
                "referenceIdToRefund": ref,
            },
            headers={"X-Reference-Id": refund_reference},
        )
        if response.status_code not in (202, 409):
            raise http_error(self.gateway_id, "refund", response)

        status_response = await self.disbursement.request(
            "refund_status", "GET", f"/v1_0/refund/{refund_reference}"
        )
        if not status_response.is_success:
            return None
        body = status_response.json()
        status = str(body.get("status", "")).upper()
        if status == "SUCCESSFUL":
            return PaymentEvent(
                gateway_id=GatewayId.MOBILE_MONEY,
                outcome=EventOutcome.REFUNDED,
                gateway_transaction_id=ref,
                provider_event_id=f"{refund_reference}:{status}",
                amount=amount,
            )
        if status == "FAILED":
            raise GatewayError(
                f"Mobile money refund {refund_reference} failed",
                code=_failure_reason(body),
                category=GatewayErrorCategory.DECLINED,
                gateway_id=self.gateway_id.value,
            )
        return None

    async def close(self) -> None:
        # The disbursement client shares this HTTP client
        await self.collection.http.aclose()


class MobileMoneyDisbursementRail(DisbursementRail):
    """Pays creators to their mobile money wallet via disbursement transfers."""

    name = "mtn_disbursement"
    method = PayoutMethod.MOMO

    def __init__(self, client: MtnApiClient):
        self.client = client

    def destination(self, profile: CreatorPaymentProfile) -> Optional[str]:
        return profile.momo_number

    async def submit(
        self, payout: Payout, profile: CreatorPaymentProfile, reference: str
    ) -> DisbursementResult:
        msisdn = self.destination(profile)
        if not msisdn:
            raise DisbursementError("Profile has no mobile money number", "missing_destination")
        response = await self.client.request(
            "transfer",
            "POST",
            "/v1_0/transfer",
            json_body={
                "amount": to_major_units(payout.amount),
                "currency": payout.currency,
                "externalId": payout.id,
                "payee": {"partyIdType": "MSISDN", "partyId": msisdn},
                "payerMessage": "Creator payout",
                "payeeNote": f"Payout {payout.id}",
            },
            headers={"X-Reference-Id": reference},
        )
        if response.status_code in (202, 409):
            logger.info("mtn_transfer_submitted", payout_id=payout.id, reference=reference)
            return DisbursementResult(status=DisbursementStatus.PENDING, provider_reference=reference)
        if response.status_code in (400, 403, 404, 422):
            raise DisbursementError(
                f"MTN rejected transfer for payout {payout.id} (HTTP {response.status_code})",
                f"http_{response.status_code}",
            )
        raise http_error(GatewayId.MOBILE_MONEY, "transfer", response)

    async def lookup(self, payout: Payout, reference: str) -> DisbursementResult:
        response = await self.client.request("transfer_status", "GET", f"/v1_0/transfer/{reference}")
        if response.status_code == 404:
            return DisbursementResult(status=DisbursementStatus.NOT_FOUND)
        if not response.is_success:
            raise http_error(GatewayId.MOBILE_MONEY, "transfer_status", response)
        body = response.json()
        status = str(body.get("status", "")).upper()
        provider_reference = body.get("financialTransactionId") or reference
        if status == "SUCCESSFUL":
            return DisbursementResult(
                status=DisbursementStatus.SUCCEEDED, provider_reference=provider_reference
            )
        if status in ("FAILED", "REJECTED", "TIMEOUT"):
            return DisbursementResult(
                status=DisbursementStatus.FAILED,
                provider_reference=provider_reference,
                reason=_failure_reason(body),
            )
        return DisbursementResult(status=DisbursementStatus.PENDING, provider_reference=reference)
