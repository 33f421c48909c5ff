"""
PayPal integration over the REST Orders v2 API.

Implements:
- OAuth client-credentials token, cached with single-flight refresh
- Order creation with an approval link, and capture after approval
- Webhook verification through PayPal's verify-webhook-signature API
- Capture refunds
"""
import json
from typing import Any, Dict, Optional

import httpx
import structlog

from eventpay.config import Settings
from eventpay.core.errors import GatewayError, GatewayErrorCategory, SecurityError
from eventpay.core.models import (
    EventOutcome,
    GatewayId,
    PaymentEvent,
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
from eventpay.integrations.resilience import ResilientCaller
from eventpay.integrations.token_cache import TokenCache

logger = structlog.get_logger(__name__)

VERIFICATION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

# Unprocessable-entity issues that mean the payer's funding was refused
DECLINE_ISSUES = {"INSTRUMENT_DECLINED", "PAYER_ACTION_REQUIRED", "TRANSACTION_REFUSED"}

CAPTURE_OUTCOMES = {
    "COMPLETED": EventOutcome.SUCCEEDED,
    "PENDING": EventOutcome.PENDING,
    "DECLINED": EventOutcome.FAILED,
    "FAILED": EventOutcome.FAILED,
    "REFUNDED": EventOutcome.REFUNDED,
}

WEBHOOK_OUTCOMES = {
    "PAYMENT.CAPTURE.COMPLETED": EventOutcome.SUCCEEDED,
    "PAYMENT.CAPTURE.PENDING": EventOutcome.PENDING,
    "PAYMENT.CAPTURE.DENIED": EventOutcome.FAILED,
    "PAYMENT.CAPTURE.DECLINED": EventOutcome.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": EventOutcome.REFUNDED,
}


def _issue(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    details = body.get("details") or []
    if details and isinstance(details, list):
        return details[0].get("issue")
    return body.get("name")


def _first_capture(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


def _order_transaction_id(order: Dict[str, Any]) -> Optional[str]:
    for unit in order.get("purchase_units") or []:
        if unit.get("custom_id"):
            return unit["custom_id"]
    return None


class PayPalGateway(GatewayAdapter):
    """PayPal checkout: create order, buyer approves, platform captures."""

    gateway_id = GatewayId.PAYPAL

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        caller: Optional[ResilientCaller] = None,
        token_cache: Optional[TokenCache] = None,
    ):
        """
        Initialize PayPal gateway.

        Args:
            settings: Application settings
            http_client: HTTP client; built from settings when omitted
            caller: Resilience wrapper for provider calls
            token_cache: Access token cache; built around the OAuth endpoint when omitted
        """
        super().__init__(
            caller
            or ResilientCaller(
                GatewayId.PAYPAL.value,
                timeout_seconds=settings.gateway_timeout_seconds,
                max_attempts=settings.gateway_retry_max_attempts,
                base_delay=settings.gateway_retry_base_delay,
            )
        )
        self.settings = settings
        self.http = http_client or httpx.AsyncClient(
            base_url=settings.paypal_base_url, timeout=settings.gateway_timeout_seconds
        )
        self.tokens = token_cache or TokenCache(
            self._fetch_token,
            name=GatewayId.PAYPAL.value,
            safety_margin=settings.token_safety_margin_seconds,
        )

    async def _fetch_token(self) -> tuple[str, int]:
        try:
            response = await self.http.post(
                "/v1/oauth2/token",
                auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise transport_error(self.gateway_id, "token", e)
        if response.status_code != 200:
            raise http_error(self.gateway_id, "token", response)
        body = response.json()
        return body["access_token"], int(body.get("expires_in", 3600))

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> httpx.Response:
        async def send() -> httpx.Response:
            token = await self.tokens.get()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            }
            if request_id:
                headers["PayPal-Request-Id"] = request_id
            try:
                response = await self.http.request(method, path, json=json_body, headers=headers)
            except httpx.HTTPError as e:
                raise transport_error(self.gateway_id, operation, e)
            if response.status_code == 401:
                self.tokens.invalidate()
                raise http_error(
                    self.gateway_id, operation, response, category=GatewayErrorCategory.TRANSIENT
                )
            if response.status_code == 429 or response.status_code >= 500:
                raise http_error(self.gateway_id, operation, response)
            return response

        return await self.caller(operation, send)

    def _raise_for_response(self, operation: str, response: httpx.Response) -> None:
        if response.is_success:
            return
        issue = _issue(response)
        category = None
        if response.status_code == 422 and issue in DECLINE_ISSUES:
            category = GatewayErrorCategory.DECLINED
        raise http_error(self.gateway_id, operation, response, code=issue, category=category)

    async def begin(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> ProviderHandle:
        transaction_id = metadata["transaction_id"]
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": transaction_id,
                    "custom_id": transaction_id,
                    "description": metadata.get("description") or f"Ticket {metadata.get('ticket_id')}",
                    "amount": {"currency_code": currency, "value": to_major_units(amount)},
                }
            ],
            "application_context": {
                "brand_name": self.settings.paypal_brand_name,
                "return_url": self.settings.paypal_return_url,
                "cancel_url": self.settings.paypal_cancel_url,
                "user_action": "PAY_NOW",
            },
        }
        response = await self._request(
            "create_order", "POST", "/v2/checkout/orders", json_body=body, request_id=idempotency_key
        )
        self._raise_for_response("create_order", response)
        order = response.json()
        approval_url = next(
            (
                link["href"]
                for link in order.get("links") or []
                if link.get("rel") in ("approve", "payer-action")
            ),
            None,
        )
        logger.info("paypal_order_created", order_id=order["id"], transaction_id=transaction_id)
        return ProviderHandle(ref=order["id"], approval_url=approval_url)

    async def verify(self, raw: RawWebhook) -> Dict[str, Any]:
        try:
            event = json.loads(raw.body)
        except ValueError:
            raise SecurityError("PayPal webhook body is not valid JSON")

        verification: Dict[str, Any] = {}
        for field, header in VERIFICATION_HEADERS.items():
            value = raw.header(header)
            if not value:
                raise SecurityError(f"Missing {header} header")
            verification[field] = value
        if not self.settings.paypal_webhook_id:
            raise SecurityError("PayPal webhook id is not configured")
        verification["webhook_id"] = self.settings.paypal_webhook_id
        verification["webhook_event"] = event

        response = await self._request(
            "verify_webhook", "POST", "/v1/notifications/verify-webhook-signature", json_body=verification
        )
        if not response.is_success or response.json().get("verification_status") != "SUCCESS":
            raise SecurityError("PayPal webhook signature verification failed")
        return event

    def parse_event(self, payload: Dict[str, Any], raw: RawWebhook) -> Optional[PaymentEvent]:
        event_type = payload.get("event_type")
        outcome = WEBHOOK_OUTCOMES.get(event_type)
        if outcome is None:
            logger.info("paypal_event_ignored", event_id=payload.get("id"), event_type=event_type)
            return None

        resource = payload.get("resource") or {}
        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get(
            "order_id"
        )
        failure_reason = None
        if outcome == EventOutcome.FAILED:
            failure_reason = (resource.get("status_details") or {}).get("reason") or "capture_denied"

        amount = None
        value = (resource.get("amount") or {}).get("value")
        if outcome == EventOutcome.REFUNDED:
            # Refund events also fire for partial refunds; amount is the cumulative refunded total
            refunded_total = (
                (resource.get("seller_payable_breakdown") or {}).get("total_refunded_amount") or {}
            ).get("value")
            value = refunded_total if refunded_total is not None else value
        if value is not None:
            amount = from_major_units(value)

        return PaymentEvent(
            gateway_id=GatewayId.PAYPAL,
            outcome=outcome,
            gateway_transaction_id=order_id,
            transaction_id=resource.get("custom_id"),
            failure_reason=failure_reason,
            provider_event_id=payload.get("id"),
            amount=amount,
        )

    async def _get_order(self, ref: str) -> Dict[str, Any]:
        response = await self._request("get_order", "GET", f"/v2/checkout/orders/{ref}")
        self._raise_for_response("get_order", response)
        return response.json()

    def _order_event(self, order: Dict[str, Any]) -> Optional[PaymentEvent]:
        status = order.get("status")
        if status == "VOIDED":
            return PaymentEvent(
                gateway_id=GatewayId.PAYPAL,
                outcome=EventOutcome.FAILED,
                gateway_transaction_id=order["id"],
                transaction_id=_order_transaction_id(order),
                failure_reason="order_voided",
            )
        capture = _first_capture(order)
        if status != "COMPLETED" or capture is None:
            return None
        outcome = CAPTURE_OUTCOMES.get(capture.get("status"))
        if outcome is None:
            return None
        return PaymentEvent(
            gateway_id=GatewayId.PAYPAL,
            outcome=outcome,
            gateway_transaction_id=order["id"],
            transaction_id=_order_transaction_id(order),
            failure_reason="capture_declined" if outcome == EventOutcome.FAILED else None,
            provider_event_id=capture.get("id"),
        )

    async def poll_status(self, ref: str) -> Optional[PaymentEvent]:
        return self._order_event(await self._get_order(ref))

    async def finalize(self, ref: str) -> Optional[PaymentEvent]:
        """Capture an approved order."""
        response = await self._request(
            "capture_order",
            "POST",
            f"/v2/checkout/orders/{ref}/capture",
            json_body={},
            request_id=f"capture-{ref}",
        )
        if response.status_code == 422 and _issue(response) == "ORDER_ALREADY_CAPTURED":
            logger.info("paypal_order_already_captured", order_id=ref)
            return await self.poll_status(ref)
        self._raise_for_response("capture_order", response)
        order = response.json()
        logger.info("paypal_order_captured", order_id=ref, status=order.get("status"))
        return self._order_event(order)

    async def refund(
        self, ref: str, amount: int, currency: str, idempotency_key: str
    ) -> Optional[PaymentEvent]:
        order = await self._get_order(ref)
        capture = _first_capture(order)
        if capture is None:
            raise GatewayError(
                f"PayPal order {ref} has no capture to refund",
                code="no_capture",
                category=GatewayErrorCategory.CONFIG,
                gateway_id=self.gateway_id.value,
            )
        response = await self._request(
            "refund_capture",
            "POST",
            f"/v2/payments/captures/{capture['id']}/refund",
            json_body={"amount": {"value": to_major_units(amount), "currency_code": currency}},
            request_id=idempotency_key,
        )
        self._raise_for_response("refund_capture", response)
        refund = response.json()
        logger.info("paypal_refund_created", order_id=ref, refund_id=refund.get("id"), status=refund.get("status"))
        if refund.get("status") == "COMPLETED":
            return PaymentEvent(
                gateway_id=GatewayId.PAYPAL,
                outcome=EventOutcome.REFUNDED,
                gateway_transaction_id=ref,
                transaction_id=_order_transaction_id(order),
                amount=amount,
            )
        if refund.get("status") in ("FAILED", "CANCELLED"):
            raise GatewayError(
                f"PayPal refund {refund.get('id')} {refund.get('status')}",
                code="refund_failed",
                category=GatewayErrorCategory.DECLINED,
                gateway_id=self.gateway_id.value,
            )
        return None

    async def close(self) -> None:
        await self.http.aclose()
