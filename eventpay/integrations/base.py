"""
Gateway adapter interface.

Every payment provider is driven through the same capability set. Adapters
translate provider requests, responses and notifications to and from the
gateway-independent vocabulary (ProviderHandle, PaymentEvent) and classify
provider failures as GatewayError.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

import httpx
import structlog

from eventpay.core.errors import GatewayError, GatewayErrorCategory, NotFoundError
from eventpay.core.models import GatewayId, PaymentEvent, ProviderHandle, RawWebhook
from eventpay.integrations.resilience import ResilientCaller

logger = structlog.get_logger(__name__)


class GatewayAdapter(ABC):
    """Uniform interface over a payment provider."""

    gateway_id: GatewayId

    def __init__(self, caller: ResilientCaller):
        self.caller = caller

    @abstractmethod
    async def begin(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> ProviderHandle:
        """
        Initiate a charge of ``amount`` minor units.

        ``metadata`` carries transaction_id, event_id, ticket_id and creator_id,
        plus gateway-specific inputs (payer_msisdn, connected_account_id,
        application_fee_amount). The same idempotency key always yields the
        same provider request.
        """

    async def normalize_event(self, raw: RawWebhook) -> Optional[PaymentEvent]:
        """
        Verify and translate a webhook.

        Returns None for notifications that carry no payment outcome.

        Raises:
            SecurityError: If the notification fails its authenticity check
        """
        payload = await self.verify(raw)
        return self.parse_event(payload, raw)

    @abstractmethod
    async def verify(self, raw: RawWebhook) -> Dict[str, Any]:
        """Check authenticity and return the decoded payload. Raises SecurityError."""

    @abstractmethod
    def parse_event(self, payload: Dict[str, Any], raw: RawWebhook) -> Optional[PaymentEvent]:
        """Translate a verified payload."""

    @abstractmethod
    async def poll_status(self, ref: str) -> Optional[PaymentEvent]:
        """Query the provider for the current outcome. None while undecided."""

    @abstractmethod
    async def finalize(self, ref: str) -> Optional[PaymentEvent]:
        """Complete a payment the customer has approved (capture), or re-query it."""

    @abstractmethod
    async def refund(
        self, ref: str, amount: int, currency: str, idempotency_key: str
    ) -> Optional[PaymentEvent]:
        """Refund a completed payment. None while the refund is still processing."""

    def circuit_state(self) -> str:
        return self.caller.breaker.state

    async def close(self) -> None:
        return None


class GatewayRegistry:
    """Adapters keyed by gateway id."""

    def __init__(self, adapters: Iterable[GatewayAdapter] = ()):
        self._adapters: Dict[GatewayId, GatewayAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: GatewayAdapter) -> None:
        self._adapters[adapter.gateway_id] = adapter
        logger.info("gateway_registered", gateway=adapter.gateway_id.value)

    def get(self, gateway_id: str) -> GatewayAdapter:
        """
        Look up an adapter.

        Raises:
            NotFoundError: If the gateway is unknown or not configured
        """
        try:
            return self._adapters[GatewayId(gateway_id)]
        except (KeyError, ValueError):
            raise NotFoundError(f"Unknown gateway: {gateway_id}")

    def __contains__(self, gateway_id: object) -> bool:
        try:
            return GatewayId(gateway_id) in self._adapters
        except ValueError:
            return False

    def circuit_states(self) -> Dict[str, str]:
        return {gid.value: adapter.circuit_state() for gid, adapter in self._adapters.items()}

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def to_major_units(amount: int) -> str:
    """Format minor units as a two-decimal major-unit string (5000 -> '50.00')."""
    return str((Decimal(amount) / 100).quantize(Decimal("0.01")))


def from_major_units(value: str) -> int:
    return int((Decimal(value) * 100).quantize(Decimal("1")))


def classify_http_status(status_code: int) -> GatewayErrorCategory:
    if status_code == 429 or status_code >= 500:
        return GatewayErrorCategory.TRANSIENT
    if status_code == 402:
        return GatewayErrorCategory.DECLINED
    return GatewayErrorCategory.CONFIG


def http_error(
    gateway_id: GatewayId,
    operation: str,
    response: httpx.Response,
    code: Optional[str] = None,
    category: Optional[GatewayErrorCategory] = None,
) -> GatewayError:
    """Build a GatewayError from a failed provider response."""
    category = category or classify_http_status(response.status_code)
    logger.error(
        "gateway_http_error",
        gateway=gateway_id.value,
        operation=operation,
        status_code=response.status_code,
        category=category.value,
        code=code,
    )
    return GatewayError(
        f"{gateway_id.value} {operation} failed with HTTP {response.status_code}",
        code=code or f"http_{response.status_code}",
        category=category,
        gateway_id=gateway_id.value,
    )


def transport_error(gateway_id: GatewayId, operation: str, error: httpx.HTTPError) -> GatewayError:
    """Network failures and timeouts are transient."""
    logger.warning(
        "gateway_transport_error",
        gateway=gateway_id.value,
        operation=operation,
        error=str(error),
    )
    return GatewayError(
        f"{gateway_id.value} {operation} transport error: {error}",
        code="timeout" if isinstance(error, httpx.TimeoutException) else "network",
        category=GatewayErrorCategory.TRANSIENT,
        gateway_id=gateway_id.value,
        original_error=error,
    )
