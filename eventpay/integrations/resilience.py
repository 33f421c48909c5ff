"""
Resilience wrappers for provider calls.

Implements:
- Circuit breaker per gateway
- Per-call timeout (a timeout is a transient error)
- Exponential backoff retries for transient errors
"""
import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from eventpay.core.errors import GatewayError, GatewayErrorCategory
from eventpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CIRCUIT_OPEN = "circuit_open"


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when transient errors exceed a threshold. Declines and configuration
    errors are answers from a healthy provider and do not count.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Gateway the breaker protects
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            clock: Monotonic clock
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._clock = clock

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute a coroutine function with circuit breaker protection.

        Raises:
            GatewayError: Transient ``circuit_open`` error if the circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time is not None
                and self._clock() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", gateway=self.name)
            else:
                raise GatewayError(
                    f"Circuit breaker for {self.name} is open",
                    code=CIRCUIT_OPEN,
                    category=GatewayErrorCategory.TRANSIENT,
                    gateway_id=self.name,
                )

        try:
            result = await func()
        except GatewayError as e:
            if e.is_transient:
                self.on_failure()
            else:
                self.on_success()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", gateway=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                gateway=self.name,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)


def _should_retry(error: BaseException) -> bool:
    return (
        isinstance(error, GatewayError)
        and error.is_transient
        and error.code != CIRCUIT_OPEN
    )


class ResilientCaller:
    """
    Runs provider calls under timeout, circuit breaker and retry.

    Example:
        caller = ResilientCaller("paypal", timeout_seconds=15)
        order = await caller("create_order", lambda: client.post(...))
    """

    def __init__(
        self,
        gateway_id: str,
        timeout_seconds: float = 15.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.gateway_id = gateway_id
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.breaker = breaker or CircuitBreaker(gateway_id)

    async def __call__(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_should_retry),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "gateway_call_retry",
                        gateway=self.gateway_id,
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self.breaker.call(lambda: self._timed(operation, func))
        raise AssertionError("unreachable")  # AsyncRetrying re-raises the last error

    async def _timed(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        started = time.perf_counter()
        status = "success"
        try:
            return await asyncio.wait_for(func(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            status = "timeout"
            metrics.record_gateway_error(self.gateway_id, GatewayErrorCategory.TRANSIENT.value)
            logger.warning("gateway_call_timeout", gateway=self.gateway_id, operation=operation)
            raise GatewayError(
                f"{self.gateway_id} {operation} timed out after {self.timeout_seconds}s",
                code="timeout",
                category=GatewayErrorCategory.TRANSIENT,
                gateway_id=self.gateway_id,
                original_error=e,
            )
        except GatewayError as e:
            status = "error"
            metrics.record_gateway_error(self.gateway_id, e.category.value)
            raise
        finally:
            metrics.record_gateway_call(
                self.gateway_id, operation, status, time.perf_counter() - started
            )
