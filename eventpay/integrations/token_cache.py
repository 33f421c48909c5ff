"""OAuth access token cache with single-flight refresh."""
import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

import structlog

from eventpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Returns (access_token, expires_in_seconds)
TokenFetcher = Callable[[], Awaitable[Tuple[str, int]]]


@dataclass(frozen=True)
class CachedToken:
    value: str
    refresh_at: float


class TokenCache:
    """
    Caches a provider access token and refreshes it before expiry.

    Concurrent callers that find the token stale share a single refresh. The
    token is refreshed ``safety_margin`` seconds before it expires, or at half
    its lifetime when the lifetime is shorter than twice the margin.
    """

    def __init__(
        self,
        fetch: TokenFetcher,
        name: str,
        safety_margin: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize token cache.

        Args:
            fetch: Coroutine function obtaining a fresh token
            name: Provider name, for logs and metrics
            safety_margin: Seconds before expiry at which to refresh
            clock: Monotonic clock, injectable for tests
        """
        self._fetch = fetch
        self.name = name
        self.safety_margin = safety_margin
        self._clock = clock
        self._token: Optional[CachedToken] = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> Optional[str]:
        token = self._token
        if token is not None and self._clock() < token.refresh_at:
            return token.value
        return None

    async def get(self) -> str:
        """Return a valid access token, refreshing it if needed."""
        value = self._fresh()
        if value is not None:
            return value

        async with self._lock:
            # Another caller may have refreshed while we waited
            value = self._fresh()
            if value is not None:
                return value

            access_token, expires_in = await self._fetch()
            lifetime = max(int(expires_in), 0)
            usable = max(lifetime - self.safety_margin, lifetime // 2)
            self._token = CachedToken(value=access_token, refresh_at=self._clock() + usable)
            metrics.record_token_refresh(self.name)
            logger.info("access_token_refreshed", provider=self.name, expires_in=lifetime)
            return access_token

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after the provider rejected it."""
        self._token = None
