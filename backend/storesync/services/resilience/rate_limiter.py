"""
Token bucket rate limiter for the Shopify REST Admin API.

WHAT:
    Throttles outbound Shopify calls to a fixed number of requests per window.
    The bucket refills all at once when the window resets (no gradual leak),
    and resyncs from Shopify's call-limit headers after every response.

WHY:
    Shopify enforces a leaky bucket per app/store (40 requests, leaking 2/s on
    standard plans). Tracking the server-reported usage keeps us under the
    limit even when other clients share the same bucket.

HEADERS:
    X-Shopify-Shop-Api-Call-Limit: "35/40" (used/total)
    X-Shopify-Api-Request-Bucket-Leak-Rate: "2" (requests drained per second)

REFERENCES:
    - https://shopify.dev/docs/api/usage/rate-limits
    - storesync/services/shopify_client.py (calls wait_for_token / update_from_headers)
"""

import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

CALL_LIMIT_HEADER = "x-shopify-shop-api-call-limit"
LEAK_RATE_HEADER = "x-shopify-api-request-bucket-leak-rate"
DEFAULT_LEAK_RATE = 2.0


class RateLimiter:
    """
    All-or-nothing token bucket.

    WHAT: Hands out at most ``max_requests`` tokens per ``window_seconds``
    WHY: Keeps sync runs inside Shopify's request budget

    Usage:
        limiter = RateLimiter(max_requests=40, window_seconds=1.0)
        await limiter.wait_for_token()
        response = await http.get(url)
        limiter.update_from_headers(response.headers)
    """

    def __init__(
        self,
        max_requests: int = 40,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep

        self.tokens = max_requests
        self.reset_time = self._clock() + window_seconds

    def _refill_if_due(self) -> None:
        now = self._clock()
        if now >= self.reset_time:
            self.tokens = self.max_requests
            self.reset_time = now + self.window_seconds

    async def wait_for_token(self) -> None:
        """Take a token, suspending until the window resets if the bucket is empty.

        Never raises: when no tokens are left and no reset is pending in the
        future, the call proceeds without a token.
        """
        while True:
            self._refill_if_due()

            if self.tokens > 0:
                self.tokens -= 1
                return

            wait_time = self.reset_time - self._clock()
            if wait_time <= 0:
                logger.debug("[RATE_LIMITER] Bucket empty with no pending reset, proceeding")
                return

            logger.info(f"[RATE_LIMITER] Bucket empty, waiting {wait_time:.3f}s for reset")
            await self._sleep(wait_time)

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Resync the bucket from Shopify's reported usage.

        Args:
            headers: Response headers (httpx.Headers or any case-insensitive mapping,
                plain dicts are matched case-insensitively too)
        """
        normalized = {str(k).lower(): v for k, v in headers.items()}
        call_limit = normalized.get(CALL_LIMIT_HEADER)
        if not call_limit:
            return

        try:
            used_str, total_str = call_limit.split("/", 1)
            used = int(used_str)
            total = int(total_str)
        except ValueError:
            logger.warning(f"[RATE_LIMITER] Ignoring malformed call limit header: {call_limit!r}")
            return

        self.tokens = min(self.max_requests, max(0, total - used))

        if self.tokens == 0:
            leak_rate = DEFAULT_LEAK_RATE
            raw_leak_rate = normalized.get(LEAK_RATE_HEADER)
            if raw_leak_rate:
                try:
                    leak_rate = float(raw_leak_rate) or DEFAULT_LEAK_RATE
                except ValueError:
                    pass
            self.reset_time = self._clock() + math.ceil(used / leak_rate)
            logger.warning(
                f"[RATE_LIMITER] Shopify bucket exhausted ({call_limit}), "
                f"resetting in {math.ceil(used / leak_rate)}s"
            )
        else:
            logger.debug(f"[RATE_LIMITER] Synced from headers: {self.tokens} remaining ({call_limit})")

    def get_status(self) -> Dict[str, Any]:
        return {
            "remaining": self.tokens,
            "reset_time": datetime.fromtimestamp(self.reset_time, tz=timezone.utc),
            "is_limited": self.tokens == 0 and self._clock() < self.reset_time,
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }

    def reset(self) -> None:
        self.tokens = self.max_requests
        self.reset_time = self._clock() + self.window_seconds
