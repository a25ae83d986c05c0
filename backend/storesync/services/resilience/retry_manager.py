"""
Retry with exponential backoff and jitter.

WHAT:
    Re-runs a failing async operation up to ``max_retries`` extra times.
    Delay for retry attempt k (k starts at 1) is
        min(base_delay * backoff_factor ** (k - 1) * jitter, max_delay)
    with jitter drawn uniformly from [0.5, 1.0).

WHY:
    Most Shopify failures are transient (timeouts, 429, 5xx). Auth and
    validation failures are not, and retrying them only burns rate limit.

CLASSIFICATION:
    1. Errors exposing a ``retryable`` attribute (ShopifyAPIError sets it from
       its ShopifyErrorKind at the transport boundary) are trusted.
    2. CircuitOpenError is never retried.
    3. Anything else is terminal when its message matches NON_RETRYABLE_PATTERN.

REFERENCES:
    - storesync/services/shopify_client.py (ShopifyAPIError / ShopifyErrorKind)
    - https://aws.amazon.com/blogs/architecture/exponential-backoff-and-jitter/
"""

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .circuit_breaker import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_RETRYABLE_PATTERN = re.compile(r"unauthorized|forbidden|validation|invalid|400|404|422", re.IGNORECASE)

JITTER_MIN = 0.5
JITTER_MAX = 1.0


@dataclass
class RetryPolicy:
    """
    Retry configuration.

    Attributes:
        max_retries: Extra attempts after the first try
        base_delay: Delay in seconds before the first retry (before jitter)
        max_delay: Upper bound for any single delay
        backoff_factor: Multiplier applied per attempt
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0


def is_retryable(error: BaseException) -> bool:
    """Decide whether ``error`` is worth another attempt."""
    if isinstance(error, CircuitOpenError):
        return False

    retryable = getattr(error, "retryable", None)
    if retryable is not None:
        return bool(retryable)

    return not NON_RETRYABLE_PATTERN.search(str(error))


class RetryManager:
    """
    Local (non-distributed) retry loop.

    WHAT: Retries an operation with exponential backoff, rethrowing the last error
    WHY: Absorb transient Shopify failures inside a single record's sync

    The wrapped operation must be idempotent. Shopify writes in this codebase
    are keyed by Shopify id / SKU, so a duplicate attempt updates the same record.

    Usage:
        retry = RetryManager(RetryPolicy(max_retries=3))
        product = await retry.execute(lambda: client.get_product(product_id))
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def calculate_delay(self, attempt: int) -> float:
        """Backoff delay for retry ``attempt`` (1-based)."""
        jitter = JITTER_MIN + self._rng.random() * (JITTER_MAX - JITTER_MIN)
        delay = self.policy.base_delay * (self.policy.backoff_factor ** (attempt - 1)) * jitter
        return min(delay, self.policy.max_delay)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` until it succeeds, fails terminally, or retries run out.

        Raises:
            The last error raised by ``operation``, unwrapped.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as error:
                if not is_retryable(error):
                    logger.debug(f"[RETRY] Non-retryable error, giving up: {error}")
                    raise

                if attempt >= self.policy.max_retries:
                    logger.warning(f"[RETRY] Giving up after {attempt + 1} attempts: {error}")
                    raise

                attempt += 1
                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"[RETRY] Attempt {attempt}/{self.policy.max_retries} in {delay:.2f}s after error: {error}"
                )
                await self._sleep(delay)
