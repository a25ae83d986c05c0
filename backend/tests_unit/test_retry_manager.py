"""
Retry Manager Tests (Unit)
==========================

WHAT: Backoff bounds, retry budget and error classification.
WHY: Retrying a 401 burns rate limit for nothing; giving up on a 503 drops
     a record that the next attempt would have synced.

REFERENCES:
- backend/storesync/services/resilience/retry_manager.py
- backend/storesync/services/shopify_client.py (ShopifyErrorKind)
"""

import random

import pytest

from storesync.services.resilience import CircuitOpenError, RetryManager, RetryPolicy, is_retryable
from storesync.services.shopify_client import ShopifyAPIError, ShopifyErrorKind


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class _Flaky:
    """Raises the given errors in order, then returns "ok"."""

    def __init__(self, *errors: Exception):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def _manager(sleeps: _Sleeps, **policy) -> RetryManager:
    return RetryManager(RetryPolicy(**policy), sleep=sleeps, rng=random.Random(7))


def test_delay_stays_within_jitter_bounds() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=10.0, backoff_factor=2.0)
    manager = RetryManager(policy, rng=random.Random(42))

    for attempt in range(1, 8):
        for _ in range(50):
            delay = manager.calculate_delay(attempt)
            uncapped = policy.base_delay * policy.backoff_factor ** (attempt - 1)
            assert delay <= policy.max_delay
            assert delay >= min(uncapped * 0.5, policy.max_delay)
            assert delay < uncapped or delay == policy.max_delay


@pytest.mark.asyncio
async def test_transient_errors_are_retried_until_success() -> None:
    sleeps = _Sleeps()
    operation = _Flaky(RuntimeError("connection reset"), RuntimeError("Shopify API error 503"))

    result = await _manager(sleeps, max_retries=3).execute(operation)

    assert result == "ok"
    assert operation.calls == 3
    assert len(sleeps.delays) == 2


@pytest.mark.asyncio
async def test_unauthorized_is_invoked_exactly_once() -> None:
    sleeps = _Sleeps()
    calls = 0

    async def operation() -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("Unauthorized: invalid access token")

    with pytest.raises(RuntimeError, match="Unauthorized"):
        await _manager(sleeps, max_retries=5).execute(operation)

    assert calls == 1
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_last_error_is_rethrown_unwrapped() -> None:
    sleeps = _Sleeps()
    last = RuntimeError("timeout 3")
    operation = _Flaky(RuntimeError("timeout 1"), RuntimeError("timeout 2"), last)

    with pytest.raises(RuntimeError) as excinfo:
        await _manager(sleeps, max_retries=2).execute(operation)

    assert excinfo.value is last
    assert operation.calls == 3


@pytest.mark.asyncio
async def test_zero_retries_means_a_single_attempt() -> None:
    operation = _Flaky(RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        await _manager(_Sleeps(), max_retries=0).execute(operation)

    assert operation.calls == 1


@pytest.mark.parametrize(
    "message",
    ["Unauthorized", "403 Forbidden", "Validation failed", "invalid product", "400 Bad Request", "404", "422"],
)
def test_message_pattern_marks_terminal_errors(message: str) -> None:
    assert is_retryable(RuntimeError(message)) is False


@pytest.mark.parametrize(
    "kind, retryable",
    [
        (ShopifyErrorKind.UNAUTHORIZED, False),
        (ShopifyErrorKind.FORBIDDEN, False),
        (ShopifyErrorKind.VALIDATION, False),
        (ShopifyErrorKind.NOT_FOUND, False),
        (ShopifyErrorKind.RATE_LIMITED, True),
        (ShopifyErrorKind.TRANSIENT, True),
    ],
)
def test_error_kind_decides_before_message(kind: ShopifyErrorKind, retryable: bool) -> None:
    # Message deliberately contradicts the kind
    message = "temporary failure" if not retryable else "invalid 400"
    assert is_retryable(ShopifyAPIError(message, kind=kind)) is retryable


def test_circuit_open_is_never_retried() -> None:
    assert is_retryable(CircuitOpenError("shopify")) is False
