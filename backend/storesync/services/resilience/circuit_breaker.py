"""
Circuit Breaker for Shopify API calls.

WHAT:
    Wraps remote calls and stops issuing them after repeated failures.
    After a cooldown a single probe call is allowed through to test recovery.

WHY:
    Shopify outages and throttling storms should not pile up hundreds of
    in-flight requests from a sync run. Failing fast while the remote is
    unhealthy protects both sides and keeps sync runs short.

STATES:
    closed     -> normal operation, failures are counted
    open       -> calls rejected with CircuitOpenError until next_attempt_time
    half-open  -> exactly one probe call; success closes, failure re-opens

REFERENCES:
    - storesync/services/shopify_sync_service.py (ShopifyChannel owns one breaker per shop)
    - https://martinfowler.com/bliki/CircuitBreaker.html
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitOpenError(Exception):
    """Raised when the breaker rejects a call without attempting it."""

    def __init__(self, name: str, next_attempt_time: Optional[float] = None):
        message = f"Circuit breaker '{name}' is open"
        if next_attempt_time is not None:
            message += f" until {_to_datetime(next_attempt_time).isoformat()}"
        super().__init__(message)
        self.name = name
        self.next_attempt_time = next_attempt_time


@dataclass
class CircuitBreakerConfig:
    """
    Circuit breaker configuration.

    Attributes:
        failure_threshold: Consecutive failures before the circuit opens
        recovery_timeout: Seconds to stay open before allowing a probe
        monitoring_period: Reporting window in seconds (status only)
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    monitoring_period: float = 10.0


def _to_datetime(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class CircuitBreaker:
    """
    Three-state circuit breaker around async operations.

    WHAT: Counts failures, opens after the threshold, probes after a cooldown
    WHY: Fail fast while Shopify is unhealthy instead of queueing doomed calls

    Usage:
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=5), name="shopify")
        product = await breaker.execute(lambda: client.get_product(product_id))
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        name: str = "shopify",
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.next_attempt_time: Optional[float] = None
        self._probe_in_flight = False

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open (or a probe is already running)
        """
        self._before_call()

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _before_call(self) -> None:
        if self.state == CircuitState.OPEN:
            now = self._clock()
            if self.next_attempt_time is not None and now < self.next_attempt_time:
                raise CircuitOpenError(self.name, self.next_attempt_time)
            self._transition(CircuitState.HALF_OPEN)

        if self.state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, self.next_attempt_time)
            self._probe_in_flight = True

    def _on_success(self) -> None:
        if self.state == CircuitState.OPEN:
            # Started before the circuit opened; the cooldown still applies
            logger.debug(f"[CIRCUIT_BREAKER] {self.name}: ignoring late success while open")
            return

        self._probe_in_flight = False
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)
        self.failure_count = 0
        self.last_failure_time = None
        self.next_attempt_time = None

    def _on_failure(self) -> None:
        now = self._clock()
        self.failure_count += 1
        self.last_failure_time = now

        if self.state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False
            self._open(now)
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
            self._open(now)
        else:
            logger.debug(
                f"[CIRCUIT_BREAKER] {self.name}: failure {self.failure_count}/"
                f"{self.config.failure_threshold}"
            )

    def _open(self, now: float) -> None:
        self.next_attempt_time = now + self.config.recovery_timeout
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self.state
        self.state = new_state

        if new_state == CircuitState.OPEN:
            logger.warning(
                f"[CIRCUIT_BREAKER] {self.name}: {old_state.value} -> open after "
                f"{self.failure_count} failures, retry at {_to_datetime(self.next_attempt_time).isoformat()}"
            )
        else:
            logger.info(f"[CIRCUIT_BREAKER] {self.name}: {old_state.value} -> {new_state.value}")

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the breaker state. Pure read, no transitions."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": _to_datetime(self.last_failure_time),
            "next_attempt_time": _to_datetime(self.next_attempt_time),
            "failure_threshold": self.config.failure_threshold,
            "recovery_timeout": self.config.recovery_timeout,
            "monitoring_period": self.config.monitoring_period,
        }

    def reset(self) -> None:
        """Force the circuit closed with zero counters (operator override)."""
        old_state = self.state
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self.next_attempt_time = None
        self._probe_in_flight = False
        logger.info(f"[CIRCUIT_BREAKER] {self.name}: manual reset ({old_state.value} -> closed)")
