"""
Resilience primitives for outbound Shopify calls.

WHAT:
    Circuit breaker, token bucket rate limiter and retry manager.

WHY:
    Shopify is rate limited and occasionally unavailable. Every outbound call
    goes rate limiter -> circuit breaker -> retry loop -> transport, so one
    misbehaving record cannot stall or overload a whole sync run.

MODULES:
    - circuit_breaker: closed/open/half-open failure isolation
    - rate_limiter: all-or-nothing token bucket synced from Shopify headers
    - retry_manager: exponential backoff with jitter and error classification

Each ShopifyChannel owns its own instances, so two shops never share a budget.
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitOpenError, CircuitState
from .rate_limiter import RateLimiter
from .retry_manager import RetryManager, RetryPolicy, is_retryable

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "RateLimiter",
    "RetryManager",
    "RetryPolicy",
    "is_retryable",
]
