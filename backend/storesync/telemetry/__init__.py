"""
Telemetry Module
================

Error tracking for the sync backend. Structured operational logging uses the
stdlib ``logging`` module per service with bracketed prefixes
([SHOPIFY_SYNC], [SHOPIFY_WEBHOOK], [CIRCUIT_BREAKER], ...).

Usage:
    from storesync.telemetry import init_sentry, capture_exception
"""

from storesync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
