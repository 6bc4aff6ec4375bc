"""
Observability infrastructure for the Creator Settlement service.

Provides:
- Structured logging with correlation IDs
- Sentry error tracking
- Prometheus metrics (HTTP and settlement business counters)
- Health check utilities
"""

from .logging import correlation_id_context, get_correlation_id, setup_logging
from .metrics import (
    metrics_registry,
    visits_tracked_total,
    pixel_validations_total,
    conversions_total,
    payout_transitions_total,
    payout_amount_cents_total,
)

__all__ = [
    "correlation_id_context",
    "get_correlation_id",
    "setup_logging",
    "metrics_registry",
    "visits_tracked_total",
    "pixel_validations_total",
    "conversions_total",
    "payout_transitions_total",
    "payout_amount_cents_total",
]
