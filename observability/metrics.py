"""
Prometheus metrics collection for the Creator Settlement service.

Provides RED metrics (Rate, Errors, Duration) and settlement business metrics.
"""

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    REGISTRY,
)

# Use the default registry
metrics_registry = REGISTRY

# HTTP Metrics (RED - Rate, Errors, Duration)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=metrics_registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=metrics_registry,
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests in progress",
    ["method", "endpoint"],
    registry=metrics_registry,
)

# Database Metrics
db_connection_pool_size = Gauge(
    "db_connection_pool_size",
    "Current database connection pool size",
    registry=metrics_registry,
)

db_connection_pool_checked_out = Gauge(
    "db_connection_pool_checked_out",
    "Number of connections currently checked out from pool",
    registry=metrics_registry,
)

db_connection_pool_overflow = Gauge(
    "db_connection_pool_overflow",
    "Number of overflow connections",
    registry=metrics_registry,
)

# Collaborator Metrics
geo_lookup_duration_seconds = Histogram(
    "geo_lookup_duration_seconds",
    "Geo lookup duration in seconds",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
    registry=metrics_registry,
)

# Business Metrics
visits_tracked_total = Counter(
    "visits_tracked_total",
    "Visit events recorded by ingestion",
    ["outcome"],  # recorded, duplicate, rate_limited, bot_detected, ...
    registry=metrics_registry,
)

pixel_validations_total = Counter(
    "pixel_validations_total",
    "Pixel validation outcomes",
    ["outcome"],
    registry=metrics_registry,
)

conversions_total = Counter(
    "conversions_total",
    "Conversion signals processed",
    ["outcome"],  # paid, unattributed, duplicate_conversion, insufficient_budget, no_payout
    registry=metrics_registry,
)

payout_transitions_total = Counter(
    "payout_transitions_total",
    "Payout queue state transitions",
    ["transition"],  # created, released, frozen, cancelled, force_released, reserve_released
    registry=metrics_registry,
)

payout_amount_cents_total = Counter(
    "payout_amount_cents_total",
    "Cents moved to creators' available balance",
    ["source"],  # release, reserve, conversion
    registry=metrics_registry,
)

payout_sweep_duration_seconds = Histogram(
    "payout_sweep_duration_seconds",
    "Background payout sweep duration in seconds",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=metrics_registry,
)


def record_db_pool(stats: dict) -> None:
    """Publish pool statistics from database.check_db_health()."""
    db_connection_pool_size.set(stats.get("pool_size", 0))
    db_connection_pool_checked_out.set(stats.get("checked_out", 0))
    db_connection_pool_overflow.set(stats.get("overflow", 0))
