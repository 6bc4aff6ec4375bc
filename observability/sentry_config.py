"""
Optional Sentry error tracking.

Environment variables:
- SENTRY_DSN: enables Sentry when set
- SENTRY_ENABLE: "false" disables it even with a DSN
- SENTRY_ENVIRONMENT / ENVIRONMENT: environment tag
- SENTRY_RELEASE: release identifier (e.g. git commit SHA)
- SENTRY_TRACES_SAMPLE_RATE: fraction of transactions to trace
"""

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from .logging import SERVICE_NAME, get_correlation_id

logger = logging.getLogger(__name__)

# Pixel and tracking payloads carry visitor identifiers; never ship bodies
SCRUBBED_REQUEST_KEYS = ("cookies", "data", "query_string")


def init_sentry() -> bool:
    """Initialise Sentry. Returns True when it was enabled."""
    sentry_dsn = os.getenv("SENTRY_DSN")
    sentry_enable = os.getenv("SENTRY_ENABLE", "true").lower() == "true"

    if not sentry_dsn or not sentry_enable:
        logger.info("Sentry is disabled (SENTRY_DSN not set or SENTRY_ENABLE=false)")
        return False

    environment = os.getenv("SENTRY_ENVIRONMENT") or os.getenv("ENVIRONMENT", "development")
    release = os.getenv("SENTRY_RELEASE") or "unknown"
    is_production = environment == "production"
    traces_sample_rate = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.2" if is_production else "0.0"))

    sentry_sdk.init(
        dsn=sentry_dsn,
        environment=environment,
        release=f"{SERVICE_NAME}@{release}",
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        before_send=before_send_hook,
    )

    logger.info(
        "Sentry initialized",
        extra={"environment": environment, "release": release, "traces_sample_rate": traces_sample_rate},
    )
    return True


def before_send_hook(event, hint):
    request = event.get("request")
    if isinstance(request, dict):
        for key in SCRUBBED_REQUEST_KEYS:
            request.pop(key, None)
        headers = request.get("headers")
        if isinstance(headers, dict):
            for header in list(headers):
                if header.lower() in ("x-admin-token", "x-forwarded-for", "cookie"):
                    headers[header] = "[REDACTED]"

    correlation_id = get_correlation_id()
    if correlation_id:
        event.setdefault("tags", {})["correlation_id"] = correlation_id

    return event


def capture_exception(exc: Exception, error_id: Optional[str] = None, **tags) -> None:
    with sentry_sdk.push_scope() as scope:
        correlation_id = get_correlation_id()
        if correlation_id:
            scope.set_tag("correlation_id", correlation_id)
        if error_id:
            scope.set_tag("error_id", error_id)
        for key, value in tags.items():
            scope.set_tag(key, value)
        sentry_sdk.capture_exception(exc)
