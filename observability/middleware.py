"""
FastAPI middleware for observability.

Binds a correlation id to each request and records RED metrics. The pixel
endpoint is hit by browsers at high volume, so per-request logging skips it
along with health and metrics probes.
"""

import logging
import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import correlation_id_context
from .metrics import (
    http_requests_total,
    http_request_duration_seconds,
    http_requests_in_progress,
)

logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 2.0
QUIET_PREFIXES = ("/health", "/metrics", "/track/pixel")


def sanitize_path(path: str) -> str:
    """Collapse numeric ids so /admin/payouts/42/cancel maps to one label."""
    return re.sub(r"/\d+", "/{id}", path)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, enable_request_logging: bool = True):
        super().__init__(app)
        self.enable_request_logging = enable_request_logging

    def _should_log(self, path: str) -> bool:
        return self.enable_request_logging and not path.startswith(QUIET_PREFIXES)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or request.headers.get("X-Correlation-ID")

        with correlation_id_context(correlation_id) as req_id:
            request.state.correlation_id = req_id

            raw_path = request.url.path
            path = sanitize_path(raw_path)
            method = request.method
            should_log = self._should_log(raw_path)

            http_requests_in_progress.labels(method=method, endpoint=path).inc()
            start_time = time.time()

            try:
                response = await call_next(request)
            except Exception as exc:
                duration = time.time() - start_time
                http_requests_total.labels(method=method, endpoint=path, status=500).inc()
                http_request_duration_seconds.labels(method=method, endpoint=path).observe(duration)
                logger.error(
                    "Request failed",
                    extra={
                        "method": method,
                        "path": path,
                        "duration_seconds": round(duration, 3),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )
                raise
            finally:
                http_requests_in_progress.labels(method=method, endpoint=path).dec()

            duration = time.time() - start_time
            http_requests_total.labels(method=method, endpoint=path, status=response.status_code).inc()
            http_request_duration_seconds.labels(method=method, endpoint=path).observe(duration)
            response.headers["X-Request-ID"] = req_id

            if should_log:
                logger.info(
                    "Request completed",
                    extra={
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "duration_seconds": round(duration, 3),
                    },
                )

            if duration > SLOW_REQUEST_SECONDS and not raw_path.startswith(("/health", "/metrics")):
                logger.warning(
                    "Slow request detected",
                    extra={
                        "method": method,
                        "path": path,
                        "duration_seconds": round(duration, 3),
                        "status_code": response.status_code,
                    },
                )

            return response
