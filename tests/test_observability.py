"""Tests for logging, middleware and health helpers."""
import logging
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from audit import redact_sensitive
from conftest import NOW
from models import PayoutStatus
from observability.health import check_payout_backlog
from observability.logging import SensitiveDataFilter, correlation_id_context, get_correlation_id
from observability.middleware import sanitize_path


def test_sanitize_path_collapses_ids():
    assert sanitize_path("/admin/payouts/42/cancel") == "/admin/payouts/{id}/cancel"
    assert sanitize_path("/track/stats/creators/7") == "/track/stats/creators/{id}"
    assert sanitize_path("/track") == "/track"


def test_correlation_id_is_scoped_to_block():
    assert get_correlation_id() is None
    with correlation_id_context(prefix="sweep") as correlation_id:
        assert correlation_id.startswith("sweep-")
        assert get_correlation_id() == correlation_id
    assert get_correlation_id() is None


def test_log_filter_redacts_client_identifiers():
    record = logging.LogRecord("services.ingestion", logging.INFO, __file__, 1, "view", None, None)
    record.ip = "203.0.113.7"
    record.campaign_id = 3

    assert SensitiveDataFilter().filter(record) is True
    assert record.ip == "[REDACTED]"
    assert record.campaign_id == 3


def test_audit_details_are_redacted():
    details = {"reason": "review", "x-admin-token": "secret-value", "nested": [{"token": "t"}]}

    assert redact_sensitive(details) == {
        "reason": "review",
        "x-admin-token": "[REDACTED]",
        "nested": [{"token": "[REDACTED]"}],
    }


@pytest.mark.asyncio
async def test_response_carries_request_id(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-abc"})

    assert response.headers["X-Request-ID"] == "req-abc"


@pytest.mark.asyncio
async def test_payout_backlog_degrades_when_entries_are_overdue(session, seed):
    assert (await check_payout_backlog(session, now=NOW)).status == "ok"

    campaign = await seed.campaign()
    creator = await seed.creator()
    await seed.payout(creator.id, campaign.id, eligible_at=NOW - timedelta(hours=3))
    await seed.payout(creator.id, campaign.id, eligible_at=NOW - timedelta(hours=3), status=PayoutStatus.RELEASED)

    result = await check_payout_backlog(session, now=NOW)

    assert result.status == "degraded"
    assert result.to_dict()["details"]["overdue_pending_entries"] == 1


@pytest.mark.asyncio
async def test_readiness_reports_database_and_backlog(client):
    response = await client.get("/health/ready")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert set(body["checks"]) == {"database", "payout_backlog"}


@pytest.mark.asyncio
async def test_detailed_health_flags_low_disk(client):
    memory = SimpleNamespace(percent=40.0, available=8 * 1024 * 1024 * 1024)
    disk = SimpleNamespace(percent=97.0, free=1024 * 1024 * 1024)

    with patch("observability.health.psutil.virtual_memory", return_value=memory), \
            patch("observability.health.psutil.disk_usage", return_value=disk):
        response = await client.get("/health/detailed")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "unhealthy"
    assert body["checks"]["system_resources"]["status"] == "error"
