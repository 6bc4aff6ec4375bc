"""Tests for phase-one view ingestion."""
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func
from sqlmodel import select

from conftest import BROWSER_UA
from models import CampaignStatus, RejectionReason, VisitEvent
from services.geo import GeoLocator
from services.ingestion import DeviceFingerprint, TrackViewInput, track_view


def view(campaign_id: int, creator_id: int, **overrides) -> TrackViewInput:
    values = {
        "campaign_id": campaign_id,
        "creator_id": creator_id,
        "link_id": "link-1",
        "visitor_id": "visitor-1",
        "ip": "203.0.113.7",
        "user_agent": BROWSER_UA,
        "referrer": "https://youtube.com/watch",
    }
    values.update(overrides)
    return TrackViewInput(**values)


async def visit_count(session, **criteria) -> int:
    stmt = select(func.count(VisitEvent.id))
    for name, value in criteria.items():
        stmt = stmt.where(getattr(VisitEvent, name) == value)
    result = await session.exec(stmt)
    return result.one()


class FixedGeo(GeoLocator):
    def __init__(self, country):
        self.country = country

    async def lookup_country(self, ip):
        return self.country


class BrokenGeo(GeoLocator):
    async def lookup_country(self, ip):
        raise TimeoutError("geo timed out")


@pytest.mark.asyncio
async def test_clean_view_is_recorded_but_not_validated(session, ctx, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()

    result = await track_view(session, view(campaign.id, creator.id), ctx)

    assert result.is_recorded is True
    assert result.is_validated is False
    assert result.is_billable is False
    assert result.reason is None
    assert result.fraud_score == 0
    assert result.pixel_url == f"/track/pixel?visitId={result.visit_id}"
    assert result.recorded_views_count == 1

    visit = await session.get(VisitEvent, result.visit_id)
    assert visit.occurred_at == ctx.now()
    assert visit.ip_hash != "203.0.113.7"
    assert visit.reason is None


@pytest.mark.asyncio
async def test_bot_view_is_persisted_and_never_billable(session, ctx, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()

    result = await track_view(session, view(campaign.id, creator.id, user_agent="Googlebot/2.1"), ctx)

    assert result.reason == RejectionReason.BOT_DETECTED
    assert result.is_billable is False
    assert result.pixel_url is None
    assert result.fraud_score == 100
    visit = await session.get(VisitEvent, result.visit_id)
    assert visit.reason == "bot_detected"
    assert visit.is_billable is False


@pytest.mark.asyncio
async def test_unknown_campaign_is_recorded_with_reason(session, ctx):
    result = await track_view(session, view(9999, 1), ctx)

    assert result.reason == RejectionReason.CAMPAIGN_NOT_FOUND
    assert await visit_count(session, campaign_id=9999) == 1


@pytest.mark.asyncio
async def test_inactive_campaign_rejected(session, ctx, seed):
    campaign = await seed.campaign(status=CampaignStatus.PAUSED)
    creator = await seed.creator()

    result = await track_view(session, view(campaign.id, creator.id), ctx)

    assert result.reason == RejectionReason.CAMPAIGN_INACTIVE
    assert result.is_recorded is True


@pytest.mark.asyncio
async def test_fraud_threshold_uses_campaign_setting(session, ctx, seed):
    campaign = await seed.campaign(fraud_score_threshold=30)
    creator = await seed.creator()

    result = await track_view(
        session, view(campaign.id, creator.id, user_agent="Mozilla/5.0 Electron/25.0"), ctx
    )

    assert result.fraud_score == 30
    assert result.reason == RejectionReason.FRAUD_SCORE_EXCEEDED
    assert result.is_billable is False


@pytest.mark.asyncio
@pytest.mark.parametrize("default_threshold, expected_reason", [
    (50, None),
    (30, RejectionReason.FRAUD_SCORE_EXCEEDED),
])
async def test_campaign_without_threshold_uses_configured_default(
    session, ctx, seed, default_threshold, expected_reason
):
    campaign = await seed.campaign()
    creator = await seed.creator()
    ctx = ctx.with_overrides(config=ctx.config.with_overrides(fraud_score_threshold=default_threshold))

    result = await track_view(
        session, view(campaign.id, creator.id, user_agent="Mozilla/5.0 Electron/25.0"), ctx
    )

    assert campaign.fraud_score_threshold is None
    assert result.fraud_score == 30
    assert result.reason == expected_reason


@pytest.mark.asyncio
async def test_duplicate_inside_window_persists_exactly_one_row(session, ctx, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()

    first = await track_view(session, view(campaign.id, creator.id), ctx)
    second = await track_view(session, view(campaign.id, creator.id), ctx)

    assert first.reason is None
    assert second.reason == RejectionReason.DUPLICATE
    assert await visit_count(session, reason="duplicate") == 1
    assert await visit_count(session, visitor_id="visitor-1") == 2


@pytest.mark.asyncio
async def test_same_visitor_for_other_creator_is_not_duplicate(session, ctx, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()
    other = await seed.creator()

    await track_view(session, view(campaign.id, creator.id), ctx)
    result = await track_view(session, view(campaign.id, other.id), ctx)

    assert result.reason is None


@pytest.mark.asyncio
async def test_rate_limit_applies_per_hashed_ip(session, ctx, seed):
    ctx = ctx.with_overrides(config=ctx.config.with_overrides(ip_rate_limit_per_hour=3))
    campaign = await seed.campaign()
    creator = await seed.creator()

    for i in range(3):
        result = await track_view(session, view(campaign.id, creator.id, visitor_id=f"v{i}"), ctx)
        assert result.reason is None

    limited = await track_view(session, view(campaign.id, creator.id, visitor_id="v-next"), ctx)
    assert limited.reason == RejectionReason.RATE_LIMITED

    other_ip = await track_view(
        session, view(campaign.id, creator.id, visitor_id="v-other", ip="198.51.100.2"), ctx
    )
    assert other_ip.reason is None


@pytest.mark.asyncio
async def test_geo_failure_is_a_missing_signal(session, ctx, seed):
    ctx = ctx.with_overrides(geo=BrokenGeo())
    campaign = await seed.campaign()
    creator = await seed.creator()

    result = await track_view(session, view(campaign.id, creator.id), ctx)

    assert result.reason is None
    visit = await session.get(VisitEvent, result.visit_id)
    assert visit.geo_country is None


@pytest.mark.asyncio
async def test_geo_country_is_stored(session, ctx, seed):
    ctx = ctx.with_overrides(geo=FixedGeo("US"))
    campaign = await seed.campaign()
    creator = await seed.creator()

    result = await track_view(session, view(campaign.id, creator.id), ctx)

    visit = await session.get(VisitEvent, result.visit_id)
    assert visit.geo_country == "US"


@pytest.mark.asyncio
async def test_device_fingerprint_is_hashed(session, ctx, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()
    fingerprint = DeviceFingerprint(screen_resolution="1920x1080", timezone="UTC", language="en-US", platform="Win32")

    result = await track_view(session, view(campaign.id, creator.id, device_fingerprint=fingerprint), ctx)

    visit = await session.get(VisitEvent, result.visit_id)
    assert visit.device_fingerprint_hash is not None
    assert "1920x1080" not in visit.device_fingerprint_hash


@pytest.mark.asyncio
async def test_persistence_failure_propagates_and_commits_nothing(session, ctx, seed, monkeypatch):
    campaign = await seed.campaign()
    creator = await seed.creator()
    monkeypatch.setattr(session, "commit", AsyncMock(side_effect=RuntimeError("db down")))

    with pytest.raises(RuntimeError):
        await track_view(session, view(campaign.id, creator.id), ctx)

    monkeypatch.undo()
    assert await visit_count(session) == 0
