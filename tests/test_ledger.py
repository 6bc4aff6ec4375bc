"""Tests for the SQL budget ledger and the geo locator collaborators."""
import httpx
import pytest

from exceptions import GeoLookupError
from models import Campaign, LedgerEntry, LedgerEntryType
from services.geo import IpApiGeoLocator
from services.ledger import (
    CAMPAIGN_NOT_FOUND,
    EVENT_NOT_VALID,
    INSUFFICIENT_ADVERTISER_FUNDS,
    ZERO_PAYOUT,
    SqlBudgetLedger,
    calculate_payout_per_view,
)


def test_payout_per_view_is_cpm_over_1000():
    assert calculate_payout_per_view(50000) == 50
    assert calculate_payout_per_view(999) == 0


@pytest.mark.asyncio
async def test_lock_and_release_budget(session, seed):
    ledger = SqlBudgetLedger()
    campaign = await seed.campaign(total_budget_cents=10_000)

    locked = await ledger.lock_campaign_budget(session, campaign.id, None, 4_000)
    await session.commit()
    assert locked.success is True

    too_much = await ledger.lock_campaign_budget(session, campaign.id, None, 7_000)
    assert too_much.success is False
    assert too_much.error == INSUFFICIENT_ADVERTISER_FUNDS

    budget = await ledger.compute_campaign_budget(session, campaign.id)
    assert budget.spent_cents == 0
    assert budget.remaining_cents == 4_000

    released = await ledger.release_campaign_budget(session, campaign.id, None, 9_000)
    await session.commit()
    assert released.success is True
    stored = await session.get(Campaign, campaign.id)
    await session.refresh(stored)
    assert stored.locked_budget_cents == 0


@pytest.mark.asyncio
async def test_remaining_budget_counts_positive_spend(session, seed):
    ledger = SqlBudgetLedger()
    campaign = await seed.campaign(total_budget_cents=1_000)
    session.add(LedgerEntry(campaign_id=campaign.id, type=LedgerEntryType.VIEW_PAYOUT, amount_cents=300))
    session.add(LedgerEntry(campaign_id=campaign.id, type=LedgerEntryType.PLATFORM_FEE, amount_cents=75))
    await session.commit()

    budget = await ledger.compute_campaign_budget(session, campaign.id)

    assert budget.spent_cents == 375
    assert budget.remaining_cents == 625


@pytest.mark.asyncio
async def test_ledger_rejects_unknown_or_unvalidated(session, seed):
    ledger = SqlBudgetLedger()
    campaign = await seed.campaign()
    creator = await seed.creator()
    visit = await seed.visit(campaign.id, creator.id)

    assert (await ledger.lock_campaign_budget(session, 9999, None, 1)).error == CAMPAIGN_NOT_FOUND
    assert (await ledger.record_valid_view_payout(session, campaign.id, creator.id, visit.id)).error == EVENT_NOT_VALID
    assert (await ledger.record_conversion_payout(session, campaign.id, creator.id, 1, 0)).error == ZERO_PAYOUT


def geo_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_geo_lookup_reads_country_code():
    def handler(request):
        assert "8.8.8.8" in str(request.url)
        return httpx.Response(200, json={"countryCode": "US"})

    async with geo_client(handler) as client:
        assert await IpApiGeoLocator(client=client).lookup_country("8.8.8.8") == "US"


@pytest.mark.asyncio
async def test_geo_lookup_skips_private_addresses():
    def handler(request):
        raise AssertionError("private addresses are never looked up")

    async with geo_client(handler) as client:
        locator = IpApiGeoLocator(client=client)
        assert await locator.lookup_country("10.0.0.1") is None
        assert await locator.lookup_country("not-an-ip") is None


@pytest.mark.asyncio
async def test_geo_lookup_failures_raise():
    def timeout(request):
        raise httpx.ConnectTimeout("slow", request=request)

    async with geo_client(timeout) as client:
        with pytest.raises(GeoLookupError):
            await IpApiGeoLocator(client=client).lookup_country("8.8.8.8")

    async with geo_client(lambda request: httpx.Response(503)) as client:
        with pytest.raises(GeoLookupError) as exc_info:
            await IpApiGeoLocator(client=client).lookup_country("8.8.8.8")
    assert exc_info.value.status_code == 502
    assert exc_info.value.detail["service"] == "geo"
