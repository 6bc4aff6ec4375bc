"""HTTP tests for the tracking endpoints."""
import pytest

from conftest import BROWSER_UA
from routes.tracking import PIXEL_GIF

BROWSER_HEADERS = {
    "User-Agent": BROWSER_UA,
    "Referer": "https://youtube.com/watch",
    "X-Forwarded-For": "203.0.113.7, 10.0.0.1",
}


async def post_view(client, campaign_id, creator_id, **overrides):
    body = {
        "campaignId": campaign_id,
        "creatorId": creator_id,
        "linkId": "link-1",
        "visitorId": "visitor-1",
    }
    body.update(overrides)
    return await client.post("/track", json=body, headers=BROWSER_HEADERS)


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_metrics_exposed(client):
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]


@pytest.mark.asyncio
async def test_track_requires_all_fields(client):
    response = await client.post("/track", json={"campaignId": 1, "creatorId": 2}, headers=BROWSER_HEADERS)

    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_track_records_view(client, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()

    response = await post_view(
        client, campaign.id, creator.id,
        deviceFingerprint={"screenResolution": "1920x1080", "timezone": "UTC", "language": "en-US", "platform": "Win32"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["isRecorded"] is True
    assert body["isValidated"] is False
    assert body["reason"] is None
    assert body["pixelUrl"] == f"/track/pixel?visitId={body['visitId']}"


@pytest.mark.asyncio
async def test_track_reports_bot_rejection(client, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()

    response = await client.post(
        "/track",
        json={"campaignId": campaign.id, "creatorId": creator.id, "linkId": "l", "visitorId": "v"},
        headers={"User-Agent": "curl/8.0"},
    )

    assert response.status_code == 200
    assert response.json()["reason"] == "bot_detected"
    assert response.json()["isBillable"] is False


@pytest.mark.asyncio
async def test_pixel_validates_view_and_returns_gif(client, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()
    visit_id = (await post_view(client, campaign.id, creator.id)).json()["visitId"]

    response = await client.get(f"/track/pixel?visitId={visit_id}")

    assert response.status_code == 200
    assert response.content == PIXEL_GIF
    assert response.headers["content-type"] == "image/gif"
    assert "no-store" in response.headers["cache-control"]
    assert response.headers["pragma"] == "no-cache"

    again = await client.get(f"/track/pixel?visitId={visit_id}")
    assert again.status_code == 200

    stats = (await client.get(f"/track/stats/creators/{creator.id}")).json()
    assert stats["validViews"] == 1
    assert stats["billableViews"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "?visitId=", "?visitId=abc", "?visitId=424242"])
async def test_pixel_bad_visit_id_is_400_gif(client, query):
    response = await client.get(f"/track/pixel{query}")

    assert response.status_code == 400
    assert response.content == PIXEL_GIF


@pytest.mark.asyncio
async def test_pixel_for_rejected_view_is_400(client, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()
    visit = await seed.visit(campaign.id, creator.id, reason="bot_detected", fraud_score=100)

    response = await client.get(f"/track/pixel?visitId={visit.id}")

    assert response.status_code == 400
    assert response.content == PIXEL_GIF


@pytest.mark.asyncio
async def test_convert_uses_visitor_cookie(client, seed):
    campaign = await seed.campaign()
    creator = await seed.creator()
    await seed.visit(campaign.id, creator.id, visitor_id="cookie-visitor", is_validated=True)

    client.cookies.set("visitor_id", "cookie-visitor")
    response = await client.post(
        "/track/convert", json={"campaignId": campaign.id, "type": "PURCHASE", "revenueCents": 10000}
    )
    client.cookies.clear()

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["conversion"]["creatorId"] == creator.id
    assert body["conversion"]["attributedTo"] == "FIRST_CLICK"
    assert body["conversion"]["payoutCents"] == 1600

    stats = (await client.get(f"/track/stats/campaigns/{campaign.id}")).json()
    assert stats["totalConversions"] == 1
    assert stats["totalRevenue"] == 10000


@pytest.mark.asyncio
async def test_convert_without_visitor_is_400(client, seed):
    campaign = await seed.campaign()

    response = await client.post("/track/convert", json={"campaignId": campaign.id, "type": "SIGNUP"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_convert_rejects_negative_revenue(client, seed):
    campaign = await seed.campaign()

    response = await client.post(
        "/track/convert",
        json={"campaignId": campaign.id, "type": "PURCHASE", "revenueCents": -5, "visitorId": "v"},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid request"


@pytest.mark.asyncio
async def test_stats_for_unknown_campaign_are_zero(client):
    response = await client.get("/track/stats/campaigns/9999")

    assert response.status_code == 200
    assert response.json() == {
        "totalViews": 0,
        "validViews": 0,
        "billableViews": 0,
        "totalConversions": 0,
        "totalRevenue": 0,
    }
