"""Tracking routes - view ingestion, pixel validation, conversions and stats."""
import base64
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session
from dependencies import get_context
from exceptions import ValidationError
from models import ConversionType
from services.attribution import VISITOR_ID_COOKIE, ConversionInput, track_conversion
from services.context import SettlementContext
from services.ingestion import DeviceFingerprint, TrackViewInput, track_view
from services.pixel import validate_pixel
from services.stats import get_campaign_tracking_stats, get_creator_tracking_stats

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tracking"])

PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

PIXEL_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class DeviceFingerprintBody(BaseModel):
    screenResolution: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None


class TrackViewRequest(BaseModel):
    # Presence is checked in the handler so a missing field is a 400, not a 422
    campaignId: Optional[int] = None
    creatorId: Optional[int] = None
    linkId: Optional[str] = None
    visitorId: Optional[str] = None
    deviceFingerprint: Optional[DeviceFingerprintBody] = None


class ConvertRequest(BaseModel):
    campaignId: int
    type: ConversionType
    revenueCents: int = Field(default=0, ge=0)
    visitorId: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def pixel_response(status_code: int) -> Response:
    return Response(content=PIXEL_GIF, status_code=status_code, media_type="image/gif", headers=PIXEL_HEADERS)


@router.post("/track")
async def track(
    body: TrackViewRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    ctx: SettlementContext = Depends(get_context),
):
    """Phase one: score and record a view attempt."""
    if not body.campaignId or not body.creatorId or not body.linkId or not body.visitorId:
        raise ValidationError("Missing required fields")

    fingerprint = None
    if body.deviceFingerprint is not None:
        fp = body.deviceFingerprint
        fingerprint = DeviceFingerprint(
            screen_resolution=fp.screenResolution,
            timezone=fp.timezone,
            language=fp.language,
            platform=fp.platform,
        )

    result = await track_view(
        session,
        TrackViewInput(
            campaign_id=body.campaignId,
            creator_id=body.creatorId,
            link_id=body.linkId,
            visitor_id=body.visitorId,
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
            referrer=request.headers.get("referer") or None,
            device_fingerprint=fingerprint,
        ),
        ctx,
    )
    return result.to_dict()


@router.get("/track/pixel")
async def track_pixel(
    visitId: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
    ctx: SettlementContext = Depends(get_context),
):
    """
    Phase two: confirm a recorded view.

    Always answers with the 1x1 GIF; only the status code carries the
    outcome, since the endpoint is embedded as an <img>.
    """
    if not visitId:
        return pixel_response(400)
    try:
        visit_id = int(visitId)
    except ValueError:
        return pixel_response(400)

    try:
        outcome = await validate_pixel(session, visit_id, ctx)
    except Exception:
        logger.error("[PIXEL] Error validating view", extra={"visit_id": visit_id}, exc_info=True)
        return pixel_response(500)
    return pixel_response(outcome.http_status)


@router.post("/track/convert")
async def track_convert(
    body: ConvertRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    ctx: SettlementContext = Depends(get_context),
):
    """Record a conversion; the visitor id falls back to the visitor_id cookie."""
    visitor_id = body.visitorId or request.cookies.get(VISITOR_ID_COOKIE)
    if not visitor_id:
        raise ValidationError("No visitor ID provided or found in cookies")

    result = await track_conversion(
        session,
        ConversionInput(
            campaign_id=body.campaignId,
            type=body.type,
            visitor_id=visitor_id,
            revenue_cents=body.revenueCents,
            metadata=body.metadata,
        ),
        request.cookies,
        ctx,
    )
    return result.to_dict()


@router.get("/track/stats/campaigns/{campaign_id}")
async def campaign_stats(campaign_id: int, session: AsyncSession = Depends(get_session)):
    stats = await get_campaign_tracking_stats(session, campaign_id)
    return stats.to_dict()


@router.get("/track/stats/creators/{creator_id}")
async def creator_stats(creator_id: int, session: AsyncSession = Depends(get_session)):
    stats = await get_creator_tracking_stats(session, creator_id)
    return stats.to_dict()
