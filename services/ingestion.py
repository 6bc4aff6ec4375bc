"""
Visit ingestion: phase one of the view lifecycle.

Every call persists exactly one VisitEvent, accepted or not, so rejected
traffic stays visible to fraud analytics. Policy rejections are returned as
results with a reason code; only persistence failures raise.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from database import atomic
from models import Campaign, CampaignStatus, RejectionReason, VisitEvent
from observability.metrics import geo_lookup_duration_seconds, visits_tracked_total
from services.context import SettlementContext
from services.fraud import (
    FraudSignals,
    assess_view,
    device_fingerprint_hash,
    hash_ip,
    hash_user_agent,
    is_likely_bot,
    is_view_suspicious,
)

logger = logging.getLogger(__name__)

RECORDED_MESSAGE = "View recorded. Validation required via pixel."


@dataclass(frozen=True)
class DeviceFingerprint:
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None


@dataclass(frozen=True)
class TrackViewInput:
    campaign_id: int
    creator_id: int
    link_id: str
    visitor_id: str
    ip: str
    user_agent: str = ""
    referrer: Optional[str] = None
    device_fingerprint: Optional[DeviceFingerprint] = None


@dataclass
class TrackViewResult:
    is_recorded: bool
    is_validated: bool
    is_billable: bool
    fraud_score: int
    visit_id: Optional[int] = None
    is_suspicious: bool = False
    reason: Optional[RejectionReason] = None
    pixel_url: Optional[str] = None
    message: Optional[str] = None
    payout_cents: int = 0
    recorded_views_count: Optional[int] = None
    processing_time_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "isRecorded": self.is_recorded,
            "isValidated": self.is_validated,
            "isBillable": self.is_billable,
            "visitId": self.visit_id,
            "fraudScore": self.fraud_score,
            "isSuspicious": self.is_suspicious,
            "reason": self.reason.value if self.reason else None,
            "pixelUrl": self.pixel_url,
            "message": self.message,
            "payoutCents": self.payout_cents,
            "recordedViewsCount": self.recorded_views_count,
            "processingTime": self.processing_time_ms,
        }


async def _count(session: AsyncSession, *criteria) -> int:
    result = await session.exec(select(func.count(VisitEvent.id)).where(*criteria))
    return result.one()


async def _lookup_country(ctx: SettlementContext, ip: str) -> Optional[str]:
    """Geo never fails ingestion; any error is a missing signal."""
    started = time.perf_counter()
    try:
        return await ctx.geo.lookup_country(ip)
    except Exception as e:
        logger.warning(f"[TRACK_VIEW] Geo lookup failed: {type(e).__name__}")
        return None
    finally:
        geo_lookup_duration_seconds.observe(time.perf_counter() - started)


async def track_view(session: AsyncSession, data: TrackViewInput, ctx: SettlementContext) -> TrackViewResult:
    """
    Score and record one view attempt.

    Checks run in a fixed order and the first that fires decides the reason:
    campaign missing/inactive, bot or fraud threshold, duplicate inside the
    dedupe window, IP rate limit. A view passing all of them is recorded
    (not validated) and the caller gets the pixel URL for phase two.
    """
    started = time.perf_counter()
    config = ctx.config
    now = ctx.now()

    ip_hash = hash_ip(data.ip, config.hash_salt)
    user_agent_hash = hash_user_agent(data.user_agent, config.hash_salt)

    fingerprint_hash = None
    if data.device_fingerprint is not None:
        fp = data.device_fingerprint
        fingerprint_hash = device_fingerprint_hash(
            fp.screen_resolution, fp.timezone, fp.language, fp.platform, config.hash_salt
        )

    # Signals
    is_bot = is_likely_bot(data.user_agent)
    rate_window_start = config.rate_limit_window_start(now)
    ip_velocity = await _count(session, VisitEvent.ip_hash == ip_hash, VisitEvent.occurred_at >= rate_window_start)
    ip_visit_count = await _count(session, VisitEvent.ip_hash == ip_hash)
    is_new_visitor = await _count(session, VisitEvent.visitor_id == data.visitor_id) == 0
    is_same_device = bool(fingerprint_hash) and await _count(
        session, VisitEvent.device_fingerprint_hash == fingerprint_hash
    ) > 0
    country_code = await _lookup_country(ctx, data.ip)

    assessment = assess_view(FraudSignals(
        is_bot=is_bot,
        ip_velocity=ip_velocity,
        ip_visit_count=ip_visit_count,
        user_agent=data.user_agent,
        referrer=data.referrer or None,
        is_new_visitor=is_new_visitor,
        country_code=country_code,
        is_same_device=is_same_device,
    ))
    fraud_score = assessment.score
    is_suspicious = is_view_suspicious(fraud_score, config.suspicion_cutoff)

    reason = await _rejection_reason(session, data, ctx, now, is_bot, fraud_score, ip_velocity)

    visit = VisitEvent(
        campaign_id=data.campaign_id,
        creator_id=data.creator_id,
        link_id=data.link_id,
        visitor_id=data.visitor_id,
        ip_hash=ip_hash,
        user_agent_hash=user_agent_hash,
        device_fingerprint_hash=fingerprint_hash,
        referrer=data.referrer or None,
        geo_country=country_code,
        fraud_score=fraud_score,
        is_suspicious=is_suspicious,
        reason=reason.value if reason else None,
        is_recorded=True,
        is_validated=False,
        is_billable=False,
        is_paid=False,
        occurred_at=now,
    )
    async with atomic(session):
        session.add(visit)

    outcome = reason.value if reason else "recorded"
    visits_tracked_total.labels(outcome=outcome).inc()

    if reason is not None:
        logger.info(
            "[TRACK_VIEW] View rejected",
            extra={
                "visit_id": visit.id,
                "campaign_id": data.campaign_id,
                "creator_id": data.creator_id,
                "reason": outcome,
                "fraud_score": fraud_score,
                "fraud_reasons": assessment.reasons,
            },
        )
        return TrackViewResult(
            is_recorded=True,
            is_validated=False,
            is_billable=False,
            visit_id=visit.id,
            fraud_score=fraud_score,
            is_suspicious=is_suspicious,
            reason=reason,
        )

    recorded_views = await _count(
        session, VisitEvent.campaign_id == data.campaign_id, VisitEvent.is_recorded == True  # noqa: E712
    )
    return TrackViewResult(
        is_recorded=True,
        is_validated=False,
        is_billable=False,
        visit_id=visit.id,
        fraud_score=fraud_score,
        is_suspicious=is_suspicious,
        pixel_url=f"{config.pixel_base_path}?visitId={visit.id}",
        message=RECORDED_MESSAGE,
        recorded_views_count=recorded_views,
        processing_time_ms=int((time.perf_counter() - started) * 1000),
    )


async def _rejection_reason(
    session: AsyncSession,
    data: TrackViewInput,
    ctx: SettlementContext,
    now: datetime,
    is_bot: bool,
    fraud_score: int,
    ip_velocity: int,
) -> Optional[RejectionReason]:
    campaign = await session.get(Campaign, data.campaign_id)
    if campaign is None:
        return RejectionReason.CAMPAIGN_NOT_FOUND
    if campaign.status != CampaignStatus.ACTIVE:
        return RejectionReason.CAMPAIGN_INACTIVE

    if is_bot:
        return RejectionReason.BOT_DETECTED
    if fraud_score >= campaign.effective_fraud_threshold(ctx.config.fraud_score_threshold):
        return RejectionReason.FRAUD_SCORE_EXCEEDED

    recent = await _count(
        session,
        VisitEvent.campaign_id == data.campaign_id,
        VisitEvent.creator_id == data.creator_id,
        VisitEvent.visitor_id == data.visitor_id,
        VisitEvent.is_recorded == True,  # noqa: E712
        VisitEvent.occurred_at >= ctx.config.dedupe_window_start(now),
    )
    if recent:
        return RejectionReason.DUPLICATE

    # ip_velocity was counted over the same window before this visit was written
    if ip_velocity >= ctx.config.ip_rate_limit_per_hour:
        return RejectionReason.RATE_LIMITED

    return None
