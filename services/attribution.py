"""
Conversion attribution and conversion payouts.

A conversion is credited to the creator whose validated visit brought the
visitor in: the last-touch cookie wins when it is inside the attribution
window and backed by a validated visit, otherwise the earliest validated
visit for the requested campaign inside the window. Conversions are
recorded whether or not they can be attributed.
"""

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from database import atomic
from exceptions import ResourceNotFoundError, ValidationError
from models import (
    AttributionModel,
    Campaign,
    CampaignStatus,
    ConversionEvent,
    ConversionType,
    Creator,
    VisitEvent,
)
from observability.metrics import conversions_total, payout_amount_cents_total
from services.balances import adjust_creator_balance, ensure_creator_balance
from services.context import SettlementContext
from services.ledger import INSUFFICIENT_BUDGET

logger = logging.getLogger(__name__)

LAST_TOUCH_CAMPAIGN_COOKIE = "last_touch_campaign_id"
LAST_TOUCH_CREATOR_COOKIE = "last_touch_creator_id"
LAST_TOUCH_TS_COOKIE = "last_touch_ts"
VISITOR_ID_COOKIE = "visitor_id"

NO_VALID_VISIT = "no_valid_visit_in_attribution_window"
DUPLICATE_CONVERSION = "duplicate_conversion"
INSUFFICIENT_BUDGET_REASON = "insufficient_budget"
CAMPAIGN_INACTIVE = "campaign_inactive"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class AttributionResult:
    campaign_id: int
    creator_id: Optional[int]
    attribution_model: AttributionModel
    is_valid: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ConversionInput:
    campaign_id: int
    type: ConversionType
    visitor_id: str
    revenue_cents: int = 0
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ConversionResult:
    success: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    conversion_id: Optional[int] = None
    attribution_model: Optional[AttributionModel] = None
    creator_id: Optional[int] = None
    payout_cents: int = 0

    def to_dict(self) -> dict:
        body: Dict[str, Any] = {"success": self.success}
        if self.reason:
            body["reason"] = self.reason
        if self.message:
            body["message"] = self.message
        if self.conversion_id is not None:
            body["conversion"] = {
                "id": self.conversion_id,
                "attributedTo": self.attribution_model.value if self.attribution_model else None,
                "creatorId": self.creator_id,
                "payoutCents": self.payout_cents,
            }
        return body


def calculate_conversion_payout(revenue_cents: int, commission_rate: float = 0.20) -> int:
    return math.floor(revenue_cents * commission_rate)


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _touch_time(cookies: Mapping[str, str]) -> Optional[datetime]:
    """last_touch_ts is epoch milliseconds."""
    millis = _parse_int(cookies.get(LAST_TOUCH_TS_COOKIE))
    if millis is None:
        return None
    try:
        return EPOCH + timedelta(milliseconds=millis)
    except OverflowError:
        return None


async def _validated_visit_exists(
    session: AsyncSession, visitor_id: str, campaign_id: int, window_start: datetime
) -> bool:
    result = await session.exec(
        select(VisitEvent.id).where(
            VisitEvent.visitor_id == visitor_id,
            VisitEvent.campaign_id == campaign_id,
            VisitEvent.is_validated == True,  # noqa: E712
            VisitEvent.occurred_at >= window_start,
        ).limit(1)
    )
    return result.first() is not None


async def resolve_attribution(
    session: AsyncSession,
    visitor_id: str,
    requested_campaign_id: int,
    cookies: Mapping[str, str],
    ctx: SettlementContext,
) -> AttributionResult:
    now = ctx.now()
    window_start = ctx.config.attribution_window_start(now)

    touch_campaign_id = _parse_int(cookies.get(LAST_TOUCH_CAMPAIGN_COOKIE))
    touched_at = _touch_time(cookies)
    if touch_campaign_id is not None and touched_at is not None and now - touched_at < ctx.config.attribution_window:
        if await _validated_visit_exists(session, visitor_id, touch_campaign_id, window_start):
            return AttributionResult(
                campaign_id=touch_campaign_id,
                creator_id=_parse_int(cookies.get(LAST_TOUCH_CREATOR_COOKIE)),
                attribution_model=AttributionModel.LAST_CLICK,
                is_valid=True,
            )

    result = await session.exec(
        select(VisitEvent)
        .where(
            VisitEvent.visitor_id == visitor_id,
            VisitEvent.campaign_id == requested_campaign_id,
            VisitEvent.is_validated == True,  # noqa: E712
            VisitEvent.occurred_at >= window_start,
        )
        .order_by(VisitEvent.occurred_at.asc(), VisitEvent.id.asc())
        .limit(1)
    )
    first_visit = result.first()
    if first_visit is not None:
        return AttributionResult(
            campaign_id=requested_campaign_id,
            creator_id=first_visit.creator_id,
            attribution_model=AttributionModel.FIRST_CLICK,
            is_valid=True,
        )

    return AttributionResult(
        campaign_id=requested_campaign_id,
        creator_id=None,
        attribution_model=AttributionModel.DIRECT,
        is_valid=False,
        reason=NO_VALID_VISIT,
    )


def _metadata_json(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(metadata, default=str) if metadata else None


async def track_conversion(
    session: AsyncSession,
    data: ConversionInput,
    cookies: Mapping[str, str],
    ctx: SettlementContext,
) -> ConversionResult:
    """
    Record a conversion and pay the attributed creator a commission.

    Raises ResourceNotFoundError for an unknown campaign and ValidationError
    for a campaign that is not ACTIVE. Everything else is a result.
    """
    if not data.visitor_id:
        raise ValidationError("No visitor ID provided or found in cookies")
    if data.revenue_cents < 0:
        raise ValidationError("revenueCents must be non-negative")

    now = ctx.now()
    attribution = await resolve_attribution(session, data.visitor_id, data.campaign_id, cookies, ctx)

    if not attribution.is_valid:
        async with atomic(session):
            session.add(ConversionEvent(
                campaign_id=data.campaign_id,
                creator_id=None,
                visitor_id=data.visitor_id,
                type=data.type,
                revenue_cents=data.revenue_cents,
                attributed_to=attribution.reason,
                metadata_json=_metadata_json(data.metadata),
                occurred_at=now,
            ))
        conversions_total.labels(outcome="unattributed").inc()
        return ConversionResult(
            success=False,
            reason=attribution.reason,
            message="Conversion recorded but not attributed - no valid visit in attribution window",
        )

    campaign = await session.get(Campaign, attribution.campaign_id)
    if campaign is None:
        raise ResourceNotFoundError("Campaign not found", detail={"campaign_id": attribution.campaign_id})
    if campaign.status != CampaignStatus.ACTIVE:
        raise ValidationError("Campaign is not active", detail={"reason": CAMPAIGN_INACTIVE})

    if data.type != ConversionType.PURCHASE:
        existing = await session.exec(
            select(func.count(ConversionEvent.id)).where(
                ConversionEvent.visitor_id == data.visitor_id,
                ConversionEvent.campaign_id == attribution.campaign_id,
            )
        )
        if existing.one() > 0:
            conversions_total.labels(outcome=DUPLICATE_CONVERSION).inc()
            return ConversionResult(
                success=False,
                reason=DUPLICATE_CONVERSION,
                message="This visitor has already converted for this campaign",
            )

    creator_id = attribution.creator_id
    if creator_id is not None and await session.get(Creator, creator_id) is None:
        logger.warning(
            "[CONVERSION] Attributed creator does not exist; no payout",
            extra={"creator_id": creator_id, "campaign_id": attribution.campaign_id},
        )
        creator_id = None

    payout_cents = 0
    reason = None
    async with atomic(session):
        conversion = ConversionEvent(
            campaign_id=attribution.campaign_id,
            creator_id=attribution.creator_id,
            visitor_id=data.visitor_id,
            type=data.type,
            revenue_cents=data.revenue_cents,
            attributed_to=attribution.attribution_model.value,
            metadata_json=_metadata_json(data.metadata),
            occurred_at=now,
        )
        session.add(conversion)
        await session.flush()

        commission = calculate_conversion_payout(data.revenue_cents, ctx.config.conversion_commission_rate)
        if creator_id is not None and commission > 0:
            payout = await ctx.ledger.record_conversion_payout(
                session,
                attribution.campaign_id,
                creator_id,
                conversion.id,
                commission,
                description=f"Conversion payout: {data.type.value}",
            )
            if payout.success:
                await ensure_creator_balance(session, creator_id)
                await adjust_creator_balance(
                    session,
                    creator_id,
                    now=now,
                    available_balance_cents=payout.net_payout_cents,
                    total_earned_cents=payout.net_payout_cents,
                )
                payout_cents = payout.net_payout_cents
            elif payout.error == INSUFFICIENT_BUDGET:
                reason = INSUFFICIENT_BUDGET_REASON
                logger.warning(
                    "[CONVERSION] Conversion recorded but budget exhausted",
                    extra={"conversion_id": conversion.id, "campaign_id": attribution.campaign_id},
                )

    if payout_cents:
        conversions_total.labels(outcome="paid").inc()
        payout_amount_cents_total.labels(source="conversion").inc(payout_cents)
    else:
        conversions_total.labels(outcome=reason or "no_payout").inc()

    logger.info(
        "[CONVERSION] Conversion recorded",
        extra={
            "conversion_id": conversion.id,
            "campaign_id": attribution.campaign_id,
            "creator_id": attribution.creator_id,
            "attribution_model": attribution.attribution_model.value,
            "payout_cents": payout_cents,
        },
    )
    return ConversionResult(
        success=True,
        reason=reason,
        conversion_id=conversion.id,
        attribution_model=attribution.attribution_model,
        creator_id=attribution.creator_id,
        payout_cents=payout_cents,
    )
