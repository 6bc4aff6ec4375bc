"""
Pixel validation: phase two of the view lifecycle.

A browser rendering the tracking pixel confirms a recorded view. The first
call for a visit claims it with a conditional update on is_validated, so
repeated or concurrent pixel loads settle at most once. When the view is
billable, the ledger payout, the payout queue entry and the billable flag
commit in the same transaction as the claim.
"""

import asyncio
import enum
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlmodel.ext.asyncio.session import AsyncSession

from database import atomic
from models import (
    Campaign,
    CampaignStatus,
    PayoutMode,
    PayoutType,
    ValidationMethod,
    VisitEvent,
)
from observability.metrics import pixel_validations_total
from services.balances import ensure_creator_balance
from services.context import SettlementContext
from services.fraud import is_view_suspicious
from services.ledger import INSUFFICIENT_BUDGET
from services.payouts import create_payout_queue_entry

logger = logging.getLogger(__name__)


class PixelOutcome(str, enum.Enum):
    ALREADY_VALIDATED = "already_validated"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    VALIDATED_NON_BILLABLE = "validated_non_billable"
    VALIDATED_BILLABLE = "validated_billable"
    DEFERRED = "deferred"

    @property
    def http_status(self) -> int:
        if self in (PixelOutcome.NOT_FOUND, PixelOutcome.INVALID_STATE):
            return 400
        return 200


async def _claim(session: AsyncSession, visit: VisitEvent, ctx: SettlementContext, **extra) -> bool:
    """Mark the visit validated unless someone else already did."""
    result = await session.execute(
        update(VisitEvent)
        .where(
            VisitEvent.id == visit.id,
            VisitEvent.is_validated == False,  # noqa: E712
            VisitEvent.is_paid == False,  # noqa: E712
        )
        .values(
            is_validated=True,
            validation_method=ValidationMethod.PIXEL,
            validated_at=ctx.now(),
            **extra,
        )
    )
    return result.rowcount == 1


def _done(outcome: PixelOutcome, visit_id: Optional[int], **extra) -> PixelOutcome:
    pixel_validations_total.labels(outcome=outcome.value).inc()
    logger.info(f"[PIXEL] {outcome.value}", extra={"visit_id": visit_id, **extra})
    return outcome


async def _settle(
    session: AsyncSession,
    visit: VisitEvent,
    campaign: Campaign,
    ctx: SettlementContext,
) -> Tuple[PixelOutcome, Dict[str, Any]]:
    """Runs inside the caller's transaction."""
    if campaign.status != CampaignStatus.ACTIVE:
        if not await _claim(session, visit, ctx):
            return PixelOutcome.ALREADY_VALIDATED, {}
        return PixelOutcome.VALIDATED_NON_BILLABLE, {"reason": "campaign_inactive"}

    passes_fraud_check = visit.fraud_score < campaign.effective_fraud_threshold(ctx.config.fraud_score_threshold)
    suspicious = is_view_suspicious(visit.fraud_score, ctx.config.suspicion_cutoff)
    if not passes_fraud_check or suspicious:
        if not await _claim(session, visit, ctx, is_suspicious=True):
            return PixelOutcome.ALREADY_VALIDATED, {}
        return PixelOutcome.VALIDATED_NON_BILLABLE, {"reason": "fraud_check_failed"}

    if not await _claim(session, visit, ctx):
        return PixelOutcome.ALREADY_VALIDATED, {}

    if campaign.payout_mode == PayoutMode.CPA_ONLY:
        return PixelOutcome.VALIDATED_NON_BILLABLE, {"reason": "cpa_only"}

    payout = await ctx.ledger.record_valid_view_payout(session, visit.campaign_id, visit.creator_id, visit.id)
    if not payout.success:
        if payout.error == INSUFFICIENT_BUDGET:
            logger.warning(
                "[PIXEL] View validated but budget exhausted",
                extra={"visit_id": visit.id, "campaign_id": visit.campaign_id},
            )
        return PixelOutcome.VALIDATED_NON_BILLABLE, {"reason": payout.error}

    anomaly_score = await ctx.traffic.get_latest_anomaly_score(session, visit.creator_id)
    await ensure_creator_balance(session, visit.creator_id)
    await create_payout_queue_entry(
        session,
        ctx,
        creator_id=visit.creator_id,
        campaign_id=visit.campaign_id,
        amount_cents=payout.net_payout_cents,
        payout_type=PayoutType.VIEW_PAYOUT,
        risk_score=anomaly_score,
        visit_event_id=visit.id,
    )
    await session.execute(update(VisitEvent).where(VisitEvent.id == visit.id).values(is_billable=True))

    return PixelOutcome.VALIDATED_BILLABLE, {
        "campaign_id": visit.campaign_id,
        "payout_cents": payout.net_payout_cents,
        "anomaly_score": anomaly_score,
    }


async def validate_pixel(session: AsyncSession, visit_id: int, ctx: SettlementContext) -> PixelOutcome:
    """
    Confirm a recorded view and, when it qualifies, settle it.

    Idempotent per visit_id. Budget exhaustion leaves the view validated and
    non-billable with a warning. Persistence failures roll back and raise.

    Settlement that outlasts pixel_settle_budget_seconds is rolled back,
    claim included, and reported as DEFERRED so a later load can settle it.
    """
    visit = await session.get(VisitEvent, visit_id)
    if visit is None:
        return _done(PixelOutcome.NOT_FOUND, visit_id)
    # Rejected at ingestion: recorded for analytics, never settleable
    if not visit.is_recorded or visit.reason is not None:
        return _done(PixelOutcome.INVALID_STATE, visit_id)
    if visit.is_validated or visit.is_paid:
        return _done(PixelOutcome.ALREADY_VALIDATED, visit_id)

    campaign = await session.get(Campaign, visit.campaign_id)
    if campaign is None:
        return _done(PixelOutcome.INVALID_STATE, visit_id, reason="campaign_missing")

    budget = ctx.config.pixel_settle_budget_seconds
    try:
        async with atomic(session):
            outcome, extra = await asyncio.wait_for(_settle(session, visit, campaign, ctx), timeout=budget)
    except asyncio.TimeoutError:
        logger.warning(
            "[PIXEL] Settlement exceeded time budget, claim rolled back",
            extra={"visit_id": visit_id, "budget_seconds": budget},
        )
        return _done(PixelOutcome.DEFERRED, visit_id)

    return _done(outcome, visit_id, **extra)
