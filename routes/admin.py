"""Admin routes - payout overrides, payout jobs and creator risk."""
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from audit import audit_failure
from database import get_session
from dependencies import get_context, get_session_factory, require_admin
from exceptions import SettlementError, ValidationError
from models import PayoutQueueEntry, RiskLevel
from services.context import SettlementContext
from services.payouts import (
    cancel_payout,
    force_release_payout,
    freeze_payout,
    get_creator_payout_summary,
    release_eligible_payouts,
    release_expired_reserves,
)
from services.risk import compute_creator_trust_score, update_creator_risk_level

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class PayoutActionRequest(BaseModel):
    actor: str
    reason: Optional[str] = None


class RiskUpdateRequest(BaseModel):
    riskLevel: RiskLevel
    payoutDelayDays: Optional[int] = None


def payout_to_dict(entry: PayoutQueueEntry) -> dict:
    return {
        "id": entry.id,
        "creatorId": entry.creator_id,
        "campaignId": entry.campaign_id,
        "amountCents": entry.amount_cents,
        "type": entry.type.value,
        "status": entry.status.value,
        "eligibleAt": entry.eligible_at.isoformat(),
        "riskLevel": entry.risk_level.value,
        "reservePercent": entry.reserve_percent,
        "reserveAmountCents": entry.reserve_amount_cents,
        "releasedAt": entry.released_at.isoformat() if entry.released_at else None,
        "cancelledAt": entry.cancelled_at.isoformat() if entry.cancelled_at else None,
        "cancelReason": entry.cancel_reason,
    }


async def _override(action: str, payout_id: int, actor: str, request: Request, operation):
    """Run an override; a rejected one is still audited, in its own session."""
    try:
        entry = await operation()
    except SettlementError as e:
        await audit_failure(
            get_session_factory(request),
            action,
            actor=actor,
            resource_type="payout",
            resource_id=str(payout_id),
            error_message=e.message,
            request=request,
        )
        raise
    return {"success": True, "payout": payout_to_dict(entry)}


@router.post("/payouts/{payout_id}/force-release")
async def force_release(
    payout_id: int,
    body: PayoutActionRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    ctx: SettlementContext = Depends(get_context),
):
    return await _override(
        "payout.force_release",
        payout_id,
        body.actor,
        request,
        lambda: force_release_payout(session, ctx, payout_id, body.actor, reason=body.reason, request=request),
    )


@router.post("/payouts/{payout_id}/cancel")
async def cancel(
    payout_id: int,
    body: PayoutActionRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    ctx: SettlementContext = Depends(get_context),
):
    if not body.reason:
        raise ValidationError("A cancellation reason is required")
    return await _override(
        "payout.cancel",
        payout_id,
        body.actor,
        request,
        lambda: cancel_payout(session, ctx, payout_id, body.reason, body.actor, request=request),
    )


@router.post("/payouts/{payout_id}/freeze")
async def freeze(
    payout_id: int,
    body: PayoutActionRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    ctx: SettlementContext = Depends(get_context),
):
    reason = body.reason or "Frozen by admin"
    return await _override(
        "payout.freeze",
        payout_id,
        body.actor,
        request,
        lambda: freeze_payout(session, ctx, payout_id, reason, body.actor, request=request),
    )


@router.post("/jobs/release-payouts")
async def release_payouts_job(
    action: str = "release",
    session: AsyncSession = Depends(get_session),
    ctx: SettlementContext = Depends(get_context),
):
    """Run one payout sweep on demand."""
    if action == "release":
        result = await release_eligible_payouts(session, ctx)
        return {
            "success": True,
            "message": f"Released {result.released} payouts",
            "released": result.released,
            "frozen": result.frozen,
            "skipped": result.skipped,
            "failed": result.failed,
            "errors": result.errors,
        }
    if action == "release-reserves":
        result = await release_expired_reserves(session, ctx)
        return {
            "success": True,
            "message": f"Released {result.released} reserves",
            "released": result.released,
            "amountReleased": result.amount_released,
            "failed": result.failed,
        }
    raise ValidationError("Invalid action", detail={"action": action})


@router.get("/creators/{creator_id}/payout-summary")
async def payout_summary(creator_id: int, session: AsyncSession = Depends(get_session)):
    summary = await get_creator_payout_summary(session, creator_id)
    return {
        "availableBalanceCents": summary.available_balance_cents,
        "pendingBalanceCents": summary.pending_balance_cents,
        "lockedReserveCents": summary.locked_reserve_cents,
        "totalEarnedCents": summary.total_earned_cents,
        "riskLevel": summary.risk_level.value,
        "payoutDelayDays": summary.payout_delay_days,
        "nextReleaseDate": summary.next_release_date.isoformat() if summary.next_release_date else None,
        "pendingPayoutCount": summary.pending_payout_count,
        "totalPendingAmount": summary.total_pending_amount,
        "frozenPayoutCount": summary.frozen_payout_count,
    }


@router.put("/creators/{creator_id}/risk")
async def update_risk(
    creator_id: int,
    body: RiskUpdateRequest,
    session: AsyncSession = Depends(get_session),
    ctx: SettlementContext = Depends(get_context),
):
    if body.payoutDelayDays is not None and body.payoutDelayDays < 0:
        raise ValidationError("payoutDelayDays must be non-negative")
    await update_creator_risk_level(
        session, creator_id, body.riskLevel, payout_delay_days=body.payoutDelayDays, events=ctx.events
    )
    return {"success": True, "creatorId": creator_id, "riskLevel": body.riskLevel.value}


@router.post("/creators/{creator_id}/trust-score")
async def recompute_trust_score(
    creator_id: int,
    session: AsyncSession = Depends(get_session),
    ctx: SettlementContext = Depends(get_context),
):
    result = await compute_creator_trust_score(session, creator_id, events=ctx.events, now=ctx.now())
    body = asdict(result)
    body["tier"] = result.tier.value
    return body
