"""
Risk-adjusted payout queue.

Entry state machine:

    PENDING -> RELEASED | FROZEN | CANCELLED
    FROZEN  -> RELEASED (force release) | CANCELLED

RELEASED and CANCELLED are terminal. Every status change is a conditional
UPDATE on the prior status, committed together with the balance movement it
implies, so two concurrent sweeps (or a sweep racing an admin override)
cannot apply the same transition twice.

Balance movements per transition:
    create          pending += amount
    release         pending -= amount, available += amount - reserve,
                    locked_reserve += reserve, total_earned += amount
    cancel          pending -= amount
    freeze          none
    reserve expiry  locked_reserve -= reserve, available += reserve

A release also flips is_paid on the billable visit behind a view payout.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional

from fastapi import Request
from sqlalchemy import func, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from audit import audit_entry
from database import atomic
from exceptions import InvalidTransitionError, ResourceNotFoundError
from models import (
    Campaign,
    CampaignStatus,
    DomainEventType,
    PayoutQueueEntry,
    PayoutStatus,
    PayoutType,
    RiskLevel,
    VisitEvent,
)
from observability.metrics import payout_amount_cents_total, payout_transitions_total
from services.balances import adjust_creator_balance, get_creator_balance
from services.context import SettlementContext
from services.events import publish_safely
from services.pricing import CpmAdjustment
from services.risk import assess_creator_risk_by_score

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[PayoutStatus, FrozenSet[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.RELEASED, PayoutStatus.FROZEN, PayoutStatus.CANCELLED}),
    PayoutStatus.FROZEN: frozenset({PayoutStatus.RELEASED, PayoutStatus.CANCELLED}),
    PayoutStatus.RELEASED: frozenset(),
    PayoutStatus.CANCELLED: frozenset(),
}

HIGH_ANOMALY_FREEZE_REASON = "High anomaly score detected"


def can_transition(current: PayoutStatus, target: PayoutStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(entry: PayoutQueueEntry, target: PayoutStatus) -> None:
    if not can_transition(entry.status, target):
        raise InvalidTransitionError(
            f"Cannot move payout {entry.id} from {entry.status.value} to {target.value}",
            detail={"payout_id": entry.id},
            current=entry.status.value,
            target=target.value,
        )


def sources_of(target: PayoutStatus) -> List[PayoutStatus]:
    """Every status from which target is reachable."""
    return [status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


@dataclass
class ReleaseSweepResult:
    released: int = 0
    frozen: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ReserveSweepResult:
    released: int = 0
    amount_released: int = 0
    failed: int = 0


@dataclass(frozen=True)
class PayoutSummary:
    available_balance_cents: int
    pending_balance_cents: int
    locked_reserve_cents: int
    total_earned_cents: int
    risk_level: RiskLevel
    payout_delay_days: int
    next_release_date: Optional[datetime]
    pending_payout_count: int
    total_pending_amount: int
    frozen_payout_count: int


@dataclass(frozen=True)
class _Candidate:
    """Plain snapshot of a queue row; survives a rollback of the session."""
    id: int
    creator_id: int
    amount_cents: int
    reserve_amount_cents: int
    visit_event_id: Optional[int] = None


async def _transition(
    session: AsyncSession,
    payout_id: int,
    from_statuses: Iterable[PayoutStatus],
    **values,
) -> bool:
    """Conditional status update. False when the row was no longer in from_statuses."""
    result = await session.execute(
        update(PayoutQueueEntry)
        .where(PayoutQueueEntry.id == payout_id, PayoutQueueEntry.status.in_(list(from_statuses)))
        .values(**values)
    )
    return result.rowcount == 1


async def _release(
    session: AsyncSession,
    candidate: _Candidate,
    now: datetime,
    from_statuses: Iterable[PayoutStatus],
) -> bool:
    moved = await _transition(
        session,
        candidate.id,
        from_statuses,
        status=PayoutStatus.RELEASED,
        released_at=now,
    )
    if not moved:
        return False

    await adjust_creator_balance(
        session,
        candidate.creator_id,
        now=now,
        pending_balance_cents=-candidate.amount_cents,
        available_balance_cents=candidate.amount_cents - candidate.reserve_amount_cents,
        locked_reserve_cents=candidate.reserve_amount_cents,
        total_earned_cents=candidate.amount_cents,
    )
    if candidate.visit_event_id is not None:
        await session.execute(
            update(VisitEvent)
            .where(VisitEvent.id == candidate.visit_event_id, VisitEvent.is_billable == True)  # noqa: E712
            .values(is_paid=True)
        )
    return True


def _record_release(candidate: _Candidate, transition: str) -> None:
    payout_transitions_total.labels(transition=transition).inc()
    payout_amount_cents_total.labels(source="release").inc(
        candidate.amount_cents - candidate.reserve_amount_cents
    )


async def _load_entry(session: AsyncSession, payout_id: int) -> PayoutQueueEntry:
    entry = await session.get(PayoutQueueEntry, payout_id)
    if not entry:
        raise ResourceNotFoundError("Payout not found", detail={"payout_id": payout_id})
    return entry


def _candidate(entry: PayoutQueueEntry) -> _Candidate:
    return _Candidate(
        id=entry.id,
        creator_id=entry.creator_id,
        amount_cents=entry.amount_cents,
        reserve_amount_cents=entry.reserve_amount_cents,
        visit_event_id=entry.visit_event_id,
    )


async def _price(ctx: SettlementContext, session: AsyncSession, campaign_id: int, creator_id: int) -> Optional[CpmAdjustment]:
    try:
        return await ctx.pricing.calculate_adjusted_cpm(session, campaign_id, creator_id)
    except Exception as e:
        logger.warning(
            f"[DYNAMIC_CPM] Failed to calculate adjusted CPM, using base: {e}",
            extra={"campaign_id": campaign_id, "creator_id": creator_id},
        )
        return None


async def create_payout_queue_entry(
    session: AsyncSession,
    ctx: SettlementContext,
    *,
    creator_id: int,
    campaign_id: int,
    amount_cents: int,
    payout_type: PayoutType,
    risk_score: float = 0.0,
    visit_event_id: Optional[int] = None,
) -> PayoutQueueEntry:
    """
    Queue a payout with its risk policy snapshotted.

    The entry and the pending-balance increment are staged on the caller's
    session; the caller commits them with whatever triggered the payout
    (e.g. the visit becoming billable).
    """
    if await get_creator_balance(session, creator_id) is None:
        raise ResourceNotFoundError("Creator balance not found", detail={"creator_id": creator_id})

    now = ctx.now()
    risk = assess_creator_risk_by_score(risk_score)

    adjustment = await _price(ctx, session, campaign_id, creator_id)
    final_amount = amount_cents
    if adjustment and adjustment.was_adjusted:
        final_amount = round(amount_cents * adjustment.applied_multiplier)

    entry = PayoutQueueEntry(
        creator_id=creator_id,
        campaign_id=campaign_id,
        visit_event_id=visit_event_id,
        amount_cents=final_amount,
        type=payout_type,
        status=PayoutStatus.PENDING,
        eligible_at=now + timedelta(days=risk.payout_delay_days),
        risk_snapshot_score=risk_score,
        risk_level=risk.risk_level,
        reserve_percent=risk.reserve_percent,
        reserve_amount_cents=risk.reserve_for(final_amount),
        applied_multiplier=adjustment.applied_multiplier if adjustment else 1.0,
        creator_trust_score_snapshot=adjustment.creator_trust_score if adjustment else None,
        creator_tier_snapshot=adjustment.creator_tier if adjustment else None,
        created_at=now,
    )
    session.add(entry)
    await adjust_creator_balance(session, creator_id, now=now, pending_balance_cents=final_amount)
    await session.flush()

    logger.info(
        "[PAYOUT_QUEUE] Created payout queue entry",
        extra={
            "payout_id": entry.id,
            "campaign_id": campaign_id,
            "creator_id": creator_id,
            "base_amount": amount_cents,
            "final_amount": final_amount,
            "risk_level": risk.risk_level.value,
            "reserve_amount": entry.reserve_amount_cents,
            "cpm_adjusted": bool(adjustment and adjustment.was_adjusted),
        },
    )
    payout_transitions_total.labels(transition="created").inc()
    return entry


async def release_eligible_payouts(session: AsyncSession, ctx: SettlementContext) -> ReleaseSweepResult:
    """
    Background sweep: release every PENDING entry whose eligible_at has passed.

    Entries of campaigns UNDER_REVIEW are skipped. Entries whose creator's
    current anomaly score is at or above the freeze threshold are frozen
    instead, with no money moved. Each entry commits on its own; a failure
    is counted and the sweep moves on.
    """
    now = ctx.now()
    result = ReleaseSweepResult()

    rows = await session.exec(
        select(
            PayoutQueueEntry.id,
            PayoutQueueEntry.creator_id,
            PayoutQueueEntry.amount_cents,
            PayoutQueueEntry.reserve_amount_cents,
            PayoutQueueEntry.visit_event_id,
            Campaign.status,
        )
        .join(Campaign, Campaign.id == PayoutQueueEntry.campaign_id)
        .where(
            PayoutQueueEntry.status == PayoutStatus.PENDING,
            PayoutQueueEntry.eligible_at <= now,
        )
        .order_by(PayoutQueueEntry.eligible_at)
    )
    candidates = [(_Candidate(*row[:5]), row[5]) for row in rows.all()]
    await session.commit()

    for candidate, campaign_status in candidates:
        if campaign_status == CampaignStatus.UNDER_REVIEW:
            logger.info("[PAYOUT_RELEASE] Skipping - campaign UNDER_REVIEW", extra={"payout_id": candidate.id})
            result.skipped += 1
            continue

        try:
            anomaly_score = await ctx.traffic.get_latest_anomaly_score(session, candidate.creator_id)

            if anomaly_score >= ctx.config.freeze_anomaly_threshold:
                async with atomic(session):
                    frozen = await _transition(
                        session,
                        candidate.id,
                        [PayoutStatus.PENDING],
                        status=PayoutStatus.FROZEN,
                        cancel_reason=HIGH_ANOMALY_FREEZE_REASON,
                    )
                if not frozen:
                    result.skipped += 1
                    continue

                result.frozen += 1
                payout_transitions_total.labels(transition="frozen").inc()
                logger.info(
                    "[PAYOUT_RELEASE] Frozen - high anomaly score",
                    extra={"payout_id": candidate.id, "anomaly_score": anomaly_score},
                )
                await publish_safely(ctx.events, DomainEventType.VELOCITY_SPIKE_DETECTED, {
                    "creator_id": candidate.creator_id,
                    "payout_id": candidate.id,
                    "anomaly_score": anomaly_score,
                    "threshold": ctx.config.freeze_anomaly_threshold,
                })
                continue

            async with atomic(session):
                released = await _release(session, candidate, now, [PayoutStatus.PENDING])
            if not released:
                result.skipped += 1
                continue

            result.released += 1
            _record_release(candidate, "released")
            logger.info(
                "[PAYOUT_RELEASE] Released payout",
                extra={
                    "payout_id": candidate.id,
                    "amount_cents": candidate.amount_cents,
                    "released_amount": candidate.amount_cents - candidate.reserve_amount_cents,
                    "reserve_amount": candidate.reserve_amount_cents,
                },
            )
        except Exception as e:
            result.failed += 1
            result.errors.append(f"Failed to release payout {candidate.id}: {e}")
            logger.error("[PAYOUT_RELEASE] Error releasing payout", extra={"payout_id": candidate.id}, exc_info=True)

    logger.info(
        "[PAYOUT_RELEASE] Sweep finished",
        extra={
            "released": result.released,
            "frozen": result.frozen,
            "skipped": result.skipped,
            "failed": result.failed,
        },
    )
    return result


async def force_release_payout(
    session: AsyncSession,
    ctx: SettlementContext,
    payout_id: int,
    actor: str,
    reason: Optional[str] = None,
    request: Optional[Request] = None,
) -> PayoutQueueEntry:
    """Admin override: release a PENDING or FROZEN entry now, reserve included."""
    entry = await _load_entry(session, payout_id)
    ensure_transition(entry, PayoutStatus.RELEASED)
    candidate = _candidate(entry)
    previous = entry.status
    now = ctx.now()

    async with atomic(session):
        if not await _release(session, candidate, now, sources_of(PayoutStatus.RELEASED)):
            raise InvalidTransitionError(
                "Payout status changed concurrently",
                detail={"payout_id": payout_id},
                target=PayoutStatus.RELEASED.value,
            )
        audit_entry(
            session,
            "payout.force_release",
            actor=actor,
            resource_type="payout",
            resource_id=str(payout_id),
            details={"from_status": previous.value, "amount_cents": candidate.amount_cents, "reason": reason},
            request=request,
        )

    _record_release(candidate, "force_released")
    logger.info(
        "[PAYOUT_FORCE_RELEASE] Admin forced release",
        extra={"payout_id": payout_id, "forced_by": actor, "amount_cents": candidate.amount_cents},
    )
    await session.refresh(entry)
    return entry


async def cancel_payout(
    session: AsyncSession,
    ctx: SettlementContext,
    payout_id: int,
    reason: str,
    actor: str,
    request: Optional[Request] = None,
) -> PayoutQueueEntry:
    """Admin override: cancel a PENDING or FROZEN entry and reverse its pending amount."""
    entry = await _load_entry(session, payout_id)
    ensure_transition(entry, PayoutStatus.CANCELLED)
    candidate = _candidate(entry)
    previous = entry.status
    now = ctx.now()

    async with atomic(session):
        moved = await _transition(
            session,
            payout_id,
            sources_of(PayoutStatus.CANCELLED),
            status=PayoutStatus.CANCELLED,
            cancelled_at=now,
            cancel_reason=reason,
        )
        if not moved:
            raise InvalidTransitionError(
                "Payout status changed concurrently",
                detail={"payout_id": payout_id},
                target=PayoutStatus.CANCELLED.value,
            )
        await adjust_creator_balance(
            session, candidate.creator_id, now=now, pending_balance_cents=-candidate.amount_cents
        )
        audit_entry(
            session,
            "payout.cancel",
            actor=actor,
            resource_type="payout",
            resource_id=str(payout_id),
            details={"from_status": previous.value, "amount_cents": candidate.amount_cents, "reason": reason},
            request=request,
        )

    payout_transitions_total.labels(transition="cancelled").inc()
    logger.info(
        "[PAYOUT_CANCEL] Admin cancelled payout",
        extra={"payout_id": payout_id, "cancelled_by": actor, "amount_cents": candidate.amount_cents},
    )
    await session.refresh(entry)
    return entry


async def freeze_payout(
    session: AsyncSession,
    ctx: SettlementContext,
    payout_id: int,
    reason: str,
    actor: str,
    request: Optional[Request] = None,
) -> PayoutQueueEntry:
    """Admin override: hold a PENDING entry. No balance moves."""
    entry = await _load_entry(session, payout_id)
    ensure_transition(entry, PayoutStatus.FROZEN)

    async with atomic(session):
        moved = await _transition(
            session,
            payout_id,
            sources_of(PayoutStatus.FROZEN),
            status=PayoutStatus.FROZEN,
            cancel_reason=reason,
        )
        if not moved:
            raise InvalidTransitionError(
                "Payout status changed concurrently",
                detail={"payout_id": payout_id},
                target=PayoutStatus.FROZEN.value,
            )
        audit_entry(
            session,
            "payout.freeze",
            actor=actor,
            resource_type="payout",
            resource_id=str(payout_id),
            details={"reason": reason},
            request=request,
        )

    payout_transitions_total.labels(transition="frozen").inc()
    logger.info("[PAYOUT_FREEZE] Admin froze payout", extra={"payout_id": payout_id, "frozen_by": actor})
    await session.refresh(entry)
    return entry


async def release_expired_reserves(session: AsyncSession, ctx: SettlementContext) -> ReserveSweepResult:
    """
    Second sweep: return reserves that have been held long enough.

    A RELEASED entry whose eligible_at is at least reserve_hold_days old
    moves its reserve from locked to available; the entry's reserve fields
    are zeroed so it is never swept twice.
    """
    now = ctx.now()
    cutoff = now - timedelta(days=ctx.config.reserve_hold_days)
    result = ReserveSweepResult()

    rows = await session.exec(
        select(
            PayoutQueueEntry.id,
            PayoutQueueEntry.creator_id,
            PayoutQueueEntry.amount_cents,
            PayoutQueueEntry.reserve_amount_cents,
        ).where(
            PayoutQueueEntry.status == PayoutStatus.RELEASED,
            PayoutQueueEntry.reserve_amount_cents > 0,
            PayoutQueueEntry.eligible_at <= cutoff,
        )
    )
    candidates = [_Candidate(*row) for row in rows.all()]
    await session.commit()

    for candidate in candidates:
        reserve = candidate.reserve_amount_cents
        try:
            async with atomic(session):
                claimed = await session.execute(
                    update(PayoutQueueEntry)
                    .where(
                        PayoutQueueEntry.id == candidate.id,
                        PayoutQueueEntry.reserve_amount_cents == reserve,
                    )
                    .values(reserve_amount_cents=0, reserve_percent=0, reserve_released_at=now)
                )
                if claimed.rowcount != 1:
                    continue
                await adjust_creator_balance(
                    session,
                    candidate.creator_id,
                    now=now,
                    locked_reserve_cents=-reserve,
                    available_balance_cents=reserve,
                )
        except Exception:
            result.failed += 1
            logger.error("[RESERVE_RELEASE] Error releasing reserve", extra={"payout_id": candidate.id}, exc_info=True)
            continue

        result.released += 1
        result.amount_released += reserve
        payout_transitions_total.labels(transition="reserve_released").inc()
        payout_amount_cents_total.labels(source="reserve").inc(reserve)
        logger.info("[RESERVE_RELEASE] Released expired reserve", extra={"payout_id": candidate.id, "amount_cents": reserve})
        await publish_safely(ctx.events, DomainEventType.RESERVE_RELEASED, {
            "creator_id": candidate.creator_id,
            "payout_id": candidate.id,
            "amount_cents": reserve,
        })

    return result


async def get_creator_payout_summary(session: AsyncSession, creator_id: int) -> PayoutSummary:
    balance = await get_creator_balance(session, creator_id)

    pending = await session.exec(
        select(
            func.count(PayoutQueueEntry.id),
            func.coalesce(func.sum(PayoutQueueEntry.amount_cents), 0),
            func.min(PayoutQueueEntry.eligible_at),
        ).where(
            PayoutQueueEntry.creator_id == creator_id,
            PayoutQueueEntry.status == PayoutStatus.PENDING,
        )
    )
    pending_count, pending_total, next_release = pending.one()

    frozen = await session.exec(
        select(func.count(PayoutQueueEntry.id)).where(
            PayoutQueueEntry.creator_id == creator_id,
            PayoutQueueEntry.status == PayoutStatus.FROZEN,
        )
    )

    return PayoutSummary(
        available_balance_cents=balance.available_balance_cents if balance else 0,
        pending_balance_cents=balance.pending_balance_cents if balance else 0,
        locked_reserve_cents=balance.locked_reserve_cents if balance else 0,
        total_earned_cents=balance.total_earned_cents if balance else 0,
        risk_level=balance.risk_level if balance else RiskLevel.MEDIUM,
        payout_delay_days=balance.payout_delay_days if balance else 3,
        next_release_date=next_release,
        pending_payout_count=pending_count,
        total_pending_amount=int(pending_total),
        frozen_payout_count=frozen.one(),
    )
