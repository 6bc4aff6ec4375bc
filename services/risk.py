"""Creator risk assessment.

Maps a creator's persisted risk level, or a rolling anomaly score, to the
payout policy (risk level, payout delay, reserve percent). The thresholds
below are policy constants.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from config import utcnow
from database import atomic
from exceptions import ResourceNotFoundError
from models import (
    Creator,
    CreatorBalance,
    CreatorTier,
    CreatorTrafficMetrics,
    DomainEventType,
    RiskLevel,
)
from services.events import DomainEventBus, publish_safely

logger = logging.getLogger(__name__)

# Score-based policy
LOW_RISK_MAX_SCORE = 3
MEDIUM_RISK_MAX_SCORE = 7
HIGH_RISK_RESERVE_PERCENT = 20

DEFAULT_RISK_LEVEL = RiskLevel.MEDIUM
DEFAULT_PAYOUT_DELAY_DAYS = 3

# Verification adjustment
UNVERIFIED_SCORE_PENALTY = 2
VERIFIED_SPIKE_THRESHOLD = 300
UNVERIFIED_SPIKE_THRESHOLD = 200
UNVERIFIED_DAILY_CAP_MULTIPLIER = 0.6

# Trust score
TIER_SILVER_MIN = 50
TIER_GOLD_MIN = 80
QUALITY_MULTIPLIERS = {
    CreatorTier.BRONZE: 0.8,
    CreatorTier.SILVER: 1.0,
    CreatorTier.GOLD: 1.2,
}
FLAGGED_TRUST_CAP = 30
TRUST_DOWNGRADE_ALERT_POINTS = 10


@dataclass(frozen=True)
class RiskAssessment:
    risk_level: RiskLevel
    payout_delay_days: int
    reserve_percent: int

    def reserve_for(self, amount_cents: int) -> int:
        return round(amount_cents * self.reserve_percent / 100)


@dataclass(frozen=True)
class VerificationAdjustedRisk:
    adjusted_anomaly_score: float
    spike_threshold: int
    daily_cap_multiplier: float
    is_verified: bool


@dataclass(frozen=True)
class TrustScoreResult:
    trust_score: int
    tier: CreatorTier
    quality_multiplier: float
    is_verified: bool
    validation_rate_points: float = 0.0
    conversion_rate_points: float = 0.0
    fraud_score_points: float = 0.0
    anomaly_score_points: float = 0.0


def _reserve_percent_for(level: RiskLevel) -> int:
    return HIGH_RISK_RESERVE_PERCENT if level == RiskLevel.HIGH else 0


async def assess_creator_risk(session: AsyncSession, creator_id: int) -> RiskAssessment:
    """Policy from the creator's persisted balance record, or the default."""
    result = await session.exec(select(CreatorBalance).where(CreatorBalance.creator_id == creator_id))
    balance = result.first()

    if balance:
        return RiskAssessment(
            risk_level=balance.risk_level,
            payout_delay_days=balance.payout_delay_days,
            reserve_percent=_reserve_percent_for(balance.risk_level),
        )

    return RiskAssessment(
        risk_level=DEFAULT_RISK_LEVEL,
        payout_delay_days=DEFAULT_PAYOUT_DELAY_DAYS,
        reserve_percent=0,
    )


def assess_creator_risk_by_score(anomaly_score: float) -> RiskAssessment:
    if anomaly_score < LOW_RISK_MAX_SCORE:
        return RiskAssessment(RiskLevel.LOW, payout_delay_days=2, reserve_percent=0)
    if anomaly_score < MEDIUM_RISK_MAX_SCORE:
        return RiskAssessment(RiskLevel.MEDIUM, payout_delay_days=5, reserve_percent=0)
    return RiskAssessment(RiskLevel.HIGH, payout_delay_days=14, reserve_percent=HIGH_RISK_RESERVE_PERCENT)


def verification_adjustment(base_anomaly_score: float, is_verified: bool) -> VerificationAdjustedRisk:
    if is_verified:
        return VerificationAdjustedRisk(
            adjusted_anomaly_score=base_anomaly_score,
            spike_threshold=VERIFIED_SPIKE_THRESHOLD,
            daily_cap_multiplier=1.0,
            is_verified=True,
        )
    return VerificationAdjustedRisk(
        adjusted_anomaly_score=base_anomaly_score + UNVERIFIED_SCORE_PENALTY,
        spike_threshold=UNVERIFIED_SPIKE_THRESHOLD,
        daily_cap_multiplier=UNVERIFIED_DAILY_CAP_MULTIPLIER,
        is_verified=False,
    )


async def get_verification_adjusted_risk(
    session: AsyncSession, creator_id: int, base_anomaly_score: float
) -> VerificationAdjustedRisk:
    creator = await session.get(Creator, creator_id)
    return verification_adjustment(base_anomaly_score, bool(creator and creator.is_verified))


def get_effective_daily_cap(base_daily_cap: Optional[int], is_verified: bool) -> Optional[int]:
    if not base_daily_cap or is_verified:
        return base_daily_cap
    return round(base_daily_cap * UNVERIFIED_DAILY_CAP_MULTIPLIER)


async def update_creator_risk_level(
    session: AsyncSession,
    creator_id: int,
    risk_level: RiskLevel,
    payout_delay_days: Optional[int] = None,
    events: Optional[DomainEventBus] = None,
) -> None:
    """Persist a manual risk decision; HIGH risk notifies downstream."""
    values = {"risk_level": risk_level, "updated_at": utcnow()}
    if payout_delay_days is not None:
        values["payout_delay_days"] = payout_delay_days

    async with atomic(session):
        result = await session.execute(
            update(CreatorBalance).where(CreatorBalance.creator_id == creator_id).values(**values)
        )
        if result.rowcount == 0:
            raise ResourceNotFoundError("Creator balance not found", detail={"creator_id": creator_id})

    logger.info(
        "[RISK_UPDATE] Updated creator risk level",
        extra={"creator_id": creator_id, "risk_level": risk_level.value, "payout_delay_days": payout_delay_days},
    )

    if risk_level == RiskLevel.HIGH:
        await publish_safely(events, DomainEventType.CREATOR_FLAGGED, {
            "creator_id": creator_id,
            "reason": f"Risk level set to {risk_level.value}. Delay: {payout_delay_days or 0} days.",
            "severity": risk_level.value,
        })


def tier_for(trust_score: int) -> CreatorTier:
    if trust_score >= TIER_GOLD_MIN:
        return CreatorTier.GOLD
    if trust_score >= TIER_SILVER_MIN:
        return CreatorTier.SILVER
    return CreatorTier.BRONZE


async def compute_creator_trust_score(
    session: AsyncSession,
    creator_id: int,
    events: Optional[DomainEventBus] = None,
    now: Optional[datetime] = None,
) -> TrustScoreResult:
    """
    Recompute a creator's trust score from the last 30 days of traffic metrics.

    Points: validation rate up to 30, conversion rate up to 30, low fraud
    score up to 20, low anomaly score up to 20. A creator flagged in the
    last 7 days is capped at 30. The stored trust score is the unpenalized
    value; the unverified penalty is applied to the returned effective
    score and tier.
    """
    now = now or utcnow()
    creator = await session.get(Creator, creator_id)
    if not creator:
        raise ResourceNotFoundError("Creator not found", detail={"creator_id": creator_id})

    month_ago = (now - timedelta(days=30)).date()
    week_ago = (now - timedelta(days=7)).date()

    averages = await session.exec(
        select(
            func.avg(CreatorTrafficMetrics.validation_rate),
            func.avg(CreatorTrafficMetrics.conversion_rate),
            func.avg(CreatorTrafficMetrics.avg_fraud_score),
            func.avg(CreatorTrafficMetrics.anomaly_score),
        ).where(
            CreatorTrafficMetrics.creator_id == creator_id,
            CreatorTrafficMetrics.date >= month_ago,
        )
    )
    validation_rate, conversion_rate, avg_fraud, avg_anomaly = (v or 0 for v in averages.one())

    flagged = await session.exec(
        select(func.count(CreatorTrafficMetrics.id)).where(
            CreatorTrafficMetrics.creator_id == creator_id,
            CreatorTrafficMetrics.date >= week_ago,
            CreatorTrafficMetrics.flagged == True,  # noqa: E712
        )
    )
    is_flagged = flagged.one() > 0

    validation_points = min(30.0, (validation_rate / 100) * 30)
    conversion_points = min(30.0, conversion_rate * 30)
    fraud_points = max(0.0, 20 - (avg_fraud / 100) * 20)
    anomaly_points = max(0.0, 20 - (avg_anomaly / 10) * 20)

    raw_score = round(validation_points + conversion_points + fraud_points + anomaly_points)
    raw_score = max(0, min(100, raw_score))
    if is_flagged:
        raw_score = min(raw_score, FLAGGED_TRUST_CAP)

    is_verified = creator.is_verified
    effective_score = raw_score if is_verified else min(round(raw_score * 0.75), 70)
    tier = tier_for(effective_score)
    base_multiplier = QUALITY_MULTIPLIERS[tier]
    effective_multiplier = base_multiplier if is_verified else round(base_multiplier * 0.85, 2)

    old_score, old_tier = creator.trust_score, creator.tier

    creator.trust_score = raw_score
    creator.tier = tier
    creator.quality_multiplier = base_multiplier
    async with atomic(session):
        session.add(creator)

    if old_score - raw_score >= TRUST_DOWNGRADE_ALERT_POINTS:
        await publish_safely(events, DomainEventType.TRUST_SCORE_DOWNGRADED, {
            "creator_id": creator_id, "old_score": old_score, "new_score": raw_score,
        })
    if old_tier != tier:
        await publish_safely(events, DomainEventType.CREATOR_TIER_CHANGED, {
            "creator_id": creator_id, "old_tier": old_tier.value, "new_tier": tier.value,
        })

    return TrustScoreResult(
        trust_score=effective_score,
        tier=tier,
        quality_multiplier=effective_multiplier,
        is_verified=is_verified,
        validation_rate_points=round(validation_points, 1),
        conversion_rate_points=round(conversion_points, 1),
        fraud_score_points=round(fraud_points, 1),
        anomaly_score_points=round(anomaly_points, 1),
    )
