"""Tests for creator risk assessment and trust scoring."""
from datetime import timedelta

import pytest

from conftest import NOW
from exceptions import ResourceNotFoundError
from models import Creator, CreatorTier, DomainEventType, RiskLevel, VerificationLevel
from services.balances import get_creator_balance
from services.risk import (
    RiskAssessment,
    assess_creator_risk,
    assess_creator_risk_by_score,
    compute_creator_trust_score,
    get_effective_daily_cap,
    get_verification_adjusted_risk,
    tier_for,
    update_creator_risk_level,
    verification_adjustment,
)


@pytest.mark.parametrize(
    "score,level,delay,reserve",
    [
        (2, RiskLevel.LOW, 2, 0),
        (5, RiskLevel.MEDIUM, 5, 0),
        (9, RiskLevel.HIGH, 14, 20),
        (3, RiskLevel.MEDIUM, 5, 0),
        (7, RiskLevel.HIGH, 14, 20),
        (0, RiskLevel.LOW, 2, 0),
    ],
)
def test_risk_policy_by_anomaly_score(score, level, delay, reserve):
    risk = assess_creator_risk_by_score(score)
    assert risk.risk_level == level
    assert risk.payout_delay_days == delay
    assert risk.reserve_percent == reserve


def test_reserve_is_rounded_percentage():
    risk = RiskAssessment(RiskLevel.HIGH, payout_delay_days=14, reserve_percent=20)
    assert risk.reserve_for(1000) == 200
    assert risk.reserve_for(37) == 7
    assert risk.reserve_for(0) == 0


def test_unverified_creators_get_stricter_limits():
    unverified = verification_adjustment(4.0, is_verified=False)
    verified = verification_adjustment(4.0, is_verified=True)

    assert unverified.adjusted_anomaly_score == 6.0
    assert unverified.spike_threshold < verified.spike_threshold
    assert verified.adjusted_anomaly_score == 4.0
    assert get_effective_daily_cap(1000, is_verified=False) == 600
    assert get_effective_daily_cap(1000, is_verified=True) == 1000
    assert get_effective_daily_cap(None, is_verified=False) is None


def test_tier_boundaries():
    assert tier_for(49) == CreatorTier.BRONZE
    assert tier_for(50) == CreatorTier.SILVER
    assert tier_for(80) == CreatorTier.GOLD


@pytest.mark.asyncio
async def test_persisted_risk_or_default(session, seed):
    creator = await seed.creator(with_balance=False)
    default = await assess_creator_risk(session, creator.id)
    assert default.risk_level == RiskLevel.MEDIUM
    assert default.payout_delay_days == 3

    await seed.balance(creator.id, risk_level=RiskLevel.HIGH, payout_delay_days=21)
    persisted = await assess_creator_risk(session, creator.id)
    assert persisted.risk_level == RiskLevel.HIGH
    assert persisted.payout_delay_days == 21
    assert persisted.reserve_percent == 20


@pytest.mark.asyncio
async def test_flagging_creator_high_publishes_event(session, seed, events, recorded_events):
    creator = await seed.creator()

    await update_creator_risk_level(session, creator.id, RiskLevel.HIGH, payout_delay_days=30, events=events)

    balance = await get_creator_balance(session, creator.id)
    await session.refresh(balance)
    assert balance.risk_level == RiskLevel.HIGH
    assert balance.payout_delay_days == 30
    assert [e.type for e in recorded_events] == [DomainEventType.CREATOR_FLAGGED]
    assert recorded_events[0].payload["creator_id"] == creator.id


@pytest.mark.asyncio
async def test_lowering_risk_publishes_nothing(session, seed, events, recorded_events):
    creator = await seed.creator()

    await update_creator_risk_level(session, creator.id, RiskLevel.LOW, events=events)

    assert recorded_events == []


@pytest.mark.asyncio
async def test_risk_update_without_balance_is_not_found(session, seed):
    creator = await seed.creator(with_balance=False)

    with pytest.raises(ResourceNotFoundError):
        await update_creator_risk_level(session, creator.id, RiskLevel.LOW)


@pytest.mark.asyncio
async def test_verified_creator_with_clean_traffic_is_gold(session, seed, events, recorded_events):
    creator = await seed.creator(verification_level=VerificationLevel.PLATFORM_VERIFIED)
    await seed.metrics(creator.id, validation_rate=100.0, conversion_rate=1.0, avg_fraud_score=0.0)

    result = await compute_creator_trust_score(session, creator.id, events=events, now=NOW)

    assert result.trust_score == 100
    assert result.tier == CreatorTier.GOLD
    assert result.quality_multiplier == 1.2
    stored = await session.get(Creator, creator.id)
    assert stored.trust_score == 100
    assert stored.tier == CreatorTier.GOLD
    assert [e.type for e in recorded_events] == [DomainEventType.CREATOR_TIER_CHANGED]


@pytest.mark.asyncio
async def test_unverified_creator_is_penalised(session, seed, events):
    creator = await seed.creator()
    await seed.metrics(creator.id, validation_rate=100.0, conversion_rate=1.0, avg_fraud_score=0.0)

    result = await compute_creator_trust_score(session, creator.id, events=events, now=NOW)

    assert result.trust_score == 70
    assert result.tier == CreatorTier.SILVER
    assert result.quality_multiplier == 0.85
    stored = await session.get(Creator, creator.id)
    assert stored.trust_score == 100


@pytest.mark.asyncio
async def test_recent_flag_caps_trust_and_alerts_downgrade(session, seed, events, recorded_events):
    creator = await seed.creator(
        verification_level=VerificationLevel.PLATFORM_VERIFIED, trust_score=90, tier=CreatorTier.GOLD
    )
    await seed.metrics(creator.id, validation_rate=100.0, conversion_rate=1.0, flagged=True, day=NOW - timedelta(days=2))

    result = await compute_creator_trust_score(session, creator.id, events=events, now=NOW)

    assert result.trust_score == 30
    assert result.tier == CreatorTier.BRONZE
    assert [e.type for e in recorded_events] == [
        DomainEventType.TRUST_SCORE_DOWNGRADED,
        DomainEventType.CREATOR_TIER_CHANGED,
    ]


@pytest.mark.asyncio
async def test_trust_score_for_unknown_creator(session):
    with pytest.raises(ResourceNotFoundError):
        await compute_creator_trust_score(session, 404, now=NOW)


@pytest.mark.asyncio
async def test_verification_adjusted_risk_reads_creator(session, seed):
    verified = await seed.creator(verification_level=VerificationLevel.PLATFORM_VERIFIED)
    unverified = await seed.creator()

    assert (await get_verification_adjusted_risk(session, verified.id, 3.0)).adjusted_anomaly_score == 3.0
    assert (await get_verification_adjusted_risk(session, unverified.id, 3.0)).adjusted_anomaly_score == 5.0
    assert (await get_verification_adjusted_risk(session, 404, 3.0)).is_verified is False
