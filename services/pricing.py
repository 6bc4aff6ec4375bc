"""Dynamic CPM pricing collaborator.

Adjusts a campaign's base CPM by the creator's quality tier. The payout
queue uses the resulting multiplier to scale a queued amount and snapshots
the creator's trust score and tier on the entry.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import ResourceNotFoundError
from models import Campaign, Creator, CreatorTier, DynamicCpmMode

logger = logging.getLogger(__name__)

CONSERVATIVE_MULTIPLIERS = {
    CreatorTier.BRONZE: 0.5,
    CreatorTier.SILVER: 1.0,
    CreatorTier.GOLD: 1.2,
}

UNVERIFIED_TRUST_FACTOR = 0.75
UNVERIFIED_TRUST_CAP = 70
UNVERIFIED_MULTIPLIER_FACTOR = 0.85


@dataclass(frozen=True)
class CpmAdjustment:
    base_cpm_cents: int
    adjusted_cpm_cents: int
    applied_multiplier: float
    creator_trust_score: int
    creator_tier: CreatorTier
    was_adjusted: bool
    min_cpm_cents: int = 0
    max_cpm_cents: int = 0
    reason: Optional[str] = None


class CpmPricing(ABC):
    @abstractmethod
    async def calculate_adjusted_cpm(
        self, session: AsyncSession, campaign_id: int, creator_id: int
    ) -> CpmAdjustment:
        ...


def effective_trust(creator: Creator) -> tuple:
    """(trust score, quality multiplier) after the unverified penalty."""
    if creator.is_verified:
        return creator.trust_score, creator.quality_multiplier
    trust = min(round(creator.trust_score * UNVERIFIED_TRUST_FACTOR), UNVERIFIED_TRUST_CAP)
    multiplier = round(creator.quality_multiplier * UNVERIFIED_MULTIPLIER_FACTOR, 2)
    return trust, multiplier


class TrustTierCpmPricing(CpmPricing):
    """Default pricing: scale the base CPM by the creator's trust tier."""

    async def calculate_adjusted_cpm(self, session, campaign_id, creator_id):
        campaign = await session.get(Campaign, campaign_id)
        if not campaign:
            raise ResourceNotFoundError("Campaign not found", detail={"campaign_id": campaign_id})

        creator = await session.get(Creator, creator_id)

        base_cpm = campaign.cpm_cents
        min_cpm = campaign.min_cpm_cents or int(base_cpm * 0.5)
        max_cpm = campaign.max_cpm_cents or int(base_cpm * 1.5)

        if not campaign.dynamic_cpm_enabled or not creator:
            return CpmAdjustment(
                base_cpm_cents=base_cpm,
                adjusted_cpm_cents=base_cpm,
                applied_multiplier=1.0,
                creator_trust_score=creator.trust_score if creator else 50,
                creator_tier=creator.tier if creator else CreatorTier.BRONZE,
                was_adjusted=False,
                min_cpm_cents=min_cpm,
                max_cpm_cents=max_cpm,
                reason="Dynamic CPM not enabled or creator not found",
            )

        trust_score, quality_multiplier = effective_trust(creator)

        if campaign.dynamic_cpm_mode == DynamicCpmMode.CONSERVATIVE:
            multiplier = CONSERVATIVE_MULTIPLIERS[creator.tier]
            reason = f"Conservative mode: {creator.tier.value} tier at {multiplier}x"
        else:
            multiplier = quality_multiplier
            reason = f"Aggressive mode: {creator.tier.value} tier at {multiplier}x"

        unclamped = round(base_cpm * multiplier)
        adjusted = max(min_cpm, min(max_cpm, unclamped))
        if adjusted != unclamped:
            reason += " (capped at min)" if adjusted == min_cpm else " (capped at max)"

        applied = adjusted / base_cpm if base_cpm else 1.0

        return CpmAdjustment(
            base_cpm_cents=base_cpm,
            adjusted_cpm_cents=adjusted,
            applied_multiplier=round(applied, 4),
            creator_trust_score=trust_score,
            creator_tier=creator.tier,
            was_adjusted=adjusted != base_cpm,
            min_cpm_cents=min_cpm,
            max_cpm_cents=max_cpm,
            reason=reason,
        )
