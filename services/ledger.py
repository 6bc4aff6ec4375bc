"""Campaign budget ledger collaborator.

The settlement core only talks to the ledger through BudgetLedger. The
default SqlBudgetLedger keeps spend in the local ledger_entry table; every
method takes the caller's session so ledger writes commit or roll back with
the payout transition that triggered them.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from models import (
    Campaign,
    LedgerEntry,
    LedgerEntryType,
    SPEND_ENTRY_TYPES,
    VisitEvent,
)

logger = logging.getLogger(__name__)

# Error codes
INSUFFICIENT_BUDGET = "INSUFFICIENT_BUDGET"
INSUFFICIENT_ADVERTISER_FUNDS = "INSUFFICIENT_ADVERTISER_FUNDS"
CAMPAIGN_NOT_FOUND = "CAMPAIGN_NOT_FOUND"
EVENT_NOT_VALID = "EVENT_NOT_VALID"
EVENT_ALREADY_PAID = "EVENT_ALREADY_PAID"
ZERO_PAYOUT = "ZERO_PAYOUT"


@dataclass(frozen=True)
class CampaignBudget:
    spent_cents: int
    remaining_cents: int


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class PayoutResult:
    success: bool
    net_payout_cents: int = 0
    platform_fee_cents: int = 0
    error: Optional[str] = None


def calculate_payout_per_view(cpm_cents: int) -> int:
    """CPM is the price of 1000 views."""
    return cpm_cents // 1000


class BudgetLedger(ABC):
    """Contract of the campaign budget ledger."""

    @abstractmethod
    async def lock_campaign_budget(
        self, session: AsyncSession, campaign_id: int, advertiser_id: Optional[int], amount_cents: int
    ) -> LedgerResult:
        ...

    @abstractmethod
    async def release_campaign_budget(
        self, session: AsyncSession, campaign_id: int, advertiser_id: Optional[int], amount_cents: int
    ) -> LedgerResult:
        ...

    @abstractmethod
    async def compute_campaign_budget(self, session: AsyncSession, campaign_id: int) -> CampaignBudget:
        ...

    @abstractmethod
    async def record_valid_view_payout(
        self, session: AsyncSession, campaign_id: int, creator_id: int, visit_event_id: int
    ) -> PayoutResult:
        ...

    @abstractmethod
    async def record_conversion_payout(
        self,
        session: AsyncSession,
        campaign_id: int,
        creator_id: int,
        conversion_event_id: int,
        payout_cents: int,
        description: str = "Conversion payout",
    ) -> PayoutResult:
        """Split payout_cents into net + platform fee if the total budget has headroom."""


class SqlBudgetLedger(BudgetLedger):
    """
    Ledger backed by the ledger_entry table.

    Remaining budget = locked budget (or total budget when nothing is locked)
    minus the sum of positive spend entries. Writes are added to the caller's
    session and are committed by the caller.
    """

    def __init__(self, platform_fee_rate: float = 0.20):
        self.platform_fee_rate = platform_fee_rate

    async def _spent_cents(self, session: AsyncSession, campaign_id: int) -> int:
        result = await session.exec(
            select(func.coalesce(func.sum(LedgerEntry.amount_cents), 0)).where(
                LedgerEntry.campaign_id == campaign_id,
                LedgerEntry.type.in_(SPEND_ENTRY_TYPES),
                LedgerEntry.amount_cents > 0,
            )
        )
        return int(result.one())

    @staticmethod
    def _budget_ceiling(campaign: Campaign) -> int:
        return campaign.locked_budget_cents or campaign.total_budget_cents

    async def lock_campaign_budget(self, session, campaign_id, advertiser_id, amount_cents):
        campaign = await session.get(Campaign, campaign_id)
        if not campaign:
            return LedgerResult(success=False, error=CAMPAIGN_NOT_FOUND)
        if campaign.locked_budget_cents + amount_cents > campaign.total_budget_cents:
            return LedgerResult(success=False, error=INSUFFICIENT_ADVERTISER_FUNDS)

        await session.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(locked_budget_cents=Campaign.locked_budget_cents + amount_cents)
        )
        logger.info(f"[LEDGER] Locked {amount_cents} cents for campaign {campaign_id}")
        return LedgerResult(success=True)

    async def release_campaign_budget(self, session, campaign_id, advertiser_id, amount_cents):
        campaign = await session.get(Campaign, campaign_id)
        if not campaign:
            return LedgerResult(success=False, error=CAMPAIGN_NOT_FOUND)

        releasable = min(amount_cents, campaign.locked_budget_cents)
        await session.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(locked_budget_cents=Campaign.locked_budget_cents - releasable)
        )
        logger.info(f"[LEDGER] Released {releasable} cents for campaign {campaign_id}")
        return LedgerResult(success=True)

    async def compute_campaign_budget(self, session, campaign_id):
        campaign = await session.get(Campaign, campaign_id)
        spent = await self._spent_cents(session, campaign_id)
        ceiling = self._budget_ceiling(campaign) if campaign else 0
        return CampaignBudget(spent_cents=spent, remaining_cents=max(0, ceiling - spent))

    async def record_valid_view_payout(self, session, campaign_id, creator_id, visit_event_id):
        visit = await session.get(VisitEvent, visit_event_id)
        if not visit or not visit.is_validated:
            return PayoutResult(success=False, error=EVENT_NOT_VALID)
        if visit.is_billable or visit.is_paid:
            return PayoutResult(success=False, error=EVENT_ALREADY_PAID)
        if visit.campaign_id != campaign_id or visit.creator_id != creator_id:
            return PayoutResult(success=False, error=EVENT_NOT_VALID)

        campaign = await session.get(Campaign, campaign_id, with_for_update=True)
        if not campaign:
            return PayoutResult(success=False, error=CAMPAIGN_NOT_FOUND)

        gross = calculate_payout_per_view(campaign.cpm_cents)
        if gross <= 0:
            return PayoutResult(success=False, error=ZERO_PAYOUT)

        spent = await self._spent_cents(session, campaign_id)
        remaining = self._budget_ceiling(campaign) - spent
        if remaining < gross:
            return PayoutResult(success=False, error=INSUFFICIENT_BUDGET)

        fee = int(gross * self.platform_fee_rate)
        net = gross - fee

        session.add(LedgerEntry(
            campaign_id=campaign_id,
            creator_id=creator_id,
            type=LedgerEntryType.VIEW_PAYOUT,
            amount_cents=net,
            ref_event_id=visit_event_id,
            description="Valid view payout",
        ))
        if fee > 0:
            session.add(LedgerEntry(
                campaign_id=campaign_id,
                creator_id=creator_id,
                type=LedgerEntryType.PLATFORM_FEE,
                amount_cents=fee,
                ref_event_id=visit_event_id,
                description="Platform fee for view",
            ))
        await session.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(spent_budget_cents=Campaign.spent_budget_cents + gross)
        )

        return PayoutResult(success=True, net_payout_cents=net, platform_fee_cents=fee)

    async def record_conversion_payout(
        self, session, campaign_id, creator_id, conversion_event_id, payout_cents, description="Conversion payout"
    ):
        if payout_cents <= 0:
            return PayoutResult(success=False, error=ZERO_PAYOUT)

        campaign = await session.get(Campaign, campaign_id, with_for_update=True)
        if not campaign:
            return PayoutResult(success=False, error=CAMPAIGN_NOT_FOUND)

        # Conversions are bounded by the total budget, not the locked portion
        spent = await self._spent_cents(session, campaign_id)
        if campaign.total_budget_cents - spent < payout_cents:
            return PayoutResult(success=False, error=INSUFFICIENT_BUDGET)

        fee = int(payout_cents * self.platform_fee_rate)
        net = payout_cents - fee

        session.add(LedgerEntry(
            campaign_id=campaign_id,
            creator_id=creator_id,
            type=LedgerEntryType.CONVERSION_PAYOUT,
            amount_cents=net,
            ref_event_id=conversion_event_id,
            description=description,
        ))
        if fee > 0:
            session.add(LedgerEntry(
                campaign_id=campaign_id,
                creator_id=creator_id,
                type=LedgerEntryType.PLATFORM_FEE,
                amount_cents=fee,
                ref_event_id=conversion_event_id,
                description="Platform fee for conversion",
            ))
        await session.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(spent_budget_cents=Campaign.spent_budget_cents + payout_cents)
        )

        return PayoutResult(success=True, net_payout_cents=net, platform_fee_cents=fee)
