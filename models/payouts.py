"""Money: payout queue, creator balances and the campaign ledger."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from config import utcnow
from models.enums import (
    CreatorTier,
    LedgerEntryType,
    PayoutStatus,
    PayoutType,
    RiskLevel,
)


class PayoutQueueEntry(SQLModel, table=True):
    """
    A pending settlement unit with the risk policy snapshotted at creation.

    reserve_amount_cents is computed once when the entry is created and never
    recomputed on release.
    """
    __tablename__ = "payout_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    creator_id: int = Field(foreign_key="creator.id", index=True)
    campaign_id: int = Field(foreign_key="campaign.id", index=True)
    visit_event_id: Optional[int] = Field(default=None, foreign_key="visit_event.id", index=True)

    amount_cents: int
    type: PayoutType
    status: PayoutStatus = Field(default=PayoutStatus.PENDING, index=True)
    eligible_at: datetime = Field(index=True)

    # Risk snapshot
    risk_snapshot_score: float = 0.0
    risk_level: RiskLevel = Field(default=RiskLevel.MEDIUM)
    reserve_percent: int = 0
    reserve_amount_cents: int = 0
    reserve_released_at: Optional[datetime] = None

    # Pricing snapshot
    applied_multiplier: float = 1.0
    creator_trust_score_snapshot: Optional[int] = None
    creator_tier_snapshot: Optional[CreatorTier] = None

    released_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)


class CreatorBalance(SQLModel, table=True):
    """Single source of truth for money owed to a creator."""
    __tablename__ = "creator_balance"

    id: Optional[int] = Field(default=None, primary_key=True)
    creator_id: int = Field(foreign_key="creator.id", unique=True, index=True)

    available_balance_cents: int = 0
    pending_balance_cents: int = 0
    locked_reserve_cents: int = 0
    total_earned_cents: int = 0

    risk_level: RiskLevel = Field(default=RiskLevel.MEDIUM)
    payout_delay_days: int = 3

    updated_at: datetime = Field(default_factory=utcnow)


class LedgerEntry(SQLModel, table=True):
    """Append-only campaign spend ledger."""
    __tablename__ = "ledger_entry"

    id: Optional[int] = Field(default=None, primary_key=True)
    campaign_id: int = Field(foreign_key="campaign.id", index=True)
    creator_id: Optional[int] = Field(default=None, foreign_key="creator.id", index=True)
    type: LedgerEntryType = Field(index=True)
    amount_cents: int
    ref_event_id: Optional[int] = Field(default=None, index=True)
    description: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
