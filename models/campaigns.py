"""Campaign, creator and traffic-metric read models.

These rows are owned by the campaign and creator services; the settlement
core only reads them (and updates creator trust/tier snapshots).
"""

from datetime import date as date_type, datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from config import utcnow
from models.enums import (
    CampaignStatus,
    CreatorTier,
    DynamicCpmMode,
    PayoutMode,
    VerificationLevel,
)


class Campaign(SQLModel, table=True):
    __tablename__ = "campaign"

    id: Optional[int] = Field(default=None, primary_key=True)
    advertiser_id: Optional[int] = Field(default=None, index=True)
    title: str = ""

    status: CampaignStatus = Field(default=CampaignStatus.DRAFT, index=True)
    payout_mode: PayoutMode = Field(default=PayoutMode.CPM)
    # None falls back to the configured default threshold
    fraud_score_threshold: Optional[int] = None

    # Budget (cents)
    cpm_cents: int = 0
    total_budget_cents: int = 0
    locked_budget_cents: int = 0
    spent_budget_cents: int = 0

    # Dynamic pricing
    dynamic_cpm_enabled: bool = False
    dynamic_cpm_mode: DynamicCpmMode = Field(default=DynamicCpmMode.AGGRESSIVE)
    min_cpm_cents: Optional[int] = None
    max_cpm_cents: Optional[int] = None

    created_at: datetime = Field(default_factory=utcnow)

    def effective_fraud_threshold(self, default: int) -> int:
        return self.fraud_score_threshold or default


class Creator(SQLModel, table=True):
    __tablename__ = "creator"

    id: Optional[int] = Field(default=None, primary_key=True)
    display_name: str = ""
    verification_level: VerificationLevel = Field(default=VerificationLevel.UNVERIFIED)

    # Trust snapshot, recomputed by services.risk.compute_creator_trust_score
    trust_score: int = 50
    tier: CreatorTier = Field(default=CreatorTier.BRONZE)
    quality_multiplier: float = 1.0

    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_verified(self) -> bool:
        return self.verification_level == VerificationLevel.PLATFORM_VERIFIED


class CreatorTrafficMetrics(SQLModel, table=True):
    """Daily rolling traffic metrics per creator (and campaign).

    Computed by the metrics aggregation job outside this service; the latest
    row supplies the creator's anomaly score.
    """
    __tablename__ = "creator_traffic_metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    creator_id: int = Field(foreign_key="creator.id", index=True)
    campaign_id: Optional[int] = Field(default=None, index=True)
    date: date_type = Field(index=True)

    total_recorded: int = 0
    total_validated: int = 0
    total_billable: int = 0
    validation_rate: float = 0.0  # percent
    conversion_rate: float = 0.0  # fraction
    avg_fraud_score: float = 0.0
    anomaly_score: float = 0.0

    flagged: bool = False
    flag_reasons: Optional[str] = None  # JSON array

    created_at: datetime = Field(default_factory=utcnow)
