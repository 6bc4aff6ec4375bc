"""Traffic events: recorded views and conversion signals."""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from config import utcnow
from models.enums import ConversionType, ValidationMethod


class VisitEvent(SQLModel, table=True):
    """
    One row per inbound view attempt, accepted or not.

    Lifecycle flags only ever advance:
    is_recorded -> is_validated -> is_billable -> is_paid.
    Raw IP / user agent are never stored, only salted hashes.
    """
    __tablename__ = "visit_event"
    __table_args__ = (
        sa.Index("ix_visit_event_dedupe", "campaign_id", "creator_id", "visitor_id", "occurred_at"),
        sa.Index("ix_visit_event_ip_window", "ip_hash", "occurred_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    # No FK on campaign/creator: rejected visits for unknown campaigns are kept too
    campaign_id: int = Field(index=True)
    creator_id: int = Field(index=True)
    link_id: str
    visitor_id: str = Field(index=True)

    ip_hash: str
    user_agent_hash: str
    device_fingerprint_hash: Optional[str] = Field(default=None, index=True)
    referrer: Optional[str] = None
    geo_country: Optional[str] = None

    fraud_score: int = 0
    is_suspicious: bool = False
    reason: Optional[str] = None  # RejectionReason value when rejected at ingestion

    # Lifecycle
    is_recorded: bool = True
    is_validated: bool = False
    is_billable: bool = False
    is_paid: bool = False
    validation_method: Optional[ValidationMethod] = None
    validated_at: Optional[datetime] = None

    occurred_at: datetime = Field(default_factory=utcnow, index=True)


class ConversionEvent(SQLModel, table=True):
    """
    One row per conversion signal. Unattributed conversions keep a null
    creator_id and carry the failure reason in attributed_to.
    """
    __tablename__ = "conversion_event"
    __table_args__ = (
        sa.Index("ix_conversion_event_visitor_campaign", "visitor_id", "campaign_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    campaign_id: int = Field(index=True)
    creator_id: Optional[int] = Field(default=None, index=True)
    visitor_id: str

    type: ConversionType
    revenue_cents: int = 0
    attributed_to: Optional[str] = None  # AttributionModel value or failure reason
    metadata_json: Optional[str] = None

    occurred_at: datetime = Field(default_factory=utcnow, index=True)
