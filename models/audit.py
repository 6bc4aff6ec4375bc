"""Audit trail and persisted domain events."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from config import utcnow


class AuditLog(SQLModel, table=True):
    """
    Append-only log of administrative actions on money.
    """
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=utcnow, index=True)

    # Who
    actor: Optional[str] = Field(default=None, index=True)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    # What
    action: str = Field(index=True)  # e.g., "payout.force_release"
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[str] = None  # JSON string

    # Result
    success: bool = True
    error_message: Optional[str] = None


class DomainEventRecord(SQLModel, table=True):
    """Persisted copy of each published domain event."""
    __tablename__ = "domain_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(index=True)
    payload: str  # JSON object
    created_at: datetime = Field(default_factory=utcnow, index=True)
