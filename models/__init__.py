"""
Model exports.

Models are organized into domain modules:
- enums.py: closed status/type enums
- campaigns.py: Campaign, Creator and traffic metric read models
- tracking.py: VisitEvent and ConversionEvent
- payouts.py: PayoutQueueEntry, CreatorBalance and LedgerEntry
- audit.py: AuditLog and DomainEventRecord
"""

from models.enums import (
    AttributionModel,
    CampaignStatus,
    ConversionType,
    CreatorTier,
    DomainEventType,
    DynamicCpmMode,
    LedgerEntryType,
    PayoutMode,
    PayoutStatus,
    PayoutType,
    RejectionReason,
    RiskLevel,
    SPEND_ENTRY_TYPES,
    ValidationMethod,
    VerificationLevel,
)

from models.campaigns import (
    Campaign,
    Creator,
    CreatorTrafficMetrics,
)

from models.tracking import (
    VisitEvent,
    ConversionEvent,
)

from models.payouts import (
    PayoutQueueEntry,
    CreatorBalance,
    LedgerEntry,
)

from models.audit import (
    AuditLog,
    DomainEventRecord,
)

__all__ = [
    # Enums
    "AttributionModel",
    "CampaignStatus",
    "ConversionType",
    "CreatorTier",
    "DomainEventType",
    "DynamicCpmMode",
    "LedgerEntryType",
    "PayoutMode",
    "PayoutStatus",
    "PayoutType",
    "RejectionReason",
    "RiskLevel",
    "SPEND_ENTRY_TYPES",
    "ValidationMethod",
    "VerificationLevel",
    # Campaigns
    "Campaign",
    "Creator",
    "CreatorTrafficMetrics",
    # Tracking
    "VisitEvent",
    "ConversionEvent",
    # Payouts
    "PayoutQueueEntry",
    "CreatorBalance",
    "LedgerEntry",
    # Audit
    "AuditLog",
    "DomainEventRecord",
]
