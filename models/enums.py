"""Closed enums for every status/type column.

Columns store the enum value; services dispatch on the enum, never on raw
string literals.
"""

import enum


class CampaignStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"


class PayoutMode(str, enum.Enum):
    CPM = "CPM"
    CPA_ONLY = "CPA_ONLY"
    HYBRID = "HYBRID"


class DynamicCpmMode(str, enum.Enum):
    CONSERVATIVE = "CONSERVATIVE"
    AGGRESSIVE = "AGGRESSIVE"


class VerificationLevel(str, enum.Enum):
    UNVERIFIED = "UNVERIFIED"
    PLATFORM_VERIFIED = "PLATFORM_VERIFIED"


class CreatorTier(str, enum.Enum):
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ConversionType(str, enum.Enum):
    SIGNUP = "SIGNUP"
    PURCHASE = "PURCHASE"
    SUBSCRIPTION = "SUBSCRIPTION"
    OTHER = "OTHER"


class AttributionModel(str, enum.Enum):
    LAST_CLICK = "LAST_CLICK"
    FIRST_CLICK = "FIRST_CLICK"
    DIRECT = "DIRECT"


class LedgerEntryType(str, enum.Enum):
    VIEW_PAYOUT = "VIEW_PAYOUT"
    CONVERSION_PAYOUT = "CONVERSION_PAYOUT"
    PLATFORM_FEE = "PLATFORM_FEE"


# Ledger types that count against a campaign's budget
SPEND_ENTRY_TYPES = (
    LedgerEntryType.VIEW_PAYOUT,
    LedgerEntryType.CONVERSION_PAYOUT,
    LedgerEntryType.PLATFORM_FEE,
)


class PayoutType(str, enum.Enum):
    VIEW_PAYOUT = "VIEW_PAYOUT"
    CONVERSION_PAYOUT = "CONVERSION_PAYOUT"


class PayoutStatus(str, enum.Enum):
    PENDING = "PENDING"
    RELEASED = "RELEASED"
    FROZEN = "FROZEN"
    CANCELLED = "CANCELLED"


class RejectionReason(str, enum.Enum):
    CAMPAIGN_NOT_FOUND = "campaign_not_found"
    CAMPAIGN_INACTIVE = "campaign_inactive"
    BOT_DETECTED = "bot_detected"
    FRAUD_SCORE_EXCEEDED = "fraud_score_exceeded"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"


class ValidationMethod(str, enum.Enum):
    PIXEL = "PIXEL"


class DomainEventType(str, enum.Enum):
    VELOCITY_SPIKE_DETECTED = "VELOCITY_SPIKE_DETECTED"
    CREATOR_FLAGGED = "CREATOR_FLAGGED"
    RESERVE_RELEASED = "RESERVE_RELEASED"
    TRUST_SCORE_DOWNGRADED = "TRUST_SCORE_DOWNGRADED"
    CREATOR_TIER_CHANGED = "CREATOR_TIER_CHANGED"
