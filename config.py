"""
Settlement policy configuration.

Policy values (dedupe window, rate limit, attribution window, fee rates...)
are collected into one explicit SettlementConfig object that is passed to the
services through SettlementContext. Tests build their own instance instead of
patching module globals.

Usage:
    from config import SettlementConfig

    config = SettlementConfig.from_env()
    config.dedupe_window_start()
"""

import os
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env", override=False)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime. Every stored timestamp uses it."""
    return datetime.now(timezone.utc)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


@dataclass(frozen=True)
class SettlementConfig:
    """Tunable policy for ingestion, attribution and payouts."""

    view_dedupe_minutes: int = 30
    ip_rate_limit_per_hour: int = 20
    rate_limit_window_minutes: int = 60
    attribution_window_days: int = 30
    conversion_commission_rate: float = 0.20
    platform_fee_rate: float = 0.20
    fraud_score_threshold: int = 50
    suspicion_cutoff: int = 50
    freeze_anomaly_threshold: float = 7.0
    reserve_hold_days: int = 30
    hash_salt: str = ""
    geo_lookup_enabled: bool = True
    geo_lookup_timeout_seconds: float = 1.5
    pixel_settle_budget_seconds: float = 2.0
    pixel_base_path: str = "/track/pixel"
    admin_api_token: Optional[str] = None
    sweep_interval_seconds: int = 300

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        """
        Build the configuration from environment variables.

        Unset variables fall back to the dataclass defaults.
        """
        return cls(
            view_dedupe_minutes=_env_int("VIEW_DEDUPE_MINUTES", 30),
            ip_rate_limit_per_hour=_env_int("IP_RATE_LIMIT_PER_HOUR", 20),
            rate_limit_window_minutes=_env_int("RATE_LIMIT_WINDOW_MINUTES", 60),
            attribution_window_days=_env_int("ATTRIBUTION_WINDOW_DAYS", 30),
            conversion_commission_rate=_env_float("CONVERSION_COMMISSION_RATE", 0.20),
            platform_fee_rate=_env_float("PLATFORM_FEE_RATE", 0.20),
            fraud_score_threshold=_env_int("FRAUD_SCORE_THRESHOLD", 50),
            suspicion_cutoff=_env_int("SUSPICION_CUTOFF", 50),
            freeze_anomaly_threshold=_env_float("FREEZE_ANOMALY_THRESHOLD", 7.0),
            reserve_hold_days=_env_int("RESERVE_HOLD_DAYS", 30),
            hash_salt=os.getenv("TRACKING_HASH_SALT", ""),
            geo_lookup_enabled=_env_bool("GEO_LOOKUP_ENABLED", True),
            geo_lookup_timeout_seconds=_env_float("GEO_LOOKUP_TIMEOUT_SECONDS", 1.5),
            pixel_settle_budget_seconds=_env_float("PIXEL_SETTLE_BUDGET_SECONDS", 2.0),
            pixel_base_path=os.getenv("PIXEL_BASE_PATH", "/track/pixel"),
            admin_api_token=os.getenv("ADMIN_API_TOKEN") or None,
            sweep_interval_seconds=_env_int("SWEEP_INTERVAL_SECONDS", 300),
        )

    def with_overrides(self, **changes) -> "SettlementConfig":
        return replace(self, **changes)

    def dedupe_window_start(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(minutes=self.view_dedupe_minutes)

    def rate_limit_window_start(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(minutes=self.rate_limit_window_minutes)

    def attribution_window_start(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(days=self.attribution_window_days)

    @property
    def attribution_window(self) -> timedelta:
        return timedelta(days=self.attribution_window_days)
