"""Explicit dependencies of the settlement services.

Everything that used to be a module-level singleton (policy config, ledger,
pricing, metrics source, geo, event bus, clock) travels in one
SettlementContext so tests can swap any piece.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional

from config import SettlementConfig, utcnow
from services.events import DomainEventBus
from services.geo import GeoLocator, IpApiGeoLocator, NullGeoLocator
from services.ledger import BudgetLedger, SqlBudgetLedger
from services.pricing import CpmPricing, TrustTierCpmPricing
from services.traffic import SqlTrafficMetricsSource, TrafficMetricsSource


@dataclass
class SettlementContext:
    config: SettlementConfig
    ledger: BudgetLedger
    pricing: CpmPricing
    traffic: TrafficMetricsSource
    geo: GeoLocator
    events: Optional[DomainEventBus] = None
    clock: Callable[[], datetime] = field(default=utcnow)

    def now(self) -> datetime:
        return self.clock()

    def with_overrides(self, **changes) -> "SettlementContext":
        return replace(self, **changes)


def build_default_context(
    config: Optional[SettlementConfig] = None,
    events: Optional[DomainEventBus] = None,
) -> SettlementContext:
    config = config or SettlementConfig.from_env()
    geo = (
        IpApiGeoLocator(timeout=config.geo_lookup_timeout_seconds)
        if config.geo_lookup_enabled
        else NullGeoLocator()
    )
    return SettlementContext(
        config=config,
        ledger=SqlBudgetLedger(platform_fee_rate=config.platform_fee_rate),
        pricing=TrustTierCpmPricing(),
        traffic=SqlTrafficMetricsSource(),
        geo=geo,
        events=events if events is not None else DomainEventBus(),
    )
