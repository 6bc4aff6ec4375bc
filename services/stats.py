"""Tracking statistics per campaign or creator."""

from dataclasses import dataclass

from sqlalchemy import case, func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from models import ConversionEvent, VisitEvent


@dataclass(frozen=True)
class TrackingStats:
    total_views: int
    valid_views: int
    billable_views: int
    total_conversions: int
    total_revenue: int

    def to_dict(self) -> dict:
        return {
            "totalViews": self.total_views,
            "validViews": self.valid_views,
            "billableViews": self.billable_views,
            "totalConversions": self.total_conversions,
            "totalRevenue": self.total_revenue,
        }


def _flag_sum(column):
    return func.coalesce(func.sum(case((column == True, 1), else_=0)), 0)  # noqa: E712


async def _stats(session: AsyncSession, visit_filter, conversion_filter) -> TrackingStats:
    views = await session.exec(
        select(
            func.count(VisitEvent.id),
            _flag_sum(VisitEvent.is_validated),
            _flag_sum(VisitEvent.is_billable),
        ).where(visit_filter)
    )
    total_views, valid_views, billable_views = views.one()

    conversions = await session.exec(
        select(
            func.count(ConversionEvent.id),
            func.coalesce(func.sum(ConversionEvent.revenue_cents), 0),
        ).where(conversion_filter)
    )
    total_conversions, total_revenue = conversions.one()

    return TrackingStats(
        total_views=total_views,
        valid_views=int(valid_views),
        billable_views=int(billable_views),
        total_conversions=total_conversions,
        total_revenue=int(total_revenue),
    )


async def get_campaign_tracking_stats(session: AsyncSession, campaign_id: int) -> TrackingStats:
    return await _stats(session, VisitEvent.campaign_id == campaign_id, ConversionEvent.campaign_id == campaign_id)


async def get_creator_tracking_stats(session: AsyncSession, creator_id: int) -> TrackingStats:
    return await _stats(session, VisitEvent.creator_id == creator_id, ConversionEvent.creator_id == creator_id)
