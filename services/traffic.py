"""Creator traffic metrics collaborator (rolling anomaly score)."""

from abc import ABC, abstractmethod

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from models import CreatorTrafficMetrics


class TrafficMetricsSource(ABC):
    @abstractmethod
    async def get_latest_anomaly_score(self, session: AsyncSession, creator_id: int) -> float:
        """Latest rolling anomaly score; 0 when no metrics exist yet."""


class SqlTrafficMetricsSource(TrafficMetricsSource):
    async def get_latest_anomaly_score(self, session, creator_id):
        result = await session.exec(
            select(CreatorTrafficMetrics.anomaly_score)
            .where(CreatorTrafficMetrics.creator_id == creator_id)
            .order_by(CreatorTrafficMetrics.date.desc(), CreatorTrafficMetrics.id.desc())
            .limit(1)
        )
        score = result.first()
        return float(score) if score is not None else 0.0
