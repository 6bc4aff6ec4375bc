"""
Health check utilities for dependency monitoring.

Checks:
- Database connectivity
- Payout queue backlog (PENDING entries overdue for release)
- System resources (memory, disk)
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

import psutil
from sqlalchemy import func, text
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from config import utcnow
from database import check_db_health
from models import PayoutQueueEntry, PayoutStatus
from .metrics import record_db_pool

logger = logging.getLogger(__name__)

# A PENDING entry this long past eligible_at means the sweeper is not running
BACKLOG_GRACE = timedelta(hours=1)


class HealthCheckResult:
    def __init__(self, name: str, status: str, details: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
        self.name = name
        self.status = status  # "ok", "degraded", "error"
        self.details = details or {}
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        result = {"status": self.status, "details": self.details}
        if self.error:
            result["error"] = self.error
        return result

    @property
    def is_healthy(self) -> bool:
        return self.status == "ok"


async def check_database(session: AsyncSession, timeout: float = 5.0) -> HealthCheckResult:
    start_time = time.time()
    try:
        await asyncio.wait_for(session.execute(text("SELECT 1")), timeout=timeout)
    except asyncio.TimeoutError:
        return HealthCheckResult("database", "error", error=f"Database query timeout after {timeout}s")
    except Exception as e:
        logger.error("Database health check failed", exc_info=True)
        return HealthCheckResult("database", "error", error=str(e)[:200])

    pool = await check_db_health()
    record_db_pool(pool)
    return HealthCheckResult(
        "database",
        "ok",
        details={
            "latency_ms": round((time.time() - start_time) * 1000, 2),
            "pool": pool,
        },
    )


async def check_payout_backlog(session: AsyncSession, now: Optional[datetime] = None) -> HealthCheckResult:
    """Degraded when eligible PENDING entries have been waiting past the grace period."""
    now = now or utcnow()
    try:
        result = await session.exec(
            select(func.count(PayoutQueueEntry.id)).where(
                PayoutQueueEntry.status == PayoutStatus.PENDING,
                PayoutQueueEntry.eligible_at <= now - BACKLOG_GRACE,
            )
        )
        overdue = result.one()
    except Exception as e:
        logger.error("Payout backlog check failed", exc_info=True)
        return HealthCheckResult("payout_backlog", "error", error=str(e)[:200])

    return HealthCheckResult(
        "payout_backlog",
        "degraded" if overdue else "ok",
        details={"overdue_pending_entries": overdue},
    )


async def check_system_resources() -> HealthCheckResult:
    try:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage("/")
    except Exception as e:
        logger.error("System resource check failed", exc_info=True)
        return HealthCheckResult("system_resources", "error", error=str(e)[:200])

    status = "ok"
    warnings = []
    if memory.percent > 95:
        status = "error"
        warnings.append(f"Critical memory usage: {memory.percent}%")
    elif memory.percent > 90:
        status = "degraded"
        warnings.append(f"High memory usage: {memory.percent}%")

    if disk.percent > 95:
        status = "error"
        warnings.append(f"Critical disk usage: {disk.percent}%")
    elif disk.percent > 85 and status == "ok":
        status = "degraded"
        warnings.append(f"High disk usage: {disk.percent}%")

    return HealthCheckResult(
        "system_resources",
        status,
        details={
            "memory_percent": round(memory.percent, 1),
            "memory_available_mb": round(memory.available / (1024 * 1024), 1),
            "disk_percent": round(disk.percent, 1),
            "warnings": warnings or None,
        },
    )


async def run_health_checks(session: AsyncSession, include_system: bool = True) -> Dict[str, Any]:
    checks = {
        "database": await check_database(session),
    }
    if checks["database"].is_healthy:
        checks["payout_backlog"] = await check_payout_backlog(session)
    if include_system:
        checks["system_resources"] = await check_system_resources()

    statuses = [check.status for check in checks.values()]
    if "error" in statuses:
        overall_status = "unhealthy"
    elif "degraded" in statuses:
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat(),
        "checks": {name: check.to_dict() for name, check in checks.items()},
    }
