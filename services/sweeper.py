"""
Periodic payout sweeps.

PayoutSweeper runs release_eligible_payouts followed by
release_expired_reserves every sweep_interval_seconds on an asyncio task.
Each run opens its own session; a failing run is logged and the loop keeps
going.
"""

import asyncio
import logging
import time
from typing import Optional

from observability.logging import correlation_id_context
from observability.metrics import payout_sweep_duration_seconds
from services.context import SettlementContext
from services.payouts import (
    ReleaseSweepResult,
    ReserveSweepResult,
    release_eligible_payouts,
    release_expired_reserves,
)

logger = logging.getLogger(__name__)


class PayoutSweeper:
    def __init__(self, session_factory, ctx: SettlementContext, interval_seconds: Optional[float] = None):
        self.session_factory = session_factory
        self.ctx = ctx
        self.interval_seconds = interval_seconds if interval_seconds is not None else ctx.config.sweep_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> tuple:
        """One release sweep and one reserve sweep. Returns both results."""
        started = time.perf_counter()
        with correlation_id_context(prefix="sweep"):
            async with self.session_factory() as session:
                released: ReleaseSweepResult = await release_eligible_payouts(session, self.ctx)
            async with self.session_factory() as session:
                reserves: ReserveSweepResult = await release_expired_reserves(session, self.ctx)
        payout_sweep_duration_seconds.observe(time.perf_counter() - started)
        return released, reserves

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("[PAYOUT_SWEEP] Sweep run failed", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("[PAYOUT_SWEEP] Started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[PAYOUT_SWEEP] Stopped")
