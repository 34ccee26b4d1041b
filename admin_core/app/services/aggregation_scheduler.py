"""
Periodic driver for the aggregation engine.

Only one aggregation runs at a time. A run requested while another is in
progress is skipped, and every run is bounded by a timeout so a stuck run
cannot hold the lock past its slot.
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import List, Optional

from admin_core.app.core.clock import Clock, utcnow
from admin_core.app.services.analytics import AggregationEngine, AggregationResult

logger = logging.getLogger(__name__)


class AggregationScheduler:

    def __init__(
        self,
        engine: AggregationEngine,
        interval_seconds: float = 86400,
        timeout_seconds: Optional[float] = 300,
        clock: Clock = utcnow,
    ):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def default_day(self) -> date:
        """The last complete UTC day."""
        return (self.clock() - timedelta(days=1)).date()

    async def run_once(self, day: Optional[date] = None) -> Optional[AggregationResult]:
        """Aggregate ``day`` (default yesterday). Returns None when a run is already in progress."""
        if self._lock.locked():
            logger.warning("Aggregation already running, skipping", extra={"date": str(day)})
            return None
        async with self._lock:
            return await self.engine.aggregate_day(day or self.default_day(), timeout=self.timeout_seconds)

    async def run_backfill(self, start: date, end: date) -> Optional[List[AggregationResult]]:
        """Backfill ``[start, end]`` under the same single-run lock."""
        if self._lock.locked():
            logger.warning("Aggregation already running, skipping backfill", extra={"start": str(start), "end": str(end)})
            return None
        async with self._lock:
            return await self.engine.backfill(start, end, timeout=self.timeout_seconds)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduled aggregation failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Aggregation scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
