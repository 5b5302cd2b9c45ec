"""Periodic retention compaction of the velocity index.

Runs as a background asyncio task: every ``interval_seconds`` it drops
events that fell out of the retention horizon. Queries never see a
half-compacted log; the index swaps in the survivors atomically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from kestrel_fingerprint.velocity.index import DEFAULT_RETENTION, VelocityIndex

logger = logging.getLogger(__name__)

DEFAULT_COMPACTION_INTERVAL = 3600.0


@dataclass
class CompactionResult:
    """Summary of a single compaction run."""

    events_dropped: int = 0
    events_retained: int = 0
    duration_ms: int = 0
    ran_at: datetime | None = None


class CompactionScheduler:
    """Runs ``VelocityIndex.compact`` on a fixed interval.

    Parameters
    ----------
    index:
        The velocity index to compact.
    retention:
        Events at or before ``now - retention`` are dropped.
    interval_seconds:
        Seconds between runs. Set to 0 to disable automatic compaction.
    """

    def __init__(
        self,
        index: VelocityIndex,
        *,
        retention: timedelta = DEFAULT_RETENTION,
        interval_seconds: float = DEFAULT_COMPACTION_INTERVAL,
    ) -> None:
        self._index = index
        self._retention = retention
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._shutdown = asyncio.Event()
        self._last_result: CompactionResult | None = None

    @property
    def last_result(self) -> CompactionResult | None:
        """Outcome of the most recent run, if any."""
        return self._last_result

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the scheduler as a background asyncio task."""
        if self._interval <= 0:
            logger.info("Velocity compaction disabled (interval=0)")
            return

        self._shutdown.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Velocity compaction started (interval=%.0fs, retention=%s)",
            self._interval,
            self._retention,
        )

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._shutdown.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
            self._task = None
        logger.info("Velocity compaction stopped")

    async def run_now(self, now: datetime | None = None) -> CompactionResult:
        """Compact immediately and return the summary."""
        start = time.monotonic()
        ran_at = now or datetime.now(timezone.utc)

        dropped = await self._index.compact(ran_at, self._retention)
        retained = await self._index.size()

        result = CompactionResult(
            events_dropped=dropped,
            events_retained=retained,
            duration_ms=int((time.monotonic() - start) * 1000),
            ran_at=ran_at,
        )
        self._last_result = result

        logger.info(
            "Velocity compaction complete: dropped %d, retained %d in %dms",
            result.events_dropped,
            result.events_retained,
            result.duration_ms,
        )
        return result

    async def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_now()
            except Exception:
                logger.exception("Velocity compaction failed")
