"""
Stale Job Sweeper

Periodically removes jobs that have not been updated within the
retention window. Runs as a background task next to the SSE server.
"""

import asyncio
import logging
from typing import Optional

from .registry import DEFAULT_MAX_AGE_MS, JobRegistry

logger = logging.getLogger(__name__)


class StaleJobSweeper:
    """
    Background task calling JobRegistry.cleanup_old_jobs on an interval.

    Usage:
        sweeper = StaleJobSweeper(registry, interval_seconds=60)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        registry: JobRegistry,
        interval_seconds: float = 60,
        max_age_ms: float = DEFAULT_MAX_AGE_MS,
    ):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.max_age_ms = max_age_ms
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start sweeping. Must be called from a running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Job sweeper started (every {self.interval_seconds}s, "
            f"max age {self.max_age_ms / 1000:.0f}s)"
        )

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Job sweeper stopped")

    def sweep(self) -> list[str]:
        """Run a single sweep now."""
        removed = self.registry.cleanup_old_jobs(self.max_age_ms)
        if removed:
            logger.info(f"Swept {len(removed)} stale job(s)")
        return removed

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Job sweep failed: {e}")
