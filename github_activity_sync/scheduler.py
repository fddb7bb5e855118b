"""
Automatic sync scheduling.

A single asyncio task re-invokes incremental sync every configured interval.
A failed tick is logged and the next one still fires.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from github_activity_sync.models import RunType

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


class AutoSyncScheduler:
    def __init__(
        self,
        orchestrator,
        store,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.sleep = sleep
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    async def enable(self, interval_minutes: int):
        """
        Persist the schedule, arm the next tick one interval from now and
        run an incremental sync immediately.

        Errors from the immediate sync propagate; the schedule stays armed.
        """
        if interval_minutes is None or int(interval_minutes) <= 0:
            raise ValueError("interval_minutes must be a positive integer")
        interval_minutes = int(interval_minutes)
        self.store.update_sync_config(auto_sync_enabled=True, sync_interval_minutes=interval_minutes)
        self._start(initial_delay=interval_minutes * 60)
        logger.info(f"Automatic sync enabled every {interval_minutes} minutes")
        return await self.orchestrator.run_incremental_sync(RunType.AUTOMATIC.value)

    async def disable(self):
        self.store.update_sync_config(auto_sync_enabled=False)
        await self.stop()
        logger.info("Automatic sync disabled")

    def start_from_config(self) -> bool:
        """Arm the schedule if the stored config enables it; the first tick honours the last completed sync."""
        cfg = self.store.get_sync_config()
        if not cfg.auto_sync_enabled or not cfg.sync_interval_minutes:
            return False
        interval = timedelta(minutes=cfg.sync_interval_minutes)
        delay = 0.0
        if cfg.last_sync_completed_at is not None:
            delay = max((cfg.last_sync_completed_at + interval - self.clock()).total_seconds(), 0.0)
        self._start(initial_delay=delay)
        logger.info(f"Automatic sync resumed; next run in {delay:.0f}s")
        return True

    def _start(self, initial_delay: float):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = asyncio.create_task(self._loop(initial_delay))

    async def stop(self):
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self, initial_delay: float):
        delay = initial_delay
        while True:
            await self.sleep(delay)
            cfg = self.store.get_sync_config()
            if not cfg.auto_sync_enabled:
                logger.info("Automatic sync no longer enabled; stopping scheduler")
                return
            try:
                await self.orchestrator.run_incremental_sync(RunType.AUTOMATIC.value)
            except Exception as e:
                logger.error(f"Scheduled sync failed: {e}")
            else:
                try:
                    await self.orchestrator.run_realignment(RunType.AUTOMATIC.value)
                except Exception as e:
                    logger.error(f"Scheduled realignment failed: {e}")
            delay = (cfg.sync_interval_minutes or 1) * 60
