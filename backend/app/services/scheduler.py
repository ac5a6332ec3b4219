import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.services.collector import CollectionAlreadyRunningError, CollectionService

logger = logging.getLogger(__name__)


def seconds_until_next_run(now: datetime, hour: int) -> float:
    """Seconds from `now` (UTC) until the next time the clock reads hour:00."""
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


class DailyScheduler:
    """Runs one collection per day at a fixed UTC hour."""

    def __init__(self, collector: CollectionService, hour: int = 0):
        self.collector = collector
        self.hour = hour
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info(f"Daily collection scheduled at {self.hour:02d}:00 UTC")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(seconds_until_next_run(datetime.now(timezone.utc), self.hour))
            logger.info("Running scheduled daily data collection...")
            try:
                await self.collector.run(force=False)
            except CollectionAlreadyRunningError:
                logger.warning("Skipping scheduled collection, a run is already in progress")
            except Exception as e:
                logger.error(f"Scheduled collection failed: {e}", exc_info=True)
