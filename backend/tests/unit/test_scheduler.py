import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.services.collector import CollectionAlreadyRunningError
from app.services.scheduler import DailyScheduler, seconds_until_next_run


def test_seconds_until_next_run_later_today():
    now = datetime(2026, 3, 1, 22, 30, tzinfo=timezone.utc)
    assert seconds_until_next_run(now, 23) == 30 * 60


def test_seconds_until_next_run_wraps_to_tomorrow():
    now = datetime(2026, 3, 1, 0, 0, 1, tzinfo=timezone.utc)
    assert seconds_until_next_run(now, 0) == 24 * 3600 - 1


@pytest.mark.asyncio
async def test_loop_survives_failed_runs():
    collector = MagicMock()
    collector.run = AsyncMock(side_effect=[CollectionAlreadyRunningError(), RuntimeError("boom"), asyncio.CancelledError()])
    scheduler = DailyScheduler(collector, hour=3)

    with patch("app.services.scheduler.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(asyncio.CancelledError):
            await scheduler._loop()

    assert collector.run.await_count == 3
    collector.run.assert_awaited_with(force=False)


@pytest.mark.asyncio
async def test_start_and_stop():
    collector = MagicMock()
    collector.run = AsyncMock()
    scheduler = DailyScheduler(collector, hour=0)

    scheduler.start()
    assert scheduler._task is not None
    await scheduler.stop()

    assert scheduler._task is None
    collector.run.assert_not_awaited()
