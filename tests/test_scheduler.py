"""
Tests for the interval scheduler.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

from shared.jobs.scheduler import Scheduler


def mock_queue(active=False):
    queue = Mock()
    queue.enqueue = AsyncMock()
    queue.has_active = Mock(return_value=active)
    return queue


class TestScheduler:
    async def test_non_positive_interval_disables_schedule(self):
        scheduler = Scheduler(mock_queue())
        assert scheduler.schedule("kpi.snapshot", 0) is None
        assert scheduler.schedule("kpi.snapshot", -5) is None
        assert scheduler.schedule("kpi.snapshot", None) is None
        assert scheduler.list_schedules() == []

    async def test_timer_enqueues_repeatedly(self):
        queue = mock_queue()
        scheduler = Scheduler(queue)
        scheduler.schedule("kpi.snapshot", 20, {"day": None})

        await asyncio.sleep(0.09)
        await scheduler.shutdown()

        assert queue.enqueue.await_count >= 2
        queue.enqueue.assert_awaited_with("kpi.snapshot", {"day": None})

    async def test_single_flight_skips_while_active(self, metrics):
        queue = mock_queue(active=True)
        scheduler = Scheduler(queue, metrics=metrics)
        schedule = scheduler.schedule("analytics.summary.warm", 60000, single_flight=True)

        assert await scheduler.tick(schedule) is False
        queue.enqueue.assert_not_awaited()
        assert schedule.skipped == 1
        assert (
            metrics.value(
                "scheduler_ticks_total", job_type="analytics.summary.warm", outcome="skipped"
            )
            == 1
        )
        await scheduler.shutdown()

    async def test_without_single_flight_ticks_overlap(self):
        queue = mock_queue(active=True)
        scheduler = Scheduler(queue)
        schedule = scheduler.schedule("kpi.snapshot", 60000)

        assert await scheduler.tick(schedule) is True
        assert await scheduler.tick(schedule) is True
        assert queue.enqueue.await_count == 2
        await scheduler.shutdown()

    async def test_enqueue_error_is_counted_and_timer_survives(self):
        queue = mock_queue()
        queue.enqueue.side_effect = RuntimeError("closing")
        scheduler = Scheduler(queue)
        schedule = scheduler.schedule("kpi.snapshot", 60000)

        assert await scheduler.tick(schedule) is False
        assert schedule.failed == 1
        assert not schedule.task.done()
        await scheduler.shutdown()

    async def test_shutdown_cancels_every_timer(self):
        scheduler = Scheduler(mock_queue())
        a = scheduler.schedule("a", 60000)
        b = scheduler.schedule("b", 60000)

        await scheduler.shutdown()
        assert a.task.cancelled() and b.task.cancelled()
        assert scheduler.list_schedules() == []

    async def test_rescheduling_replaces_previous_timer(self):
        scheduler = Scheduler(mock_queue())
        first = scheduler.schedule("kpi.snapshot", 60000)
        scheduler.schedule("kpi.snapshot", 30000)
        await asyncio.sleep(0)

        assert first.task.cancelled()
        assert [s["intervalMs"] for s in scheduler.list_schedules()] == [30000]
        await scheduler.shutdown()
