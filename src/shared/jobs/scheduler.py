"""
Scheduler: fires named jobs into the job queue on fixed intervals.

Behavior:
    ``schedule()`` installs a repeating timer that enqueues a job every
    interval, whether or not the previous one has finished. Retries belong
    to the job queue, not to the scheduler.

Limitations:
    - NOT a distributed scheduler (single active process).
    - Missed ticks while the process was down are NOT backfilled.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from shared.jobs.job_queue import JobQueue
from shared.utils.helpers import utcnow
from shared.utils.logger import logger
from shared.utils.metrics import Metrics


@dataclass
class Schedule:
    """
    One installed timer.

    Attributes:
        name (str): Schedule name, defaults to the job type.
        job_type (str): Job type enqueued on every tick.
        interval_ms (int): Tick interval.
        payload (Dict[str, Any]): Payload for each enqueued job.
        single_flight (bool): Skip a tick while a job of the type is queued or running.
    """

    name: str
    job_type: str
    interval_ms: int
    payload: Dict[str, Any] = field(default_factory=dict)
    single_flight: bool = False
    fired: int = 0
    skipped: int = 0
    failed: int = 0
    last_tick_at: Optional[datetime] = None
    task: Optional[asyncio.Task] = None


class Scheduler:
    """In-process interval scheduler on top of a JobQueue."""

    def __init__(self, queue: JobQueue, metrics: Optional[Metrics] = None):
        self.queue = queue
        self.metrics = metrics
        self._schedules: Dict[str, Schedule] = {}

    def schedule(
        self,
        job_type: str,
        interval_ms: Optional[int],
        payload: Optional[Dict[str, Any]] = None,
        *,
        single_flight: bool = False,
        name: Optional[str] = None,
    ) -> Optional[Schedule]:
        """
        Install a repeating timer.

        Args:
            job_type: Job type to enqueue
            interval_ms: Interval in milliseconds; zero, negative or None disables it
            payload: Payload for each job
            single_flight: Skip ticks while the previous job of the type is still active
            name: Schedule name, replacing any schedule of the same name

        Returns:
            The schedule, or None when the interval disables it
        """
        name = name or job_type
        if not interval_ms or interval_ms <= 0:
            logger.info(f"Schedule {name} disabled (interval {interval_ms})")
            return None

        self.cancel(name)
        schedule = Schedule(
            name=name,
            job_type=job_type,
            interval_ms=int(interval_ms),
            payload=dict(payload or {}),
            single_flight=single_flight,
        )
        schedule.task = asyncio.get_running_loop().create_task(self._run(schedule))
        self._schedules[name] = schedule
        logger.info(
            f"Scheduled {job_type} every {interval_ms}ms"
            + (" (single-flight)" if single_flight else "")
        )
        return schedule

    async def _run(self, schedule: Schedule) -> None:
        loop = asyncio.get_running_loop()
        interval = schedule.interval_ms / 1000.0
        next_at = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            next_at += interval
            await self.tick(schedule)

    async def tick(self, schedule: Schedule) -> bool:
        """
        Fire one tick (public for testing).

        Returns:
            True when a job was enqueued
        """
        schedule.last_tick_at = utcnow()

        if schedule.single_flight and self.queue.has_active(schedule.job_type):
            schedule.skipped += 1
            self._count(schedule, "skipped")
            logger.info(f"Skipping {schedule.name} tick, previous job still active")
            return False

        try:
            await self.queue.enqueue(schedule.job_type, dict(schedule.payload))
        except Exception as e:
            schedule.failed += 1
            self._count(schedule, "error")
            logger.error(f"Scheduler failed to enqueue {schedule.job_type}: {e}")
            return False

        schedule.fired += 1
        self._count(schedule, "enqueued")
        logger.debug(f"Scheduler tick enqueued {schedule.job_type}")
        return True

    def _count(self, schedule: Schedule, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.scheduler_ticks_total.labels(
                job_type=schedule.job_type, outcome=outcome
            ).inc()

    def cancel(self, name: str) -> bool:
        schedule = self._schedules.pop(name, None)
        if schedule is None:
            return False
        if schedule.task is not None:
            schedule.task.cancel()
        logger.info(f"Cancelled schedule {name}")
        return True

    def list_schedules(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": s.name,
                "jobType": s.job_type,
                "intervalMs": s.interval_ms,
                "singleFlight": s.single_flight,
                "fired": s.fired,
                "skipped": s.skipped,
                "failed": s.failed,
                "lastTickAt": s.last_tick_at.isoformat() if s.last_tick_at else None,
            }
            for s in self._schedules.values()
        ]

    async def shutdown(self) -> None:
        """Cancel every timer so the loop can exit."""
        tasks = [s.task for s in self._schedules.values() if s.task is not None]
        for name in list(self._schedules):
            self.cancel(name)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")
