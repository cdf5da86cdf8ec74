"""
Job queue: handler registry and execution engine.

Jobs are dispatched in order of (ready time, enqueue sequence) with at most
``concurrency`` handlers in flight. A failed job is requeued with
exponential backoff until it has used ``max_attempts``, then marked failed.
Jobs of one type start in enqueue order; there is no ordering across types.
"""

import asyncio
import heapq
import itertools
import random
import secrets
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from shared.jobs.job_store import JobStore
from shared.schemas.dto import Job
from shared.utils.configs import job_configs
from shared.utils.errors import ErrorType, JobError
from shared.utils.helpers import ensure_utc, utcnow
from shared.utils.logger import logger
from shared.utils.metrics import Metrics
from shared.utils.types import JobStatus

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class JobQueue:
    """
    In-process job queue with optional persistence.

    Attributes:
        store (JobStore): Durable job records, None for memory-only queues.
        concurrency (int): Handlers allowed to run at once.
        persist_default (bool): Persist jobs unless enqueue says otherwise.
        max_attempts (int): Default attempts per job.
        backoff_base_ms (int): Delay before the first retry.
        backoff_max_ms (int): Upper bound on any retry delay.
        backoff_jitter (float): Random spread applied to delays, 0.2 = +/-20%.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        metrics: Optional[Metrics] = None,
        concurrency: Optional[int] = None,
        persist_default: Optional[bool] = None,
        max_attempts: Optional[int] = None,
        backoff_base_ms: Optional[int] = None,
        backoff_max_ms: Optional[int] = None,
        backoff_jitter: Optional[float] = None,
    ):
        self.store = store
        self.metrics = metrics
        self.concurrency = max(1, concurrency or job_configs["concurrency"])
        self.persist_default = (
            job_configs["persist"] if persist_default is None else persist_default
        )
        self.max_attempts = max_attempts or job_configs["max_attempts"]
        self.backoff_base_ms = (
            job_configs["backoff_base_ms"] if backoff_base_ms is None else backoff_base_ms
        )
        self.backoff_max_ms = (
            job_configs["backoff_max_ms"] if backoff_max_ms is None else backoff_max_ms
        )
        self.backoff_jitter = (
            job_configs["backoff_jitter"] if backoff_jitter is None else backoff_jitter
        )

        self._handlers: Dict[str, Handler] = {}
        self._heap: List[Tuple[float, int, Job]] = []
        self._seq = itertools.count()
        self._jobs: Dict[str, Job] = {}
        self._running: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._dispatcher: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._paused = False
        self._closing = False

    # ------------------------------------------------------------------
    # Registration / enqueue
    # ------------------------------------------------------------------

    def register(self, job_type: str, handler: Handler) -> None:
        """Associate a job type with an async handler taking the payload."""
        if job_type in self._handlers:
            logger.warning(f"Replacing handler for job type {job_type}")
        self._handlers[job_type] = handler
        logger.info(f"Registered handler for job type {job_type}")

    def has_handler(self, job_type: str) -> bool:
        return job_type in self._handlers

    async def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        persist: Optional[bool] = None,
        scheduled_for: Optional[datetime] = None,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
    ) -> Job:
        """
        Create a job and schedule it for execution.

        Args:
            job_type: Registered job type
            payload: Handler payload
            persist: Write a JobRecord (defaults to PERSIST_JOBS)
            scheduled_for: Earliest run time
            delay_ms: Run no earlier than this many milliseconds from now
            max_attempts: Attempts before the job is terminal

        Returns:
            The queued job

        Raises:
            JobError: If the type has no handler, the queue is shutting down,
                or persistence is requested without a store
        """
        if job_type not in self._handlers:
            raise JobError(
                message=f"No handler registered for job type {job_type}",
                error_type=ErrorType.JOB_ERROR,
                status_code=400,
            )
        if self._closing:
            raise JobError(
                message=f"Job queue is shutting down, rejected {job_type}",
                status_code=503,
            )

        persist = self.persist_default if persist is None else persist
        if persist and self.store is None:
            raise JobError(
                message="Job persistence requested but no job store is configured",
                status_code=500,
            )

        now = utcnow()
        if delay_ms and delay_ms > 0:
            scheduled_for = now + timedelta(milliseconds=delay_ms)
        scheduled_for = ensure_utc(scheduled_for)
        max_attempts = max_attempts or self.max_attempts
        payload = dict(payload or {})

        if persist:
            record = await self.store.create(job_type, payload, max_attempts, scheduled_for)
            job_id = str(record.id)
        else:
            job_id = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"

        job = Job(
            id=job_id,
            type=job_type,
            payload=payload,
            max_attempts=max_attempts,
            enqueued_at=now,
            scheduled_for=scheduled_for,
            persisted=persist,
        )
        self._push(job)

        if self.metrics is not None:
            self.metrics.jobs_enqueued_total.labels(type=job_type).inc()
        logger.info(f"Enqueued job {job.id} ({job_type})")
        return job

    def _push(self, job: Job) -> None:
        loop = asyncio.get_running_loop()
        ready_at = loop.time()
        if job.scheduled_for is not None:
            ready_at += max(0.0, (job.scheduled_for - utcnow()).total_seconds())
        heapq.heappush(self._heap, (ready_at, next(self._seq), job))
        self._jobs[job.id] = job
        self._idle.clear()
        self._ensure_dispatcher()
        self._update_gauges()
        self._wakeup.set()

    async def recover_persisted(self) -> int:
        """
        Re-enqueue every unfinished JobRecord; called once at startup.

        A record left running by a previous process is treated as not yet
        run, so handlers must be idempotent or checkpointed.

        Returns:
            Number of jobs re-enqueued
        """
        if self.store is None:
            return 0

        recovered = 0
        for record in await self.store.load_unfinished():
            job_id = str(record.id)
            if job_id in self._jobs:
                continue
            self._push(
                Job(
                    id=job_id,
                    type=record.type,
                    payload=dict(record.payload or {}),
                    attempts=record.attempts or 0,
                    max_attempts=record.max_attempts or self.max_attempts,
                    enqueued_at=ensure_utc(record.enqueued_at),
                    scheduled_for=ensure_utc(record.scheduled_for),
                    persisted=True,
                    last_error=record.last_error,
                )
            )
            recovered += 1

        logger.info(f"Recovered {recovered} persisted jobs")
        return recovered

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _ensure_dispatcher(self) -> None:
        if self._closing:
            return
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(
                self._dispatch_loop()
            )

    def _next_ready(self) -> Tuple[Optional[Job], Optional[float]]:
        """Pop the next runnable job, or say how long to sleep."""
        if self._paused or not self._heap or len(self._running) >= self.concurrency:
            return None, None
        ready_at = self._heap[0][0]
        delay = ready_at - asyncio.get_running_loop().time()
        if delay > 0:
            return None, delay
        _, _, job = heapq.heappop(self._heap)
        return job, None

    async def _dispatch_loop(self) -> None:
        while not self._closing:
            job, timeout = self._next_ready()
            if job is not None:
                self._start(job)
                continue
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    def _start(self, job: Job) -> None:
        self._running.add(job.id)
        self._update_gauges()
        task = asyncio.get_running_loop().create_task(self._run(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Job) -> None:
        try:
            if job.persisted and not await self._claim(job):
                return

            job.status = JobStatus.RUNNING
            if self.metrics is not None:
                self.metrics.job_attempts_total.labels(type=job.type).inc()
            logger.info(
                f"Running job {job.id} ({job.type}), attempt "
                f"{job.attempts + 1}/{job.max_attempts}"
            )

            started = time.perf_counter()
            try:
                handler = self._handlers.get(job.type)
                if handler is None:
                    raise JobError(
                        message=f"No handler registered for job type {job.type}",
                        status_code=400,
                    )
                await handler(job.payload)
            except Exception as e:
                self._observe(job, "error", time.perf_counter() - started)
                await self._handle_failure(job, e)
            else:
                self._observe(job, "success", time.perf_counter() - started)
                await self._handle_success(job)
        finally:
            self._running.discard(job.id)
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                self._jobs.pop(job.id, None)
            self._update_gauges()
            self._wakeup.set()

    async def _claim(self, job: Job) -> bool:
        try:
            claimed = await self.store.claim(int(job.id))
        except Exception as e:
            logger.error(f"Could not claim job {job.id}: {e}")
            self._requeue(job, self._backoff_ms(max(1, job.attempts)))
            return False
        if not claimed:
            logger.warning(f"Job {job.id} is no longer pending, skipping")
            self._jobs.pop(job.id, None)
        return claimed

    def _observe(self, job: Job, outcome: str, elapsed: float) -> None:
        if self.metrics is not None:
            self.metrics.job_duration_seconds.labels(
                type=job.type, outcome=outcome
            ).observe(elapsed)

    async def _handle_success(self, job: Job) -> None:
        job.status = JobStatus.COMPLETED
        job.last_error = None
        logger.info(f"Job {job.id} ({job.type}) completed")
        if job.persisted:
            try:
                await self.store.complete(int(job.id))
            except Exception as e:
                logger.error(f"Could not mark job {job.id} completed: {e}")

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        job.attempts += 1
        job.last_error = getattr(error, "message", None) or str(error) or type(error).__name__
        if self.metrics is not None:
            self.metrics.job_failures_total.labels(type=job.type).inc()

        terminal = job.attempts >= job.max_attempts
        delay_ms = 0 if terminal else self._backoff_ms(job.attempts)
        scheduled_for = None if terminal else utcnow() + timedelta(milliseconds=delay_ms)

        if job.persisted:
            try:
                await self.store.fail(
                    int(job.id), job.attempts, job.last_error, terminal, scheduled_for
                )
            except Exception as e:
                logger.error(f"Could not record failure of job {job.id}: {e}")

        if terminal:
            job.status = JobStatus.FAILED
            if self.metrics is not None:
                self.metrics.jobs_dead_total.labels(type=job.type).inc()
            logger.error(
                f"Job {job.id} ({job.type}) failed permanently after "
                f"{job.attempts} attempts: {job.last_error}"
            )
            return

        if self.metrics is not None:
            self.metrics.jobs_retried_total.labels(type=job.type).inc()
        logger.warning(
            f"Job {job.id} ({job.type}) failed attempt {job.attempts}/"
            f"{job.max_attempts}: {job.last_error}. Retrying in {delay_ms}ms"
        )
        self._requeue(job, delay_ms, scheduled_for)

    def _requeue(
        self, job: Job, delay_ms: int, scheduled_for: Optional[datetime] = None
    ) -> None:
        job.status = JobStatus.PENDING
        job.scheduled_for = scheduled_for or utcnow() + timedelta(milliseconds=delay_ms)
        if self._closing:
            logger.warning(f"Queue closing, retry of job {job.id} left for recovery")
            self._jobs.pop(job.id, None)
            return
        self._push(job)

    def _backoff_ms(self, attempts: int) -> int:
        """Exponential delay for the retry after the given failed attempt."""
        delay = min(self.backoff_max_ms, self.backoff_base_ms * (2 ** (attempts - 1)))
        if self.backoff_jitter:
            delay *= 1 + random.uniform(-self.backoff_jitter, self.backoff_jitter)
        return max(0, int(delay))

    def _update_gauges(self) -> None:
        if not self._heap and not self._running:
            self._idle.set()
        if self.metrics is not None:
            self.metrics.jobs_queued.set(len(self._heap))
            self.metrics.jobs_running.set(len(self._running))

    # ------------------------------------------------------------------
    # Control / introspection
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """Stop starting new jobs; running ones finish."""
        self._paused = True
        logger.info("Job queue paused")

    def resume(self) -> None:
        self._paused = False
        self._wakeup.set()
        logger.info("Job queue resumed")

    def has_active(self, job_type: str) -> bool:
        """True while a job of this type is queued or running."""
        return any(job.type == job_type for job in self._jobs.values())

    def get_stats(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        for job in self._jobs.values():
            by_type[job.type] = by_type.get(job.type, 0) + 1
        return {
            "queued": len(self._heap),
            "running": len(self._running),
            "handlers": sorted(self._handlers),
            "concurrency": self.concurrency,
            "paused": self._paused,
            "byType": by_type,
        }

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until nothing is queued or running.

        Returns:
            True if the queue went idle, False on timeout
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop dispatching and let in-flight handlers finish.

        Handlers still running after the timeout are left alone; their
        records stay running and are recovered on the next start.
        """
        timeout = job_configs["shutdown_timeout_seconds"] if timeout is None else timeout
        self._closing = True
        self._wakeup.set()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} running jobs to finish")
            _, still_running = await asyncio.wait(list(self._tasks), timeout=timeout)
            if still_running:
                logger.warning(
                    f"{len(still_running)} jobs still running after {timeout}s shutdown wait"
                )

        if self._heap:
            logger.info(f"{len(self._heap)} queued jobs not started before shutdown")
        logger.info("Job queue stopped")
