"""
Tests for the job queue, its persistence and crash recovery.
"""

import asyncio
from datetime import timedelta

import pytest

from shared.db.models import JobRecord
from shared.jobs.job_queue import JobQueue
from shared.utils.errors import JobError
from shared.utils.helpers import utcnow
from shared.utils.types import JobStatus


def recorder():
    calls = []

    async def handler(payload):
        calls.append(payload)

    return handler, calls


class TestEnqueue:
    async def test_unknown_type_is_rejected(self, queue):
        with pytest.raises(JobError) as exc_info:
            await queue.enqueue("nope", {})
        assert exc_info.value.status_code == 400

    async def test_persist_without_store_is_rejected(self, metrics):
        queue = JobQueue(store=None, metrics=metrics)
        queue.register("t", recorder()[0])
        with pytest.raises(JobError):
            await queue.enqueue("t", {}, persist=True)

    async def test_runs_handler_with_payload(self, queue, metrics):
        handler, calls = recorder()
        queue.register("t", handler)

        job = await queue.enqueue("t", {"n": 1})
        assert await queue.wait_idle(2)

        assert calls == [{"n": 1}]
        assert job.status == JobStatus.COMPLETED
        assert metrics.value("jobs_enqueued_total", type="t") == 1
        assert metrics.value("job_attempts_total", type="t") == 1

    async def test_delayed_job_waits(self, queue):
        handler, calls = recorder()
        queue.register("t", handler)

        await queue.enqueue("t", {}, delay_ms=150)
        await asyncio.sleep(0.05)
        assert calls == []
        assert await queue.wait_idle(2)
        assert len(calls) == 1

    async def test_enqueue_after_shutdown_is_rejected(self, queue):
        queue.register("t", recorder()[0])
        await queue.shutdown(timeout=1)
        with pytest.raises(JobError) as exc_info:
            await queue.enqueue("t", {})
        assert exc_info.value.status_code == 503


class TestRetries:
    async def test_failed_job_retries_until_success(self, queue, metrics):
        attempts = []

        async def flaky(payload):
            attempts.append(1)
            if len(attempts) < 3:
                raise RuntimeError("transient")

        queue.register("flaky", flaky)
        job = await queue.enqueue("flaky", {})
        assert await queue.wait_idle(3)

        assert len(attempts) == 3
        assert job.status == JobStatus.COMPLETED
        assert metrics.value("jobs_retried_total", type="flaky") == 2

    async def test_job_becomes_terminal_after_max_attempts(self, queue, metrics):
        async def broken(payload):
            raise RuntimeError("always")

        queue.register("broken", broken)
        job = await queue.enqueue("broken", {}, max_attempts=2)
        assert await queue.wait_idle(3)

        assert job.status == JobStatus.FAILED
        assert job.attempts == 2
        assert job.last_error == "always"
        assert metrics.value("jobs_dead_total", type="broken") == 1

    def test_backoff_grows_and_caps(self, metrics):
        queue = JobQueue(
            metrics=metrics, backoff_base_ms=1000, backoff_max_ms=5000, backoff_jitter=0
        )
        assert [queue._backoff_ms(n) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 5000]


class TestPersistence:
    async def test_persisted_job_lifecycle(self, queue, store):
        handler, _ = recorder()
        queue.register("t", handler)

        job = await queue.enqueue("t", {"a": 1}, persist=True)
        assert await queue.wait_idle(2)

        record = await store.get(int(job.id))
        assert record.status == JobStatus.COMPLETED.value
        assert record.payload == {"a": 1}
        assert record.finished_at is not None

    async def test_terminal_failure_is_recorded(self, queue, store):
        async def broken(payload):
            raise RuntimeError("nope")

        queue.register("broken", broken)
        job = await queue.enqueue("broken", {}, persist=True, max_attempts=1)
        assert await queue.wait_idle(2)

        record = await store.get(int(job.id))
        assert record.status == JobStatus.FAILED.value
        assert record.attempts == 1
        assert record.last_error == "nope"

    async def test_claim_is_exclusive(self, store):
        record = await store.create("t", {}, 3)
        assert await store.claim(record.id) is True
        assert await store.claim(record.id) is False

    async def test_recover_persisted_reruns_interrupted_jobs(self, db, store, metrics):
        pending = await store.create("t", {"n": "pending"}, 3)
        running = await store.create("t", {"n": "running"}, 3)
        done = await store.create("t", {"n": "done"}, 3)
        await store.claim(running.id)
        await store.complete(done.id)

        queue = JobQueue(store, metrics=metrics, backoff_jitter=0)
        handler, calls = recorder()
        queue.register("t", handler)

        assert await queue.recover_persisted() == 2
        assert await queue.wait_idle(2)
        await queue.shutdown(timeout=1)

        assert sorted(c["n"] for c in calls) == ["pending", "running"]
        for record_id in (pending.id, running.id):
            assert (await store.get(record_id)).status == JobStatus.COMPLETED.value

    async def test_list_jobs_and_oldest_pending_age(self, db, store):
        first = await store.create("a", {}, 3)
        await store.create("b", {}, 3)
        async with db.session() as session:
            record = await session.get(JobRecord, first.id)
            record.enqueued_at = utcnow() - timedelta(seconds=120)

        assert [r.type for r in await store.list_jobs(job_type="a")] == ["a"]
        assert len(await store.list_jobs(status="pending")) == 2
        age = await store.oldest_pending_age()
        assert 119 <= age < 200


class TestControl:
    async def test_concurrency_limit(self, metrics):
        queue = JobQueue(metrics=metrics, concurrency=2, persist_default=False)
        running = 0
        peak = 0

        async def tracked(payload):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        queue.register("t", tracked)
        for _ in range(6):
            await queue.enqueue("t", {})
        assert await queue.wait_idle(2)
        await queue.shutdown(timeout=1)
        assert peak == 2

    async def test_pause_and_resume(self, queue):
        handler, calls = recorder()
        queue.register("t", handler)
        queue.pause()

        await queue.enqueue("t", {})
        await asyncio.sleep(0.05)
        assert calls == []
        assert queue.get_stats()["paused"] is True
        assert queue.has_active("t") is True

        queue.resume()
        assert await queue.wait_idle(2)
        assert len(calls) == 1
        assert queue.has_active("t") is False

    async def test_stats(self, queue):
        queue.register("t", recorder()[0])
        stats = queue.get_stats()
        assert stats["handlers"] == ["t"]
        assert stats["concurrency"] == 2
        assert stats["queued"] == 0

    async def test_shutdown_lets_running_job_finish(self, queue):
        finished = asyncio.Event()

        async def slow(payload):
            await asyncio.sleep(0.05)
            finished.set()

        queue.register("slow", slow)
        await queue.enqueue("slow", {})
        await asyncio.sleep(0.01)
        await queue.shutdown(timeout=2)
        assert finished.is_set()
