"""
Shared fixtures for the pipeline tests.

Row-store tests run against a throw-away SQLite file through the aiosqlite
driver; every test gets its own database and its own metrics registry.
"""

import pytest

from shared.cache.cache import Cache
from shared.db.database import Database
from shared.events.event_bus import EventBus
from shared.events.ledger import EventLedger
from shared.jobs.job_queue import JobQueue
from shared.jobs.job_store import JobStore
from shared.utils.metrics import Metrics


class FakeClock:
    """Monotonic clock the cache tests can move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(metrics, clock):
    return Cache(max_entries=50, metrics=metrics, clock=clock)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path}/pipeline.db"


@pytest.fixture
async def db(db_url, metrics):
    database = Database(db_url, metrics=metrics)
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def ledger(db):
    return EventLedger(db)


@pytest.fixture
async def bus(ledger, metrics):
    event_bus = EventBus(ledger, metrics=metrics)
    yield event_bus
    await event_bus.drain()


@pytest.fixture
def store(db):
    return JobStore(db)


@pytest.fixture
async def queue(store, metrics):
    job_queue = JobQueue(
        store,
        metrics=metrics,
        concurrency=2,
        persist_default=False,
        max_attempts=3,
        backoff_base_ms=10,
        backoff_max_ms=50,
        backoff_jitter=0,
    )
    yield job_queue
    await job_queue.shutdown(timeout=2)
