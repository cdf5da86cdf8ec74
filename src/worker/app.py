"""
Main application for the pipeline worker process.
- Builds every component once and wires handlers, listeners and schedules
- Runs until SIGINT/SIGTERM, then shuts down in dependency order
"""

import asyncio
import signal
from typing import Any, Callable, Dict, List, Optional

from cache_manager.service import WARM_JOB_TYPE, CacheManager
from exporter.app import make_handler as make_export_handler
from exporter.service import JOB_TYPE as EXPORT_JOB_TYPE
from exporter.service import ExportProcessor
from kpi_aggregator.app import JOB_TYPE as KPI_JOB_TYPE
from kpi_aggregator.app import make_handler as make_kpi_handler
from kpi_aggregator.service import KpiAggregator
from retention.service import JOB_TYPE as RETENTION_JOB_TYPE
from retention.service import RetentionService
from shared.cache.cache import Cache
from shared.cache.redis_cache import CacheTier, build_cache_tier
from shared.db.database import Database
from shared.events.event_bus import EventBus
from shared.events.ledger import EventLedger
from shared.jobs.job_queue import JobQueue
from shared.jobs.job_store import JobStore
from shared.jobs.scheduler import Scheduler
from shared.services.storage import ExportStorage, build_storage
from shared.utils.configs import base_configs, job_configs, schedule_configs
from shared.utils.logger import logger
from shared.utils.metrics import Metrics
from shared.utils.version import get_version
from webhook_dispatcher.app import make_handler as make_webhook_handler
from webhook_dispatcher.service import JOB_TYPE as WEBHOOK_JOB_TYPE
from webhook_dispatcher.service import WebhookDispatcher

from .projections import register_projections


class Runtime:
    """
    Owns one instance of every pipeline component.

    Attributes:
        metrics (Metrics): Process-wide metrics registry.
        db (Database): Row store.
        cache (Cache): Process-wide cache.
        bus (EventBus): Domain event bus with its ledger.
        queue (JobQueue): Job queue backed by the job store.
        scheduler (Scheduler): Interval timers feeding the queue.
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        metrics: Optional[Metrics] = None,
        storage: Optional[ExportStorage] = None,
        cache_tier: Optional[CacheTier] = None,
        schedules: Optional[Dict[str, Any]] = None,
        queue_options: Optional[Dict[str, Any]] = None,
    ):
        self.metrics = metrics or Metrics()
        self.db = Database(db_url, metrics=self.metrics)
        self.cache = Cache(
            metrics=self.metrics,
            remote=cache_tier if cache_tier is not None else build_cache_tier(),
        )
        self.ledger = EventLedger(self.db)
        self.bus = EventBus(self.ledger, metrics=self.metrics)
        self.store = JobStore(self.db)
        self.queue = JobQueue(self.store, metrics=self.metrics, **(queue_options or {}))
        self.scheduler = Scheduler(self.queue, metrics=self.metrics)

        self.kpi = KpiAggregator(self.db, self.ledger, cache=self.cache)
        self.exporter = ExportProcessor(
            self.db,
            storage or build_storage(),
            bus=self.bus,
            queue=self.queue,
            metrics=self.metrics,
        )
        self.webhooks = WebhookDispatcher(
            self.db, queue=self.queue, bus=self.bus, metrics=self.metrics
        )
        self.cache_manager = CacheManager(self.db, self.cache)
        self.retention = RetentionService(self.db, metrics=self.metrics)

        self.schedules = dict(schedule_configs, **(schedules or {}))
        self._unsubscribers: List[Callable[[], None]] = []
        self._started = False

    def register_handlers(self) -> None:
        self.queue.register(KPI_JOB_TYPE, make_kpi_handler(self.kpi))
        self.queue.register(EXPORT_JOB_TYPE, make_export_handler(self.exporter))
        self.queue.register(WEBHOOK_JOB_TYPE, make_webhook_handler(self.webhooks))
        self.queue.register(WARM_JOB_TYPE, self.cache_manager.warm_analytics_summary)
        self.queue.register(RETENTION_JOB_TYPE, self.retention.run)

    def register_listeners(self) -> None:
        self._unsubscribers = register_projections(self.bus, self.db, self.cache)
        self._unsubscribers.append(self.bus.on_event("*", self.webhooks.on_domain_event))

    def install_schedules(self) -> None:
        self.scheduler.schedule(KPI_JOB_TYPE, self.schedules["kpi_snapshot_interval_ms"])
        self.scheduler.schedule(
            WARM_JOB_TYPE,
            self.schedules["analytics_summary_warm_interval_ms"],
            single_flight=True,
        )
        self.scheduler.schedule(
            RETENTION_JOB_TYPE,
            self.schedules["refresh_token_cleanup_interval_ms"],
            single_flight=True,
        )

    async def init(self) -> "Runtime":
        """
        Bring the pipeline up.

        Order matters: handlers must exist before persisted jobs are
        recovered, and recovery runs before any schedule fires.
        """
        if self._started:
            return self
        logger.info(
            f"Starting pipeline worker {get_version()} "
            f"({base_configs['environment']})"
        )
        await self.db.initialize()
        self.register_handlers()
        self.register_listeners()

        recovered = await self.queue.recover_persisted()
        if recovered:
            logger.info(f"Resuming {recovered} jobs from the previous run")

        if self.schedules.get("enqueue_kpi_on_start"):
            await self.queue.enqueue(KPI_JOB_TYPE, {})

        self.install_schedules()
        self._started = True
        logger.info("Pipeline worker started")
        return self

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop timers, let running jobs finish, flush events, release resources."""
        logger.info("Shutting down pipeline worker")
        await self.scheduler.shutdown()
        await self.queue.shutdown(
            job_configs["shutdown_timeout_seconds"] if timeout is None else timeout
        )
        await self.bus.drain()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        try:
            await self.cache.close()
            await self.webhooks.close()
        finally:
            await self.db.close()
        self._started = False
        logger.info("Pipeline worker stopped")

    def stats(self) -> Dict[str, Any]:
        return {
            "queue": self.queue.get_stats(),
            "schedules": self.scheduler.list_schedules(),
            "events": dict(self.bus.stats),
            "pendingLedgerWrites": self.bus.pending_writes,
            "cache": self.cache.snapshot(),
        }


async def run() -> None:
    runtime = Runtime()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await runtime.init()
    try:
        await stop.wait()
        logger.info("Stop signal received")
    finally:
        await runtime.shutdown()


def main() -> int:
    asyncio.run(run())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
