"""
In-process domain event bus.

``publish`` runs every matching synchronous listener inline, spawns async
listeners as tracked tasks and hands the ledger write to a bounded
background task, so the caller never waits on I/O. Ledger writes are best
effort: a failed or dropped write is logged and counted, never retried.
"""

import asyncio
import inspect
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from shared.events.ledger import EventLedger
from shared.schemas.dto import DomainEvent
from shared.utils.configs import event_configs
from shared.utils.helpers import ensure_utc, utcnow
from shared.utils.logger import logger
from shared.utils.metrics import Metrics

Listener = Callable[[DomainEvent], Any]

WILDCARD = "*"


def create_event(
    name: str,
    payload: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
    version: str = "v1",
    timestamp: Optional[datetime] = None,
) -> DomainEvent:
    """Build a domain event stamped with the current UTC time."""
    return DomainEvent(
        name=name,
        version=version,
        timestamp=ensure_utc(timestamp) if timestamp else utcnow(),
        payload=dict(payload or {}),
        correlation_id=correlation_id,
    )


def matches(pattern: str, name: str) -> bool:
    """Exact name, "*" for everything, or "prefix.*" for a namespace."""
    if pattern == WILDCARD or pattern == name:
        return True
    if pattern.endswith(".*"):
        return name.startswith(pattern[:-1])
    return False


class EventBus:
    """
    Publish/subscribe hub with an asynchronous durability write.

    Attributes:
        ledger (EventLedger): Durable sink, None to disable persistence.
        metrics (Metrics): Optional metrics sink.
        max_pending (int): Ledger writes allowed in flight before new ones are dropped.
        stats (Dict[str, int]): Published/persisted/failed/dropped counters.
    """

    def __init__(
        self,
        ledger: Optional[EventLedger] = None,
        metrics: Optional[Metrics] = None,
        max_pending: Optional[int] = None,
        verbose: Optional[bool] = None,
    ):
        self.ledger = ledger
        self.metrics = metrics
        self.max_pending = max_pending or event_configs["ledger_max_pending"]
        self.verbose = event_configs["verbose"] if verbose is None else verbose
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._ledger_tasks: Set[asyncio.Task] = set()
        self._listener_tasks: Set[asyncio.Task] = set()
        self.stats = {"published": 0, "persisted": 0, "failed": 0, "dropped": 0}

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def on_event(self, pattern: str, handler: Listener) -> Callable[[], None]:
        """
        Register a listener for an event name or pattern.

        Returns:
            A callable that removes the listener again
        """
        self._listeners[pattern].append(handler)
        return lambda: self.off_event(pattern, handler)

    def off_event(self, pattern: str, handler: Listener) -> None:
        handlers = self._listeners.get(pattern)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listeners_for(self, name: str) -> List[Listener]:
        """Exact listeners first, then namespace wildcards, then "*"."""
        exact = list(self._listeners.get(name, ()))
        namespaced = [
            handler
            for pattern, handlers in self._listeners.items()
            if pattern not in (name, WILDCARD) and matches(pattern, name)
            for handler in handlers
        ]
        return exact + namespaced + list(self._listeners.get(WILDCARD, ()))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, event: DomainEvent) -> None:
        """
        Fan an event out to listeners and schedule its ledger write.

        Never suspends and never raises because of a listener or the ledger.
        """
        self.stats["published"] += 1
        if self.metrics is not None:
            self.metrics.domain_events_total.labels(event=event.name).inc()

        if self.verbose:
            logger.info(f"Publishing {event.name} {event.payload}")
        else:
            logger.debug(f"Publishing {event.name}")

        for handler in self.listeners_for(event.name):
            self._dispatch(handler, event)

        self._persist(event)

    def _dispatch(self, handler: Listener, event: DomainEvent) -> None:
        name = getattr(handler, "__name__", repr(handler))
        try:
            result = handler(event.clone())
        except Exception as e:
            logger.error(f"Listener {name} failed for {event.name}: {e}")
            return

        if inspect.isawaitable(result):
            task = self._spawn(result, self._listener_tasks)
            if task is not None:
                task.add_done_callback(
                    lambda t: self._report_listener(t, name, event.name)
                )

    @staticmethod
    def _report_listener(task: asyncio.Task, name: str, event_name: str) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async listener {name} failed for {event_name}: {error}")

    def _spawn(self, coro, bucket: Set[asyncio.Task]) -> Optional[asyncio.Task]:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            if inspect.iscoroutine(coro):
                coro.close()
            return None
        bucket.add(task)
        task.add_done_callback(bucket.discard)
        return task

    def _record_write(self, outcome: str, event_name: str, elapsed: float = None):
        self.stats[outcome] += 1
        if self.metrics is None:
            return
        metric_outcome = {"persisted": "success", "failed": "error"}.get(
            outcome, outcome
        )
        self.metrics.event_ledger_writes_total.labels(outcome=metric_outcome).inc()
        if elapsed is not None:
            self.metrics.event_ledger_write_seconds.labels(
                event=event_name, outcome=metric_outcome
            ).observe(elapsed)
        self.metrics.event_ledger_pending_writes.set(len(self._ledger_tasks))

    def _persist(self, event: DomainEvent) -> None:
        if self.ledger is None:
            return
        if len(self._ledger_tasks) >= self.max_pending:
            logger.warning(
                f"Event ledger backlog at {len(self._ledger_tasks)} writes - "
                f"dropping {event.name}"
            )
            self._record_write("dropped", event.name)
            return
        if self._spawn(self._write(event), self._ledger_tasks) is None:
            logger.warning(f"No running event loop - ledger write for {event.name} dropped")
            self._record_write("dropped", event.name)
            return
        if self.metrics is not None:
            self.metrics.event_ledger_pending_writes.set(len(self._ledger_tasks))

    async def _write(self, event: DomainEvent) -> None:
        started = time.perf_counter()
        try:
            await self.ledger.append(event)
        except Exception as e:
            logger.error(f"Failed to persist event {event.name}: {e}")
            self._record_write("failed", event.name, time.perf_counter() - started)
        else:
            self._record_write("persisted", event.name, time.perf_counter() - started)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def pending_writes(self) -> int:
        return len(self._ledger_tasks)

    async def drain(self) -> None:
        """
        Wait for every outstanding ledger write and listener task, including
        the ones those tasks publish in turn.
        """
        while self._ledger_tasks or self._listener_tasks:
            await asyncio.gather(
                *list(self._ledger_tasks), *list(self._listener_tasks),
                return_exceptions=True,
            )
