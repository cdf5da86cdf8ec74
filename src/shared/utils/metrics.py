"""
Prometheus metrics for the background pipeline.

Every series lives on a per-instance ``CollectorRegistry`` so the process
runtime owns exactly one set and tests can build isolated ones.

Metrics:
    domain_events_total (Counter, labels: event)
    event_ledger_writes_total (Counter, labels: outcome)
    event_ledger_write_seconds (Histogram, labels: event, outcome)
    event_ledger_pending_writes (Gauge)
    jobs_enqueued_total (Counter, labels: type)
    job_attempts_total (Counter, labels: type)
    job_failures_total (Counter, labels: type)
    jobs_retried_total (Counter, labels: type)
    jobs_dead_total (Counter, labels: type)
    job_duration_seconds (Histogram, labels: type, outcome)
    jobs_queued / jobs_running (Gauge)
    cache_hits_total / cache_misses_total / cache_sets_total (Counter, labels: key)
    cache_invalidations_total (Counter, labels: target)
    cache_entries (Gauge)
    scheduler_ticks_total (Counter, labels: job_type, outcome)
    export_duration_seconds (Histogram, labels: type, outcome)
    exports_total (Counter, labels: outcome)
    export_rows_total (Counter, labels: type)
    webhook_delivery_attempts_total (Counter, labels: outcome)
    circuit_transitions_total (Counter, labels: circuit, state)
    circuit_short_circuited_total (Counter, labels: circuit)
    db_session_seconds (Histogram, labels: outcome)
    retention_records_removed_total (Counter, labels: target)
"""

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_FAST_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
_JOB_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0)


class Metrics:
    """Holds every pipeline series on one registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        r = self.registry

        # Event bus / ledger
        self.domain_events_total = Counter(
            "domain_events_total", "Domain events published", ["event"], registry=r
        )
        self.event_ledger_writes_total = Counter(
            "event_ledger_writes_total",
            "Event ledger write outcomes (success, error, dropped)",
            ["outcome"],
            registry=r,
        )
        self.event_ledger_write_seconds = Histogram(
            "event_ledger_write_seconds",
            "Event ledger write latency",
            ["event", "outcome"],
            buckets=_FAST_BUCKETS,
            registry=r,
        )
        self.event_ledger_pending_writes = Gauge(
            "event_ledger_pending_writes",
            "Ledger writes spawned but not finished",
            registry=r,
        )

        # Job queue
        self.jobs_enqueued_total = Counter(
            "jobs_enqueued_total", "Jobs enqueued", ["type"], registry=r
        )
        self.job_attempts_total = Counter(
            "job_attempts_total", "Job handler invocations", ["type"], registry=r
        )
        self.job_failures_total = Counter(
            "job_failures_total", "Job handler exceptions", ["type"], registry=r
        )
        self.jobs_retried_total = Counter(
            "jobs_retried_total", "Jobs requeued with backoff", ["type"], registry=r
        )
        self.jobs_dead_total = Counter(
            "jobs_dead_total",
            "Jobs that exhausted their attempts",
            ["type"],
            registry=r,
        )
        self.job_duration_seconds = Histogram(
            "job_duration_seconds",
            "Job handler duration",
            ["type", "outcome"],
            buckets=_JOB_BUCKETS,
            registry=r,
        )
        self.jobs_queued = Gauge("jobs_queued", "Jobs waiting to run", registry=r)
        self.jobs_running = Gauge("jobs_running", "Jobs in flight", registry=r)

        # Cache
        self.cache_hits_total = Counter(
            "cache_hits_total", "Cache hits", ["key"], registry=r
        )
        self.cache_misses_total = Counter(
            "cache_misses_total", "Cache misses", ["key"], registry=r
        )
        self.cache_sets_total = Counter(
            "cache_sets_total", "Cache writes", ["key"], registry=r
        )
        self.cache_invalidations_total = Counter(
            "cache_invalidations_total",
            "Cache invalidations by tag or key",
            ["target"],
            registry=r,
        )
        self.cache_entries = Gauge(
            "cache_entries", "Entries held in the local cache", registry=r
        )

        # Scheduler
        self.scheduler_ticks_total = Counter(
            "scheduler_ticks_total",
            "Scheduler ticks",
            ["job_type", "outcome"],
            registry=r,
        )

        # Exports
        self.export_duration_seconds = Histogram(
            "export_duration_seconds",
            "Export run duration",
            ["type", "outcome"],
            buckets=_JOB_BUCKETS,
            registry=r,
        )
        self.exports_total = Counter(
            "exports_total", "Export runs by outcome", ["outcome"], registry=r
        )
        self.export_rows_total = Counter(
            "export_rows_total", "Rows written by exports", ["type"], registry=r
        )

        # Webhooks
        self.webhook_delivery_attempts_total = Counter(
            "webhook_delivery_attempts_total",
            "Webhook delivery attempts",
            ["outcome"],
            registry=r,
        )
        self.circuit_transitions_total = Counter(
            "circuit_transitions_total",
            "Circuit breaker state changes",
            ["circuit", "state"],
            registry=r,
        )
        self.circuit_short_circuited_total = Counter(
            "circuit_short_circuited_total",
            "Calls refused by an open circuit",
            ["circuit"],
            registry=r,
        )

        # Database
        self.db_session_seconds = Histogram(
            "db_session_seconds",
            "Database session duration",
            ["outcome"],
            buckets=_FAST_BUCKETS,
            registry=r,
        )

        # Retention
        self.retention_records_removed_total = Counter(
            "retention_records_removed_total",
            "Rows removed by retention jobs",
            ["target"],
            registry=r,
        )

    def value(self, name: str, **labels) -> float:
        """Current sample value for a series, 0.0 when never observed."""
        result = self.registry.get_sample_value(name, labels or None)
        return result if result is not None else 0.0

    def render(self) -> bytes:
        """Prometheus text exposition of every series."""
        return generate_latest(self.registry)
