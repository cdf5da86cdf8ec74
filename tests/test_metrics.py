"""
Tests for the metrics registry wrapper.
"""

from shared.utils.metrics import Metrics


class TestMetrics:
    def test_registries_are_isolated(self):
        first, second = Metrics(), Metrics()
        first.jobs_enqueued_total.labels(type="kpi.snapshot").inc()

        assert first.value("jobs_enqueued_total", type="kpi.snapshot") == 1
        assert second.value("jobs_enqueued_total", type="kpi.snapshot") == 0.0

    def test_render_exposes_series(self):
        metrics = Metrics()
        metrics.cache_hits_total.labels(key="analytics:summary").inc(3)
        metrics.jobs_running.set(2)

        text = metrics.render().decode("utf-8")

        assert 'cache_hits_total{key="analytics:summary"} 3.0' in text
        assert "jobs_running 2.0" in text
