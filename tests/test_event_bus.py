"""
Tests for the domain event bus: fan-out, isolation, patterns and the
background ledger write.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from shared.events.event_bus import EventBus, create_event, matches


class TestPatterns:
    @pytest.mark.parametrize(
        "pattern,name,expected",
        [
            ("quote.sent", "quote.sent", True),
            ("quote.sent", "quote.accepted", False),
            ("*", "anything.at.all", True),
            ("quote.*", "quote.sent", True),
            ("quote.*", "quotes.sent", False),
            ("material.*", "material.stock.changed", True),
        ],
    )
    def test_matches(self, pattern, name, expected):
        assert matches(pattern, name) is expected

    def test_create_event_defaults(self):
        event = create_event("order.created", {"id": 1}, correlation_id="req-1")
        assert event.version == "v1"
        assert event.timestamp.tzinfo is not None
        assert event.correlation_id == "req-1"


class TestPublish:
    async def test_listeners_receive_isolated_copies(self):
        bus = EventBus(ledger=None)
        seen = []

        def mutating(event):
            event.payload["items"].append("extra")

        bus.on_event("order.created", mutating)
        bus.on_event("order.created", lambda e: seen.append(e.payload["items"]))

        original = create_event("order.created", {"items": ["a"]})
        bus.publish(original)

        assert seen == [["a"]]
        assert original.payload == {"items": ["a"]}

    async def test_failing_listener_does_not_stop_others(self):
        bus = EventBus(ledger=None)
        after = Mock()
        bus.on_event("x", Mock(side_effect=RuntimeError("broken")))
        bus.on_event("x", after)

        bus.publish(create_event("x"))
        after.assert_called_once()

    async def test_wildcard_and_namespace_listeners(self):
        bus = EventBus(ledger=None)
        calls = []
        bus.on_event("*", lambda e: calls.append(("all", e.name)))
        bus.on_event("quote.*", lambda e: calls.append(("quote", e.name)))
        bus.on_event("quote.sent", lambda e: calls.append(("exact", e.name)))

        bus.publish(create_event("quote.sent"))
        bus.publish(create_event("order.created"))

        assert calls == [
            ("exact", "quote.sent"),
            ("quote", "quote.sent"),
            ("all", "quote.sent"),
            ("all", "order.created"),
        ]

    async def test_unsubscribe(self):
        bus = EventBus(ledger=None)
        listener = Mock()
        unsubscribe = bus.on_event("x", listener)
        unsubscribe()
        bus.publish(create_event("x"))
        listener.assert_not_called()

    async def test_async_listener_runs_without_blocking_publish(self):
        bus = EventBus(ledger=None)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(event):
            started.set()
            await release.wait()

        bus.on_event("x", slow)
        bus.publish(create_event("x"))
        assert not started.is_set()

        await asyncio.sleep(0)
        assert started.is_set()
        release.set()
        await bus.drain()

    async def test_async_listener_failure_is_contained(self):
        bus = EventBus(ledger=None)
        bus.on_event("x", AsyncMock(side_effect=RuntimeError("later")))
        bus.publish(create_event("x"))
        await bus.drain()
        assert bus.stats["published"] == 1


class TestLedgerWrites:
    async def test_publish_persists_in_background(self, bus, ledger, metrics):
        bus.publish(create_event("quote.sent", {"quoteId": 1}))
        assert bus.pending_writes == 1

        await bus.drain()
        rows = await ledger.query("quote.")
        assert [r.name for r in rows] == ["quote.sent"]
        assert rows[0].payload == {"quoteId": 1}
        assert bus.stats["persisted"] == 1
        assert metrics.value("event_ledger_writes_total", outcome="success") == 1
        assert metrics.value("domain_events_total", event="quote.sent") == 1

    async def test_ledger_failure_is_counted_not_raised(self, metrics):
        ledger = Mock()
        ledger.append = AsyncMock(side_effect=RuntimeError("db down"))
        bus = EventBus(ledger, metrics=metrics)
        listener = Mock()
        bus.on_event("x", listener)

        bus.publish(create_event("x"))
        await bus.drain()

        listener.assert_called_once()
        assert bus.stats["failed"] == 1
        assert metrics.value("event_ledger_writes_total", outcome="error") == 1

    async def test_backlog_beyond_max_pending_is_dropped(self, metrics):
        release = asyncio.Event()

        async def blocked_append(event):
            await release.wait()
            return 1

        ledger = Mock()
        ledger.append = blocked_append
        bus = EventBus(ledger, metrics=metrics, max_pending=2)

        for _ in range(3):
            bus.publish(create_event("x"))

        assert bus.pending_writes == 2
        assert bus.stats["dropped"] == 1
        release.set()
        await bus.drain()
        assert bus.stats["persisted"] == 2
        assert metrics.value("event_ledger_writes_total", outcome="dropped") == 1

    def test_publish_without_loop_drops_write(self):
        ledger = Mock()
        ledger.append = AsyncMock()
        bus = EventBus(ledger)
        bus.publish(create_event("x"))
        assert bus.stats["dropped"] == 1
