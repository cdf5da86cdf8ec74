"""
Tests for the event ledger queries.
"""

from datetime import datetime

import pytz

from shared.events.event_bus import create_event

UTC = pytz.utc


def at(day, hour=12):
    return UTC.localize(datetime(2025, 3, day, hour))


class TestEventLedger:
    async def test_append_returns_increasing_ids(self, ledger):
        first = await ledger.append(create_event("quote.sent", timestamp=at(1)))
        second = await ledger.append(create_event("quote.sent", timestamp=at(1)))
        assert second > first

    async def test_query_filters_prefix_and_half_open_window(self, ledger):
        await ledger.append(create_event("quote.sent", timestamp=at(1, 0)))
        await ledger.append(create_event("quote.accepted", timestamp=at(1, 23)))
        await ledger.append(create_event("quote.sent", timestamp=at(2, 0)))
        await ledger.append(create_event("order.created", timestamp=at(1, 5)))

        rows = await ledger.query("quote.", at(1, 0), at(2, 0))
        assert [r.name for r in rows] == ["quote.sent", "quote.accepted"]

    async def test_prefix_with_wildcard_characters_is_literal(self, ledger):
        await ledger.append(create_event("quote_x.sent", timestamp=at(1)))
        await ledger.append(create_event("quoteAx.sent", timestamp=at(1)))
        rows = await ledger.query("quote_")
        assert [r.name for r in rows] == ["quote_x.sent"]

    async def test_count_by_name_reports_zero_for_absent_names(self, ledger):
        for _ in range(3):
            await ledger.append(create_event("quote.sent", timestamp=at(4)))
        await ledger.append(create_event("quote.accepted", timestamp=at(4)))

        counts = await ledger.count_by_name(
            ["quote.sent", "quote.accepted", "order.created"], at(4, 0), at(5, 0)
        )
        assert counts == {"quote.sent": 3, "quote.accepted": 1, "order.created": 0}
        assert await ledger.count("quote.sent", at(5, 0), at(6, 0)) == 0

    async def test_payloads_in_order(self, ledger):
        await ledger.append(create_event("order.delivered", {"n": 2}, timestamp=at(3, 9)))
        await ledger.append(create_event("order.delivered", {"n": 1}, timestamp=at(3, 8)))
        assert await ledger.payloads("order.delivered") == [{"n": 1}, {"n": 2}]
