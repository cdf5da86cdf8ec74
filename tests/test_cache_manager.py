"""
Tests for the cached read models.
"""

from datetime import date

import pytest

from cache_manager.app import app
from cache_manager.service import CacheManager
from shared.cache.cache import CacheKeys, CacheTags
from shared.db.models import KpiDailySnapshot, Material


@pytest.fixture
def manager(db, cache):
    return CacheManager(db, cache)


@pytest.fixture
async def seeded(db):
    async with db.session() as session:
        session.add_all(
            [
                KpiDailySnapshot(date=date(2025, 5, 13), quotes_sent=1),
                KpiDailySnapshot(date=date(2025, 5, 14), quotes_sent=7),
                Material(name="Rebar", category="steel", stock_quantity=1, reorder_level=5),
                Material(name="Plywood", category="lumber", stock_quantity=50, reorder_level=5),
                Material(name="Nails", category="hardware", stock_quantity=5, reorder_level=5),
                Material(
                    name="Retired", category="legacy", stock_quantity=0, is_active=False
                ),
            ]
        )


class TestAnalyticsSummary:
    async def test_latest_snapshot_is_cached(self, manager, seeded):
        first = await manager.analytics_summary()
        second = await manager.analytics_summary()

        assert first.hit is False and second.hit is True
        assert first.value["latest"]["date"] == "2025-05-14"
        assert first.value["latest"]["quotesSent"] == 7
        assert second.value["warmedAt"] == first.value["warmedAt"]

    async def test_warm_rebuilds_summary(self, manager, seeded):
        before = await manager.analytics_summary()
        await manager.warm_analytics_summary({})
        after = await manager.analytics_summary()

        assert after.hit is True
        assert after.etag != before.etag

    async def test_empty_store(self, manager):
        result = await manager.analytics_summary()
        assert result.value["latest"] is None


class TestMaterials:
    async def test_categories_are_distinct_and_active(self, manager, seeded):
        assert await manager.material_categories() == ["hardware", "lumber", "steel"]

    async def test_low_stock_lists_at_or_below_reorder_level(self, manager, seeded):
        names = [m["name"] for m in await manager.low_stock_materials()]
        assert names == ["Nails", "Rebar"]

    async def test_materials_tag_drops_both_lists(self, manager, cache, seeded):
        await manager.material_categories()
        await manager.low_stock_materials()

        assert cache.invalidate_tag(CacheTags.MATERIALS) == 2
        assert await cache.get(CacheKeys.MATERIALS_LOW_STOCK) is None


class TestApp:
    async def test_warm_action(self, manager, seeded):
        response = await app({"action": "warm"}, manager=manager)
        assert response["statusCode"] == 200
        assert response["body"]["summary"]["latest"]["date"] == "2025-05-14"

    async def test_unknown_action(self, manager):
        response = await app({"action": "explode"}, manager=manager)
        assert response["statusCode"] == 400
