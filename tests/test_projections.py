"""
Tests for the inventory projection and cache invalidation listeners.
"""

import pytest
from sqlalchemy import select

from shared.cache.cache import CacheTags
from shared.db.models import InventoryTransaction, Material
from shared.events.event_bus import create_event
from shared.utils.errors import ValidationError
from worker.projections import InventoryProjection, invalidator


@pytest.fixture
def projection(db, bus):
    return InventoryProjection(db, bus)


class TestInventoryProjection:
    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"materialId": "abc", "quantity": 1},
            {"materialId": 1, "quantity": 0},
            {"materialId": 1, "quantity": 2, "direction": "sideways"},
        ],
    )
    async def test_rejects_bad_payloads(self, projection, payload):
        with pytest.raises(ValidationError):
            await projection.on_transaction_recorded(
                create_event("inventory.transaction.recorded", payload)
            )

    async def test_unknown_material_is_404(self, projection):
        with pytest.raises(ValidationError) as exc_info:
            await projection.on_transaction_recorded(
                create_event(
                    "inventory.transaction.recorded", {"materialId": 999, "quantity": 1}
                )
            )
        assert exc_info.value.status_code == 404

    async def test_stock_in_announces_level(self, db, bus, projection):
        async with db.session() as session:
            material = Material(name="Studs", stock_quantity=2, reorder_level=5)
            session.add(material)
            await session.flush()
            material_id = material.id
        changes = []
        bus.on_event("material.stock.changed", lambda e: changes.append(e.payload))

        await projection.on_transaction_recorded(
            create_event(
                "inventory.transaction.recorded",
                {"materialId": material_id, "quantity": 10, "direction": "in"},
                correlation_id="req-1",
            )
        )
        await bus.drain()

        assert changes == [
            {
                "materialId": material_id,
                "delta": 10.0,
                "stockQuantity": 12,
                "lowStock": False,
            }
        ]

    async def test_out_movement_cannot_drive_stock_negative(self, db, bus, projection):
        async with db.session() as session:
            material = Material(name="Studs", stock_quantity=2, reorder_level=5)
            session.add(material)
            await session.flush()
            material_id = material.id
        changes = []
        bus.on_event("material.stock.changed", lambda e: changes.append(e.payload))

        with pytest.raises(ValidationError) as exc_info:
            await projection.on_transaction_recorded(
                create_event(
                    "inventory.transaction.recorded",
                    {"materialId": material_id, "quantity": 5, "direction": "out"},
                )
            )
        await bus.drain()

        assert exc_info.value.status_code == 400
        assert "Insufficient stock" in exc_info.value.message
        assert changes == []
        async with db.session() as session:
            assert (await session.get(Material, material_id)).stock_quantity == 2
            transactions = (await session.execute(select(InventoryTransaction))).scalars()
            assert transactions.all() == []

    async def test_out_movement_may_empty_stock(self, db, projection):
        async with db.session() as session:
            material = Material(name="Studs", stock_quantity=2, reorder_level=5)
            session.add(material)
            await session.flush()
            material_id = material.id

        await projection.on_transaction_recorded(
            create_event(
                "inventory.transaction.recorded",
                {"materialId": material_id, "quantity": 2, "direction": "out"},
            )
        )

        async with db.session() as session:
            assert (await session.get(Material, material_id)).stock_quantity == 0


class TestInvalidator:
    async def test_drops_tagged_entries(self, cache):
        await cache.set("a", 1, ttl_ms=60000, tags=[CacheTags.MATERIALS])
        listener = invalidator(cache, CacheTags.MATERIALS)

        listener(create_event("material.updated"))

        assert await cache.get("a") is None
