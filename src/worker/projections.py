"""
Event listeners that keep derived state in step with domain events.
"""

from typing import Callable, List

from sqlalchemy import select, update

from shared.cache.cache import Cache, CacheTags
from shared.db.database import Database
from shared.db.models import InventoryTransaction, Material
from shared.events.event_bus import EventBus, create_event
from shared.schemas.dto import DomainEvent
from shared.utils.errors import ErrorType, ValidationError
from shared.utils.logger import logger

ANALYTICS_PATTERNS = ("quote.*", "order.*", "change_order.*")
DIRECTIONS = ("in", "out")


class InventoryProjection:
    """
    Applies ``inventory.transaction.recorded`` to the inventory tables.

    Writes the transaction row, moves the material's stock by the signed
    quantity inside the same transaction, then announces the new level.
    A movement that would take stock below zero is rejected.
    """

    def __init__(self, db: Database, bus: EventBus):
        self.db = db
        self.bus = bus

    @staticmethod
    def _parse(payload):
        try:
            material_id = int(payload["materialId"])
            quantity = float(payload["quantity"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                message=f"Invalid inventory transaction payload: {e}",
                error_type=ErrorType.VALUE_ERROR,
            ) from e
        direction = payload.get("direction", "in")
        if direction not in DIRECTIONS or quantity <= 0:
            raise ValidationError(
                message=f"Invalid inventory movement {direction} {quantity}",
                error_type=ErrorType.VALUE_ERROR,
            )
        return material_id, direction, quantity

    async def on_transaction_recorded(self, event: DomainEvent) -> None:
        material_id, direction, quantity = self._parse(event.payload)
        delta = quantity if direction == "in" else -quantity

        async with self.db.session() as session:
            # Relative update, concurrent movements must compose; the guard
            # keeps stock from going negative
            result = await session.execute(
                update(Material)
                .where(Material.id == material_id)
                .where(Material.stock_quantity + delta >= 0)
                .values(stock_quantity=Material.stock_quantity + delta)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = (
                    await session.execute(
                        select(Material.stock_quantity).where(Material.id == material_id)
                    )
                ).scalar_one_or_none()
                if current is None:
                    raise ValidationError(
                        message=f"Material {material_id} not found", status_code=404
                    )
                raise ValidationError(
                    message=(
                        f"Insufficient stock for material {material_id}: "
                        f"{current:g} on hand, {quantity:g} requested"
                    ),
                    error_type=ErrorType.VALUE_ERROR,
                )
            row = (
                await session.execute(
                    select(Material.stock_quantity, Material.reorder_level).where(
                        Material.id == material_id
                    )
                )
            ).one()
            session.add(
                InventoryTransaction(
                    material_id=material_id,
                    direction=direction,
                    quantity=quantity,
                    reason=event.payload.get("reason"),
                    reference=event.payload.get("reference"),
                )
            )
            stock, reorder_level = row

        logger.info(f"Material {material_id} stock moved {delta:+g} to {stock:g}")
        self.bus.publish(
            create_event(
                "material.stock.changed",
                {
                    "materialId": material_id,
                    "delta": delta,
                    "stockQuantity": stock,
                    "lowStock": stock <= (reorder_level or 0),
                },
                correlation_id=event.correlation_id,
            )
        )


def invalidator(cache: Cache, tag: str) -> Callable[[DomainEvent], None]:
    """Synchronous listener dropping every cache entry carrying a tag."""

    def invalidate(event: DomainEvent) -> None:
        removed = cache.invalidate_tag(tag)
        logger.debug(f"{event.name} invalidated {removed} {tag} cache entries")

    invalidate.__name__ = f"invalidate_{tag}"
    return invalidate


def register_projections(
    bus: EventBus, db: Database, cache: Cache
) -> List[Callable[[], None]]:
    """
    Wire the built-in projections onto a bus.

    Returns:
        Unsubscribe callables, one per registration
    """
    inventory = InventoryProjection(db, bus)
    unsubscribers = [
        bus.on_event("inventory.transaction.recorded", inventory.on_transaction_recorded)
    ]

    materials = invalidator(cache, CacheTags.MATERIALS)
    analytics = invalidator(cache, CacheTags.ANALYTICS)
    # material.stock.changed also matches material.*, one listener is enough
    unsubscribers.append(bus.on_event("material.*", materials))
    for pattern in ANALYTICS_PATTERNS:
        unsubscribers.append(bus.on_event(pattern, analytics))
    return unsubscribers
