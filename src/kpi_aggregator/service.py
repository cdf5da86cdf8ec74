"""
Service for materializing per-day KPI snapshots from the event ledger.
"""

from datetime import date, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError

from shared.cache.cache import Cache, CacheTags
from shared.db.database import Database
from shared.db.models import InventoryTransaction, KpiDailySnapshot
from shared.events.ledger import EventLedger
from shared.utils.errors import DatabaseError, ErrorType, ValidationError
from shared.utils.helpers import day_window, parse_date, parse_datetime, yesterday_utc
from shared.utils.logger import logger

QUOTE_SENT = "quote.sent"
QUOTE_ACCEPTED = "quote.accepted"
ORDER_CREATED = "order.created"
ORDER_DELIVERED = "order.delivered"
TRACKED_EVENTS = (QUOTE_SENT, QUOTE_ACCEPTED, ORDER_CREATED, ORDER_DELIVERED)

MAX_BACKFILL_DAYS = 366
SECONDS_PER_DAY = 86400.0


def conversion_rate(sent: int, accepted: int) -> float:
    """accepted / sent clamped to [0, 1]; 0 when nothing was sent."""
    if not sent or sent <= 0:
        return 0.0
    return max(0.0, min(1.0, accepted / sent))


def average_cycle_days(payloads: Iterable[Dict[str, Any]]) -> Optional[float]:
    """
    Mean days between createdAt and deliveredAt across delivered-order payloads.

    Payloads missing either timestamp, or with delivery before creation, are
    ignored. Returns None when no payload qualifies.
    """
    durations = []
    for payload in payloads:
        created = parse_datetime((payload or {}).get("createdAt"))
        delivered = parse_datetime((payload or {}).get("deliveredAt"))
        if created is None or delivered is None or delivered < created:
            continue
        durations.append((delivered - created).total_seconds() / SECONDS_PER_DAY)
    if not durations:
        return None
    return round(sum(durations) / len(durations), 4)


class KpiAggregator:
    """
    Aggregates one UTC day of ledger events into a KpiDailySnapshot.

    Re-running a day overwrites its snapshot, so the job is safe to retry
    and to re-execute after crash recovery.
    """

    def __init__(
        self, db: Database, ledger: EventLedger, cache: Optional[Cache] = None
    ):
        self.db = db
        self.ledger = ledger
        self.cache = cache

    async def aggregate_day(self, day: Any = None) -> Dict[str, Any]:
        """
        Compute and upsert the snapshot for a day.

        Args:
            day: date or YYYY-MM-DD string, defaults to yesterday (UTC)

        Returns:
            The snapshot as a dictionary

        Raises:
            ValidationError: If the day can't be parsed
            DatabaseError: If reading the ledger or writing the snapshot fails
        """
        target = parse_date(day, "day") if day else yesterday_utc()
        start, end = day_window(target)

        counts = await self.ledger.count_by_name(TRACKED_EVENTS, start, end)
        delivered_payloads = await self.ledger.payloads(ORDER_DELIVERED, start, end)

        values = {
            "quotes_sent": counts[QUOTE_SENT],
            "quotes_accepted": counts[QUOTE_ACCEPTED],
            "quote_conversion_rate": conversion_rate(
                counts[QUOTE_SENT], counts[QUOTE_ACCEPTED]
            ),
            "orders_created": counts[ORDER_CREATED],
            "orders_delivered": counts[ORDER_DELIVERED],
            "avg_order_cycle_days": average_cycle_days(delivered_payloads),
            "inventory_net_change": await self._inventory_net_change(start, end),
        }

        snapshot = await self._upsert(target, values)
        logger.info(
            f"KPI snapshot for {target.isoformat()}: sent={values['quotes_sent']} "
            f"accepted={values['quotes_accepted']} delivered={values['orders_delivered']}"
        )

        if self.cache is not None:
            self.cache.invalidate_tag(CacheTags.ANALYTICS)
        return snapshot.to_dict()

    async def _inventory_net_change(self, start, end) -> float:
        signed = case(
            (InventoryTransaction.direction == "in", InventoryTransaction.quantity),
            else_=-InventoryTransaction.quantity,
        )
        async with self.db.session() as session:
            total = (
                await session.execute(
                    select(func.coalesce(func.sum(signed), 0.0))
                    .where(InventoryTransaction.created_at >= start)
                    .where(InventoryTransaction.created_at < end)
                )
            ).scalar()
        return float(total or 0.0)

    async def _upsert(self, day: date, values: Dict[str, Any]) -> KpiDailySnapshot:
        try:
            return await self._write_snapshot(day, values)
        except DatabaseError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            # Another run inserted the day between our read and insert
            logger.warning(f"Snapshot for {day} inserted concurrently, updating instead")
            return await self._write_snapshot(day, values)

    async def _write_snapshot(
        self, day: date, values: Dict[str, Any]
    ) -> KpiDailySnapshot:
        async with self.db.session() as session:
            snapshot = (
                await session.execute(
                    select(KpiDailySnapshot).where(KpiDailySnapshot.date == day)
                )
            ).scalar_one_or_none()
            if snapshot is None:
                snapshot = KpiDailySnapshot(date=day, **values)
                session.add(snapshot)
            else:
                for field, value in values.items():
                    setattr(snapshot, field, value)
            await session.flush()
            return snapshot

    async def get_snapshot(self, day: Any) -> Optional[Dict[str, Any]]:
        target = parse_date(day, "day")
        async with self.db.session() as session:
            snapshot = (
                await session.execute(
                    select(KpiDailySnapshot).where(KpiDailySnapshot.date == target)
                )
            ).scalar_one_or_none()
        return snapshot.to_dict() if snapshot else None

    async def backfill(self, start: Any, end: Any) -> Dict[str, Any]:
        """
        Re-run aggregation for every day in [start, end], one day at a time.

        A failing day is recorded and the run moves on to the next one.

        Args:
            start: First day (inclusive)
            end: Last day (inclusive)

        Returns:
            Dictionary with per-day results plus succeeded/failed counts

        Raises:
            ValidationError: If the range is inverted or too long
        """
        start_day = parse_date(start, "start")
        end_day = parse_date(end, "end")
        if end_day < start_day:
            raise ValidationError(
                message=f"Backfill end {end_day} is before start {start_day}",
                error_type=ErrorType.VALUE_ERROR,
            )
        span = (end_day - start_day).days + 1
        if span > MAX_BACKFILL_DAYS:
            raise ValidationError(
                message=f"Backfill range of {span} days exceeds {MAX_BACKFILL_DAYS}",
                error_type=ErrorType.VALUE_ERROR,
            )

        results: Dict[str, Any] = {}
        succeeded = failed = 0
        for offset in range(span):
            day = start_day + timedelta(days=offset)
            key = day.isoformat()
            try:
                results[key] = await self.aggregate_day(day)
                succeeded += 1
            except Exception as e:
                logger.error(f"Backfill failed for {key}: {e}")
                results[key] = {"error": getattr(e, "message", str(e))}
                failed += 1
            logger.info(f"Backfill progress {offset + 1}/{span} ({key})")

        return {"days": results, "succeeded": succeeded, "failed": failed}
