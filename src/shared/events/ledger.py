"""
Append-only durable record of domain events.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select

from shared.db.database import Database
from shared.db.models import EventLog
from shared.schemas.dto import DomainEvent
from shared.utils.helpers import ensure_utc, to_jsonable


class EventLedger:
    """
    Event ledger backed by the ``event_logs`` table.

    Rows are only ever inserted. Reads filter on a name (exact or prefix)
    and a half-open ``[start, end)`` timestamp window.
    """

    def __init__(self, db: Database):
        self.db = db

    async def append(self, event: DomainEvent) -> int:
        """
        Persist one event.

        Args:
            event: The published event

        Returns:
            The auto-assigned ledger id

        Raises:
            DatabaseError: If the insert fails
        """
        async with self.db.session() as session:
            record = EventLog(
                name=event.name,
                version=event.version,
                timestamp=ensure_utc(event.timestamp),
                payload=to_jsonable(event.payload or {}),
                correlation_id=event.correlation_id,
            )
            session.add(record)
            await session.flush()
            return record.id

    @staticmethod
    def _window(stmt, start: Optional[datetime], end: Optional[datetime]):
        if start is not None:
            stmt = stmt.where(EventLog.timestamp >= ensure_utc(start))
        if end is not None:
            stmt = stmt.where(EventLog.timestamp < ensure_utc(end))
        return stmt

    async def query(
        self,
        prefix: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[EventLog]:
        """
        Events whose name starts with prefix, inside [start, end), oldest first.
        """
        stmt = select(EventLog)
        if prefix:
            stmt = stmt.where(EventLog.name.startswith(prefix, autoescape=True))
        stmt = self._window(stmt, start, end).order_by(
            EventLog.timestamp, EventLog.id
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(
        self, name: str, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> int:
        """Exact-name count inside [start, end)."""
        stmt = self._window(
            select(func.count(EventLog.id)).where(EventLog.name == name), start, end
        )
        async with self.db.session() as session:
            return int((await session.execute(stmt)).scalar() or 0)

    async def count_by_name(
        self,
        names: Iterable[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Counts for several exact names in one grouped query, 0 for absent names."""
        names = list(names)
        stmt = self._window(
            select(EventLog.name, func.count(EventLog.id))
            .where(EventLog.name.in_(names))
            .group_by(EventLog.name),
            start,
            end,
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).all()
        counts = {name: 0 for name in names}
        counts.update({name: int(total) for name, total in rows})
        return counts

    async def payloads(
        self, name: str, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[dict]:
        stmt = self._window(
            select(EventLog.payload).where(EventLog.name == name), start, end
        ).order_by(EventLog.timestamp, EventLog.id)
        async with self.db.session() as session:
            return [row[0] or {} for row in (await session.execute(stmt)).all()]
