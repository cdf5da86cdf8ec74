"""
Durable record of queued, running and finished jobs.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update

from shared.db.database import Database
from shared.db.models import JobRecord
from shared.utils.helpers import ensure_utc, to_jsonable, utcnow
from shared.utils.logger import logger
from shared.utils.types import JobStatus

# Error text stored on a record is capped to keep rows small
MAX_ERROR_LENGTH = 2000


class JobStore:
    """
    JobRecord persistence used for crash recovery and audit.

    Records are never deleted. The ``pending -> running`` transition is a
    conditional UPDATE so only one executor can claim a record.
    """

    def __init__(self, db: Database):
        self.db = db

    async def create(
        self,
        job_type: str,
        payload: Dict[str, Any],
        max_attempts: int,
        scheduled_for: Optional[datetime] = None,
    ) -> JobRecord:
        async with self.db.session() as session:
            record = JobRecord(
                type=job_type,
                payload=to_jsonable(payload or {}),
                status=JobStatus.PENDING.value,
                attempts=0,
                max_attempts=max_attempts,
                enqueued_at=utcnow(),
                scheduled_for=ensure_utc(scheduled_for),
            )
            session.add(record)
            await session.flush()
            return record

    async def claim(self, record_id: int) -> bool:
        """
        Mark a pending record running.

        Returns:
            True if this caller won the transition, False if the record was
            not pending (already running, finished or missing)
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(JobRecord)
                .where(JobRecord.id == record_id)
                .where(JobRecord.status == JobStatus.PENDING.value)
                .values(status=JobStatus.RUNNING.value, started_at=utcnow())
            )
            return result.rowcount == 1

    async def complete(self, record_id: int) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(JobRecord)
                .where(JobRecord.id == record_id)
                .values(
                    status=JobStatus.COMPLETED.value,
                    finished_at=utcnow(),
                    last_error=None,
                )
            )

    async def fail(
        self,
        record_id: int,
        attempts: int,
        error: str,
        terminal: bool,
        scheduled_for: Optional[datetime] = None,
    ) -> None:
        """
        Record a failed attempt.

        Args:
            record_id: JobRecord id
            attempts: Attempt count after this failure
            error: Error message
            terminal: True when no attempts remain
            scheduled_for: When the retry is due (non-terminal only)
        """
        values = {
            "attempts": attempts,
            "last_error": (error or "")[:MAX_ERROR_LENGTH],
        }
        if terminal:
            values.update(status=JobStatus.FAILED.value, finished_at=utcnow())
        else:
            values.update(
                status=JobStatus.PENDING.value, scheduled_for=ensure_utc(scheduled_for)
            )
        async with self.db.session() as session:
            await session.execute(
                update(JobRecord).where(JobRecord.id == record_id).values(**values)
            )

    async def load_unfinished(self) -> List[JobRecord]:
        """
        Every pending or running record, oldest first.

        Running records belong to a previous process that stopped mid-run;
        they are reset to pending so they can be claimed again.
        """
        async with self.db.session() as session:
            reset = await session.execute(
                update(JobRecord)
                .where(JobRecord.status == JobStatus.RUNNING.value)
                .values(status=JobStatus.PENDING.value)
            )
            if reset.rowcount:
                logger.warning(f"Reset {reset.rowcount} interrupted job records to pending")

            result = await session.execute(
                select(JobRecord)
                .where(JobRecord.status == JobStatus.PENDING.value)
                .order_by(JobRecord.enqueued_at, JobRecord.id)
            )
            return list(result.scalars().all())

    async def get(self, record_id: int) -> Optional[JobRecord]:
        async with self.db.session() as session:
            return await session.get(JobRecord, record_id)

    async def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[JobRecord]:
        """Most recent records first, optionally filtered by status and type."""
        stmt = select(JobRecord)
        if status:
            stmt = stmt.where(JobRecord.status == status)
        if job_type:
            stmt = stmt.where(JobRecord.type == job_type)
        stmt = stmt.order_by(JobRecord.enqueued_at.desc(), JobRecord.id.desc()).limit(
            limit
        )
        async with self.db.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def oldest_pending_age(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds since the oldest pending record was enqueued, None when none are."""
        async with self.db.session() as session:
            oldest = (
                await session.execute(
                    select(func.min(JobRecord.enqueued_at)).where(
                        JobRecord.status == JobStatus.PENDING.value
                    )
                )
            ).scalar()
        if oldest is None:
            return None
        now = ensure_utc(now) if now else utcnow()
        return max(0.0, (now - ensure_utc(oldest)).total_seconds())
