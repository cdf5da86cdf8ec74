"""
Data Transfer Objects (DTOs) for the pipeline.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from shared.utils.types import JobStatus


@dataclass(frozen=True)
class DomainEvent:
    """
    A named, timestamped fact published once and fanned out to listeners.

    Attributes:
        name (str): Dotted event name, e.g. "quote.sent".
        version (str): Payload schema version.
        timestamp (datetime): When the fact happened (aware UTC).
        payload (Dict[str, Any]): Opaque JSON payload.
        correlation_id (Optional[str]): Request or workflow id tying events together.
    """

    name: str
    version: str
    timestamp: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def clone(self) -> "DomainEvent":
        """Copy with a private payload so a listener can't mutate what others see."""
        return DomainEvent(
            name=self.name,
            version=self.version,
            timestamp=self.timestamp,
            payload=copy.deepcopy(self.payload),
            correlation_id=self.correlation_id,
        )


@dataclass
class Job:
    """
    In-memory view of a queued job.

    Attributes:
        id (str): Job id; the JobRecord id when the job is persisted.
        type (str): Registered job type.
        payload (Dict[str, Any]): Handler-specific payload.
        attempts (int): Failed attempts so far.
        max_attempts (int): Attempts allowed before the job is terminal.
        enqueued_at (datetime): First enqueue time.
        scheduled_for (Optional[datetime]): Earliest time the job may run.
        persisted (bool): Whether a JobRecord backs this job.
        status (JobStatus): Current lifecycle state.
        last_error (Optional[str]): Message from the most recent failure.
    """

    id: str
    type: str
    payload: Dict[str, Any]
    attempts: int = 0
    max_attempts: int = 3
    enqueued_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    persisted: bool = False
    status: JobStatus = JobStatus.PENDING
    last_error: Optional[str] = None


@dataclass
class CacheEntry:
    """Expiry fields are monotonic-clock seconds; cached_at is wall time."""

    key: str
    value: Any
    expires_at: float
    stored_at: float
    ttl: float
    cached_at: datetime
    tags: Set[str] = field(default_factory=set)
    etag: str = ""


@dataclass
class CacheResult:
    """
    A cached read with the freshness markers callers surface to clients.

    Attributes:
        value (Any): The cached or freshly loaded value.
        hit (bool): True when served from cache.
        etag (str): Changes every time the entry is repopulated.
        cached_at (datetime): When the value was stored.
        stale (bool): True when served inside the stale-while-revalidate window.
    """

    value: Any
    hit: bool
    etag: str
    cached_at: datetime
    stale: bool = False


@dataclass
class ExportPart:
    """
    One checkpointed batch of an export.

    Attributes:
        offset (int): Rows written before this part.
        rows (int): Rows in this part.
        written_at (str): ISO timestamp of the write.
        file_key (str): Storage key holding the part.
        last_id (int): Highest primary key in the part, the resume cursor.
    """

    offset: int
    rows: int
    written_at: str
    file_key: str
    last_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offset": self.offset,
            "rows": self.rows,
            "writtenAt": self.written_at,
            "fileKey": self.file_key,
            "lastId": self.last_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportPart":
        return cls(
            offset=int(data.get("offset", 0)),
            rows=int(data.get("rows", 0)),
            written_at=data.get("writtenAt", ""),
            file_key=data.get("fileKey", ""),
            last_id=int(data.get("lastId", 0)),
        )


@dataclass
class ExportView:
    """Status view of an export job returned to callers."""

    id: int
    type: str
    status: str
    params: Dict[str, Any]
    attempts: int
    parts: List[Dict[str, Any]] = field(default_factory=list)
    total_rows: int = 0
    result_url: Optional[str] = None
    file_key: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
