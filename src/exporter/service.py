"""
Service for generating batched, checkpointed exports.

Rows are read in primary-key order, ``batch_limit`` at a time. Every batch
is written as its own part object and recorded on the ExportJob before the
next batch is read, so a crash or a failed run resumes after the last part
instead of starting over.
"""

import csv
import gzip
import io
import json
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select

from shared.db.database import Database
from shared.db.models import ExportJob, Invoice, Material, Order, Project
from shared.events.event_bus import EventBus, create_event
from shared.jobs.job_queue import JobQueue
from shared.schemas.dto import ExportPart, ExportView
from shared.services.storage import ExportStorage
from shared.utils.configs import export_configs
from shared.utils.errors import ErrorType, ExportError, ValidationError
from shared.utils.helpers import PipelineJSONEncoder, ensure_utc, utcnow
from shared.utils.logger import logger
from shared.utils.metrics import Metrics
from shared.utils.types import ExportStatus

JOB_TYPE = "export.generate"

FORMATS = ("csv", "jsonl")
COMPRESSIONS = ("none", "gzip")

CONTENT_TYPES = {
    "csv": "text/csv",
    "jsonl": "application/x-ndjson",
    "gzip": "application/gzip",
}


@dataclass(frozen=True)
class ExportDefinition:
    """Which table an export type reads and which columns it writes."""

    model: Any
    columns: Tuple[str, ...]


EXPORT_TYPES: Dict[str, ExportDefinition] = {
    "materials_csv": ExportDefinition(
        Material,
        (
            "id",
            "name",
            "sku",
            "category",
            "unit",
            "unit_cost",
            "stock_quantity",
            "reorder_level",
            "is_active",
            "created_at",
        ),
    ),
    "orders_csv": ExportDefinition(
        Order,
        (
            "id",
            "order_number",
            "customer_name",
            "status",
            "total",
            "created_at",
            "delivered_at",
        ),
    ),
    "projects_csv": ExportDefinition(
        Project,
        (
            "id",
            "name",
            "client_name",
            "status",
            "budget",
            "start_date",
            "end_date",
            "created_at",
        ),
    ),
    "invoices_csv": ExportDefinition(
        Invoice,
        (
            "id",
            "project_id",
            "number",
            "date",
            "due_date",
            "subtotal",
            "tax",
            "total",
            "status",
            "sent_at",
            "paid_at",
            "created_at",
        ),
    ),
}


def part_key(export_type: str, export_id: int, index: int, extension: str) -> str:
    """Deterministic object key, e.g. materials_csv/12/part-00001.csv"""
    return f"{export_type}/{export_id}/part-{index:05d}.{extension}"


def manifest_key(export_type: str, export_id: int) -> str:
    return f"{export_type}/{export_id}/manifest.json"


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def encode_rows(
    columns: Tuple[str, ...],
    rows: List[Dict[str, Any]],
    fmt: str = "csv",
    header: bool = True,
    compression: str = "none",
) -> bytes:
    """
    Serialize one batch.

    Args:
        columns: Column order
        rows: Row dictionaries
        fmt: "csv" or "jsonl"
        header: Write the CSV header row (first part only)
        compression: "none" or "gzip"
    """
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        if header:
            writer.writerow(columns)
        for row in rows:
            writer.writerow([_cell(row.get(column)) for column in columns])
        data = buffer.getvalue().encode("utf-8")
    else:
        data = "".join(
            json.dumps({c: row.get(c) for c in columns}, cls=PipelineJSONEncoder) + "\n"
            for row in rows
        ).encode("utf-8")

    if compression == "gzip":
        # mtime=0 keeps a rewritten part byte-identical
        data = gzip.compress(data, mtime=0)
    return data


def validate_params(export_type: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate export type and options, applying defaults.

    Raises:
        ValidationError: For an unknown type, format or compression
    """
    if export_type not in EXPORT_TYPES:
        raise ValidationError(
            message=f"Unknown export type {export_type}; expected one of "
            f"{', '.join(sorted(EXPORT_TYPES))}",
            error_type=ErrorType.VALIDATION_ERROR,
        )
    params = dict(params or {})
    fmt = params.setdefault("format", "csv")
    compression = params.setdefault("compression", "none")
    if fmt not in FORMATS:
        raise ValidationError(message=f"Unsupported export format {fmt}")
    if compression not in COMPRESSIONS:
        raise ValidationError(message=f"Unsupported export compression {compression}")
    return params


def to_view(record: ExportJob) -> ExportView:
    parts = list(record.parts or [])
    return ExportView(
        id=record.id,
        type=record.type,
        status=record.status,
        params=dict(record.params or {}),
        attempts=record.attempts or 0,
        parts=parts,
        total_rows=sum(int(p.get("rows", 0)) for p in parts),
        result_url=record.result_url,
        file_key=record.file_key,
        error_message=record.error_message,
        started_at=ensure_utc(record.started_at),
        completed_at=ensure_utc(record.completed_at),
    )


class ExportProcessor:
    """
    Creates export jobs and runs them batch by batch.

    Attributes:
        db (Database): Row store holding ExportJob and the exported tables.
        storage (ExportStorage): Where parts and manifests are written.
        bus (EventBus): Receives export.started/completed/failed.
        queue (JobQueue): Used by create_export to schedule the run.
        batch_limit (int): Rows per part.
    """

    def __init__(
        self,
        db: Database,
        storage: ExportStorage,
        bus: Optional[EventBus] = None,
        queue: Optional[JobQueue] = None,
        metrics: Optional[Metrics] = None,
        batch_limit: Optional[int] = None,
    ):
        self.db = db
        self.storage = storage
        self.bus = bus
        self.queue = queue
        self.metrics = metrics
        self.batch_limit = max(1, batch_limit or export_configs["batch_limit"])

    def _publish(self, name: str, payload: Dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.publish(create_event(name, payload))

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    async def create_export(
        self, export_type: str, params: Optional[Dict[str, Any]] = None
    ) -> ExportView:
        """
        Persist a pending export and schedule it.

        Raises:
            ValidationError: For unknown types or options
        """
        params = validate_params(export_type, params)
        async with self.db.session() as session:
            record = ExportJob(
                type=export_type,
                status=ExportStatus.PENDING.value,
                params=params,
                parts=[],
                attempts=0,
            )
            session.add(record)
            await session.flush()
            view = to_view(record)

        if self.queue is not None:
            await self.queue.enqueue(
                JOB_TYPE,
                {"exportJobId": view.id},
                max_attempts=export_configs["max_attempts"],
            )
        self._publish(
            "export.started", {"exportJobId": view.id, "type": export_type, "params": params}
        )
        logger.info(f"Created export {view.id} ({export_type})")
        return view

    async def get_export(self, export_id: int) -> Optional[ExportView]:
        async with self.db.session() as session:
            record = await session.get(ExportJob, int(export_id))
            return to_view(record) if record else None

    # ------------------------------------------------------------------
    # Job body
    # ------------------------------------------------------------------

    async def _start_run(self, export_id: int) -> Optional[ExportJob]:
        async with self.db.session() as session:
            record = await session.get(ExportJob, export_id)
            if record is None:
                raise ExportError(
                    message=f"Export job {export_id} not found", status_code=404
                )
            if record.status == ExportStatus.COMPLETED.value:
                return None
            record.status = ExportStatus.PROCESSING.value
            record.attempts = (record.attempts or 0) + 1
            record.error_message = None
            record.started_at = record.started_at or utcnow()
            await session.flush()
            return record

    async def _fetch_batch(
        self, definition: ExportDefinition, after_id: int
    ) -> List[Dict[str, Any]]:
        model = definition.model
        stmt = (
            select(*[getattr(model, column) for column in definition.columns])
            .where(model.id > after_id)
            .order_by(model.id)
            .limit(self.batch_limit)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [dict(row._mapping) for row in result.all()]

    async def _checkpoint(self, export_id: int, parts: List[ExportPart]) -> None:
        async with self.db.session() as session:
            record = await session.get(ExportJob, export_id)
            record.parts = [part.to_dict() for part in parts]
            record.total_rows = sum(part.rows for part in parts)
            record.status = ExportStatus.PARTIAL.value

    async def process(self, export_id: int) -> ExportView:
        """
        Run (or resume) an export until every row is written.

        A completed export is left untouched. On failure the job is marked
        failed, export.failed is published and the error is re-raised so the
        job queue can retry; the retry resumes after the last written part.

        Raises:
            ExportError: If any batch, part write or the manifest fails
        """
        export_id = int(export_id)
        record = await self._start_run(export_id)
        if record is None:
            logger.info(f"Export {export_id} already completed, nothing to do")
            return await self.get_export(export_id)

        export_type = record.type
        definition = EXPORT_TYPES.get(export_type)
        params = dict(record.params or {})
        fmt = params.get("format", "csv")
        compression = params.get("compression", "none")
        extension = fmt + (".gz" if compression == "gzip" else "")
        content_type = CONTENT_TYPES["gzip" if compression == "gzip" else fmt]

        parts = [ExportPart.from_dict(p) for p in (record.parts or [])]
        written = sum(part.rows for part in parts)
        last_id = parts[-1].last_id if parts else 0
        if parts:
            logger.info(
                f"Resuming export {export_id} after {len(parts)} parts ({written} rows)"
            )

        started = time.perf_counter()
        try:
            if definition is None:
                raise ValidationError(message=f"Unknown export type {export_type}")

            while True:
                rows = await self._fetch_batch(definition, last_id)
                if not rows:
                    break

                index = len(parts) + 1
                key = part_key(export_type, export_id, index, extension)
                data = encode_rows(
                    definition.columns, rows, fmt, header=index == 1, compression=compression
                )
                await self.storage.put(key, data, content_type)

                part = ExportPart(
                    offset=written,
                    rows=len(rows),
                    written_at=utcnow().isoformat(),
                    file_key=key,
                    last_id=int(rows[-1]["id"]),
                )
                parts.append(part)
                written += part.rows
                last_id = part.last_id
                await self._checkpoint(export_id, parts)

                if self.metrics is not None:
                    self.metrics.export_rows_total.labels(type=export_type).inc(part.rows)
                logger.info(
                    f"Export {export_id}: wrote part {index} ({part.rows} rows, "
                    f"{written} total)"
                )

                if len(rows) < self.batch_limit:
                    break

            view = await self._complete(export_id, export_type, params, parts, written)
        except Exception as e:
            await self._fail(export_id, export_type, e, time.perf_counter() - started)
            if isinstance(e, ExportError):
                raise
            raise ExportError(
                message=f"Export {export_id} failed: {getattr(e, 'message', str(e))}"
            ) from e

        elapsed = time.perf_counter() - started
        if self.metrics is not None:
            self.metrics.export_duration_seconds.labels(
                type=export_type, outcome="success"
            ).observe(elapsed)
            self.metrics.exports_total.labels(outcome="completed").inc()
        self._publish(
            "export.completed",
            {
                "exportJobId": export_id,
                "type": export_type,
                "rows": written,
                "parts": len(parts),
                "fileKey": view.file_key,
                "resultUrl": view.result_url,
            },
        )
        logger.info(
            f"Export {export_id} completed: {written} rows in {len(parts)} parts "
            f"({elapsed:.2f}s)"
        )
        return view

    async def _complete(
        self,
        export_id: int,
        export_type: str,
        params: Dict[str, Any],
        parts: List[ExportPart],
        written: int,
    ) -> ExportView:
        key = manifest_key(export_type, export_id)
        manifest = {
            "exportJobId": export_id,
            "type": export_type,
            "format": params.get("format", "csv"),
            "compression": params.get("compression", "none"),
            "rows": written,
            "parts": [part.to_dict() for part in parts],
            "generatedAt": utcnow().isoformat(),
        }
        await self.storage.put(
            key, json.dumps(manifest, indent=2).encode("utf-8"), "application/json"
        )
        result_url = await self.storage.url_for(key)

        async with self.db.session() as session:
            record = await session.get(ExportJob, export_id)
            record.parts = [part.to_dict() for part in parts]
            record.total_rows = written
            record.status = ExportStatus.COMPLETED.value
            record.file_key = key
            record.result_url = result_url
            record.completed_at = utcnow()
            record.error_message = None
            await session.flush()
            return to_view(record)

    async def _fail(
        self, export_id: int, export_type: str, error: Exception, elapsed: float
    ) -> None:
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        logger.error(f"Export {export_id} failed: {message}")
        attempts = None
        try:
            async with self.db.session() as session:
                record = await session.get(ExportJob, export_id)
                if record is not None:
                    record.status = ExportStatus.FAILED.value
                    record.error_message = message[:2000]
                    attempts = record.attempts
        except Exception as e:
            logger.error(f"Could not mark export {export_id} failed: {e}")

        if self.metrics is not None:
            self.metrics.export_duration_seconds.labels(
                type=export_type, outcome="error"
            ).observe(elapsed)
            self.metrics.exports_total.labels(outcome="failed").inc()
        self._publish(
            "export.failed",
            {
                "exportJobId": export_id,
                "type": export_type,
                "error": message,
                "attempts": attempts,
            },
        )
