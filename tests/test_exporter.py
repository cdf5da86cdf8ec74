"""
Tests for batched, checkpointed exports.
"""

import csv
import gzip
import io
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from exporter.app import app, make_handler
from exporter.service import JOB_TYPE, ExportProcessor, encode_rows, part_key
from shared.db.models import Invoice, Material, Project
from shared.services.local_storage import LocalStorage
from shared.utils.errors import ExportError, StorageError, ValidationError
from shared.utils.types import ExportStatus


class FlakyStorage(LocalStorage):
    """Local storage whose Nth put fails once."""

    def __init__(self, base_dir, fail_on):
        super().__init__(base_dir)
        self.fail_on = fail_on
        self.puts = []

    async def put(self, key, data, content_type):
        self.puts.append(key)
        if len(self.puts) == self.fail_on:
            raise StorageError(message="disk full", status_code=500)
        return await super().put(key, data, content_type)


@pytest.fixture
async def materials(db):
    async with db.session() as session:
        session.add_all(
            [
                Material(
                    name=f"Material {i}",
                    sku=f"SKU-{i}",
                    category="lumber" if i % 2 else "steel",
                    stock_quantity=i,
                    reorder_level=1,
                )
                for i in range(1, 6)
            ]
        )


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "exports")


@pytest.fixture
def events(bus):
    seen = []
    bus.on_event("export.*", lambda e: seen.append((e.name, e.payload)))
    return seen


@pytest.fixture
def processor(db, storage, bus, metrics):
    return ExportProcessor(db, storage, bus=bus, metrics=metrics, batch_limit=2)


def read_csv(storage, key):
    return list(csv.reader(io.StringIO((storage.base_dir / key).read_text())))


class TestEncodeRows:
    def test_csv_header_only_when_requested(self):
        rows = [{"id": 1, "name": "a"}]
        assert encode_rows(("id", "name"), rows) == b"id,name\n1,a\n"
        assert encode_rows(("id", "name"), rows, header=False) == b"1,a\n"

    def test_jsonl(self):
        data = encode_rows(("id",), [{"id": 1}, {"id": 2}], fmt="jsonl")
        assert [json.loads(line) for line in data.decode().splitlines()] == [
            {"id": 1},
            {"id": 2},
        ]

    def test_gzip_is_deterministic(self):
        rows = [{"id": 1}]
        first = encode_rows(("id",), rows, compression="gzip")
        assert first == encode_rows(("id",), rows, compression="gzip")
        assert gzip.decompress(first) == b"id\n1\n"


class TestProcess:
    async def test_five_rows_in_batches_of_two(
        self, processor, storage, materials, events, bus, metrics
    ):
        created = await processor.create_export("materials_csv")
        view = await processor.process(created.id)
        await bus.drain()

        assert view.status == ExportStatus.COMPLETED.value
        assert [p["rows"] for p in view.parts] == [2, 2, 1]
        assert [p["offset"] for p in view.parts] == [0, 2, 4]
        assert view.total_rows == 5
        assert view.file_key == f"materials_csv/{created.id}/manifest.json"
        assert view.result_url.startswith("file://")
        assert view.attempts == 1

        first = read_csv(storage, part_key("materials_csv", created.id, 1, "csv"))
        second = read_csv(storage, part_key("materials_csv", created.id, 2, "csv"))
        assert first[0][0] == "id" and len(first) == 3
        assert second[0][0] != "id" and len(second) == 2

        manifest = json.loads((storage.base_dir / view.file_key).read_text())
        assert manifest["rows"] == 5 and len(manifest["parts"]) == 3

        assert [name for name, _ in events] == ["export.started", "export.completed"]
        assert events[1][1]["rows"] == 5
        assert metrics.value("export_rows_total", type="materials_csv") == 5

    async def test_exact_multiple_of_batch_size(self, db, processor):
        async with db.session() as session:
            session.add_all([Material(name=f"M{i}") for i in range(4)])
        created = await processor.create_export("materials_csv")
        view = await processor.process(created.id)
        assert [p["rows"] for p in view.parts] == [2, 2]

    async def test_invoices_export_writes_invoice_columns(self, db, processor, storage):
        async with db.session() as session:
            project = Project(name="Kitchen refit", client_name="Acme")
            session.add(project)
            await session.flush()
            session.add(
                Invoice(
                    project_id=project.id,
                    number="INV-0001",
                    date=datetime(2026, 3, 1, tzinfo=timezone.utc),
                    due_date=datetime(2026, 3, 31, tzinfo=timezone.utc),
                    subtotal=100.0,
                    tax=20.0,
                    total=120.0,
                    status="sent",
                )
            )

        created = await processor.create_export("invoices_csv")
        view = await processor.process(created.id)

        assert view.status == ExportStatus.COMPLETED.value
        rows = read_csv(storage, part_key("invoices_csv", created.id, 1, "csv"))
        header, row = rows
        assert header[:3] == ["id", "project_id", "number"]
        record = dict(zip(header, row))
        assert record["number"] == "INV-0001"
        assert record["total"] == "120.0"
        assert record["status"] == "sent"
        assert record["paid_at"] == ""

    async def test_empty_table_completes_without_parts(self, processor):
        created = await processor.create_export("orders_csv")
        view = await processor.process(created.id)
        assert view.status == ExportStatus.COMPLETED.value
        assert view.parts == [] and view.total_rows == 0

    async def test_failure_marks_export_failed(self, db, tmp_path, bus, materials, events):
        storage = FlakyStorage(tmp_path / "exports", fail_on=2)
        processor = ExportProcessor(db, storage, bus=bus, batch_limit=2)
        created = await processor.create_export("materials_csv")

        with pytest.raises(ExportError):
            await processor.process(created.id)
        await bus.drain()

        view = await processor.get_export(created.id)
        assert view.status == ExportStatus.FAILED.value
        assert "disk full" in view.error_message
        assert [p["rows"] for p in view.parts] == [2]
        assert events[-1][0] == "export.failed"

    async def test_rerun_resumes_after_last_part(self, db, tmp_path, bus, materials):
        storage = FlakyStorage(tmp_path / "exports", fail_on=2)
        processor = ExportProcessor(db, storage, bus=bus, batch_limit=2)
        created = await processor.create_export("materials_csv")
        with pytest.raises(ExportError):
            await processor.process(created.id)

        view = await processor.process(created.id)

        assert view.status == ExportStatus.COMPLETED.value
        assert [p["rows"] for p in view.parts] == [2, 2, 1]
        assert view.attempts == 2
        part_puts = [key for key in storage.puts if "part-" in key]
        assert part_puts.count(part_key("materials_csv", created.id, 1, "csv")) == 1

    async def test_completed_export_is_a_no_op(self, processor, storage, materials):
        created = await processor.create_export("materials_csv")
        await processor.process(created.id)
        storage.put = AsyncMock()

        view = await processor.process(created.id)
        assert view.status == ExportStatus.COMPLETED.value
        assert view.attempts == 1
        storage.put.assert_not_awaited()

    async def test_gzip_jsonl_parts(self, processor, storage, materials):
        created = await processor.create_export(
            "materials_csv", {"format": "jsonl", "compression": "gzip"}
        )
        view = await processor.process(created.id)
        key = view.parts[0]["fileKey"]
        assert key.endswith(".jsonl.gz")
        lines = gzip.decompress((storage.base_dir / key).read_bytes()).splitlines()
        assert json.loads(lines[0])["name"] == "Material 1"


class TestCreateExport:
    async def test_unknown_type_is_rejected(self, processor):
        with pytest.raises(ValidationError):
            await processor.create_export("payments_csv")

    async def test_bad_format_is_rejected(self, processor):
        with pytest.raises(ValidationError):
            await processor.create_export("materials_csv", {"format": "xml"})

    async def test_create_enqueues_generate_job(self, db, storage, queue):
        processor = ExportProcessor(db, storage, queue=queue, batch_limit=2)
        queue.register(JOB_TYPE, make_handler(processor))

        created = await processor.create_export("projects_csv")
        assert await queue.wait_idle(3)

        view = await processor.get_export(created.id)
        assert view.status == ExportStatus.COMPLETED.value

    async def test_handler_requires_export_id(self, processor):
        with pytest.raises(ValidationError):
            await make_handler(processor)({})


class TestApp:
    async def test_app_runs_export(self, processor, materials):
        response = await app({"type": "materials_csv"}, processor=processor)
        assert response["statusCode"] == 200
        assert response["body"]["export"]["total_rows"] == 5

    async def test_app_reports_validation_error(self, processor):
        response = await app({"type": "nope"}, processor=processor)
        assert response["statusCode"] == 400
        assert response["body"]["error"]["type"] == "VALIDATION_ERROR"
