"""
Tests for shared helper functions.

Covers date parsing, database URL preparation, the JSON encoder and
the response envelope.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

import pytest
import pytz

from shared.utils.errors import ValidationError
from shared.utils.helpers import (
    PipelineJSONEncoder,
    day_window,
    ensure_utc,
    generate_response,
    parse_date,
    parse_datetime,
    prepare_database_url,
)
from shared.utils.types import ErrorType, ExportStatus


class TestDates:
    """Test cases for date and timestamp parsing."""

    def test_parse_date_from_string(self):
        assert parse_date("2025-03-22") == date(2025, 3, 22)

    def test_parse_date_passes_dates_through(self):
        day = date(2024, 12, 31)
        assert parse_date(day) is day
        moment = pytz.utc.localize(datetime(2024, 12, 31, 23, 59))
        assert parse_date(moment) == day

    def test_parse_date_rejects_garbage(self):
        """Bad input becomes a 400 ValidationError naming the field."""
        with pytest.raises(ValidationError) as exc_info:
            parse_date("22/03/2025", field="day")
        assert exc_info.value.status_code == 400
        assert "day" in exc_info.value.message

    def test_parse_datetime_accepts_zulu_suffix(self):
        parsed = parse_datetime("2025-01-02T10:30:00Z")
        assert parsed == pytz.utc.localize(datetime(2025, 1, 2, 10, 30))

    def test_parse_datetime_missing_or_invalid(self):
        assert parse_datetime(None) is None
        assert parse_datetime("") is None
        assert parse_datetime("yesterday") is None

    def test_ensure_utc_tags_naive_values(self):
        naive = datetime(2025, 1, 1, 12)
        assert ensure_utc(naive).tzinfo is not None
        assert ensure_utc(naive).hour == 12
        assert ensure_utc(None) is None

    def test_day_window_is_half_open_day(self):
        start, end = day_window(date(2025, 2, 28))
        assert start == pytz.utc.localize(datetime(2025, 2, 28))
        assert end == pytz.utc.localize(datetime(2025, 3, 1))


class TestPrepareDatabaseUrl:
    """Test cases for async driver URL preparation."""

    def test_sqlite_uses_aiosqlite(self):
        url, connect_args = prepare_database_url("sqlite:///tmp/test.db")
        assert url == "sqlite+aiosqlite:///tmp/test.db"
        assert connect_args == {}

    def test_local_postgres(self):
        url, connect_args = prepare_database_url("postgresql://u:p@localhost:5432/db")
        assert url == "postgresql+asyncpg://u:p@localhost:5432/db"
        assert connect_args == {}

    def test_hosted_postgres_requires_ssl(self):
        url, connect_args = prepare_database_url(
            "postgresql://u:p@ep-cool-name.neon.tech/db"
        )
        assert url.startswith("postgresql+asyncpg://")
        assert connect_args == {"ssl": True}

    def test_missing_url(self):
        with pytest.raises(ValueError):
            prepare_database_url("")


@dataclass
class Sample:
    name: str
    created: datetime


class TestEncoder:
    def test_encodes_pipeline_types(self):
        moment = pytz.utc.localize(datetime(2025, 1, 2, 3, 4, 5))
        payload = {
            "sample": Sample(name="a", created=moment),
            "day": date(2025, 1, 2),
            "amount": Decimal("12.50"),
            "status": ExportStatus.COMPLETED,
        }

        decoded = json.loads(json.dumps(payload, cls=PipelineJSONEncoder))

        assert decoded["sample"] == {"name": "a", "created": "2025-01-02T03:04:05+00:00"}
        assert decoded["day"] == "2025-01-02"
        assert decoded["amount"] == 12.5
        assert decoded["status"] == "completed"

    def test_unknown_types_still_fail(self):
        with pytest.raises(TypeError):
            json.dumps({"x": object()}, cls=PipelineJSONEncoder)


class TestGenerateResponse:
    def test_success_envelope(self):
        response = generate_response(200, {"status": "ok"})
        assert response["statusCode"] == 200
        assert response["headers"]["Content-Type"] == "application/json"
        assert response["body"] == {"status": "ok"}

    def test_error_type_is_flattened_to_its_value(self):
        response = generate_response(
            400,
            {"error": {"type": ErrorType.VALIDATION_ERROR, "message": "bad"}},
        )
        assert response["body"]["error"]["type"] == "VALIDATION_ERROR"
