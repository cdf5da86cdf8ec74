"""
Main application for the export component.
- Job handler for ``export.generate`` (payload ``{"exportJobId": <id>}``)
- Command-line entry point running one export in-process
"""

import argparse
import asyncio
import json
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.db.database import Database
from shared.services.storage import build_storage
from shared.utils.errors import (
    DatabaseError,
    ErrorType,
    ExportError,
    StorageError,
    ValidationError,
)
from shared.utils.helpers import PipelineJSONEncoder, generate_response
from shared.utils.logger import logger

from .service import JOB_TYPE, ExportProcessor


def make_handler(processor: ExportProcessor) -> Callable[[Dict[str, Any]], Awaitable]:
    """Job handler bound to a processor."""

    async def handle_export_generate(payload: Dict[str, Any]):
        export_id = (payload or {}).get("exportJobId")
        if export_id is None:
            raise ValidationError(
                message=f"{JOB_TYPE} payload is missing exportJobId",
                error_type=ErrorType.VALIDATION_ERROR,
            )
        return await processor.process(int(export_id))

    return handle_export_generate


async def app(
    event: Dict[str, Any],
    processor: Optional[ExportProcessor] = None,
) -> Dict[str, Any]:
    """
    Create and run an export without the job queue.

    Args:
        event: {"type": "materials_csv", "params": {...}} to start a new export,
            or {"exportJobId": 12} to resume an existing one
        processor: Pre-built processor; one is created (and closed) otherwise

    Returns:
        Response object with the export status view
    """
    db = None
    try:
        if processor is None:
            db = Database()
            await db.initialize()
            processor = ExportProcessor(db, build_storage())

        export_id = event.get("exportJobId")
        if export_id is None:
            created = await processor.create_export(event.get("type"), event.get("params"))
            export_id = created.id

        view = await processor.process(int(export_id))
        return generate_response(
            200,
            {
                "status": "success",
                "message": f"Export {view.id} {view.status}",
                "export": asdict(view),
            },
        )

    except (ValidationError, ExportError, StorageError, DatabaseError) as e:
        logger.error(f"{e.error_type.value} error: {e.message}")
        return generate_response(
            e.status_code,
            {
                "status": "error",
                "error": {
                    "type": e.error_type,
                    "message": e.message,
                },
            },
        )
    except Exception as e:
        logger.error(f"Unexpected error: {str(e)}")
        return generate_response(
            500,
            {
                "status": "error",
                "error": {
                    "type": ErrorType.UNKNOWN_ERROR,
                    "message": f"An unexpected error occurred: {e}",
                },
            },
        )
    finally:
        if db:
            await db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run a data export")
    parser.add_argument(
        "--type", type=str, help="materials_csv, orders_csv, projects_csv or invoices_csv"
    )
    parser.add_argument("--format", type=str, default="csv", help="csv or jsonl")
    parser.add_argument("--compression", type=str, default="none", help="none or gzip")
    parser.add_argument("--resume", type=int, help="Resume an existing export id")
    args = parser.parse_args(argv)

    if args.resume is not None:
        event = {"exportJobId": args.resume}
    else:
        event = {
            "type": args.type,
            "params": {"format": args.format, "compression": args.compression},
        }
    result = asyncio.run(app(event))
    print(json.dumps(result, indent=2, cls=PipelineJSONEncoder))
    return 0 if result["statusCode"] == 200 else 1


if __name__ == "__main__":
    raise SystemExit(main())
