"""
Main application for the KPI aggregator component.
- Job handler for ``kpi.snapshot`` (payload ``{"day": "YYYY-MM-DD"}``, optional)
- Manual backfill entry point re-running a date range day by day
"""

import argparse
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.db.database import Database
from shared.events.ledger import EventLedger
from shared.utils.errors import DatabaseError, ErrorType, ValidationError
from shared.utils.helpers import PipelineJSONEncoder, generate_response
from shared.utils.logger import logger

from .service import KpiAggregator

JOB_TYPE = "kpi.snapshot"


def make_handler(aggregator: KpiAggregator) -> Callable[[Dict[str, Any]], Awaitable]:
    """Job handler bound to an aggregator."""

    async def handle_kpi_snapshot(payload: Dict[str, Any]) -> Dict[str, Any]:
        return await aggregator.aggregate_day((payload or {}).get("day"))

    return handle_kpi_snapshot


async def app(
    event: Dict[str, Any],
    aggregator: Optional[KpiAggregator] = None,
) -> Dict[str, Any]:
    """
    Aggregate one day, or backfill a range of days.

    Args:
        event: {"day": ...} or {"start_date": ..., "end_date": ...}
        aggregator: Pre-built aggregator; one is created (and closed) otherwise

    Returns:
        Response object; 207 when only some days of a range succeeded
    """
    db = None
    try:
        if aggregator is None:
            db = Database()
            await db.initialize()
            aggregator = KpiAggregator(db, EventLedger(db))

        start_date = event.get("start_date")
        end_date = event.get("end_date")

        if start_date or end_date:
            if not (start_date and end_date):
                raise ValidationError(
                    message="Both start_date and end_date are required for a backfill",
                    error_type=ErrorType.VALIDATION_ERROR,
                )
            logger.info(f"Backfilling KPI snapshots from {start_date} to {end_date}")
            result = await aggregator.backfill(start_date, end_date)

            if result["failed"] == 0:
                status_code, status = 200, "success"
            elif result["succeeded"] == 0:
                status_code, status = 500, "error"
            else:
                status_code, status = 207, "partial"

            return generate_response(
                status_code,
                {
                    "status": status,
                    "message": f"Backfilled {result['succeeded']} days, "
                    f"{result['failed']} failed",
                    "start_date": start_date,
                    "end_date": end_date,
                    **result,
                },
            )

        snapshot = await aggregator.aggregate_day(event.get("day"))
        return generate_response(
            200,
            {
                "status": "success",
                "message": f"Aggregated KPIs for {snapshot['date']}",
                "snapshot": snapshot,
            },
        )

    except (ValidationError, DatabaseError) as e:
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
    parser = argparse.ArgumentParser(description="Aggregate daily KPI snapshots")
    parser.add_argument("--day", type=str, help="Single day (YYYY-MM-DD), default yesterday")
    parser.add_argument("--start", type=str, help="Backfill start (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, help="Backfill end (YYYY-MM-DD), inclusive")
    args = parser.parse_args(argv)

    event = {"day": args.day, "start_date": args.start, "end_date": args.end}
    result = asyncio.run(app(event))
    print(json.dumps(result, indent=2, cls=PipelineJSONEncoder))
    return 0 if result["statusCode"] in (200, 207) else 1


if __name__ == "__main__":
    raise SystemExit(main())
