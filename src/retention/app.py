"""
Main application for the retention component.
"""

import asyncio
import json
from typing import Any, Dict, Optional

from shared.db.database import Database
from shared.utils.errors import DatabaseError, ErrorType
from shared.utils.helpers import PipelineJSONEncoder, generate_response
from shared.utils.logger import logger

from .service import RetentionService


async def app(
    event: Optional[Dict[str, Any]] = None,
    service: Optional[RetentionService] = None,
) -> Dict[str, Any]:
    """
    Run the retention purges once.

    Args:
        event: Unused, kept for a uniform entry point signature
        service: Pre-built service; one is created (and closed) otherwise

    Returns:
        Response object with the number of removed rows per table
    """
    db = None
    try:
        if service is None:
            db = Database()
            await db.initialize()
            service = RetentionService(db)

        removed = await service.run(event)
        return generate_response(
            200,
            {
                "status": "success",
                "message": "Retention purge complete",
                "removed": removed,
            },
        )

    except DatabaseError as e:
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


if __name__ == "__main__":
    result = asyncio.run(app({}))
    print(json.dumps(result, indent=2, cls=PipelineJSONEncoder))
