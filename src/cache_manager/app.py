"""
Main application for the cache manager component.
"""

import asyncio
import json
from dataclasses import asdict
from typing import Any, Dict, Optional

from shared.cache.cache import Cache
from shared.cache.redis_cache import build_cache_tier
from shared.db.database import Database
from shared.utils.errors import DatabaseError, ErrorType, RedisError
from shared.utils.helpers import PipelineJSONEncoder, generate_response
from shared.utils.logger import logger

from .service import CacheManager


async def app(
    event: Dict[str, Any],
    manager: Optional[CacheManager] = None,
) -> Dict[str, Any]:
    """
    Warm or inspect the cached read models.

    Args:
        event: {"action": "warm" | "summary" | "materials" | "snapshot"}
        manager: Pre-built manager; one is created (and closed) otherwise

    Returns:
        Response object
    """
    db = None
    cache = None
    try:
        if manager is None:
            db = Database()
            await db.initialize()
            cache = Cache(remote=build_cache_tier())
            manager = CacheManager(db, cache)

        action = (event or {}).get("action") or "warm"

        if action == "warm":
            logger.info("Warming analytics summary cache")
            summary = await manager.warm_analytics_summary()
            body = {"message": "Warmed analytics summary", "summary": summary}
        elif action == "summary":
            result = await manager.analytics_summary()
            body = {"message": "Analytics summary", **asdict(result)}
        elif action == "materials":
            body = {
                "message": "Material read models",
                "categories": await manager.material_categories(),
                "lowStock": await manager.low_stock_materials(),
            }
        elif action == "snapshot":
            body = {"message": "Cache snapshot", "cache": manager.cache.snapshot()}
        else:
            return generate_response(
                400,
                {
                    "status": "error",
                    "error": {
                        "type": ErrorType.VALIDATION_ERROR,
                        "message": f"Unknown cache action {action}",
                    },
                },
            )

        return generate_response(200, {"status": "success", **body})

    except (DatabaseError, RedisError) as e:
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
        # Clean up resources
        if cache:
            await cache.close()
        if db:
            await db.close()


if __name__ == "__main__":
    """Warm the analytics summary as a script."""

    result = asyncio.run(app({"action": "warm"}))
    print(json.dumps(result, indent=2, cls=PipelineJSONEncoder))
