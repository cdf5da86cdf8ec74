"""
Main application for the webhook dispatcher component.
- Job handler for ``webhook.deliver`` (payload ``{"deliveryId": <id>}``)
- Manual retry entry point for a single delivery
"""

import argparse
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.db.database import Database
from shared.utils.errors import DatabaseError, ErrorType, ValidationError
from shared.utils.helpers import PipelineJSONEncoder, generate_response
from shared.utils.logger import logger

from .service import JOB_TYPE, WebhookDispatcher


def make_handler(dispatcher: WebhookDispatcher) -> Callable[[Dict[str, Any]], Awaitable]:
    """Job handler bound to a dispatcher."""

    async def handle_webhook_deliver(payload: Dict[str, Any]) -> str:
        delivery_id = (payload or {}).get("deliveryId")
        if delivery_id is None:
            raise ValidationError(
                message=f"{JOB_TYPE} payload is missing deliveryId",
                error_type=ErrorType.VALIDATION_ERROR,
            )
        return await dispatcher.deliver(int(delivery_id))

    return handle_webhook_deliver


async def app(
    event: Dict[str, Any],
    dispatcher: Optional[WebhookDispatcher] = None,
) -> Dict[str, Any]:
    """
    Reset a delivery to pending and attempt it once, outside the job queue.

    Args:
        event: {"deliveryId": 42}
        dispatcher: Pre-built dispatcher; one is created (and closed) otherwise

    Returns:
        Response object with the delivery view and the attempt outcome
    """
    db = None
    own_dispatcher = dispatcher is None
    try:
        delivery_id = event.get("deliveryId")
        if delivery_id is None:
            raise ValidationError(message="deliveryId is required")

        if dispatcher is None:
            db = Database()
            await db.initialize()
            dispatcher = WebhookDispatcher(db)

        await dispatcher.retry_delivery(int(delivery_id))
        outcome = await dispatcher.deliver(int(delivery_id))

        return generate_response(
            200,
            {
                "status": "success",
                "message": f"Webhook delivery {delivery_id} {outcome}",
                "deliveryId": int(delivery_id),
                "outcome": outcome,
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
        if own_dispatcher and dispatcher:
            await dispatcher.close()
        if db:
            await db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Retry a webhook delivery")
    parser.add_argument("delivery_id", type=int, help="WebhookDelivery id")
    args = parser.parse_args(argv)

    result = asyncio.run(app({"deliveryId": args.delivery_id}))
    print(json.dumps(result, indent=2, cls=PipelineJSONEncoder))
    return 0 if result["statusCode"] == 200 else 1


if __name__ == "__main__":
    raise SystemExit(main())
