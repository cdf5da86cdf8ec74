"""
Service for signing and delivering domain events to webhook subscribers.

Each (event, subscription) pair becomes one WebhookDelivery row. Delivery
runs as a ``webhook.deliver`` job; a failed attempt re-enqueues the job
with exponential backoff until the attempt ceiling, then the delivery is
marked failed. The subscription keeps its failure count for operators and
is only disabled when an auto-disable threshold is configured.

Every attempt goes through one shared circuit breaker. While it is open,
attempts are refused without a request and retried like any other failure.
"""

import asyncio
import hashlib
import hmac
import json
import random
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import aiohttp
from sqlalchemy import select, update

from shared.db.database import Database
from shared.db.models import WebhookDelivery, WebhookSubscription
from shared.events.event_bus import EventBus, create_event, matches
from shared.jobs.job_queue import JobQueue
from shared.schemas.dto import DomainEvent
from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.configs import webhook_configs
from shared.utils.errors import ErrorType, ValidationError, WebhookError
from shared.utils.helpers import PipelineJSONEncoder, ensure_utc, to_jsonable, utcnow
from shared.utils.logger import logger
from shared.utils.metrics import Metrics
from shared.utils.types import DeliveryStatus

JOB_TYPE = "webhook.deliver"

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
IDEMPOTENCY_HEADER = "X-Webhook-Idempotency-Key"


def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA256 of the exact request body, as ``sha256=<hex>``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, body), signature or "")


def serialize_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(
        payload, cls=PipelineJSONEncoder, separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def build_envelope(
    event: DomainEvent, idempotency_key: str, max_bytes: int
) -> Dict[str, Any]:
    """
    Envelope sent to receivers: {event, data, timestamp, idempotencyKey}.

    An event whose data would push the body past max_bytes is delivered
    with its data replaced by a truncation marker.
    """
    envelope = {
        "event": event.name,
        "data": to_jsonable(event.payload or {}),
        "timestamp": ensure_utc(event.timestamp).isoformat(),
        "idempotencyKey": idempotency_key,
    }
    if event.correlation_id:
        envelope["correlationId"] = event.correlation_id

    size = len(serialize_payload(envelope))
    if size > max_bytes:
        logger.warning(
            f"Webhook payload for {event.name} is {size} bytes, truncating data"
        )
        envelope["data"] = {"truncated": True, "originalBytes": size}
    return envelope


class WebhookDispatcher:
    """
    Creates and delivers webhook deliveries.

    Attributes:
        max_attempts (int): Attempts per delivery before it is marked failed.
        retry_base_ms (int): Delay before the first retry.
        retry_max_ms (int): Cap on any retry delay.
        timeout_ms (int): HTTP timeout per attempt.
        auto_disable_threshold (int): Consecutive failures that disable a
            subscription, 0 to never disable.
        circuit (CircuitBreaker): Shared breaker in front of every POST.
    """

    def __init__(
        self,
        db: Database,
        queue: Optional[JobQueue] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[Metrics] = None,
        max_attempts: Optional[int] = None,
        retry_base_ms: Optional[int] = None,
        retry_max_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        auto_disable_threshold: Optional[int] = None,
        max_payload_bytes: Optional[int] = None,
        jitter: float = 0.2,
        circuit: Optional[CircuitBreaker] = None,
    ):
        self.db = db
        self.queue = queue
        self.bus = bus
        self.metrics = metrics
        self.max_attempts = max_attempts or webhook_configs["max_attempts"]
        self.retry_base_ms = retry_base_ms or webhook_configs["retry_base_ms"]
        self.retry_max_ms = retry_max_ms or webhook_configs["retry_max_ms"]
        self.timeout_ms = timeout_ms or webhook_configs["timeout_ms"]
        self.auto_disable_threshold = (
            webhook_configs["auto_disable_threshold"]
            if auto_disable_threshold is None
            else auto_disable_threshold
        )
        self.max_payload_bytes = max_payload_bytes or webhook_configs["max_payload_bytes"]
        self.jitter = jitter
        self.circuit = circuit or CircuitBreaker(
            "webhook_delivery",
            failure_threshold=webhook_configs["circuit_failure_threshold"],
            half_open_after_ms=webhook_configs["circuit_half_open_after_ms"],
            metrics=metrics,
        )
        self.session: Optional[aiohttp.ClientSession] = None

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def subscriptions_for(self, event_name: str) -> List[WebhookSubscription]:
        async with self.db.session() as session:
            result = await session.execute(
                select(WebhookSubscription).where(WebhookSubscription.is_active.is_(True))
            )
            return [
                sub
                for sub in result.scalars().all()
                if matches(sub.event_type, event_name)
            ]

    async def publish_event(self, event: DomainEvent) -> List[int]:
        """
        Create a pending delivery per matching subscription and enqueue them.

        Returns:
            Ids of the created deliveries
        """
        subscriptions = await self.subscriptions_for(event.name)
        if not subscriptions:
            return []

        async with self.db.session() as session:
            deliveries = []
            for sub in subscriptions:
                key = str(uuid.uuid4())
                delivery = WebhookDelivery(
                    subscription_id=sub.id,
                    event_type=event.name,
                    payload=build_envelope(event, key, self.max_payload_bytes),
                    idempotency_key=key,
                    status=DeliveryStatus.PENDING.value,
                    attempt_count=0,
                    next_retry_at=utcnow(),
                )
                session.add(delivery)
                deliveries.append(delivery)
            await session.flush()
            delivery_ids = [d.id for d in deliveries]

        for delivery_id in delivery_ids:
            await self._enqueue(delivery_id)
        logger.info(f"Queued {len(delivery_ids)} webhook deliveries for {event.name}")
        return delivery_ids

    async def on_domain_event(self, event: DomainEvent) -> None:
        """Bus listener forwarding every event to matching subscriptions."""
        await self.publish_event(event)

    async def _enqueue(self, delivery_id: int, delay_ms: int = 0) -> None:
        if self.queue is None:
            return
        await self.queue.enqueue(JOB_TYPE, {"deliveryId": delivery_id}, delay_ms=delay_ms)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _backoff_ms(self, attempt: int) -> int:
        delay = min(self.retry_max_ms, self.retry_base_ms * (2 ** (attempt - 1)))
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0, int(delay))

    async def _post(self, url: str, body: bytes, headers: Dict[str, str]) -> int:
        """
        POST a signed body through the delivery circuit.

        Timeouts, connection errors and 5xx answers count against the circuit;
        a 4xx answer shows the receiver is reachable and does not.

        Returns:
            The 2xx status code

        Raises:
            WebhookError: On a non-2xx answer, a timeout, a connection error
                or while the circuit is open
        """
        if not self.circuit.allow():
            raise WebhookError(
                message=f"Circuit {self.circuit.name} is open, delivery not attempted",
                error_type=ErrorType.CIRCUIT_OPEN,
                status_code=503,
            )

        try:
            status = await self._send(url, body, headers)
        except WebhookError as e:
            if e.response_code is not None and e.response_code < 500:
                self.circuit.record_success()
            else:
                self.circuit.record_failure()
            raise
        self.circuit.record_success()
        return status

    async def _send(self, url: str, body: bytes, headers: Dict[str, str]) -> int:
        """One HTTP POST with every failure mapped to WebhookError."""
        if not self.session:
            self.session = aiohttp.ClientSession()

        try:
            async with self.session.post(
                url,
                data=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_ms / 1000),
            ) as response:
                await response.read()
                if not 200 <= response.status < 300:
                    raise WebhookError(
                        message=f"Webhook receiver answered HTTP {response.status}",
                        error_type=ErrorType.HTTP_ERROR,
                        status_code=502,
                        response_code=response.status,
                    )
                return response.status
        except asyncio.TimeoutError as e:
            raise WebhookError(
                message=f"Webhook delivery timed out after {self.timeout_ms}ms",
                status_code=504,
            ) from e
        except aiohttp.ClientError as e:
            raise WebhookError(
                message=f"Webhook delivery failed: {str(e)}",
                status_code=502,
            ) from e

    async def _claim_attempt(self, delivery_id: int, seen_attempts: int) -> bool:
        """Bump attempt_count only if nobody else attempted in the meantime."""
        async with self.db.session() as session:
            result = await session.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.id == delivery_id)
                .where(WebhookDelivery.status == DeliveryStatus.PENDING.value)
                .where(WebhookDelivery.attempt_count == seen_attempts)
                .values(attempt_count=seen_attempts + 1)
            )
            return result.rowcount == 1

    async def deliver(self, delivery_id: int) -> str:
        """
        Make one delivery attempt.

        HTTP failures are recorded on the delivery and retried through the
        job queue rather than raised.

        Returns:
            "delivered", "retrying", "failed" or "skipped"
        """
        async with self.db.session() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            subscription = (
                await session.get(WebhookSubscription, delivery.subscription_id)
                if delivery is not None
                else None
            )

        if delivery is None:
            logger.warning(f"Webhook delivery {delivery_id} not found")
            return "skipped"
        if delivery.status != DeliveryStatus.PENDING.value:
            logger.info(f"Webhook delivery {delivery_id} is {delivery.status}, skipping")
            return "skipped"
        if subscription is None or not subscription.is_active:
            await self._finish(
                delivery_id,
                status=DeliveryStatus.FAILED.value,
                error_message="Subscription is inactive",
                next_retry_at=None,
            )
            return "failed"

        if not await self._claim_attempt(delivery_id, delivery.attempt_count):
            logger.info(f"Webhook delivery {delivery_id} already being attempted")
            return "skipped"
        attempt = delivery.attempt_count + 1

        body = serialize_payload(delivery.payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(subscription.secret, body),
            EVENT_HEADER: delivery.event_type,
            IDEMPOTENCY_HEADER: delivery.idempotency_key,
        }

        try:
            response_code = await self._post(subscription.target_url, body, headers)
        except WebhookError as e:
            return await self._record_failure(
                delivery_id, subscription, attempt, e.message, e.response_code
            )

        await self._finish(
            delivery_id,
            status=DeliveryStatus.DELIVERED.value,
            response_code=response_code,
            error_message=None,
            next_retry_at=None,
            delivered_at=utcnow(),
        )
        async with self.db.session() as session:
            await session.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.id == subscription.id)
                .values(failure_count=0, last_success_at=utcnow())
            )
        self._count("success")
        logger.info(
            f"Delivered webhook {delivery_id} ({delivery.event_type}) to "
            f"subscription {subscription.id} on attempt {attempt}"
        )
        return "delivered"

    async def _finish(self, delivery_id: int, **values) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.id == delivery_id)
                .values(**values)
            )

    async def _record_failure(
        self,
        delivery_id: int,
        subscription: WebhookSubscription,
        attempt: int,
        error: str,
        response_code: Optional[int],
    ) -> str:
        terminal = attempt >= self.max_attempts
        delay_ms = 0 if terminal else self._backoff_ms(attempt)
        next_retry_at = None if terminal else utcnow() + timedelta(milliseconds=delay_ms)

        await self._finish(
            delivery_id,
            status=DeliveryStatus.FAILED.value if terminal else DeliveryStatus.PENDING.value,
            response_code=response_code,
            error_message=(error or "")[:2000],
            next_retry_at=next_retry_at,
        )

        async with self.db.session() as session:
            await session.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.id == subscription.id)
                .values(
                    failure_count=WebhookSubscription.failure_count + 1,
                    last_failure_at=utcnow(),
                )
            )
            failure_count = (
                await session.execute(
                    select(WebhookSubscription.failure_count).where(
                        WebhookSubscription.id == subscription.id
                    )
                )
            ).scalar()

        if terminal:
            self._count("failed")
            logger.error(
                f"Webhook delivery {delivery_id} failed permanently after "
                f"{attempt} attempts: {error}"
            )
        else:
            self._count("retry")
            logger.warning(
                f"Webhook delivery {delivery_id} attempt {attempt}/{self.max_attempts} "
                f"failed: {error}. Retrying in {delay_ms}ms"
            )
            await self._enqueue(delivery_id, delay_ms)

        await self._maybe_disable(subscription, failure_count)
        return "failed" if terminal else "retrying"

    async def _maybe_disable(
        self, subscription: WebhookSubscription, failure_count: int
    ) -> None:
        if self.auto_disable_threshold <= 0 or failure_count < self.auto_disable_threshold:
            return
        async with self.db.session() as session:
            result = await session.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.id == subscription.id)
                .where(WebhookSubscription.is_active.is_(True))
                .values(is_active=False)
            )
            disabled = result.rowcount == 1
        if not disabled:
            return
        logger.warning(
            f"Disabled webhook subscription {subscription.id} after "
            f"{failure_count} consecutive failures"
        )
        if self.bus is not None:
            self.bus.publish(
                create_event(
                    "webhook.subscription.disabled",
                    {
                        "subscriptionId": subscription.id,
                        "targetUrl": subscription.target_url,
                        "failureCount": failure_count,
                    },
                )
            )

    def _count(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.webhook_delivery_attempts_total.labels(outcome=outcome).inc()

    async def retry_delivery(self, delivery_id: int) -> Dict[str, Any]:
        """
        Manually re-drive a delivery that has not been delivered.

        Raises:
            ValidationError: If the delivery is missing or already delivered
        """
        async with self.db.session() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            if delivery is None:
                raise ValidationError(
                    message=f"Webhook delivery {delivery_id} not found", status_code=404
                )
            if delivery.status == DeliveryStatus.DELIVERED.value:
                raise ValidationError(
                    message=f"Webhook delivery {delivery_id} was already delivered",
                    status_code=409,
                )
            delivery.status = DeliveryStatus.PENDING.value
            delivery.next_retry_at = utcnow()
            delivery.error_message = None
            await session.flush()
            view = delivery_view(delivery)

        await self._enqueue(delivery_id)
        logger.info(f"Manual retry queued for webhook delivery {delivery_id}")
        return view

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None


def delivery_view(delivery: WebhookDelivery) -> Dict[str, Any]:
    next_retry_at = ensure_utc(delivery.next_retry_at)
    return {
        "id": delivery.id,
        "subscriptionId": delivery.subscription_id,
        "eventType": delivery.event_type,
        "status": delivery.status,
        "attemptCount": delivery.attempt_count,
        "responseCode": delivery.response_code,
        "errorMessage": delivery.error_message,
        "nextRetryAt": next_retry_at.isoformat() if next_retry_at else None,
        "idempotencyKey": delivery.idempotency_key,
    }
