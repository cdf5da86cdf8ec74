"""
Service for pruning expired rows the pipeline no longer needs.

Only refresh tokens and terminally failed webhook deliveries are pruned.
Event log rows and job records are history and are never deleted here.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import delete, or_

from shared.db.database import Database
from shared.db.models import RefreshToken, WebhookDelivery
from shared.utils.configs import retention_configs
from shared.utils.helpers import utcnow
from shared.utils.logger import logger
from shared.utils.metrics import Metrics
from shared.utils.types import DeliveryStatus

JOB_TYPE = "tokens.refresh.cleanup"


class RetentionService:
    def __init__(
        self,
        db: Database,
        metrics: Optional[Metrics] = None,
        refresh_token_days: Optional[int] = None,
        webhook_delivery_days: Optional[int] = None,
    ):
        self.db = db
        self.metrics = metrics
        self.refresh_token_days = (
            retention_configs["refresh_token_retention_days"]
            if refresh_token_days is None
            else refresh_token_days
        )
        self.webhook_delivery_days = (
            retention_configs["webhook_delivery_retention_days"]
            if webhook_delivery_days is None
            else webhook_delivery_days
        )

    async def purge_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        """Delete revoked or expired tokens created before the retention cutoff."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.refresh_token_days)
        async with self.db.session() as session:
            result = await session.execute(
                delete(RefreshToken)
                .where(
                    or_(
                        RefreshToken.revoked_at.is_not(None),
                        RefreshToken.expires_at < now,
                    )
                )
                .where(RefreshToken.created_at < cutoff)
            )
            removed = result.rowcount or 0
        self._count("refresh_tokens", removed)
        return removed

    async def purge_failed_deliveries(self, now: Optional[datetime] = None) -> int:
        """Delete failed deliveries past their window that have no retry pending."""
        cutoff = (now or utcnow()) - timedelta(days=self.webhook_delivery_days)
        async with self.db.session() as session:
            result = await session.execute(
                delete(WebhookDelivery)
                .where(WebhookDelivery.status == DeliveryStatus.FAILED.value)
                .where(WebhookDelivery.next_retry_at.is_(None))
                .where(WebhookDelivery.created_at < cutoff)
            )
            removed = result.rowcount or 0
        self._count("webhook_deliveries", removed)
        return removed

    def _count(self, target: str, removed: int) -> None:
        if self.metrics is not None and removed:
            self.metrics.retention_records_removed_total.labels(target=target).inc(removed)

    async def run(self, payload: Optional[Dict] = None) -> Dict[str, int]:
        """Job handler: run every purge and report what was removed."""
        tokens = await self.purge_refresh_tokens()
        deliveries = await self.purge_failed_deliveries()
        logger.info(
            f"Retention removed {tokens} refresh tokens and "
            f"{deliveries} failed webhook deliveries"
        )
        return {"refreshTokens": tokens, "webhookDeliveries": deliveries}
