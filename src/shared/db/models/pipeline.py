"""
Tables owned by the background pipeline.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from shared.utils.helpers import utcnow
from shared.utils.types import DeliveryStatus, ExportStatus, JobStatus

from . import Base


class EventLog(Base):
    """
    Durable, append-only projection of a published domain event.

    Rows are written by the event ledger and never updated or deleted by
    the pipeline.

    Attributes:
        id (int): Auto-assigned primary key.
        name (str): Dotted event name.
        version (str): Payload schema version.
        timestamp (datetime): Event time, the column aggregation windows scan.
        payload (dict): Event payload as JSON.
        correlation_id (str): Optional correlation id.
        created_at (datetime): When the ledger row was written.
    """

    __tablename__ = "event_logs"

    id = Column(Integer, primary_key=True)
    name = Column(String(150), nullable=False)
    version = Column(String(20), nullable=False, default="v1")
    timestamp = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    correlation_id = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("idx_event_logs_name_timestamp", "name", "timestamp"),)


class JobRecord(Base):
    """
    Durable record of a queued job, used for crash recovery and audit.

    Attributes:
        id (int): Primary key, doubles as the in-memory job id.
        type (str): Registered job type.
        payload (dict): Handler payload.
        status (str): pending, running, completed or failed.
        attempts (int): Failed attempts so far.
        max_attempts (int): Attempts allowed before the record is terminal.
        enqueued_at (datetime): First enqueue time.
        scheduled_for (datetime): Earliest time the job may run.
        started_at (datetime): Start of the most recent run.
        finished_at (datetime): Time the record reached a terminal state.
        last_error (str): Message from the most recent failure.
    """

    __tablename__ = "job_records"

    id = Column(Integer, primary_key=True)
    type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    enqueued_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    scheduled_for = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_job_records_status", "status", "enqueued_at"),)


class KpiDailySnapshot(Base):
    """
    Pre-aggregated analytics for one UTC calendar day.

    Attributes:
        date (date): The day, unique.
        quotes_sent (int): quote.sent events in the day.
        quotes_accepted (int): quote.accepted events in the day.
        quote_conversion_rate (float): accepted / sent, in [0, 1], 0 when nothing was sent.
        orders_created (int): order.created events in the day.
        orders_delivered (int): order.delivered events in the day.
        avg_order_cycle_days (float): Mean created-to-delivered days, null when unknown.
        inventory_net_change (float): Sum of inbound minus outbound quantities.
    """

    __tablename__ = "kpi_daily_snapshots"

    id = Column(Integer, primary_key=True)
    date = Column(Date, nullable=False, unique=True)
    quotes_sent = Column(Integer, nullable=False, default=0)
    quotes_accepted = Column(Integer, nullable=False, default=0)
    quote_conversion_rate = Column(Float, nullable=False, default=0.0)
    orders_created = Column(Integer, nullable=False, default=0)
    orders_delivered = Column(Integer, nullable=False, default=0)
    avg_order_cycle_days = Column(Float)
    inventory_net_change = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "date": self.date.isoformat() if self.date else None,
            "quotesSent": self.quotes_sent,
            "quotesAccepted": self.quotes_accepted,
            "quoteConversionRate": self.quote_conversion_rate,
            "ordersCreated": self.orders_created,
            "ordersDelivered": self.orders_delivered,
            "avgOrderCycleDays": self.avg_order_cycle_days,
            "inventoryNetChange": self.inventory_net_change,
        }


class ExportJob(Base):
    """
    A batched, checkpointed export.

    Attributes:
        type (str): materials_csv, orders_csv, projects_csv or invoices_csv.
        status (str): pending, processing, partial, completed or failed.
        params (dict): Caller options (format, compression).
        parts (list): One entry per written batch, grows monotonically.
        total_rows (int): Rows written so far.
        attempts (int): Runs started.
        result_url (str): Where the finished export can be fetched.
        file_key (str): Storage key of the manifest.
        error_message (str): Failure reason of the most recent run.
    """

    __tablename__ = "export_jobs"

    id = Column(Integer, primary_key=True)
    type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=ExportStatus.PENDING.value)
    params = Column(JSON, nullable=False, default=dict)
    parts = Column(JSON, nullable=False, default=list)
    total_rows = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    result_url = Column(Text)
    file_key = Column(String(500))
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class WebhookSubscription(Base):
    """
    An outbound webhook target.

    Attributes:
        event_type (str): Event name or pattern ("*", "order.*") to deliver.
        target_url (str): Receiver URL.
        secret (str): HMAC signing secret.
        is_active (bool): Inactive subscriptions receive nothing.
        failure_count (int): Failed attempts since the last success.
    """

    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(150), nullable=False)
    target_url = Column(Text, nullable=False)
    secret = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    failure_count = Column(Integer, nullable=False, default=0)
    last_success_at = Column(DateTime(timezone=True))
    last_failure_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    deliveries = relationship("WebhookDelivery", back_populates="subscription")


class WebhookDelivery(Base):
    """
    One event delivered (or being delivered) to one subscription.

    Attributes:
        subscription_id (int): Foreign key to the subscription.
        event_type (str): Name of the delivered event.
        payload (dict): Envelope as sent, truncated when oversized.
        idempotency_key (str): Stable across retries of this delivery.
        status (str): pending, delivered or failed.
        attempt_count (int): Attempts made.
        response_code (int): Status of the most recent response.
        error_message (str): Error of the most recent attempt.
        next_retry_at (datetime): When the next attempt is due, null when none.
    """

    __tablename__ = "webhook_deliveries"

    id = Column(Integer, primary_key=True)
    subscription_id = Column(
        Integer, ForeignKey("webhook_subscriptions.id"), nullable=False
    )
    event_type = Column(String(150), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    idempotency_key = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    response_code = Column(Integer)
    error_message = Column(Text)
    next_retry_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    subscription = relationship("WebhookSubscription", back_populates="deliveries")
