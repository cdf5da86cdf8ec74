"""
Configuration settings for the application.
"""

import os
from typing import TypedDict

import pytz
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back on blank or bad values."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).lower() == "true"


class BaseConfig(TypedDict):
    """Type definition for base configuration values.

    Attributes:
        timezone: pytz timezone used for every stored timestamp
        date_format: Format string for date parsing/formatting
        environment: Deployment environment name
    """

    timezone: pytz.BaseTzInfo
    date_format: str
    environment: str


base_configs: BaseConfig = {
    "timezone": pytz.utc,
    "date_format": "%Y-%m-%d",
    "environment": os.getenv("APP_ENV", "development"),
}

db_configs = {
    "pg_database_url": os.getenv(
        "PG_DATABASE_URL", "postgresql://localhost:5432/bizops"
    ),
    "echo": _env_bool("DB_ECHO"),  # Set to True for debugging
    "pool_size": _env_int("DB_POOL_SIZE", 5),
    "max_overflow": _env_int("DB_MAX_OVERFLOW", 10),
    "pool_timeout": _env_int("DB_POOL_TIMEOUT", 30),
    "pool_recycle": _env_int("DB_POOL_RECYCLE", 1800),
    "pool_pre_ping": _env_bool("DB_POOL_PRE_PING", True),
}

s3_configs = {
    "s3_bucket_name": os.getenv("S3_BUCKET_NAME", "bizops-exports"),
    "s3_region": os.getenv("S3_REGION", "us-east-1"),
    "s3_presign_expires_seconds": _env_int("S3_PRESIGN_EXPIRES_SECONDS", 3600),
}

redis_config = {
    "redis_url": os.getenv("REDIS_URL") or None,
    "redis_socket_timeout": _env_int("REDIS_SOCKET_TIMEOUT", 5),
    "redis_socket_connect_timeout": _env_int("REDIS_SOCKET_CONNECT_TIMEOUT", 5),
    "redis_retry_on_timeout": _env_bool("REDIS_RETRY_ON_TIMEOUT", True),
    "redis_key_prefix": os.getenv("REDIS_KEY_PREFIX", "bizops"),
}

cache_configs = {
    "max_entries": _env_int("CACHE_MAX_ENTRIES", 500),
    "ttl_analytics_summary_ms": _env_int("CACHE_TTL_ANALYTICS_SUMMARY_MS", 60000),
    "ttl_materials_ms": _env_int("CACHE_TTL_MATERIALS_MS", 300000),
    "ttl_materials_low_stock_ms": _env_int("CACHE_TTL_MATERIALS_LOW_STOCK_MS", 30000),
}

event_configs = {
    "ledger_max_pending": _env_int("EVENT_LEDGER_MAX_PENDING", 1000),
    "verbose": _env_bool("EVENT_LOG_VERBOSE"),
}

job_configs = {
    "persist": _env_bool("PERSIST_JOBS"),
    "concurrency": _env_int("JOBS_CONCURRENCY", 2),
    "max_attempts": _env_int("JOBS_MAX_ATTEMPTS", 3),
    "backoff_base_ms": _env_int("JOBS_BACKOFF_BASE_MS", 1000),
    "backoff_max_ms": _env_int("JOBS_BACKOFF_MAX_MS", 300000),
    "backoff_jitter": _env_float("JOBS_BACKOFF_JITTER", 0.2),
    "shutdown_timeout_seconds": _env_float("JOBS_SHUTDOWN_TIMEOUT_SECONDS", 30.0),
}

# Every interval is disabled unless set to a positive number of milliseconds
schedule_configs = {
    "kpi_snapshot_interval_ms": _env_int("KPI_SNAPSHOT_INTERVAL_MS", 0),
    "analytics_summary_warm_interval_ms": _env_int(
        "ANALYTICS_SUMMARY_WARM_INTERVAL_MS", 0
    ),
    "refresh_token_cleanup_interval_ms": _env_int(
        "REFRESH_TOKEN_CLEANUP_INTERVAL_MS", 0
    ),
    "enqueue_kpi_on_start": _env_bool("ENQUEUE_KPI_ON_START"),
}

export_configs = {
    "batch_limit": _env_int("EXPORT_BATCH_LIMIT", 5000),
    "storage_driver": os.getenv("EXPORT_STORAGE_DRIVER", "local"),
    "local_dir": os.getenv("EXPORT_LOCAL_DIR", "exports"),
    "key_prefix": os.getenv("EXPORT_KEY_PREFIX", "exports"),
    "max_attempts": _env_int("EXPORT_MAX_ATTEMPTS", 3),
}

webhook_configs = {
    "max_attempts": _env_int("WEBHOOK_MAX_ATTEMPTS", 5),
    "retry_base_ms": _env_int("WEBHOOK_RETRY_BASE_MS", 30000),
    "retry_max_ms": _env_int("WEBHOOK_RETRY_MAX_MS", 7200000),
    "timeout_ms": _env_int("WEBHOOK_TIMEOUT_MS", 15000),
    "auto_disable_threshold": _env_int("WEBHOOK_AUTO_DISABLE_THRESHOLD", 0),
    "max_payload_bytes": _env_int("WEBHOOK_MAX_PAYLOAD_BYTES", 50000),
    "circuit_failure_threshold": _env_int("WEBHOOK_CIRCUIT_FAILURE_THRESHOLD", 8),
    "circuit_half_open_after_ms": _env_int("WEBHOOK_CIRCUIT_HALF_OPEN_MS", 60000),
}

retention_configs = {
    "refresh_token_retention_days": _env_int("REFRESH_TOKEN_RETENTION_DAYS", 60),
    "webhook_delivery_retention_days": _env_int(
        "WEBHOOK_DELIVERY_RETENTION_DAYS", 60
    ),
}
