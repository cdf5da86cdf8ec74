"""
Utility functions and shared resources.
"""

from .configs import base_configs
from .errors import (
    DatabaseError,
    ExportError,
    JobError,
    RedisError,
    S3Error,
    StorageError,
    ValidationError,
    WebhookError,
)
from .helpers import (
    PipelineJSONEncoder,
    ensure_utc,
    generate_response,
    parse_date,
    utcnow,
)
from .logger import logger
from .metrics import Metrics
from .types import ErrorType
