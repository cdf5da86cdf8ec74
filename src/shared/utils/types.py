from enum import Enum
from typing import Any, Dict, TypedDict, Union


class ErrorType(Enum):
    """
    Enumeration for various error types used in the application.

    Attributes:
        GENERAL_ERROR: Represents a general error that does not fall into specific categories.
        UNKNOWN_ERROR: Represents an unknown or unspecified error.
        VALUE_ERROR: Represents an error caused by invalid values.
        VALIDATION_ERROR: Represents an error related to data validation failures.
        DATABASE_ERROR: Represents an error related to database operations.
        REDIS_ERROR: Represents an error related to the remote cache tier.
        S3_ERROR: Represents an error related to S3 operations.
        STORAGE_ERROR: Represents an error writing or reading export objects.
        JOB_ERROR: Represents an error in job registration or execution.
        EXPORT_ERROR: Represents a failure while generating an export.
        HTTP_ERROR: Represents a non-2xx answer from an outbound HTTP call.
        WEBHOOK_ERROR: Represents a failure while delivering a webhook.
        CIRCUIT_OPEN: Represents a call refused because its circuit breaker is open.
    """

    GENERAL_ERROR = "GENERAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    VALUE_ERROR = "VALUE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    REDIS_ERROR = "REDIS_ERROR"
    S3_ERROR = "S3_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    JOB_ERROR = "JOB_ERROR"
    EXPORT_ERROR = "EXPORT_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    WEBHOOK_ERROR = "WEBHOOK_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"


class JobStatus(str, Enum):
    """Lifecycle of a queued job record."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportStatus(str, Enum):
    """Lifecycle of an export job. PARTIAL is progress, not an error."""

    PENDING = "pending"
    PROCESSING = "processing"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SuccessResponseBase(TypedDict):
    """
    A base class for representing a successful response.

    Attributes:
        status (str): The status of the response, typically indicating success.
        data (Any): The data payload of the response.
    """

    status: str
    data: Any


class ErrorResponseBase(TypedDict):
    """
    A TypedDict representing the structure of an error response.

    Attributes:
        status (str): The status of the response, typically indicating failure.
        error (Dict[str, str]): A dictionary containing the error type and message.
    """

    status: str
    error: Dict[str, str]


ResponseBody = Union[SuccessResponseBase, ErrorResponseBase, Dict[str, Any]]


class ResponseType(TypedDict):
    """
    ResponseType is a TypedDict that defines the structure of a response object.

    Attributes:
        statusCode (int): The HTTP-style status code of the response.
        headers (Dict[str, str]): A dictionary containing the headers of the response.
        body (ResponseBody): The body of the response.
    """

    statusCode: int
    headers: Dict[str, str]
    body: ResponseBody
