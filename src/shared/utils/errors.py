"""
Error handling for the application.
"""

from shared.utils.types import ErrorType


class ValidationError(Exception):
    """Custom exception for invalid caller input.

    Common status codes:
    - 400: Bad Request (default) - Malformed or out-of-range parameters
    - 404: Not Found - Referenced record doesn't exist
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.VALIDATION_ERROR,
        status_code: int = 400,
    ):
        """
        Initialize a ValidationError.

        Args:
            message (str): A human-readable error message.
            error_type (ErrorType): The category of the error (default: VALIDATION_ERROR).
            status_code (int): HTTP-style status code associated with the error (default: 400).
        """
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        super().__init__(self.message)


class DatabaseError(Exception):
    """Custom exception for when the Database Handler errors.

    Common status codes:
    - 503: Service Unavailable (default) - Database is down or unreachable
    - 400: Bad Request - Invalid query or parameters
    - 409: Conflict - Constraint violation
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.DATABASE_ERROR,
        status_code: int = 503,
    ):
        """
        Initialize a DatabaseError.

        Args:
            message (str): A human-readable error message.
            error_type (ErrorType): The category of the error (default: DATABASE_ERROR).
            status_code (int): HTTP-style status code associated with the error (default: 503).
        """
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        super().__init__(self.message)


class StorageError(Exception):
    """Custom exception for export object storage errors.

    Common status codes:
    - 503: Service Unavailable (default) - Backend is down or unreachable
    - 404: Not Found - Object doesn't exist
    - 403: Forbidden - No permission to write
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.STORAGE_ERROR,
        status_code: int = 503,
    ):
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        super().__init__(self.message)


class S3Error(StorageError):
    """Custom exception for S3 errors.

    Common status codes:
    - 503: Service Unavailable (default) - S3 service is down or unreachable
    - 404: Not Found - File doesn't exist
    - 403: Forbidden - No permission to access
    - 400: Bad Request - Invalid request parameters
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.S3_ERROR,
        status_code: int = 503,
    ):
        """
        Initialize a S3Error.

        Args:
            message (str): A human-readable error message.
            error_type (ErrorType): The category of the error (default: S3_ERROR).
            status_code (int): HTTP-style status code associated with the error (default: 503).
        """
        super().__init__(message, error_type=error_type, status_code=status_code)


class RedisError(Exception):
    """Custom exception for Redis errors.

    Common status codes:
    - 503: Service Unavailable (default) - Redis service is down or unreachable
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.REDIS_ERROR,
        status_code: int = 503,
    ):
        """
        Initialize a RedisError.

        Args:
            message (str): A human-readable error message.
            error_type (ErrorType): The category of the error (default: REDIS_ERROR).
            status_code (int): HTTP-style status code associated with the error (default: 503).
        """
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        super().__init__(self.message)


class JobError(Exception):
    """Custom exception for job queue errors.

    Common status codes:
    - 500: Internal Server Error (default) - Handler failed
    - 400: Bad Request - Unknown job type or invalid options
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.JOB_ERROR,
        status_code: int = 500,
    ):
        """
        Initialize a JobError.

        Args:
            message (str): A human-readable error message.
            error_type (ErrorType): The category of the error (default: JOB_ERROR).
            status_code (int): HTTP-style status code associated with the error (default: 500).
        """
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        super().__init__(self.message)


class ExportError(Exception):
    """Custom exception raised when an export run fails."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.EXPORT_ERROR,
        status_code: int = 500,
    ):
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        super().__init__(self.message)


class WebhookError(Exception):
    """Custom exception for webhook delivery errors.

    Common status codes:
    - 502: Bad Gateway (default) - Receiver answered non-2xx or was unreachable
    - 504: Gateway Timeout - Receiver took longer than the delivery timeout
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.WEBHOOK_ERROR,
        status_code: int = 502,
        response_code: int = None,
    ):
        """
        Initialize a WebhookError.

        Args:
            message (str): A human-readable error message.
            error_type (ErrorType): The category of the error (default: WEBHOOK_ERROR).
            status_code (int): HTTP-style status code associated with the error (default: 502).
            response_code (int): Status returned by the receiver, if any.
        """
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.response_code = response_code
        super().__init__(self.message)
