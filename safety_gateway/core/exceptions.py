"""
Custom exceptions for the Content Safety Gateway.

Every error that is rejected before a moderation request is admitted (or that
concerns history lookups) is raised as one of these types and rendered by the
application-level exception handler. Failures inside an admitted moderation
call never reach this layer: the moderation service turns them into
structured outcomes and ledger records instead.
"""

from typing import Optional, Dict, Any


class ContentSafetyGatewayException(Exception):
    """Base exception for all gateway errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONTENT_SAFETY_GATEWAY_ERROR",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.headers = headers
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        """JSON body returned to the caller."""
        payload: Dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class AuthenticationException(ContentSafetyGatewayException):
    """Raised when the bearer token is missing or unknown."""

    def __init__(self, message: str = "Invalid API token", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="AUTHENTICATION_FAILED",
            details=details,
            headers={"WWW-Authenticate": "Bearer"}
        )


class QuotaExceededException(ContentSafetyGatewayException):
    """Raised when a user has spent their daily request quota."""

    def __init__(
        self,
        message: str = "Request limit exceeded",
        requests_used: int = 0,
        requests_limit: int = 0
    ):
        super().__init__(
            message=message,
            error_code="QUOTA_EXCEEDED",
            details={"requests_used": requests_used, "requests_limit": requests_limit}
        )


class RateLimitException(ContentSafetyGatewayException):
    """Raised when a client IP exceeds the per-minute request budget."""

    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        retry_after: int = 60
    ):
        super().__init__(
            message=message,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)}
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "error_code": self.error_code,
            "retry_after": self.details["retry_after"],
        }


class ValidationException(ContentSafetyGatewayException):
    """Raised when input validation fails."""

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details={**(details or {}), "field": field}
        )


class ContentTooLargeException(ValidationException):
    """Raised when an uploaded file exceeds the size limit."""

    def __init__(
        self,
        message: str = "Content size exceeds limit",
        field: str = "image",
        max_size: int = 0,
        actual_size: int = 0
    ):
        super().__init__(
            message=message,
            field=field,
            details={"max_size": max_size, "actual_size": actual_size}
        )


class RecordNotFoundException(ContentSafetyGatewayException):
    """Raised when a ledger record does not exist or belongs to another user."""

    def __init__(self, record_id: int):
        super().__init__(
            message="Moderation request not found",
            error_code="NOT_FOUND",
            details={"request_id": record_id}
        )


class InvalidSignatureException(ContentSafetyGatewayException):
    """Raised when a temporary storage URL is tampered with or expired."""

    def __init__(self, message: str = "Invalid or expired signature"):
        super().__init__(message=message, error_code="INVALID_SIGNATURE")


class BlobNotFoundException(ContentSafetyGatewayException):
    """Raised when a signed URL points at a blob that is not stored."""

    def __init__(self, path: str):
        super().__init__(
            message="Stored file not found",
            error_code="NOT_FOUND",
            details={"path": path}
        )


class DatabaseException(ContentSafetyGatewayException):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
            details={**(details or {}), "operation": operation}
        )


# Exception to HTTP status code mapping, most specific class first
EXCEPTION_STATUS_MAPPING = {
    AuthenticationException: 401,  # Unauthorized
    QuotaExceededException: 429,  # Too Many Requests
    RateLimitException: 429,  # Too Many Requests
    ContentTooLargeException: 422,  # Unprocessable Entity
    ValidationException: 422,  # Unprocessable Entity
    RecordNotFoundException: 404,  # Not Found
    InvalidSignatureException: 403,  # Forbidden
    BlobNotFoundException: 404,  # Not Found
    DatabaseException: 500,  # Internal Server Error
}


def status_code_for(exception: ContentSafetyGatewayException) -> int:
    """Resolve the HTTP status for an exception, honouring subclasses."""
    for exc_type, status_code in EXCEPTION_STATUS_MAPPING.items():
        if isinstance(exception, exc_type):
            return status_code
    return 500
