"""
Error types for the gateway.

``AppError`` and its subclasses are raised by route handlers and adapters and
rendered by the application's exception handler as::

    {"error": {"code": ..., "message": ..., "details": ..., "requestId": ...}}

``TransportFailure`` and ``UpstreamStatusError`` describe a single failed
attempt of an outbound call. They are what retry callbacks receive and carry
the correlation id of the request that caused them.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .retry import Attempt


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONFLICT = "CONFLICT"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    TIMEOUT = "TIMEOUT"
    DATABASE_ERROR = "DATABASE_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_response(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        if request_id:
            body["requestId"] = request_id
        return {"error": body}


class ValidationError(AppError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


class UnauthorizedError(AppError):
    code = ErrorCode.UNAUTHORIZED
    status_code = 401

    def __init__(self, message: str = "Authentication required", details: Any = None):
        super().__init__(message, details=details)


class ConflictError(AppError):
    code = ErrorCode.CONFLICT
    status_code = 409


class ExternalServiceError(AppError):
    code = ErrorCode.EXTERNAL_API_ERROR
    status_code = 502

    def __init__(self, service: str, message: str, details: Any = None):
        super().__init__(f"{service}: {message}", details=details)
        self.service = service


class UpstreamTimeoutError(AppError):
    code = ErrorCode.TIMEOUT
    status_code = 504

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:g}s", details={"timeout": timeout})


class DatabaseError(AppError):
    code = ErrorCode.DATABASE_ERROR
    status_code = 500


class ServiceUnavailableError(AppError):
    code = ErrorCode.SERVICE_UNAVAILABLE
    status_code = 503


class ConfigurationError(AppError):
    code = ErrorCode.CONFIGURATION_ERROR
    status_code = 500


class ForwardingError(AppError):
    """
    Raised when an outbound call could not produce a response.

    This covers transport failures that persisted through every permitted
    attempt and failures that are not worth retrying at all. The last
    underlying exception is chained as ``__cause__``.
    """

    code = ErrorCode.EXTERNAL_API_ERROR
    status_code = 502

    def __init__(self, url: str, attempts: List["Attempt"], correlation_id: Optional[str] = None):
        last = attempts[-1].error_detail if attempts else None
        message = f"Request to {url} failed after {len(attempts)} attempt(s)"
        if last:
            message = f"{message}: {last}"
        super().__init__(message, details={"attempts": len(attempts)})
        self.url = url
        self.attempts = attempts
        self.correlation_id = correlation_id

    @property
    def detail(self) -> str:
        last = self.attempts[-1].error_detail if self.attempts else None
        return last or self.message

    @property
    def timed_out(self) -> bool:
        """True when every attempt ended in a timeout rather than a refusal or error."""
        return bool(self.attempts) and all(attempt.timed_out for attempt in self.attempts)


class AttemptError(Exception):
    """A single failed attempt of an outbound call."""

    def __init__(self, message: str, *, url: str, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.url = url
        self.correlation_id = correlation_id


class TransportFailure(AttemptError):
    """The attempt produced no response (connection error, timeout)."""


class UpstreamStatusError(AttemptError):
    """The attempt produced a retryable (5xx) response."""

    def __init__(self, status_code: int, reason: str, *, url: str, correlation_id: Optional[str] = None):
        super().__init__(f"HTTP {status_code}: {reason}", url=url, correlation_id=correlation_id)
        self.status_code = status_code
        self.reason = reason


def to_app_error(error: BaseException) -> AppError:
    if isinstance(error, AppError):
        return error
    return AppError(str(error) or "An unknown error occurred")
