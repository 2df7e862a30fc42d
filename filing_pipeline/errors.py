"""
Error taxonomy shared by the HTTP surface and the job processor.

Every operator-visible failure is rendered as a JSON envelope with a stable
machine-readable code and a human message. Stack traces stay in the logs.
"""

from __future__ import annotations

import enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError


class ErrorCode(enum.Enum):
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


HTTP_STATUS_BY_CODE = {
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.EXTERNAL_API_ERROR: 502,
    ErrorCode.TIMEOUT_ERROR: 504,
}


class ApiError(RuntimeError):
    """Error with a stable code, safe to show to API callers."""

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class UnsupportedJobTypeError(ApiError):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: Any) -> None:
        name = getattr(job_type, "value", job_type)
        super().__init__(ErrorCode.BAD_REQUEST, f"Unsupported job type: {name}", {"jobType": str(name)})


class ExternalServiceError(RuntimeError):
    """
    Failure of a dependency we do not own (SEC, summarization provider).

    `retryable=False` sends the job straight to the dead letter queue.
    """

    error_code = ErrorCode.EXTERNAL_API_ERROR

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


def classify_error(exc: BaseException) -> ErrorCode:
    """Map an exception to the error code used in job results and logs."""
    if isinstance(exc, ApiError):
        return exc.code
    if isinstance(exc, ExternalServiceError):
        return exc.error_code
    if isinstance(exc, TimeoutError):
        return ErrorCode.TIMEOUT_ERROR
    if isinstance(exc, SQLAlchemyError):
        return ErrorCode.DATABASE_ERROR
    return ErrorCode.INTERNAL_ERROR


class StaleJobError(RuntimeError):
    """A claimed job outlived the lock lease without being completed."""
