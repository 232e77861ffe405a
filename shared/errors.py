"""
Shared error handling for the Users service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import get_request_id


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ServiceException(Exception):
    """Base exception for service errors."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id or get_request_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class NotFoundError(ServiceException):
    """No record matches the requested identifier."""

    status_code = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(ServiceException):
    """A uniqueness constraint rejected the write."""

    status_code = 409

    def __init__(self, message: str = "Resource conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class ValidationError(ServiceException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StoreUnavailableError(ServiceException):
    """The durable store could not be reached or the query failed."""

    status_code = 500

    def __init__(self, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class CacheDegradedError(ServiceException):
    """A cache operation failed. Never returned to API callers."""

    status_code = 500

    def __init__(self, message: str = "Cache degraded", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_DEGRADED", message, details)
