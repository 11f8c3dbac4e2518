"""
Shared error handling for the Grenze proxy.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for Grenze services."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Validation-related errors.

    ``code`` is the public error identifier rendered to the caller
    (``missing_key`` or ``invalid_request``).
    """

    status_code = 400

    def __init__(self, message: str = "Validation failed", code: str = "invalid_request",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class RateLimitError(AccessLayerException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, message: str = "Too many requests", retry_after: float = 0.0,
                 details: Optional[Dict[str, Any]] = None):
        self.retry_after = retry_after
        super().__init__("rate_limited", message, details)


class StoreUnavailableError(AccessLayerException):
    """The shared bucket store could not be reached or the script failed."""

    status_code = 503

    def __init__(self, message: str = "Bucket store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("store_unavailable", message, details)


class TransportError(AccessLayerException):
    """Downstream request failed before a complete response was received."""

    status_code = 502

    def __init__(self, message: str = "Downstream request failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("downstream_error", message, details)
