"""
Shared error handling for the Gateway Limits service.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class LimitsServiceException(Exception):
    """Base exception for Gateway Limits components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(LimitsServiceException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StoreError(LimitsServiceException):
    """Shared counter store errors (connection loss, timeouts, bad replies)."""

    def __init__(self, message: str = "Counter store error", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_ERROR", message, details)


class ScriptNotLoadedError(StoreError):
    """The store does not know the requested script hash (NOSCRIPT)."""

    def __init__(self, sha: str, details: Optional[Dict[str, Any]] = None):
        self.sha = sha
        super().__init__(f"Script {sha} is not loaded", details)
        self.code = "SCRIPT_NOT_LOADED"
