"""
Shared error handling for the Access Layer cache services.
"""

from typing import Dict, Any, List, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class CacheError(AccessLayerException):
    """Base class for cache subsystem errors."""

    status_code = 500


class InvalidResourceError(CacheError):
    """A cache key was requested for something without a stable identity."""

    status_code = 400

    def __init__(self, message: str = "Resource has no stable identity", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_RESOURCE", message, details)


class StoreUnavailableError(CacheError):
    """Cache backend unreachable or timed out."""

    status_code = 503

    def __init__(self, operation: str, message: str = "Cache store unavailable", details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__("STORE_UNAVAILABLE", f"{operation}: {message}", details)


class PropagationIncompleteError(CacheError):
    """
    Invalidation could not reach every dependent.

    Raised after the data mutation may already have been committed, so callers
    must report it separately from data-mutation failures.
    """

    status_code = 500

    def __init__(
        self,
        root: str,
        failed: List[str],
        touched: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.root = root
        self.failed = list(failed)
        self.touched = list(touched or [])
        payload = {"root": root, "failed": self.failed, "touched": self.touched}
        payload.update(details or {})
        super().__init__(
            "PROPAGATION_INCOMPLETE",
            f"Invalidation from {root} did not reach {len(self.failed)} resource(s)",
            payload,
        )


class ArtifactWriteError(CacheError):
    """Page artifact could not be written or removed."""

    def __init__(self, path_key: str, message: str = "Page artifact write failed", details: Optional[Dict[str, Any]] = None):
        self.path_key = path_key
        super().__init__("ARTIFACT_WRITE_FAILED", f"{path_key}: {message}", details)
