"""
RFC 7807 Problem Details error types.

Every error raised by the segment engine carries a machine-readable code and
an HTTP status so the API layer can render it as
"Problem Details for HTTP APIs" without translating exceptions itself.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field
import uuid
from datetime import datetime, timezone


class ErrorCode(str, Enum):
    """Standardized error codes for the analytics engine."""

    # Validation
    INVALID_CRITERIA = "VAL_005"

    # Resource
    NOT_FOUND = "RES_001"

    # Server
    SERVICE_UNAVAILABLE = "SRV_002"
    PARTIAL_WRITE = "SRV_004"


class ProblemDetail(BaseModel):
    """
    RFC 7807 Problem Details schema.

    Attributes:
        type: URI reference identifying the problem type
        title: Short, human-readable summary
        status: HTTP status code
        detail: Human-readable explanation specific to this occurrence
        code: Machine-readable error code for client handling
        timestamp: ISO 8601 timestamp of when the error occurred
        trace_id: Unique identifier for tracing in logs
        errors: List of field-level validation errors (for 422)
        retry_after: Seconds to wait before retrying (for 503)
    """

    type: str = Field(
        default="about:blank",
        description="URI reference identifying the problem type"
    )
    title: str = Field(
        description="Short, human-readable summary of the problem"
    )
    status: int = Field(
        description="HTTP status code"
    )
    detail: str = Field(
        description="Human-readable explanation specific to this occurrence"
    )
    code: str = Field(
        description="Machine-readable error code"
    )
    timestamp: str = Field(
        description="ISO 8601 timestamp"
    )
    trace_id: str = Field(
        description="Unique trace ID for debugging"
    )
    errors: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Field-level validation errors"
    )
    retry_after: Optional[int] = Field(
        default=None,
        description="Seconds to wait before retrying"
    )


class AnalyticsError(Exception):
    """
    Base exception for the analytics engine with RFC 7807 support.

    Usage:
        raise AnalyticsError(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail="Segment not found",
        )
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        title: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        retry_after: Optional[int] = None,
    ):
        self.status_code = status_code
        self.code = code
        self.detail = detail
        self.title = title or self._default_title(status_code)
        self.errors = errors
        self.retry_after = retry_after
        self.trace_id = str(uuid.uuid4())[:12]
        self.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        super().__init__(detail)

    @staticmethod
    def _default_title(status_code: int) -> str:
        """Get default title based on status code."""
        titles = {
            400: "Bad Request",
            404: "Not Found",
            409: "Conflict",
            422: "Validation Error",
            500: "Internal Server Error",
            503: "Service Unavailable",
        }
        return titles.get(status_code, "Error")

    def to_problem_detail(self) -> ProblemDetail:
        """Convert to RFC 7807 ProblemDetail."""
        return ProblemDetail(
            type=f"https://analytics.local/problems/{self.code.name.lower().replace('_', '-')}",
            title=self.title,
            status=self.status_code,
            detail=self.detail,
            code=self.code.value,
            timestamp=self.timestamp,
            trace_id=self.trace_id,
            errors=self.errors,
            retry_after=self.retry_after,
        )


# Convenience exception classes

class NotFoundError(AnalyticsError):
    """Referenced segment or project does not exist (404). Not retryable."""

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail=f"{resource} with ID {resource_id} was not found",
        )


class InvalidCriteriaError(AnalyticsError):
    """Criteria use a condition type/operator pair with no evaluation path (422)."""

    def __init__(
        self,
        detail: str,
        errors: Optional[List[Dict[str, Any]]] = None
    ):
        super().__init__(
            status_code=422,
            code=ErrorCode.INVALID_CRITERIA,
            detail=detail,
            errors=errors,
        )

    @classmethod
    def from_validation_error(cls, exc) -> "InvalidCriteriaError":
        """Build from a pydantic ValidationError raised while parsing criteria."""
        errors = []
        for error in exc.errors():
            errors.append({
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            })
        return cls("Segment criteria are invalid", errors=errors)


class StoreUnavailableError(AnalyticsError):
    """Event or segment store unreachable (503). Transient; retrying is up to the caller."""

    def __init__(self, store: str, detail: str, retry_after: int = 5):
        self.store = store
        super().__init__(
            status_code=503,
            code=ErrorCode.SERVICE_UNAVAILABLE,
            detail=f"{store} unavailable: {detail}",
            retry_after=retry_after,
        )


class PartialWriteFailureError(AnalyticsError):
    """Membership snapshot replace failed; the segment was not recalculated (500)."""

    def __init__(self, segment_id: str, detail: str):
        self.segment_id = segment_id
        super().__init__(
            status_code=500,
            code=ErrorCode.PARTIAL_WRITE,
            detail=f"Recalculation of segment {segment_id} failed: {detail}",
        )
