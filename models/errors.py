"""Exception hierarchy and serialisable error shape for the knowledge graph engine.

Every engine error carries an ``ErrorType`` code and can be rendered into the
standard ``ErrorResponse`` shape so callers hosting the engine (an API, a
worker) can report failures uniformly.

Usage:
    from models.errors import NotFoundError

    try:
        await tracker.get_decision(decision_id)
    except NotFoundError as e:
        payload = e.to_response(request_id=request_id)

Error response format:
{
    "error": "NotFound",
    "message": "Decision not found: 1b2c...",
    "details": {"entity": "Decision", "entity_id": "1b2c..."},
    "request_id": "abc-123-def-456",
    "timestamp": "2026-01-29T12:00:00Z"
}
"""

from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error payload.

    Attributes:
        error: Error type/code (e.g., "NotFound", "InvalidTransition")
        message: Human-readable error message
        details: Optional additional context about the error
        request_id: Optional correlation ID for tracing
        timestamp: When the error occurred (ISO 8601 format)
    """

    error: str = Field(
        ...,
        description="Error type/code (e.g., 'NotFound', 'DatabaseError')",
        examples=["NotFound", "InvalidTransition", "ExternalServiceError"],
    )
    message: str = Field(..., description="Human-readable error message")
    details: Optional[dict[str, Any]] = Field(
        default=None,
        description="Additional error context",
        examples=[{"entity": "Decision", "entity_id": "123"}],
    )
    request_id: Optional[str] = Field(
        default=None, description="Request correlation ID for tracing"
    )
    timestamp: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="When the error occurred (ISO 8601)",
    )


class ErrorType:
    """Standard error type codes."""

    VALIDATION_ERROR = "ValidationError"
    NOT_FOUND = "NotFound"
    INVALID_TRANSITION = "InvalidTransition"
    DATABASE_ERROR = "DatabaseError"
    EXTERNAL_SERVICE_ERROR = "ExternalServiceError"
    INTERNAL_ERROR = "InternalError"


class KnowledgeGraphError(Exception):
    """Base class for all engine errors."""

    error_type: str = ErrorType.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self, request_id: Optional[str] = None) -> dict[str, Any]:
        """Render as an ErrorResponse dictionary."""
        response = ErrorResponse(
            error=self.error_type,
            message=self.message,
            details=self.details or None,
            request_id=request_id,
        )
        return response.model_dump(exclude_none=True)


class NotFoundError(KnowledgeGraphError):
    """A referenced entity does not exist."""

    error_type = ErrorType.NOT_FOUND

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} not found: {entity_id}",
            {"entity": entity, "entity_id": entity_id},
        )


class DatabaseError(KnowledgeGraphError):
    """A persistence operation failed."""

    error_type = ErrorType.DATABASE_ERROR

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        message = f"Database operation failed: {operation}"
        if cause is not None:
            message = f"{message} ({type(cause).__name__}: {cause})"
        super().__init__(message, {"operation": operation})


class InvalidTransitionError(KnowledgeGraphError):
    """A decision status change is not allowed by the lifecycle."""

    error_type = ErrorType.INVALID_TRANSITION

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot transition decision from '{from_status}' to '{to_status}'",
            {"from_status": from_status, "to_status": to_status},
        )


class ExternalServiceError(KnowledgeGraphError):
    """The embedding or text generation service failed where it is required."""

    error_type = ErrorType.EXTERNAL_SERVICE_ERROR

    def __init__(self, service: str, cause: Optional[Exception] = None):
        self.service = service
        self.cause = cause
        message = f"{service} service failed"
        if cause is not None:
            message = f"{message}: {type(cause).__name__}: {cause}"
        super().__init__(message, {"service": service})


class InvalidInputError(KnowledgeGraphError):
    """An operation was called with arguments it cannot act on."""

    error_type = ErrorType.VALIDATION_ERROR
