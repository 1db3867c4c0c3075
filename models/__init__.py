# Models
from models.errors import (
    DatabaseError,
    ErrorResponse,
    ErrorType,
    ExternalServiceError,
    InvalidInputError,
    InvalidTransitionError,
    KnowledgeGraphError,
    NotFoundError,
)

__all__ = [
    "DatabaseError",
    "ErrorResponse",
    "ErrorType",
    "ExternalServiceError",
    "InvalidInputError",
    "InvalidTransitionError",
    "KnowledgeGraphError",
    "NotFoundError",
]
