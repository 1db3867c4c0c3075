"""Mock implementations for testing."""

from .llm_mock import MockEmbeddingService, MockLLMClient
from .store_mock import (
    InMemoryContentRepository,
    InMemoryDecisionRepository,
    InMemoryGraphRepository,
)

__all__ = [
    "MockLLMClient",
    "MockEmbeddingService",
    "InMemoryContentRepository",
    "InMemoryGraphRepository",
    "InMemoryDecisionRepository",
]
