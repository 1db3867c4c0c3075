"""Provider abstraction for text generation and embeddings.

Both factories return OpenAI-compatible providers configured from settings, so
any endpoint speaking that API (NVIDIA NIM, OpenAI, a local vLLM server) can
back the engine.

Usage:
    from services.llm_providers import get_llm_provider, get_embedding_provider

    provider = get_llm_provider()
"""

from services.llm_providers.base import BaseEmbeddingProvider, BaseLLMProvider
from services.llm_providers.openai_compatible import (
    OpenAICompatibleEmbeddingProvider,
    OpenAICompatibleLLMProvider,
)


def get_llm_provider(model: str | None = None) -> BaseLLMProvider:
    """Factory: return the configured text generation provider."""
    return OpenAICompatibleLLMProvider(model=model)


def get_embedding_provider() -> BaseEmbeddingProvider:
    """Factory: return the configured embedding provider."""
    return OpenAICompatibleEmbeddingProvider()


__all__ = [
    "BaseLLMProvider",
    "BaseEmbeddingProvider",
    "OpenAICompatibleLLMProvider",
    "OpenAICompatibleEmbeddingProvider",
    "get_llm_provider",
    "get_embedding_provider",
]
