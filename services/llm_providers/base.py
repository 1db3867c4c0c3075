"""Abstract base classes for text generation and embedding providers."""

from abc import ABC, abstractmethod


class BaseLLMProvider(ABC):
    """Abstract base for chat completion backends."""

    @abstractmethod
    async def generate(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 2048,
    ) -> tuple[str, dict]:
        """Generate a completion.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            temperature: Sampling temperature.
            max_tokens: Max tokens to generate.

        Returns:
            Tuple of (generated_text, usage_dict) where usage_dict holds
            prompt_tokens, completion_tokens and total_tokens.
        """
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model identifier for logging."""
        ...


class BaseEmbeddingProvider(ABC):
    """Abstract base for embedding backends."""

    @abstractmethod
    async def embed(
        self,
        texts: list[str],
        input_type: str = "passage",
    ) -> list[list[float]]:
        """Generate one embedding vector per input text.

        Args:
            texts: Texts to embed.
            input_type: "query" for search queries, "passage" for documents.
        """
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Return the embedding dimensionality."""
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...
