"""Stand-ins for LLMClient and EmbeddingService.

Both record every call and never touch the network. Vector helpers at the
bottom build embeddings with known cosine similarities.
"""

import json
from typing import Any, Optional


class MockLLMClient:
    """Answers by the first registered pattern found in the prompt (case-insensitive)."""

    DEFAULT_RESPONSE = "Mock LLM response"

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self._responses: dict[str, str] = {}
        self._default = self.DEFAULT_RESPONSE
        self._error: Optional[Exception] = None

    def set_response(self, prompt_pattern: str, response: str):
        self._responses[prompt_pattern.lower()] = response

    def set_json_response(self, prompt_pattern: str, data: Any):
        self.set_response(prompt_pattern, json.dumps(data))

    def set_default_response(self, response: str):
        self._default = response

    def set_error(self, error: Optional[Exception]):
        """Raise ``error`` from every call until cleared with None."""
        self._error = error

    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = 0.3,
        max_tokens: int = 2048,
        max_retries: Optional[int] = None,
    ) -> str:
        self.calls.append(
            {
                "prompt": prompt,
                "system_prompt": system_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if self._error is not None:
            raise self._error

        lowered = prompt.lower()
        return next(
            (reply for pattern, reply in self._responses.items() if pattern in lowered),
            self._default,
        )

    @property
    def prompts(self) -> list[str]:
        return [call["prompt"] for call in self.calls]

    def get_call_count(self) -> int:
        return len(self.calls)

    def get_last_call(self) -> Optional[dict]:
        return self.calls[-1] if self.calls else None


class MockEmbeddingService:
    """Vectors registered per text (case-insensitive), else derived from the text.

    Derived vectors are all-positive, so any two of them are fairly similar;
    tests that care about similarity register explicit vectors.
    """

    def __init__(self, dimensions: int = 8):
        self.dimensions = dimensions
        self._vectors: dict[str, list[float]] = {}
        self._error: Optional[Exception] = None
        self._batches: list[list[str]] = []

    def set_embedding(self, text: str, embedding: list[float]):
        self._vectors[text.lower()] = embedding

    def set_error(self, error: Optional[Exception]):
        self._error = error

    def _vector_for(self, text: str) -> list[float]:
        key = text.lower()
        if key in self._vectors:
            return self._vectors[key]
        seed = sum(map(ord, key)) % 1000
        return [((seed + 7 * i) % 100 + 1) / 100.0 for i in range(self.dimensions)]

    async def embed_texts(
        self,
        texts: list[str],
        input_type: str = "passage",
        batch_size: int | None = None,
    ) -> list[list[float]]:
        self._batches.append(list(texts))
        if self._error is not None:
            raise self._error
        return [self._vector_for(text) for text in texts]

    async def embed_text(self, text: str, input_type: str = "passage") -> list[float]:
        return (await self.embed_texts([text], input_type=input_type))[0]

    async def embed_decision(
        self, summary: str, context: str | None = None, reasoning: str | None = None
    ) -> list[float]:
        return await self.embed_text(
            " ".join(part for part in (summary, context, reasoning) if part)
        )

    @property
    def texts(self) -> list[str]:
        """Every text embedded so far, in call order."""
        return [text for batch in self._batches for text in batch]

    def get_call_count(self) -> int:
        return len(self._batches)


def unit_vector(index: int, dimensions: int = 8) -> list[float]:
    """A one-hot vector; distinct indexes are orthogonal (similarity 0)."""
    vector = [0.0] * dimensions
    vector[index % dimensions] = 1.0
    return vector


def blend(primary: int, secondary: int, weight: float, dimensions: int = 8) -> list[float]:
    """A vector mostly along ``primary`` with ``weight`` of ``secondary``.

    Its cosine similarity to ``unit_vector(primary)`` is
    1 / sqrt(1 + weight**2).
    """
    vector = unit_vector(primary, dimensions)
    vector[secondary % dimensions] += weight
    return vector
