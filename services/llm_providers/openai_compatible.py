"""Providers for any OpenAI-compatible endpoint (NVIDIA NIM, OpenAI, vLLM, ...)."""

from openai import AsyncOpenAI

from config import get_settings
from services.llm_providers.base import BaseEmbeddingProvider, BaseLLMProvider


class OpenAICompatibleLLMProvider(BaseLLMProvider):
    """Chat completions through the openai SDK with a configurable base URL."""

    def __init__(self, model: str | None = None, client: AsyncOpenAI | None = None):
        settings = get_settings()
        self.client = client or AsyncOpenAI(
            base_url=settings.llm_base_url,
            api_key=settings.get_llm_api_key(),
            timeout=settings.llm_timeout,
        )
        self._model = model or settings.llm_model

    @property
    def model_name(self) -> str:
        return self._model

    async def generate(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 2048,
    ) -> tuple[str, dict]:
        response = await self.client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=temperature,
            top_p=0.95,
            max_tokens=max_tokens,
        )

        content = response.choices[0].message.content or ""
        usage = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens or 0,
                "completion_tokens": response.usage.completion_tokens or 0,
                "total_tokens": response.usage.total_tokens or 0,
            }

        return content, usage


class OpenAICompatibleEmbeddingProvider(BaseEmbeddingProvider):
    """Embeddings through the openai SDK with a configurable base URL."""

    def __init__(self, client: AsyncOpenAI | None = None):
        settings = get_settings()
        self.client = client or AsyncOpenAI(
            api_key=settings.get_embedding_api_key(),
            base_url=settings.embedding_base_url,
            timeout=settings.llm_timeout,
        )
        self._model = settings.embedding_model
        self._dimensions = settings.embedding_dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self._model

    async def embed(
        self,
        texts: list[str],
        input_type: str = "passage",
    ) -> list[list[float]]:
        response = await self.client.embeddings.create(
            input=texts,
            model=self._model,
            encoding_format="float",
            extra_body={"input_type": input_type, "truncate": "END"},
        )
        return [item.embedding for item in response.data]
