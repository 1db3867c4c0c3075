"""Text generation client with retry logic and model fallback.

Used by the clusterer (cluster naming, topic extraction), the decision tracker
(decision extraction) and the gap detector (conflict arbitration). Every caller
treats generation as best-effort, so this client only has to retry transient
failures and surface the rest.
"""

import asyncio
import random
import re

from openai import APIConnectionError, APIStatusError, APITimeoutError

from config import get_settings
from services.llm_providers import BaseLLMProvider, get_llm_provider
from utils.logging import get_logger

logger = get_logger(__name__)

# Closed reasoning blocks, then an unclosed one running to the end of the text
_THINK_BLOCK = re.compile(
    r"<(think|thinking)\b[^>]*>.*?</\1>\s*", re.DOTALL | re.IGNORECASE
)
_THINK_UNCLOSED = re.compile(r"<think(?:ing)?\b[^>]*>.*\Z", re.DOTALL | re.IGNORECASE)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# 529 is the "overloaded" status some gateways use
_FALLBACK_STATUS_CODES = {503, 529}
_FALLBACK_PHRASES = ("model", "overloaded", "capacity", "unavailable")

_TRANSIENT_ERRORS = (TimeoutError, ConnectionError, APIConnectionError, APITimeoutError)


def strip_thinking_tags(text: str) -> str:
    """Drop ``<think>``/``<thinking>`` reasoning blocks from model output."""
    if not text:
        return text
    text = _THINK_BLOCK.sub("", text)
    return _THINK_UNCLOSED.sub("", text).strip()


class LLMClient:
    """Chat completions over the provider abstraction.

    Transient failures (timeouts, dropped connections, 429 and 5xx) are retried
    with capped exponential backoff. When the primary model is overloaded or
    unavailable the request is replayed once against the fallback model.
    """

    def __init__(
        self,
        provider: BaseLLMProvider | None = None,
        fallback_provider: BaseLLMProvider | None = None,
    ):
        self.settings = get_settings()
        self.provider = provider or get_llm_provider()
        self.model = self.provider.model_name
        self.fallback_model = self.settings.llm_fallback_model
        self.fallback_enabled = self.settings.llm_fallback_enabled
        self._fallback_provider = fallback_provider

    def _fallback(self) -> BaseLLMProvider | None:
        if not (self.fallback_enabled and self.fallback_model):
            return None
        if self._fallback_provider is None:
            self._fallback_provider = get_llm_provider(model=self.fallback_model)
        return self._fallback_provider

    def _calculate_backoff(self, attempt: int) -> float:
        """Seconds to wait before retry ``attempt`` (0-based), at most 8s plus jitter."""
        delay = self.settings.llm_retry_base_delay * (2**attempt)
        return min(delay, 8.0) + random.uniform(0, 1)

    def _should_fallback(self, error: Exception) -> bool:
        if not self.fallback_enabled or not isinstance(error, APIStatusError):
            return False
        if error.status_code in _FALLBACK_STATUS_CODES:
            return True
        message = str(error).lower()
        return any(phrase in message for phrase in _FALLBACK_PHRASES)

    @staticmethod
    def _is_transient(error: Exception) -> bool:
        if isinstance(error, APIStatusError):
            return error.status_code in RETRYABLE_STATUS_CODES
        return isinstance(error, _TRANSIENT_ERRORS)

    async def _complete(
        self,
        provider: BaseLLMProvider,
        messages: list[dict],
        temperature: float,
        max_tokens: int,
        max_retries: int,
    ) -> str:
        model = provider.model_name
        attempt = 0
        while True:
            try:
                text, usage = await provider.generate(
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except Exception as e:
                if not self._is_transient(e) or attempt >= max_retries:
                    logger.error(
                        f"Generation with {model} failed after {attempt + 1} "
                        f"attempt(s): {type(e).__name__}: {e}"
                    )
                    raise
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    f"{type(e).__name__} from {model}, "
                    f"retry {attempt + 1}/{max_retries} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            if usage:
                logger.debug(
                    f"{model} used {usage.get('prompt_tokens', 0)} prompt / "
                    f"{usage.get('completion_tokens', 0)} completion tokens"
                )
            return strip_thinking_tags(text)

    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = 0.3,
        max_tokens: int = 2048,
        max_retries: int | None = None,
    ) -> str:
        """Generate a completion for ``prompt``.

        Args:
            prompt: The user message
            system_prompt: Optional system message
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens to generate
            max_retries: Retries per model (default: ``llm_max_retries``)

        Returns:
            The completion text with reasoning tags stripped

        Raises:
            The provider error once retries (and the fallback) are exhausted.
        """
        if max_retries is None:
            max_retries = self.settings.llm_max_retries

        messages = [{"role": "user", "content": prompt}]
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})

        try:
            return await self._complete(
                self.provider, messages, temperature, max_tokens, max_retries
            )
        except Exception as primary_error:
            fallback = self._fallback() if self._should_fallback(primary_error) else None
            if fallback is None:
                raise
            logger.warning(
                f"{self.model} unavailable ({primary_error}), using {self.fallback_model}"
            )
            return await self._complete(
                fallback, messages, temperature, max_tokens, max_retries
            )


_llm_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client
