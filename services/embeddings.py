"""Embedding service over an OpenAI-compatible endpoint with Redis caching.

Vectors are cached per (model, input type, text) for ``embedding_cache_ttl``
seconds. Texts shorter than ``embedding_cache_min_text_length`` skip the cache,
and an unreachable Redis disables caching for the life of the service.
"""

import hashlib
import json
from typing import List, Sequence

import redis.asyncio as redis

from config import get_settings
from services.llm_providers import BaseEmbeddingProvider, get_embedding_provider
from utils.logging import get_logger

logger = get_logger(__name__)


def decision_text(summary: str, context: str | None, reasoning: str | None) -> str:
    """Text used to embed a decision record."""
    return " ".join(part for part in (summary, context, reasoning) if part)


def conflict_text(summary: str, reasoning: str | None, context: str | None) -> str:
    """Text embedded when comparing decisions for conflicts."""
    return f"{summary}. {reasoning or ''} Context: {context or ''}"


class EmbeddingService:
    """Cache-fronted batching wrapper around an embedding provider."""

    def __init__(
        self,
        provider: BaseEmbeddingProvider | None = None,
        redis_client: redis.Redis | None = None,
    ):
        self._settings = get_settings()
        self.provider = provider or get_embedding_provider()
        self.dimensions = self.provider.dimensions
        self._redis = redis_client
        self._redis_failed = False

    async def _get_redis(self) -> redis.Redis | None:
        if self._redis is not None or self._redis_failed or not self._settings.redis_url:
            return self._redis
        client = redis.from_url(
            self._settings.redis_url, encoding="utf-8", decode_responses=True
        )
        try:
            await client.ping()
        except Exception as e:
            logger.warning(f"Embedding cache unavailable, continuing without it: {e}")
            self._redis_failed = True
            return None
        self._redis = client
        return client

    def _get_cache_key(self, text: str, input_type: str) -> str:
        """``emb:{model}:{input_type}:{md5(text)}``, model without its vendor prefix."""
        digest = hashlib.md5(text.encode("utf-8")).hexdigest()
        model = self.provider.model_name.rsplit("/", 1)[-1]
        return f"emb:{model}:{input_type}:{digest}"

    def _cache_keys(self, texts: Sequence[str], input_type: str) -> list[str | None]:
        min_length = self._settings.embedding_cache_min_text_length
        return [
            self._get_cache_key(text, input_type) if len(text) >= min_length else None
            for text in texts
        ]

    async def _read_cache(self, keys: Sequence[str | None]) -> dict[str, List[float]]:
        wanted = [key for key in keys if key is not None]
        if not wanted:
            return {}
        client = await self._get_redis()
        if client is None:
            return {}
        try:
            values = await client.mget(wanted)
        except Exception as e:
            logger.warning(f"Embedding cache read failed: {e}")
            return {}
        return {key: json.loads(value) for key, value in zip(wanted, values) if value}

    async def _write_cache(self, entries: Sequence[tuple[str, List[float]]]) -> None:
        if not entries:
            return
        client = await self._get_redis()
        if client is None:
            return
        ttl = self._settings.embedding_cache_ttl
        for key, vector in entries:
            try:
                await client.setex(key, ttl, json.dumps(vector))
            except Exception as e:
                logger.warning(f"Embedding cache write failed: {e}")
                return

    async def embed_texts(
        self,
        texts: List[str],
        input_type: str = "passage",
        batch_size: int | None = None,
    ) -> List[List[float]]:
        """Embed ``texts`` in input order.

        Cached vectors come from Redis; the rest go to the provider in batches
        of ``batch_size`` (default: ``embedding_batch_size``). Provider errors
        propagate.
        """
        if not texts:
            return []
        batch_size = batch_size or self._settings.embedding_batch_size

        keys = self._cache_keys(texts, input_type)
        cached = await self._read_cache(keys)
        results: List[List[float] | None] = [
            cached.get(key) if key is not None else None for key in keys
        ]
        pending = [i for i, vector in enumerate(results) if vector is None]
        if cached:
            logger.debug(f"Embedding cache hits: {len(texts) - len(pending)}/{len(texts)}")

        for start in range(0, len(pending), batch_size):
            indices = pending[start : start + batch_size]
            vectors = await self.provider.embed(
                [texts[i] for i in indices], input_type=input_type
            )
            fresh = []
            for i, vector in zip(indices, vectors):
                results[i] = vector
                if keys[i] is not None:
                    fresh.append((keys[i], vector))
            await self._write_cache(fresh)

        return [vector if vector is not None else [] for vector in results]

    async def embed_text(self, text: str, input_type: str = "passage") -> List[float]:
        """Embed one text; ``input_type`` is "passage" for documents, "query" for searches."""
        return (await self.embed_texts([text], input_type=input_type))[0]

    async def embed_decision(
        self, summary: str, context: str | None = None, reasoning: str | None = None
    ) -> List[float]:
        return await self.embed_text(decision_text(summary, context, reasoning))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()


_embedding_service: EmbeddingService | None = None


def get_embedding_service() -> EmbeddingService:
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
