"""Shared pytest fixtures for knowledge graph engine tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from config import Settings
from tests.mocks import (
    InMemoryContentRepository,
    InMemoryDecisionRepository,
    InMemoryGraphRepository,
    MockEmbeddingService,
    MockLLMClient,
)

# ============================================================================
# Settings
# ============================================================================


@pytest.fixture
def settings():
    """Settings with defaults only, independent of the environment and .env."""
    return Settings(_env_file=None)


# ============================================================================
# PostgreSQL Session Fixtures
# ============================================================================


@pytest.fixture
def mock_postgres_session():
    """Mock SQLAlchemy async session for repository unit tests.

    Example:
        async def test_lookup(mock_postgres_session):
            mock_postgres_session.get.return_value = None
            assert await repo.get("missing") is None
    """
    session = MagicMock()

    result = MagicMock()
    result.scalar_one = MagicMock(return_value=None)
    result.scalar_one_or_none = MagicMock(return_value=None)
    result.all = MagicMock(return_value=[])

    session.execute = AsyncMock(return_value=result)
    session.scalars = AsyncMock(return_value=[])
    session.scalar = AsyncMock(return_value=0)
    session.get = AsyncMock(return_value=None)
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.flush = AsyncMock()
    session.delete = AsyncMock()
    session.add = MagicMock()
    session.add_all = MagicMock()
    session.close = AsyncMock()

    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)

    return session


@pytest.fixture
def mock_session_maker(mock_postgres_session):
    """An async_sessionmaker stand-in yielding ``mock_postgres_session``."""
    return MagicMock(return_value=mock_postgres_session)


# ============================================================================
# Redis Fixtures
# ============================================================================


@pytest.fixture
def mock_redis():
    """Create a mock Redis client for unit tests.

    Example:
        async def test_cache_hit(mock_redis):
            mock_redis.mget.side_effect = lambda keys: ['[0.1, 0.2]'] * len(keys)
    """
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.mget = AsyncMock(side_effect=lambda keys: [None] * len(keys))
    redis.set = AsyncMock(return_value=True)
    redis.setex = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.ping = AsyncMock(return_value=True)
    redis.close = AsyncMock()
    return redis


# ============================================================================
# AI service fixtures
# ============================================================================


@pytest.fixture
def mock_llm():
    return MockLLMClient()


@pytest.fixture
def mock_embeddings():
    return MockEmbeddingService()


# ============================================================================
# In-memory stores
# ============================================================================


@pytest.fixture
def content_repo():
    return InMemoryContentRepository()


@pytest.fixture
def graph_repo(content_repo):
    return InMemoryGraphRepository(content_repo)


@pytest.fixture
def decision_repo():
    return InMemoryDecisionRepository()
