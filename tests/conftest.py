"""
MemCore — Test Fixtures
=========================
Shared pytest fixtures.

Stores are real but local: a file-backed SQLite database under ``tmp_path``
(aiosqlite) and an in-process ephemeral Chroma client with a unique
collection prefix.  Embeddings and LLM calls use the deterministic mocks.
"""

from __future__ import annotations

import asyncio
import os

import pytest
import pytest_asyncio

from memcore.memory.embeddings import EmbeddingService, MockEmbeddingProvider
from memcore.memory.relational_store import SQLRelationalStore
from memcore.memory.types import MemCell, MemoryRecord
from memcore.memory.vector_store import ChromaVectorStore

TEST_DIMENSION = 32


# ── Settings ────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Ensure a fresh Settings instance for each test."""
    from memcore.core.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Return a settings instance with test defaults."""
    os.environ.setdefault("MEMCORE_ENVIRONMENT", "development")
    os.environ.setdefault("MEMCORE_LOG_LEVEL", "DEBUG")
    os.environ.setdefault("MEMCORE_LOG_FORMAT", "console")
    from memcore.core.config import get_settings
    return get_settings()


# ── Stores ──────────────────────────────────────────────────────────────
@pytest_asyncio.fixture
async def relational(tmp_path):
    """SQLite-backed relational store with the schema created."""
    store = SQLRelationalStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'memcore.db'}")
    await store.create_all()
    yield store
    await store.close()


@pytest.fixture
def vector():
    """Ephemeral Chroma store; the random prefix isolates each test."""
    return ChromaVectorStore(collection_prefix="test")


@pytest.fixture
def embeddings():
    return EmbeddingService(MockEmbeddingProvider(dimension=TEST_DIMENSION))


# ── Fake Extractors ─────────────────────────────────────────────────────
class FakeExtractor:
    """
    Returns canned records (deep copies), raises, or stalls.

    ``calls`` counts invocations so tests can assert which types ran.
    """

    def __init__(
        self,
        records: list[MemoryRecord] | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
        result: object = None,
    ) -> None:
        self._records = records or []
        self._error = error
        self._delay = delay
        self._result = result
        self.calls = 0

    async def extract(self, unit: MemCell):
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        if self._result is not None:
            return self._result
        return [r.model_copy(deep=True) for r in self._records]


@pytest.fixture
def fake_extractor():
    """Factory for ``FakeExtractor`` instances."""
    return FakeExtractor
