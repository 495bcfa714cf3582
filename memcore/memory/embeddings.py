"""
MemCore — Embedding Service
=============================
Converts text into vectors for the vector store, vector retrieval, and
dedup similarity checks.

Design:
- Protocol-based ``EmbeddingProvider`` for backend flexibility.
- ``MockEmbeddingProvider`` uses deterministic hashing (test-safe, offline).
- ``AzureOpenAIEmbeddingProvider`` for real Azure OpenAI embeddings.

Usage:
    from memcore.memory.embeddings import EmbeddingService, MockEmbeddingProvider

    service = EmbeddingService(provider=MockEmbeddingProvider())
    vector = await service.embed("some text")

    # Real provider:
    from memcore.memory.embeddings import AzureOpenAIEmbeddingProvider
    provider = AzureOpenAIEmbeddingProvider.from_settings()
    service = EmbeddingService(provider=provider)
"""

from __future__ import annotations

import hashlib
import math
from typing import Protocol, Sequence, runtime_checkable

from memcore.core.config import Settings, get_settings
from memcore.core.exceptions import InvalidArgumentError, MissingConfigurationError
from memcore.core.logging import get_logger

logger = get_logger(__name__)


# ── Constants ───────────────────────────────────────────────────────────

DEFAULT_EMBEDDING_DIMENSION = 1536  # text-embedding-3-small


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


# ── Provider Protocol ───────────────────────────────────────────────────

@runtime_checkable
class EmbeddingProvider(Protocol):
    """Backend that produces embedding vectors from text."""

    @property
    def dimension(self) -> int:
        """Dimensionality of the output vectors."""
        ...

    async def embed(self, text: str) -> list[float]:
        """Embed a single text string."""
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts in a single call."""
        ...


# ── Mock Provider (deterministic, for tests) ───────────────────────────

class MockEmbeddingProvider:
    """
    Deterministic embedding provider using SHA-256 hashing.

    Identical input gives identical unit vectors; different input gives
    effectively unrelated vectors.
    """

    def __init__(self, dimension: int = DEFAULT_EMBEDDING_DIMENSION) -> None:
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        return self._hash_to_vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._hash_to_vector(t) for t in texts]

    def _hash_to_vector(self, text: str) -> list[float]:
        """SHA-256 digest bytes mapped to [-1, 1], tiled to ``dimension``, normalised."""
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        base_floats = [(b / 127.5) - 1.0 for b in digest]
        vector: list[float] = []
        while len(vector) < self._dimension:
            vector.extend(base_floats)
        vector = vector[: self._dimension]
        magnitude = sum(v * v for v in vector) ** 0.5
        if magnitude > 0:
            vector = [v / magnitude for v in vector]
        return vector


# ── Service ─────────────────────────────────────────────────────────────

class EmbeddingService:
    """
    High-level embedding interface consumed by ingestion, retrieval and dedup.

    Wraps an ``EmbeddingProvider`` and validates input before delegating.
    """

    def __init__(
        self,
        provider: EmbeddingProvider | None = None,
        dimension: int = DEFAULT_EMBEDDING_DIMENSION,
    ) -> None:
        self._provider = provider or MockEmbeddingProvider(dimension=dimension)
        self._dimension = self._provider.dimension

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "EmbeddingService":
        """Azure OpenAI provider when configured, else the deterministic mock."""
        settings = settings or get_settings()
        if (
            settings.azure_openai_api_key
            and settings.azure_openai_endpoint
            and settings.azure_openai_embedding_deployment
        ):
            return cls(provider=AzureOpenAIEmbeddingProvider.from_settings(settings))
        logger.warning(
            "embedding.provider.mock",
            reason="azure embedding settings incomplete",
        )
        return cls(dimension=settings.embedding_dimension)

    @property
    def dimension(self) -> int:
        """Dimensionality of output vectors."""
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        """Embed a single text string.  Raises on empty input."""
        if not text or not text.strip():
            raise InvalidArgumentError("Cannot embed empty or whitespace-only text.")
        return await self._provider.embed(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts.  Raises if any text is empty."""
        if not texts:
            raise InvalidArgumentError("Cannot embed an empty list of texts.")
        for i, t in enumerate(texts):
            if not t or not t.strip():
                raise InvalidArgumentError(
                    f"Text at index {i} is empty or whitespace-only."
                )
        return await self._provider.embed_batch(texts)


# ── Azure OpenAI Embedding Provider ───────────────────────────────────────


class AzureOpenAIEmbeddingProvider:
    """
    Azure OpenAI embedding provider.

    Requires the following environment variables:
        - MEMCORE_AZURE_OPENAI_API_KEY
        - MEMCORE_AZURE_OPENAI_ENDPOINT
        - MEMCORE_AZURE_OPENAI_EMBEDDING_DEPLOYMENT
    """

    EMBEDDING_DIMENSIONS = {
        "text-embedding-ada-002": 1536,
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
    }

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        api_version: str,
        deployment_name: str,
        dimension: int | None = None,
    ) -> None:
        self._api_key = api_key
        self._endpoint = endpoint
        self._api_version = api_version
        self._deployment_name = deployment_name
        self._dimension = dimension or self._get_default_dimension(deployment_name)
        self._client = None

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None
    ) -> "AzureOpenAIEmbeddingProvider":
        """Create an AzureOpenAIEmbeddingProvider from application settings."""
        settings = settings or get_settings()
        if not settings.azure_openai_api_key:
            raise MissingConfigurationError(
                "MEMCORE_AZURE_OPENAI_API_KEY is required for AzureOpenAIEmbeddingProvider"
            )
        if not settings.azure_openai_endpoint:
            raise MissingConfigurationError(
                "MEMCORE_AZURE_OPENAI_ENDPOINT is required for AzureOpenAIEmbeddingProvider"
            )
        if not settings.azure_openai_embedding_deployment:
            raise MissingConfigurationError(
                "MEMCORE_AZURE_OPENAI_EMBEDDING_DEPLOYMENT is required for "
                "AzureOpenAIEmbeddingProvider"
            )
        return cls(
            api_key=settings.azure_openai_api_key.get_secret_value(),
            endpoint=settings.azure_openai_endpoint,
            api_version=settings.azure_openai_api_version,
            deployment_name=settings.azure_openai_embedding_deployment,
        )

    def _get_default_dimension(self, deployment_name: str) -> int:
        for model_name, dim in self.EMBEDDING_DIMENSIONS.items():
            if model_name in deployment_name.lower():
                return dim
        return DEFAULT_EMBEDDING_DIMENSION

    def _get_client(self):
        """Lazily initialize the OpenAI client."""
        if self._client is None:
            from openai import AsyncAzureOpenAI
            self._client = AsyncAzureOpenAI(
                api_key=self._api_key,
                azure_endpoint=self._endpoint,
                api_version=self._api_version,
            )
        return self._client

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts in a single API call, preserving input order."""
        client = self._get_client()

        logger.debug(
            "embedding.embed_batch.start",
            deployment=self._deployment_name,
            batch_size=len(texts),
        )

        try:
            response = await client.embeddings.create(
                model=self._deployment_name,
                input=texts,
            )
        except Exception as exc:
            logger.error(
                "embedding.embed_batch.error",
                deployment=self._deployment_name,
                batch_size=len(texts),
                error=str(exc),
            )
            raise

        ordered = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in ordered]
