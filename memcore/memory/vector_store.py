"""
MemCore — Vector Store
========================
ChromaDB-backed secondary index: one cosine-space collection per memory type.

The vector side is rebuildable from the relational store (see
``MemoryManager.ensure_indexed``), so a record missing here is simply not
vector-searchable.

Metadata per entry:
- ``user_id``, ``group_id`` (omitted when null), ``has_group`` flag
- ``memory_type``, ``created_at`` / ``updated_at`` (ISO strings)
- ``record_json``: the serialized record payload
The display content is stored as the Chroma document. Chroma calls are
synchronous and run in a worker thread so callers can bound them with
``asyncio.wait_for``.

Usage:
    from memcore.memory.vector_store import ChromaVectorStore

    store = ChromaVectorStore(persist_directory="./chroma")
    await store.upsert(record, embedding)
    hits = await store.search("episodic_memory", query_embedding, limit=10, user_id="u1")
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, Sequence, runtime_checkable

import chromadb
from chromadb.config import Settings as ChromaSettings

from memcore.core.config import Settings, get_settings
from memcore.core.exceptions import StorageError
from memcore.core.logging import get_logger
from memcore.memory.types import MemoryRecord, StoredMemory

logger = get_logger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")


@dataclass(frozen=True)
class VectorHit:
    """Single nearest-neighbour hit with cosine similarity (1 - distance)."""

    memory: StoredMemory
    similarity: float


# ── Interface ───────────────────────────────────────────────────────────


@runtime_checkable
class VectorStore(Protocol):
    """Per-memory-type embedding collections with user/group filtering."""

    async def upsert(self, record: MemoryRecord, embedding: list[float]) -> None: ...

    async def search(
        self,
        memory_type: str,
        embedding: list[float],
        limit: int,
        *,
        user_id: str | None = None,
        group_id: str | None = None,
        user_layer_only: bool = False,
    ) -> list[VectorHit]: ...

    async def delete(self, memory_type: str, memory_ids: Sequence[str]) -> None: ...

    async def existing_ids(self, memory_type: str, memory_ids: Sequence[str]) -> set[str]: ...

    async def count(self, memory_type: str) -> int: ...


# ── ChromaDB Implementation ─────────────────────────────────────────────


class ChromaVectorStore:
    """
    ``VectorStore`` over ChromaDB.

    Configuration:
        persist_directory: path for persistent storage; None uses the
                           in-process ephemeral client.
        collection_prefix: collection names are ``<prefix>_<memory_type>``.
                           Ephemeral clients share state within a process,
                           so their prefix gets a random suffix.
    """

    def __init__(
        self,
        persist_directory: str | None = None,
        collection_prefix: str = "memcore",
    ) -> None:
        chroma_settings = ChromaSettings(anonymized_telemetry=False)
        if persist_directory:
            self._client = chromadb.PersistentClient(
                path=persist_directory,
                settings=chroma_settings,
            )
            self._prefix = collection_prefix
        else:
            self._client = chromadb.EphemeralClient(settings=chroma_settings)
            self._prefix = f"{collection_prefix}_{uuid.uuid4().hex[:8]}"
        self._collections: dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ChromaVectorStore":
        settings = settings or get_settings()
        return cls(
            persist_directory=settings.chroma_persist_directory,
            collection_prefix=settings.chroma_collection_prefix,
        )

    def collection_name(self, memory_type: str) -> str:
        safe_type = _INVALID_NAME_CHARS.sub("_", memory_type).strip("_.-") or "generic"
        return f"{self._prefix}_{safe_type}"[:63]

    def _collection(self, memory_type: str):
        if memory_type not in self._collections:
            self._collections[memory_type] = self._client.get_or_create_collection(
                name=self.collection_name(memory_type),
                metadata={"hnsw:space": "cosine"},
            )
        return self._collections[memory_type]

    # ── Metadata Mapping ────────────────────────────────────────────────

    @staticmethod
    def _record_to_metadata(record: MemoryRecord) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "memory_type": record.memory_type,
            "has_group": record.group_id is not None,
            "record_json": json.dumps(record.to_blob(), ensure_ascii=False),
        }
        if record.user_id is not None:
            metadata["user_id"] = record.user_id
        if record.group_id is not None:
            metadata["group_id"] = record.group_id
        if record.created_at is not None:
            metadata["created_at"] = record.created_at.isoformat()
        if record.updated_at is not None:
            metadata["updated_at"] = record.updated_at.isoformat()
        return metadata

    @staticmethod
    def _metadata_to_stored(
        memory_id: str, document: str | None, metadata: dict[str, Any]
    ) -> StoredMemory:
        def _ts(key: str) -> datetime | None:
            value = metadata.get(key)
            if not value:
                return None
            try:
                return datetime.fromisoformat(value)
            except (TypeError, ValueError):
                return None

        try:
            blob = json.loads(metadata.get("record_json") or "{}")
        except json.JSONDecodeError:
            blob = {}
        return StoredMemory(
            id=memory_id,
            memory_type=metadata.get("memory_type", ""),
            content=document or "",
            user_id=metadata.get("user_id"),
            group_id=metadata.get("group_id"),
            created_at=_ts("created_at"),
            updated_at=_ts("updated_at"),
            metadata=blob,
        )

    @staticmethod
    def _where(
        user_id: str | None, group_id: str | None, user_layer_only: bool
    ) -> dict[str, Any] | None:
        clauses: list[dict[str, Any]] = []
        if user_id is not None:
            clauses.append({"user_id": user_id})
        if group_id is not None:
            clauses.append({"group_id": group_id})
        elif user_layer_only:
            clauses.append({"has_group": False})
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    # ── Operations ──────────────────────────────────────────────────────

    async def upsert(self, record: MemoryRecord, embedding: list[float]) -> None:
        if not record.id:
            raise StorageError("Vector upsert requires a record id.")
        if not embedding:
            raise StorageError("Embedding vector must not be empty.", memory_id=record.id)

        def _upsert() -> None:
            self._collection(record.memory_type).upsert(
                ids=[record.id],
                embeddings=[embedding],
                metadatas=[self._record_to_metadata(record)],
                documents=[record.display_content()],
            )

        try:
            await asyncio.to_thread(_upsert)
        except Exception as exc:
            logger.error(
                "vector.upsert.error",
                memory_id=record.id,
                memory_type=record.memory_type,
                error=str(exc),
            )
            raise StorageError(
                f"Vector upsert failed: {exc}",
                memory_id=record.id,
                memory_type=record.memory_type,
            ) from exc

    async def search(
        self,
        memory_type: str,
        embedding: list[float],
        limit: int,
        *,
        user_id: str | None = None,
        group_id: str | None = None,
        user_layer_only: bool = False,
    ) -> list[VectorHit]:
        """
        Nearest neighbours in one memory-type collection, best first.

        ``user_layer_only`` restricts to records with a null ``group_id``
        when no ``group_id`` is given.
        """
        if limit <= 0:
            return []

        def _query() -> dict[str, Any] | None:
            collection = self._collection(memory_type)
            available = collection.count()
            if available == 0:
                return None
            return collection.query(
                query_embeddings=[embedding],
                n_results=min(limit, available),
                where=self._where(user_id, group_id, user_layer_only),
                include=["documents", "metadatas", "distances"],
            )

        try:
            results = await asyncio.to_thread(_query)
        except Exception as exc:
            logger.error("vector.search.error", memory_type=memory_type, error=str(exc))
            raise StorageError(
                f"Vector search failed: {exc}", memory_type=memory_type
            ) from exc

        if not results or not results["ids"] or not results["ids"][0]:
            return []

        ids = results["ids"][0]
        documents = (results.get("documents") or [[]])[0] or []
        metadatas = (results.get("metadatas") or [[]])[0] or []
        distances = (results.get("distances") or [[]])[0] or []

        hits: list[VectorHit] = []
        for i, memory_id in enumerate(ids):
            metadata = metadatas[i] if i < len(metadatas) and metadatas[i] else {}
            document = documents[i] if i < len(documents) else ""
            distance = distances[i] if i < len(distances) else 1.0
            hits.append(VectorHit(
                memory=self._metadata_to_stored(memory_id, document, dict(metadata)),
                similarity=1.0 - float(distance),
            ))
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits

    async def delete(self, memory_type: str, memory_ids: Sequence[str]) -> None:
        if not memory_ids:
            return
        try:
            await asyncio.to_thread(
                lambda: self._collection(memory_type).delete(ids=list(memory_ids))
            )
        except Exception as exc:
            logger.error(
                "vector.delete.error",
                memory_type=memory_type,
                count=len(memory_ids),
                error=str(exc),
            )
            raise StorageError(
                f"Vector delete failed: {exc}", memory_type=memory_type
            ) from exc

    async def existing_ids(self, memory_type: str, memory_ids: Sequence[str]) -> set[str]:
        if not memory_ids:
            return set()
        try:
            result = await asyncio.to_thread(
                lambda: self._collection(memory_type).get(
                    ids=list(memory_ids), include=["metadatas"]
                )
            )
        except Exception as exc:
            raise StorageError(
                f"Vector lookup failed: {exc}", memory_type=memory_type
            ) from exc
        return set(result["ids"] or [])

    async def count(self, memory_type: str) -> int:
        try:
            return await asyncio.to_thread(lambda: self._collection(memory_type).count())
        except Exception as exc:
            raise StorageError(
                f"Vector count failed: {exc}", memory_type=memory_type
            ) from exc
