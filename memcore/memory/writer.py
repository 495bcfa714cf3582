"""
MemCore — Dual Write
======================
Writes one record to the relational store (record of truth) and, when it
carries an embedding, to the vector store (rebuildable secondary index).

The two writes are not atomic.  A relational failure propagates as
``StorageError``; a vector failure is logged and leaves the record
relational-only until ``MemoryManager.ensure_indexed`` repairs it.
"""

from __future__ import annotations

from memcore.core.exceptions import StorageError
from memcore.core.logging import get_logger
from memcore.memory.relational_store import RelationalStore
from memcore.memory.types import MemoryRecord, StoredMemory
from memcore.memory.vector_store import VectorStore

logger = get_logger(__name__)


class DualWriter:
    def __init__(
        self,
        relational: RelationalStore,
        vector: VectorStore | None = None,
    ) -> None:
        self._relational = relational
        self._vector = vector

    async def write(self, record: MemoryRecord) -> StoredMemory:
        stored = await self._relational.insert(record)
        if record.embedding and self._vector is not None:
            try:
                await self._vector.upsert(record, record.embedding)
            except StorageError as exc:
                logger.warning(
                    "memory.vector_write.failed",
                    memory_id=record.id,
                    memory_type=record.memory_type,
                    error=str(exc),
                )
        return stored
