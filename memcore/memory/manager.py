"""
MemCore — Ingestion & Routing Manager
=======================================
Turns a raw unit into addressed, deduplicated, dual-written memory records.

Flow for ``process_unit``:
1. Assign an event id; a routing context overrides the unit's user id.
2. Pick the applicable memory types from the unit's scene.
3. With a unified extractor wired, one call extracts every applicable
   type; if it fails, times out or returns something other than a
   mapping, the per-type extractors run instead.  Otherwise run the
   registered extractors concurrently.  Each branch is isolated: an
   exception, timeout or malformed result is logged and counts as
   "no records" for that type.
4. Per record, sequentially: id, type and address stamping, dedup check,
   then dual write (relational first, vector when an embedding is present).

Usage:
    manager = MemoryManager(
        relational, vector,
        extractors={MemoryType.EPISODIC: EpisodeExtractor(client)},
        dedup=dedup_service,
    )
    result = await manager.process_unit(unit, RoutingContext(user_id="u1", scope="proj"))
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from memcore.core.exceptions import InvalidArgumentError, StorageError
from memcore.core.logging import get_logger
from memcore.core.tracing import bind_correlation_id, create_span
from memcore.memory.dedup import DedupService
from memcore.memory.embeddings import EmbeddingService
from memcore.memory.extractors import Extractor, UnifiedExtractor
from memcore.memory.relational_store import RelationalStore
from memcore.memory.routing import (
    DOCS_SUFFIX,
    SESSION_SEGMENT,
    applicable_types,
    resolve_group_id,
)
from memcore.memory.types import (
    IngestionResult,
    MemCell,
    MemoryRecord,
    MemoryType,
    RoutingContext,
    StoredMemory,
    new_id,
)
from memcore.memory.vector_store import VectorStore
from memcore.memory.writer import DualWriter

logger = get_logger(__name__)

DEFAULT_EXTRACTOR_TIMEOUT = 60.0


class MemoryManager:
    """
    Owns record creation and addressing.

    Extractors are injected as a ``{memory_type: Extractor}`` mapping; there
    is no registry to mutate after construction.
    """

    def __init__(
        self,
        relational: RelationalStore,
        vector: VectorStore | None = None,
        *,
        extractors: Mapping[str, Extractor] | None = None,
        unified: UnifiedExtractor | None = None,
        dedup: DedupService | None = None,
        embeddings: EmbeddingService | None = None,
        writer: DualWriter | None = None,
        extractor_timeout: float = DEFAULT_EXTRACTOR_TIMEOUT,
    ) -> None:
        self._relational = relational
        self._vector = vector
        self._extractors: dict[str, Extractor] = {
            str(k): v for k, v in (extractors or {}).items()
        }
        self._unified = unified
        self._dedup = dedup
        self._embeddings = embeddings
        self._writer = writer or DualWriter(relational, vector)
        self._extractor_timeout = extractor_timeout

    @property
    def registered_types(self) -> list[str]:
        return list(self._extractors)

    # ── Ingestion ───────────────────────────────────────────────────────

    async def process_unit(
        self,
        unit: MemCell,
        routing: RoutingContext | None = None,
    ) -> IngestionResult:
        """Extract, address, dedup and persist.  Never raises for a failed branch."""
        if unit is None:
            raise InvalidArgumentError("process_unit requires a raw unit")

        updates: dict[str, Any] = {}
        if not unit.event_id:
            updates["event_id"] = new_id()
        if routing is not None:
            updates["user_id"] = routing.user_id
        if updates:
            unit = unit.model_copy(update=updates)

        result = IngestionResult(event_id=unit.event_id)
        applicable = applicable_types(unit.scene, routing)

        with bind_correlation_id(), create_span(
            "memory.ingest", event_id=unit.event_id
        ) as span:
            logger.info(
                "memory.ingest.start",
                event_id=unit.event_id,
                scene=unit.scene.value if unit.scene else None,
                memory_types=[t.value for t in applicable],
                unified=self._unified is not None,
            )
            handled = False
            if self._unified is not None and applicable:
                handled = await self._run_unified(applicable, unit, routing, result)
            if not handled:
                types = [t for t in applicable if t.value in self._extractors]
                await asyncio.gather(
                    *(self._run_branch(t, unit, routing, result) for t in types)
                )

        logger.info(
            "memory.ingest.complete",
            event_id=unit.event_id,
            created=len(result.created),
            suppressed=len(result.suppressed),
            skipped=len(result.skipped),
            failed_types=result.failed_types,
            duration_ms=span.duration_ms,
        )
        return result

    async def _run_branch(
        self,
        memory_type: MemoryType,
        unit: MemCell,
        routing: RoutingContext | None,
        result: IngestionResult,
    ) -> None:
        extractor = self._extractors[memory_type.value]
        try:
            records = await asyncio.wait_for(
                extractor.extract(unit), timeout=self._extractor_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "memory.extract.timeout",
                memory_type=memory_type.value,
                event_id=unit.event_id,
                timeout_seconds=self._extractor_timeout,
            )
            result.failed_types.append(memory_type.value)
            return
        except Exception as exc:
            logger.warning(
                "memory.extract.failed",
                memory_type=memory_type.value,
                event_id=unit.event_id,
                error=str(exc),
            )
            result.failed_types.append(memory_type.value)
            return

        await self._persist_records(memory_type, records, unit, routing, result)

    async def _run_unified(
        self,
        types: Sequence[MemoryType],
        unit: MemCell,
        routing: RoutingContext | None,
        result: IngestionResult,
    ) -> bool:
        """One-call extraction of every applicable type; False asks for the per-type fallback."""
        try:
            extracted = await asyncio.wait_for(
                self._unified.extract_all(unit, types), timeout=self._extractor_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "memory.extract.unified_failed",
                event_id=unit.event_id,
                reason="timeout",
                timeout_seconds=self._extractor_timeout,
            )
            return False
        except Exception as exc:
            logger.warning(
                "memory.extract.unified_failed",
                event_id=unit.event_id,
                reason="error",
                error=str(exc),
            )
            return False
        if not isinstance(extracted, Mapping):
            logger.warning(
                "memory.extract.unified_failed",
                event_id=unit.event_id,
                reason="malformed",
                result_type=type(extracted).__name__,
            )
            return False

        await asyncio.gather(*(
            self._persist_records(t, extracted.get(t.value), unit, routing, result)
            for t in types
        ))
        return True

    async def _persist_records(
        self,
        memory_type: MemoryType,
        records: Any,
        unit: MemCell,
        routing: RoutingContext | None,
        result: IngestionResult,
    ) -> None:
        if records is None:
            return
        if not isinstance(records, (list, tuple)):
            logger.warning(
                "memory.extract.malformed",
                memory_type=memory_type.value,
                event_id=unit.event_id,
                result_type=type(records).__name__,
            )
            result.failed_types.append(memory_type.value)
            return

        for record in records:
            if record is None:
                continue
            if not isinstance(record, MemoryRecord):
                logger.warning(
                    "memory.record.malformed",
                    memory_type=memory_type.value,
                    event_id=unit.event_id,
                    result_type=type(record).__name__,
                )
                continue
            try:
                await self._persist(record, memory_type, unit, routing, result)
            except Exception as exc:
                logger.error(
                    "memory.record.failed",
                    memory_type=memory_type.value,
                    memory_id=record.id,
                    event_id=unit.event_id,
                    error=str(exc),
                )

    async def _persist(
        self,
        record: MemoryRecord,
        memory_type: MemoryType,
        unit: MemCell,
        routing: RoutingContext | None,
        result: IngestionResult,
    ) -> None:
        if not record.display_content().strip():
            return
        if record.id and await self._relational.get(record.id) is not None:
            # re-ingest of an extractor-assigned id
            logger.info(
                "memory.record.exists",
                memory_type=memory_type.value,
                memory_id=record.id,
                event_id=unit.event_id,
            )
            result.skipped.append(record.id)
            return

        now = datetime.now(timezone.utc)
        metadata = dict(record.metadata)
        metadata.setdefault("event_id", unit.event_id)
        if routing is not None and routing.round_message_id:
            metadata["round_message_id"] = routing.round_message_id

        own_group = record.group_id if record.group_id is not None else unit.group_id
        record = record.model_copy(update={
            "id": record.id or new_id(),
            "memory_type": memory_type.value,
            "user_id": routing.user_id if routing is not None else (record.user_id or unit.user_id),
            "group_id": resolve_group_id(memory_type.value, unit.scene, routing, own_group),
            "metadata": metadata,
            "created_at": now,
            "updated_at": now,
        })

        if self._dedup is not None:
            decision = await self._dedup.check_and_suppress(record)
            if not decision.accepted:
                result.suppressed.append(decision.log_entry_id)
                return

        await self._writer.write(record)
        result.created.append(record)

    # ── Listing ─────────────────────────────────────────────────────────

    async def get(self, memory_id: str) -> StoredMemory | None:
        return await self._relational.get(memory_id)

    async def list_by_user(self, user_id: str, limit: int = 200) -> list[StoredMemory]:
        return await self._relational.list_by_user(user_id, limit)

    async def list_by_group(
        self, user_id: str, group_id: str, limit: int = 200
    ) -> list[StoredMemory]:
        return await self._relational.list_by_group(user_id, group_id, limit)

    async def list_by_group_prefix(
        self, user_id: str, group_prefix: str, limit: int = 200
    ) -> list[StoredMemory]:
        return await self._relational.list_by_group_prefix(user_id, group_prefix, limit)

    async def list_by_round_message(
        self, user_id: str, round_message_id: str, limit: int = 50
    ) -> list[StoredMemory]:
        return await self._relational.list_by_round_message(user_id, round_message_id, limit)

    # ── Deletion ────────────────────────────────────────────────────────

    async def _drop_vectors(self, rows: Sequence[StoredMemory]) -> None:
        if self._vector is None or not rows:
            return
        by_type: dict[str, list[str]] = {}
        for row in rows:
            by_type.setdefault(row.memory_type, []).append(row.id)
        for memory_type, ids in by_type.items():
            try:
                await self._vector.delete(memory_type, ids)
            except StorageError as exc:
                logger.warning(
                    "memory.vector_delete.failed",
                    memory_type=memory_type,
                    count=len(ids),
                    error=str(exc),
                )

    async def delete_record(self, memory_id: str) -> bool:
        row = await self._relational.delete(memory_id)
        if row is None:
            return False
        await self._drop_vectors([row])
        return True

    async def delete_by_group(self, group_id: str) -> int:
        rows = await self._relational.delete_by_group(group_id)
        await self._drop_vectors(rows)
        logger.info("memory.delete.group", group_id=group_id, count=len(rows))
        return len(rows)

    async def delete_by_group_prefix(self, group_prefix: str) -> int:
        rows = await self._relational.delete_by_group_prefix(group_prefix)
        await self._drop_vectors(rows)
        logger.info("memory.delete.group_prefix", group_prefix=group_prefix, count=len(rows))
        return len(rows)

    # ── Statistics ──────────────────────────────────────────────────────

    async def count_by_type(
        self, user_id: str | None = None, group_prefix: str | None = None
    ) -> dict[str, int]:
        return await self._relational.count_by_type(user_id, group_prefix)

    async def memory_counts(self, user_id: str, scope: str) -> dict[str, int]:
        """Record counts per address layer for one user within one scope."""
        per_group = await self._relational.count_by_group(user_id, scope)
        counts = {"user": 0, "scope": 0, "session": 0, "document": 0}
        session_prefix = f"{scope}:{SESSION_SEGMENT}:"
        for group_id, n in per_group.items():
            if group_id is None:
                counts["user"] += n
            elif group_id == scope:
                counts["scope"] += n
            elif group_id == f"{scope}:{DOCS_SUFFIX}":
                counts["document"] += n
            elif group_id.startswith(session_prefix):
                counts["session"] += n
        counts["total"] = sum(counts.values())
        return counts

    async def record_references(self, memory_ids: Sequence[str]) -> int:
        return await self._relational.record_references(memory_ids)

    # ── Vector Backfill ─────────────────────────────────────────────────

    async def ensure_indexed(self, batch_size: int = 100) -> dict[str, int]:
        """
        Embed and index every relational row that has no vector entry.

        Idempotent; safe to run at startup or on demand.
        """
        if self._vector is None or self._embeddings is None:
            raise InvalidArgumentError(
                "ensure_indexed requires a vector store and an embedding service"
            )

        stats = {"scanned": 0, "indexed": 0, "failed": 0}
        after_id: str | None = None
        while True:
            rows = await self._relational.scan(after_id, batch_size)
            if not rows:
                break
            after_id = rows[-1].id
            stats["scanned"] += len(rows)

            by_type: dict[str, list[StoredMemory]] = {}
            for row in rows:
                if row.content.strip():
                    by_type.setdefault(row.memory_type, []).append(row)

            for memory_type, group in by_type.items():
                indexed = await self._vector.existing_ids(memory_type, [r.id for r in group])
                missing = [r for r in group if r.id not in indexed]
                if not missing:
                    continue
                try:
                    vectors = await self._embeddings.embed_batch([r.content for r in missing])
                except Exception as exc:
                    logger.warning(
                        "memory.backfill.embed_failed",
                        memory_type=memory_type,
                        count=len(missing),
                        error=str(exc),
                    )
                    stats["failed"] += len(missing)
                    continue
                for row, vector in zip(missing, vectors):
                    record = row.to_record().model_copy(update={"embedding": vector})
                    try:
                        await self._vector.upsert(record, vector)
                        stats["indexed"] += 1
                    except StorageError as exc:
                        logger.warning(
                            "memory.backfill.upsert_failed",
                            memory_id=row.id,
                            error=str(exc),
                        )
                        stats["failed"] += 1

        logger.info("memory.backfill.complete", **stats)
        return stats
