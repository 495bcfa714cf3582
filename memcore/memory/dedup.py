"""
MemCore — Dedup Subsystem
===========================
Near-duplicate suppression with a reversible audit log.

Rule (per ``(memory_type, user_id, group_id)`` bucket, only for the
configured memory types):

1. Text candidate: among the most recently updated rows in the bucket,
   the best ``text_similarity`` (max of bigram Dice and token Jaccard)
   at or above ``text_threshold``.
2. Vector candidate: the nearest neighbour in the bucket whose cosine
   similarity is at or above ``vector_threshold`` (only when the record
   carries an embedding).
3. The stronger of the two wins.  With a confirmer wired, it must answer
   SAME; a confirmer failure falls back to the similarity verdict.

Suppression writes a ``dedup_log`` row holding the full candidate, touches
the kept record, and skips the write.  ``undo`` claims the row atomically
and re-runs the dual write with the candidate's own id.

Usage:
    service = DedupService(relational, vector, writer=DualWriter(relational, vector))
    decision = await service.check_and_suppress(record)
    if not decision.accepted:
        result = await service.undo(decision.log_entry_id)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from memcore.core.config import Settings, get_settings
from memcore.core.exceptions import StorageError
from memcore.core.logging import get_logger
from memcore.memory.capabilities import DedupConfirmer
from memcore.memory.relational_store import RelationalStore
from memcore.memory.text import text_similarity
from memcore.memory.types import (
    DedupDecision,
    DedupLogEntry,
    GenericPayload,
    MemoryRecord,
    UndoResult,
    new_id,
)
from memcore.memory.vector_store import VectorStore
from memcore.memory.writer import DualWriter

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Candidate:
    memory_id: str
    content: str
    similarity: float
    source: str


class DedupService:
    """Checks candidates before write; lists and undoes suppressions."""

    def __init__(
        self,
        relational: RelationalStore,
        vector: VectorStore | None = None,
        *,
        writer: DualWriter | None = None,
        confirmer: DedupConfirmer | None = None,
        enabled: bool = True,
        memory_types: Iterable[str] = ("episodic_memory", "foresight", "profile"),
        text_threshold: float = 0.8,
        vector_threshold: float = 0.9,
        candidate_window: int = 100,
    ) -> None:
        self._relational = relational
        self._vector = vector
        self._writer = writer or DualWriter(relational, vector)
        self._confirmer = confirmer
        self._enabled = enabled
        self._memory_types = frozenset(memory_types)
        self._text_threshold = text_threshold
        self._vector_threshold = vector_threshold
        self._candidate_window = candidate_window

    @classmethod
    def from_settings(
        cls,
        relational: RelationalStore,
        vector: VectorStore | None = None,
        *,
        writer: DualWriter | None = None,
        confirmer: DedupConfirmer | None = None,
        settings: Settings | None = None,
    ) -> "DedupService":
        settings = settings or get_settings()
        return cls(
            relational,
            vector,
            writer=writer,
            confirmer=confirmer if settings.dedup_llm_confirm else None,
            enabled=settings.dedup_enabled,
            memory_types=settings.dedup_memory_types,
            text_threshold=settings.dedup_text_threshold,
            vector_threshold=settings.dedup_vector_threshold,
            candidate_window=settings.dedup_candidate_window,
        )

    def applies_to(self, memory_type: str) -> bool:
        return self._enabled and memory_type in self._memory_types

    # ── Candidate Search ────────────────────────────────────────────────

    async def _text_candidate(self, record: MemoryRecord, content: str) -> _Candidate | None:
        rows = await self._relational.dedup_candidates(
            record.memory_type,
            user_id=record.user_id,
            group_id=record.group_id,
            limit=self._candidate_window,
        )
        best: _Candidate | None = None
        for row in rows:
            if row.id == record.id or not row.content:
                continue
            sim = text_similarity(content, row.content)
            if sim >= self._text_threshold and (best is None or sim > best.similarity):
                best = _Candidate(row.id, row.content, sim, "text")
        return best

    async def _vector_candidate(self, record: MemoryRecord) -> _Candidate | None:
        if not record.embedding or self._vector is None:
            return None
        hits = await self._vector.search(
            record.memory_type,
            record.embedding,
            1,
            user_id=record.user_id,
            group_id=record.group_id,
            user_layer_only=record.group_id is None,
        )
        if not hits or hits[0].memory.id == record.id:
            return None
        top = hits[0]
        if top.similarity < self._vector_threshold:
            return None
        return _Candidate(top.memory.id, top.memory.content, top.similarity, "vector")

    # ── Public API ──────────────────────────────────────────────────────

    async def check_and_suppress(self, record: MemoryRecord) -> DedupDecision:
        """
        Decide whether ``record`` may be written.

        ``accepted=False`` means a log entry now holds the record and no
        write must happen.  Lookup or logging failures accept the record.
        """
        if not self.applies_to(record.memory_type):
            return DedupDecision(accepted=True)
        content = record.display_content()
        if not content.strip():
            return DedupDecision(accepted=True)

        try:
            text_match = await self._text_candidate(record, content)
        except StorageError as exc:
            logger.warning("dedup.text_search.failed", memory_type=record.memory_type, error=str(exc))
            text_match = None
        try:
            vector_match = await self._vector_candidate(record)
        except StorageError as exc:
            logger.warning("dedup.vector_search.failed", memory_type=record.memory_type, error=str(exc))
            vector_match = None

        if text_match and (vector_match is None or text_match.similarity >= vector_match.similarity):
            candidate = text_match
        else:
            candidate = vector_match
        if candidate is None:
            return DedupDecision(accepted=True)

        text_sim = text_match.similarity if text_match else -1.0
        vector_sim = vector_match.similarity if vector_match else -1.0
        detail = (
            f"text-sim={text_sim:.3f}, vector-sim={vector_sim:.3f}, chosen={candidate.source}"
        )

        reasoning = f"{detail}, no-llm"
        if self._confirmer is not None:
            try:
                verdict = await self._confirmer.confirm(candidate.content, content)
            except Exception as exc:
                logger.warning(
                    "dedup.confirm.failed",
                    memory_type=record.memory_type,
                    error=str(exc),
                )
                reasoning = f"{detail}, llm-fallback"
            else:
                if not verdict.is_duplicate:
                    logger.info(
                        "dedup.candidate.rejected",
                        memory_type=record.memory_type,
                        kept_memory_id=candidate.memory_id,
                        reasoning=verdict.reasoning,
                    )
                    return DedupDecision(accepted=True)
                reasoning = f"{detail}, {verdict.reasoning}"

        try:
            entry = await self._relational.add_dedup_log(
                id=new_id(),
                kept_memory_id=candidate.memory_id,
                kept_memory_content=candidate.content,
                new_memory_id=record.id or new_id(),
                new_memory_content=content,
                new_memory_type=record.memory_type,
                new_memory_payload=record.to_blob(include_embedding=True),
                vector_similarity=vector_sim,
                text_similarity=text_sim,
                reasoning=reasoning,
                user_id=record.user_id,
                group_id=record.group_id,
            )
        except StorageError as exc:
            logger.error(
                "dedup.log.failed",
                memory_type=record.memory_type,
                error=str(exc),
            )
            return DedupDecision(accepted=True)

        try:
            await self._relational.touch(candidate.memory_id)
        except StorageError as exc:
            logger.warning("dedup.touch.failed", memory_id=candidate.memory_id, error=str(exc))

        logger.info(
            "dedup.suppressed",
            memory_type=record.memory_type,
            kept_memory_id=candidate.memory_id,
            log_entry_id=entry.id,
            reasoning=reasoning,
        )
        return DedupDecision(
            accepted=False,
            log_entry_id=entry.id,
            kept_memory_id=candidate.memory_id,
            text_similarity=text_sim,
            vector_similarity=vector_sim,
            reasoning=reasoning,
        )

    async def list_log(
        self,
        scope: str | None = None,
        limit: int = 50,
        *,
        user_id: str | None = None,
        include_resolved: bool = False,
    ) -> list[DedupLogEntry]:
        """Entries whose group is ``scope`` or below it, newest first."""
        return await self._relational.list_dedup_log(
            scope=scope,
            user_id=user_id,
            limit=limit,
            include_resolved=include_resolved,
        )

    async def undo(self, entry_id: str) -> UndoResult:
        """
        Restore the suppressed record of one log entry.

        Safe under concurrent calls: only the caller that wins the claim
        writes.  A failed write releases the claim and raises ``StorageError``.
        """
        entry = await self._relational.get_dedup_log(entry_id)
        if entry is None:
            return UndoResult(restored=False, reason="not_found")
        if entry.rolled_back:
            return UndoResult(
                restored=False,
                restored_id=entry.restored_memory_id or entry.new_memory_id,
                reason="already_restored",
            )
        if not await self._relational.claim_dedup_log(entry_id):
            # lost the claim; the winner restores under the suppressed id
            return UndoResult(
                restored=False,
                restored_id=entry.new_memory_id,
                reason="already_restored",
            )

        try:
            record = self._rebuild(entry)
            await self._writer.write(record)
        except Exception as exc:
            await self._relational.release_dedup_log(entry_id)
            logger.error("dedup.undo.failed", log_entry_id=entry_id, error=str(exc))
            if isinstance(exc, StorageError):
                raise
            raise StorageError(f"Dedup undo failed: {exc}") from exc

        await self._relational.finish_dedup_log(entry_id, record.id)
        logger.info(
            "dedup.undo.restored",
            log_entry_id=entry_id,
            memory_id=record.id,
            memory_type=record.memory_type,
        )
        return UndoResult(restored=True, restored_id=record.id)

    @staticmethod
    def _rebuild(entry: DedupLogEntry) -> MemoryRecord:
        if entry.new_memory_payload:
            record = MemoryRecord.model_validate(entry.new_memory_payload)
        else:
            record = MemoryRecord(payload=GenericPayload(content=entry.new_memory_content))
        now = datetime.now(timezone.utc)
        return record.model_copy(update={
            "id": entry.new_memory_id,
            "memory_type": entry.new_memory_type,
            "user_id": entry.user_id,
            "group_id": entry.group_id,
            "metadata": {**record.metadata, "restored_from_dedup": entry.id},
            "created_at": now,
            "updated_at": now,
        })
