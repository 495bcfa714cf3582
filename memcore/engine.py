"""
MemCore — Memory Engine
=========================
Async facade over ingestion, retrieval, dedup and housekeeping.

The engine owns the two stores and wires the managers together; every
capability (extractors, embeddings, query expansion, rerank, dedup
confirmation) is injected through the constructor or built by
``from_settings``.

Usage:
    engine = MemoryEngine.from_settings()
    await engine.start()
    await engine.process_unit(unit, RoutingContext(user_id="u1", scope="proj"))
    hits = await engine.retrieve("release plan", RetrievalFilters(user_id="u1"))
    await engine.close()
"""

from __future__ import annotations

from typing import Mapping, Sequence

from memcore.core.config import Settings, get_settings
from memcore.core.logging import get_logger
from memcore.integrations.llm_client import AzureOpenAIClient, BaseLLMClient
from memcore.memory.capabilities import (
    DedupConfirmer,
    LLMDedupConfirmer,
    LLMQueryExpander,
    LLMReranker,
    LLMSufficiencyJudge,
    QueryExpander,
    Reranker,
    SufficiencyJudge,
)
from memcore.memory.dedup import DedupService
from memcore.memory.embeddings import EmbeddingService
from memcore.memory.extractors import (
    EpisodeExtractor,
    EventLogExtractor,
    Extractor,
    ForesightExtractor,
    LLMUnifiedExtractor,
    ProfileExtractor,
    UnifiedExtractor,
)
from memcore.memory.manager import MemoryManager
from memcore.memory.relational_store import SQLRelationalStore
from memcore.memory.retrieval import RetrievalManager
from memcore.memory.types import (
    DedupLogEntry,
    IngestionResult,
    MemCell,
    MemoryType,
    RankedRecord,
    RetrievalFilters,
    RetrieveMethod,
    RoutingContext,
    StoredMemory,
    UndoResult,
)
from memcore.memory.vector_store import ChromaVectorStore, VectorStore
from memcore.memory.writer import DualWriter

logger = get_logger(__name__)


def build_llm_extractors(
    client: BaseLLMClient,
    embeddings: EmbeddingService | None = None,
    settings: Settings | None = None,
) -> dict[str, Extractor]:
    """The four built-in LLM extractors keyed by memory type."""
    settings = settings or get_settings()
    return {
        MemoryType.EPISODIC.value: EpisodeExtractor(client, embeddings=embeddings),
        MemoryType.EVENT_LOG.value: EventLogExtractor(
            client, embeddings=embeddings, max_items=settings.event_log_max_facts
        ),
        MemoryType.FORESIGHT.value: ForesightExtractor(
            client, embeddings=embeddings, max_items=settings.foresight_max_items
        ),
        MemoryType.PROFILE.value: ProfileExtractor(client, embeddings=embeddings),
    }


class MemoryEngine:
    """Entry point for the outer service layer."""

    def __init__(
        self,
        relational: SQLRelationalStore,
        vector: VectorStore | None = None,
        embeddings: EmbeddingService | None = None,
        *,
        extractors: Mapping[str, Extractor] | None = None,
        unified: UnifiedExtractor | None = None,
        expander: QueryExpander | None = None,
        reranker: Reranker | None = None,
        judge: SufficiencyJudge | None = None,
        confirmer: DedupConfirmer | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self.relational = relational
        self.vector = vector
        self.embeddings = embeddings

        writer = DualWriter(relational, vector)
        self.dedup = DedupService.from_settings(
            relational, vector, writer=writer, confirmer=confirmer, settings=settings
        )
        self.manager = MemoryManager(
            relational,
            vector,
            extractors=extractors,
            unified=unified,
            dedup=self.dedup,
            embeddings=embeddings,
            writer=writer,
            extractor_timeout=settings.extractor_timeout_seconds,
        )
        self.retrieval = RetrievalManager.from_settings(
            relational,
            vector,
            embeddings,
            expander=expander,
            reranker=reranker,
            judge=judge,
            settings=settings,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "MemoryEngine":
        """
        Wire stores and capabilities from configuration.

        LLM-backed capabilities are enabled only when chat credentials are
        configured; without them ingestion has no extractors and agentic
        search falls back to the plain query.  With them, ingestion uses the
        unified extractor (per-type extractors as fallback) unless
        ``unified_extraction`` is off.
        """
        settings = settings or get_settings()
        relational = SQLRelationalStore.from_settings(settings)
        vector = ChromaVectorStore.from_settings(settings)
        embeddings = EmbeddingService.from_settings(settings)

        client: BaseLLMClient | None = None
        if settings.azure_openai_api_key and settings.azure_openai_endpoint \
                and settings.azure_openai_deployment_name:
            client = AzureOpenAIClient.from_settings(settings)
        else:
            logger.warning("engine.llm.disabled", reason="azure chat settings incomplete")

        if client is None:
            return cls(relational, vector, embeddings, settings=settings)

        timeout = settings.llm_timeout_seconds
        unified = None
        if settings.unified_extraction:
            unified = LLMUnifiedExtractor(
                client,
                embeddings=embeddings,
                max_facts=settings.event_log_max_facts,
                max_foresight=settings.foresight_max_items,
            )
        return cls(
            relational,
            vector,
            embeddings,
            extractors=build_llm_extractors(client, embeddings, settings),
            unified=unified,
            expander=LLMQueryExpander(
                client, max_queries=settings.agentic_max_sub_queries, timeout_seconds=timeout
            ),
            reranker=LLMReranker(client, timeout_seconds=timeout),
            judge=LLMSufficiencyJudge(
                client, max_queries=settings.agentic_max_sub_queries, timeout_seconds=timeout
            ),
            confirmer=LLMDedupConfirmer(client, timeout_seconds=timeout),
            settings=settings,
        )

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self, *, backfill: bool = False) -> None:
        """Create missing tables; optionally backfill the vector index."""
        await self.relational.create_all()
        logger.info("engine.started", backfill=backfill)
        if backfill:
            await self.ensure_indexed()

    async def close(self) -> None:
        await self.relational.close()
        logger.info("engine.stopped")

    async def __aenter__(self) -> "MemoryEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── Ingestion ───────────────────────────────────────────────────────

    async def process_unit(
        self, unit: MemCell, routing: RoutingContext | None = None
    ) -> IngestionResult:
        return await self.manager.process_unit(unit, routing)

    # ── Retrieval ───────────────────────────────────────────────────────

    async def retrieve(
        self,
        query: str,
        filters: RetrievalFilters | None = None,
        method: RetrieveMethod | str = RetrieveMethod.HYBRID,
        limit: int = 10,
        use_rerank: bool = False,
    ) -> list[RankedRecord]:
        return await self.retrieval.retrieve(query, filters, method, limit, use_rerank)

    async def search_layers(
        self,
        query: str,
        user_id: str,
        scope: str,
        session_id: str | None = None,
        **options,
    ) -> dict[str, list[RankedRecord]]:
        return await self.retrieval.search_layers(query, user_id, scope, session_id, **options)

    # ── Inspection ──────────────────────────────────────────────────────

    async def get(self, memory_id: str) -> StoredMemory | None:
        return await self.manager.get(memory_id)

    async def list_by_user(self, user_id: str, limit: int = 200) -> list[StoredMemory]:
        return await self.manager.list_by_user(user_id, limit)

    async def list_by_group(
        self, user_id: str, group_id: str, limit: int = 200
    ) -> list[StoredMemory]:
        return await self.manager.list_by_group(user_id, group_id, limit)

    async def list_by_group_prefix(
        self, user_id: str, group_prefix: str, limit: int = 200
    ) -> list[StoredMemory]:
        return await self.manager.list_by_group_prefix(user_id, group_prefix, limit)

    async def list_by_round_message(
        self, user_id: str, round_message_id: str, limit: int = 50
    ) -> list[StoredMemory]:
        return await self.manager.list_by_round_message(user_id, round_message_id, limit)

    async def count_by_type(
        self, user_id: str | None = None, group_prefix: str | None = None
    ) -> dict[str, int]:
        return await self.manager.count_by_type(user_id, group_prefix)

    async def memory_counts(self, user_id: str, scope: str) -> dict[str, int]:
        return await self.manager.memory_counts(user_id, scope)

    async def record_references(self, memory_ids: Sequence[str]) -> int:
        return await self.manager.record_references(memory_ids)

    # ── Deletion ────────────────────────────────────────────────────────

    async def delete_record(self, memory_id: str) -> bool:
        return await self.manager.delete_record(memory_id)

    async def delete_by_group(self, group_id: str) -> int:
        return await self.manager.delete_by_group(group_id)

    async def delete_by_group_prefix(self, group_prefix: str) -> int:
        return await self.manager.delete_by_group_prefix(group_prefix)

    # ── Dedup Audit ─────────────────────────────────────────────────────

    async def list_dedup_log(
        self,
        scope: str | None = None,
        limit: int = 50,
        *,
        user_id: str | None = None,
        include_resolved: bool = False,
    ) -> list[DedupLogEntry]:
        return await self.dedup.list_log(
            scope, limit, user_id=user_id, include_resolved=include_resolved
        )

    async def undo_dedup(self, log_entry_id: str) -> UndoResult:
        return await self.dedup.undo(log_entry_id)

    # ── Maintenance ─────────────────────────────────────────────────────

    async def ensure_indexed(self, batch_size: int = 100) -> dict[str, int]:
        return await self.manager.ensure_indexed(batch_size)
