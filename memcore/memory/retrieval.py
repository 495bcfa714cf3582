"""
MemCore — Retrieval Manager
=============================
Search over persisted memories with four strategies and an optional rerank.

| method        | behaviour                                                     |
|---------------|---------------------------------------------------------------|
| keyword       | token LIKE scan over the relational store, hit-density scored |
| vector        | nearest neighbours per memory type in the vector store        |
| hybrid / rrf  | keyword + vector concurrently, fused with RRF                 |
| agentic       | sufficiency-checked rounds, or expanded sub-queries with RRF  |

Every branch is bounded by ``branch_timeout``.  In hybrid and agentic
search a failed branch degrades to an empty list; only when every branch
fails does the call raise ``StorageError``.  Rerank runs before truncation
and is a no-op when no reranker is wired.

Agentic search with a ``SufficiencyJudge`` runs a hybrid first round, asks
whether its top hits answer the query and, when they do not, searches the
judge's refined queries, appends their fused hits to the first round and
reranks the combined list.  Without a judge it expands the query and fuses
one hybrid search per sub-query.

Usage:
    retrieval = RetrievalManager(relational, vector, embeddings)
    hits = await retrieval.retrieve(
        "deployment deadline",
        RetrievalFilters(user_id="u1", group_id="proj"),
        RetrieveMethod.HYBRID,
        limit=5,
    )
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Sequence

from memcore.core.config import Settings, get_settings
from memcore.core.exceptions import InvalidArgumentError, MemCoreError, StorageError
from memcore.core.logging import get_logger
from memcore.core.tracing import bind_correlation_id, create_span
from memcore.memory.capabilities import QueryExpander, Reranker, SufficiencyJudge
from memcore.memory.embeddings import EmbeddingService
from memcore.memory.fusion import DEFAULT_RRF_K, reciprocal_rank_fusion
from memcore.memory.relational_store import RelationalStore
from memcore.memory.routing import session_group
from memcore.memory.text import keyword_tokens
from memcore.memory.types import (
    MemoryType,
    RankedRecord,
    RetrievalFilters,
    RetrieveMethod,
)
from memcore.memory.vector_store import VectorStore

logger = get_logger(__name__)

_VECTOR_METHODS = frozenset({
    RetrieveMethod.VECTOR,
    RetrieveMethod.HYBRID,
    RetrieveMethod.RRF,
    RetrieveMethod.AGENTIC,
})

# Per-layer defaults for ``search_layers``.
USER_LAYER_LIMIT = 3
SCOPE_LAYER_LIMIT = 5
SESSION_LAYER_LIMIT = 5
USER_LAYER_TYPES = (MemoryType.PROFILE.value,)
SCOPE_LAYER_TYPES = (MemoryType.EPISODIC.value, MemoryType.FORESIGHT.value)
SESSION_LAYER_TYPES = (MemoryType.EVENT_LOG.value,)


def keyword_score(content: str, query: str, tokens: Sequence[str]) -> float:
    """Exact-phrase bonus of 2 plus token hits per thousand characters."""
    text = content.lower()
    if not text:
        return 0.0
    hits = sum(text.count(tok) for tok in tokens if tok)
    bonus = 2.0 if query.lower().strip() and query.lower().strip() in text else 0.0
    return bonus + hits / len(text) * 1000


class RetrievalManager:
    """
    Read-side counterpart of ``MemoryManager``.

    The embedding service is required for every method except keyword;
    every LLM-backed capability is optional.
    """

    def __init__(
        self,
        relational: RelationalStore,
        vector: VectorStore | None = None,
        embeddings: EmbeddingService | None = None,
        *,
        expander: QueryExpander | None = None,
        reranker: Reranker | None = None,
        judge: SufficiencyJudge | None = None,
        rrf_k: int = DEFAULT_RRF_K,
        keyword_candidate_floor: int = 200,
        branch_timeout: float = 10.0,
        agentic_per_query_limit: int = 15,
        agentic_round_limit: int = 20,
        agentic_check_top: int = 5,
        agentic_combined_limit: int = 40,
    ) -> None:
        self._relational = relational
        self._vector = vector
        self._embeddings = embeddings
        self._expander = expander
        self._reranker = reranker
        self._rrf_k = rrf_k
        self._keyword_floor = keyword_candidate_floor
        self._branch_timeout = branch_timeout
        self._agentic_per_query_limit = agentic_per_query_limit
        self._judge = judge
        self._round_limit = agentic_round_limit
        self._check_top = agentic_check_top
        self._combined_limit = agentic_combined_limit

    @classmethod
    def from_settings(
        cls,
        relational: RelationalStore,
        vector: VectorStore | None = None,
        embeddings: EmbeddingService | None = None,
        *,
        expander: QueryExpander | None = None,
        reranker: Reranker | None = None,
        judge: SufficiencyJudge | None = None,
        settings: Settings | None = None,
    ) -> "RetrievalManager":
        settings = settings or get_settings()
        return cls(
            relational,
            vector,
            embeddings,
            expander=expander,
            reranker=reranker,
            judge=judge if settings.agentic_multi_round else None,
            rrf_k=settings.rrf_k,
            keyword_candidate_floor=settings.keyword_candidate_floor,
            branch_timeout=settings.retrieval_timeout_seconds,
            agentic_per_query_limit=settings.agentic_per_query_limit,
            agentic_round_limit=settings.agentic_round_limit,
            agentic_check_top=settings.agentic_check_top,
            agentic_combined_limit=settings.agentic_combined_limit,
        )

    # ── Public API ──────────────────────────────────────────────────────

    async def retrieve(
        self,
        query: str,
        filters: RetrievalFilters | None = None,
        method: RetrieveMethod | str = RetrieveMethod.HYBRID,
        limit: int = 10,
        use_rerank: bool = False,
    ) -> list[RankedRecord]:
        try:
            method = RetrieveMethod(method)
        except ValueError as exc:
            raise InvalidArgumentError(f"Unknown retrieval method: {method!r}") from exc
        if not query or not query.strip():
            raise InvalidArgumentError("Retrieval query must not be empty")
        if method in _VECTOR_METHODS and (self._embeddings is None or self._vector is None):
            raise InvalidArgumentError(
                f"Retrieval method '{method.value}' requires an embedding service "
                "and a vector store"
            )
        filters = filters or RetrievalFilters()
        if limit <= 0:
            return []

        rerank = use_rerank
        with bind_correlation_id(), create_span(
            "memory.retrieve", method=method.value
        ) as span:
            if method is RetrieveMethod.KEYWORD:
                results = await self._bounded("keyword", self._keyword(query, filters, limit))
            elif method is RetrieveMethod.VECTOR:
                results = await self._bounded("vector", self._vector_search(query, filters, limit))
            elif method is RetrieveMethod.AGENTIC and self._judge is not None:
                results = await self._agentic_rounds(query, filters)
                # rounds rerank internally
                rerank = False
            elif method is RetrieveMethod.AGENTIC:
                results = await self._agentic(query, filters, limit)
            else:
                results = await self._hybrid(query, filters, limit)

            if rerank:
                results = await self._rerank(query, results)

        results = results[:limit]
        logger.info(
            "retrieval.complete",
            method=method.value,
            user_id=filters.user_id,
            group_id=filters.group_id,
            results=len(results),
            reranked=use_rerank and self._reranker is not None,
            duration_ms=span.duration_ms,
        )
        return results

    async def search_layers(
        self,
        query: str,
        user_id: str,
        scope: str,
        session_id: str | None = None,
        *,
        method: RetrieveMethod | str = RetrieveMethod.HYBRID,
        use_rerank: bool = False,
        limit: int | None = None,
    ) -> dict[str, list[RankedRecord]]:
        """
        Search the user, scope and session layers concurrently.

        Returns ``{"user": [...], "scope": [...], "session": [...]}``; the
        session list is empty when no ``session_id`` is given.
        """
        searches: dict[str, Awaitable[list[RankedRecord]]] = {
            "user": self.retrieve(
                query,
                RetrievalFilters(user_id=user_id, memory_types=list(USER_LAYER_TYPES)),
                method,
                limit or USER_LAYER_LIMIT,
                use_rerank,
            ),
            "scope": self.retrieve(
                query,
                RetrievalFilters(
                    user_id=user_id, group_id=scope, memory_types=list(SCOPE_LAYER_TYPES)
                ),
                method,
                limit or SCOPE_LAYER_LIMIT,
                use_rerank,
            ),
        }
        if session_id:
            searches["session"] = self.retrieve(
                query,
                RetrievalFilters(
                    user_id=user_id,
                    group_id=session_group(scope, session_id),
                    memory_types=list(SESSION_LAYER_TYPES),
                ),
                method,
                limit or SESSION_LAYER_LIMIT,
                use_rerank,
            )

        results = await asyncio.gather(*searches.values())
        layers = dict(zip(searches, results))
        layers.setdefault("session", [])
        return layers

    # ── Strategies ──────────────────────────────────────────────────────

    async def _bounded(
        self, branch: str, coro: Awaitable[list[RankedRecord]]
    ) -> list[RankedRecord]:
        try:
            return await asyncio.wait_for(coro, timeout=self._branch_timeout)
        except asyncio.TimeoutError as exc:
            raise StorageError(
                f"Retrieval branch '{branch}' timed out after {self._branch_timeout}s"
            ) from exc
        except MemCoreError:
            raise
        except Exception as exc:
            raise StorageError(f"Retrieval branch '{branch}' failed: {exc}") from exc

    async def _keyword(
        self, query: str, filters: RetrievalFilters, limit: int
    ) -> list[RankedRecord]:
        tokens = keyword_tokens(query) or [query.lower().strip()]
        rows = await self._relational.keyword_candidates(
            tokens,
            user_id=filters.user_id,
            group_id=filters.group_id,
            limit=max(limit * 10, self._keyword_floor),
            memory_types=filters.memory_types,
        )
        scored = [
            (keyword_score(row.content, query, tokens), row) for row in rows
        ]
        ranked = sorted(
            ((score, row) for score, row in scored if score > 0),
            key=lambda pair: pair[0],
            reverse=True,
        )
        return [
            RankedRecord(memory=row, score=score, source="keyword")
            for score, row in ranked[:limit]
        ]

    async def _vector_search(
        self, query: str, filters: RetrievalFilters, limit: int
    ) -> list[RankedRecord]:
        embedding = await self._embeddings.embed(query)
        memory_types = filters.memory_types or [MemoryType.EPISODIC.value]
        outcomes = await asyncio.gather(
            *(
                self._vector.search(
                    memory_type,
                    embedding,
                    limit,
                    user_id=filters.user_id,
                    group_id=filters.group_id,
                )
                for memory_type in memory_types
            ),
            return_exceptions=True,
        )

        best: dict[str, RankedRecord] = {}
        errors: list[BaseException] = []
        for memory_type, outcome in zip(memory_types, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "retrieval.vector_type.failed",
                    memory_type=memory_type,
                    error=str(outcome),
                )
                errors.append(outcome)
                continue
            for hit in outcome:
                current = best.get(hit.memory.id)
                if current is None or hit.similarity > current.score:
                    best[hit.memory.id] = RankedRecord(
                        memory=hit.memory, score=hit.similarity, source="vector"
                    )
        if errors and len(errors) == len(memory_types):
            raise StorageError(f"Vector search failed for every memory type: {errors[0]}")

        ranked = sorted(best.values(), key=lambda r: r.score, reverse=True)
        return ranked[:limit]

    async def _hybrid(
        self, query: str, filters: RetrievalFilters, limit: int
    ) -> list[RankedRecord]:
        keyword_hits, vector_hits = await asyncio.gather(
            self._degradable("keyword", self._keyword(query, filters, limit)),
            self._degradable("vector", self._vector_search(query, filters, limit)),
        )
        if keyword_hits is None and vector_hits is None:
            raise StorageError("Hybrid retrieval failed: both branches failed")
        return reciprocal_rank_fusion(
            [keyword_hits or [], vector_hits or []], k=self._rrf_k, source="hybrid"
        )

    async def _degradable(
        self, branch: str, coro: Awaitable[list[RankedRecord]]
    ) -> list[RankedRecord] | None:
        """Run a branch; None signals a failure that was logged and absorbed."""
        try:
            return await self._bounded(branch, coro)
        except MemCoreError as exc:
            logger.warning("retrieval.branch.degraded", branch=branch, error=str(exc))
            return None

    async def _agentic(
        self, query: str, filters: RetrievalFilters, limit: int
    ) -> list[RankedRecord]:
        queries = [query]
        if self._expander is not None:
            try:
                expanded = await self._expander.expand(query)
            except Exception as exc:
                logger.warning("retrieval.expand.failed", error=str(exc))
            else:
                queries = expanded or queries
        logger.debug("retrieval.agentic.queries", queries=queries)

        per_query = max(limit, self._agentic_per_query_limit)
        ranked_lists = await self._fan_out(queries, filters, per_query)
        if not ranked_lists:
            raise StorageError("Agentic retrieval failed: every sub-query failed")
        return reciprocal_rank_fusion(ranked_lists, k=self._rrf_k, source="agentic")

    async def _agentic_rounds(
        self, query: str, filters: RetrievalFilters
    ) -> list[RankedRecord]:
        """
        Two-round agentic search driven by the sufficiency judge.

        Round one is a hybrid search whose top hits (reranked when a
        reranker is wired) go to the judge.  A sufficient verdict, or a
        judge failure, returns round one.  Otherwise the refined queries are
        searched, fused, appended to round one up to ``agentic_combined_limit``
        and the combined list is reranked.
        """
        round_one = [
            RankedRecord(memory=r.memory, score=r.score, source="agentic")
            for r in await self._hybrid(query, filters, self._round_limit)
        ]
        if not round_one:
            return []

        top = round_one[: self._check_top]
        if self._reranker is not None and len(round_one) > self._check_top:
            top = (await self._rerank(query, round_one))[: self._check_top]
        documents = [r.content for r in top]

        try:
            verdict = await self._judge.judge(query, documents)
        except Exception as exc:
            logger.warning("retrieval.sufficiency.failed", error=str(exc))
            return round_one
        if verdict.is_sufficient:
            logger.debug("retrieval.agentic.sufficient", reasoning=verdict.reasoning)
            return round_one

        queries = await self._refined_queries(query, documents, verdict.missing_info)
        ranked_lists = await self._fan_out(queries, filters, self._round_limit)
        fused = reciprocal_rank_fusion(ranked_lists, k=self._rrf_k, source="agentic")

        seen = {r.id for r in round_one}
        room = max(0, self._combined_limit - len(round_one))
        combined = round_one + [r for r in fused if r.id not in seen][:room]
        logger.info(
            "retrieval.agentic.second_round",
            queries=len(queries),
            added=len(combined) - len(round_one),
            missing=list(verdict.missing_info),
        )
        return await self._rerank(query, combined)

    async def _refined_queries(
        self, query: str, documents: list[str], missing_info: Sequence[str]
    ) -> list[str]:
        try:
            refined = await self._judge.refine(query, documents, missing_info)
        except Exception as exc:
            logger.warning("retrieval.refine.failed", error=str(exc))
            refined = []
            if self._expander is not None:
                try:
                    refined = await self._expander.expand(query)
                except Exception as expand_exc:
                    logger.warning("retrieval.expand.failed", error=str(expand_exc))
        return refined or [query]

    async def _fan_out(
        self, queries: Sequence[str], filters: RetrievalFilters, limit: int
    ) -> list[list[RankedRecord]]:
        """Hybrid search per query; failed sub-queries are logged and dropped."""
        outcomes = await asyncio.gather(
            *(self._hybrid(q, filters, limit) for q in queries),
            return_exceptions=True,
        )
        ranked_lists: list[list[RankedRecord]] = []
        for sub_query, outcome in zip(queries, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "retrieval.branch.degraded",
                    branch="agentic",
                    sub_query=sub_query,
                    error=str(outcome),
                )
                continue
            ranked_lists.append(outcome)
        return ranked_lists

    async def _rerank(self, query: str, results: list[RankedRecord]) -> list[RankedRecord]:
        if self._reranker is None or not results:
            return results
        try:
            scores = await asyncio.wait_for(
                self._reranker.rerank(query, [r.content for r in results]),
                timeout=self._branch_timeout,
            )
        except Exception as exc:
            logger.warning("retrieval.rerank.failed", error=str(exc))
            return results
        if len(scores) != len(results):
            logger.warning(
                "retrieval.rerank.mismatch", expected=len(results), received=len(scores)
            )
            return results
        rescored = [
            RankedRecord(memory=r.memory, score=float(s), source=r.source)
            for r, s in zip(results, scores)
        ]
        # stable: equal scores keep the fused order
        rescored.sort(key=lambda r: r.score, reverse=True)
        return rescored

