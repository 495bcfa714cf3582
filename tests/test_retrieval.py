"""
MemCore — Retrieval Tests
===========================
Keyword, vector, hybrid and agentic strategies, branch degradation and
timeouts, rerank and the layered search.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from memcore.core.exceptions import InvalidArgumentError, LLMError, StorageError
from memcore.memory.capabilities import SufficiencyResult
from memcore.memory.retrieval import RetrievalManager, keyword_score
from memcore.memory.types import (
    EpisodicPayload,
    EventLogPayload,
    MemoryRecord,
    ProfilePayload,
    RankedRecord,
    RetrievalFilters,
    RetrieveMethod,
    StoredMemory,
    new_id,
)
from memcore.memory.writer import DualWriter

_PAYLOADS = {
    "episodic_memory": EpisodicPayload,
    "event_log": EventLogPayload,
}


async def _seed(relational, vector, embeddings, content, *,
                memory_type="episodic_memory", user_id="u1", group_id="proj"):
    now = datetime.now(timezone.utc)
    payload = (
        ProfilePayload(items=[content])
        if memory_type == "profile"
        else _PAYLOADS[memory_type](content=content)
    )
    record = MemoryRecord(
        id=new_id(),
        memory_type=memory_type,
        user_id=user_id,
        group_id=group_id,
        payload=payload,
        embedding=await embeddings.embed(content),
        created_at=now,
        updated_at=now,
    )
    await DualWriter(relational, vector).write(record)
    return record


class FailingVector:
    async def search(self, *args, **kwargs):
        raise StorageError("vector backend unavailable")


class FailingRelational:
    async def keyword_candidates(self, *args, **kwargs):
        raise StorageError("database unavailable")


class StubExpander:
    def __init__(self, queries=None, error=None):
        self._queries = queries or []
        self._error = error

    async def expand(self, query):
        if self._error is not None:
            raise self._error
        return self._queries


class StubReranker:
    def __init__(self, scores=None, error=None):
        self._scores = scores
        self._error = error
        self.documents: list[str] = []

    async def rerank(self, query, documents):
        self.documents = list(documents)
        if self._error is not None:
            raise self._error
        return self._scores(documents) if callable(self._scores) else self._scores


@pytest.fixture
def retrieval(relational, vector, embeddings):
    return RetrievalManager(relational, vector, embeddings)


@pytest_asyncio.fixture
async def seeded(relational, vector, embeddings):
    deadline = await _seed(relational, vector, embeddings, "The deployment deadline is Friday.")
    coffee = await _seed(relational, vector, embeddings, "Prefers coffee over tea.")
    other = await _seed(
        relational, vector, embeddings, "Another deployment deadline.", user_id="u2"
    )
    return {"deadline": deadline, "coffee": coffee, "other": other}


# ── Scoring ─────────────────────────────────────────────────────────────

def test_keyword_score_phrase_bonus_and_density():
    tokens = ["deployment", "deadline"]
    with_phrase = keyword_score("deployment deadline", "deployment deadline", tokens)
    without = keyword_score("deadline for deployment", "deployment deadline", tokens)
    assert with_phrase > without > 0
    assert keyword_score("", "q", ["q"]) == 0.0
    assert keyword_score("unrelated", "q", ["zzz"]) == 0.0


# ── Argument Validation ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unknown_method_rejected(retrieval):
    with pytest.raises(InvalidArgumentError, match="Unknown retrieval method"):
        await retrieval.retrieve("q", method="fuzzy")


@pytest.mark.asyncio
async def test_empty_query_rejected(retrieval):
    with pytest.raises(InvalidArgumentError):
        await retrieval.retrieve("   ")


@pytest.mark.asyncio
async def test_vector_methods_require_embeddings(relational, vector):
    retrieval = RetrievalManager(relational, vector)
    with pytest.raises(InvalidArgumentError, match="embedding service"):
        await retrieval.retrieve("q", method=RetrieveMethod.HYBRID)
    assert await retrieval.retrieve("q", method=RetrieveMethod.KEYWORD) == []


@pytest.mark.asyncio
async def test_non_positive_limit_returns_nothing(retrieval, seeded):
    assert await retrieval.retrieve("deployment", limit=0) == []


# ── Single Strategies ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_keyword_search_scores_and_filters(retrieval, seeded):
    hits = await retrieval.retrieve(
        "deployment deadline",
        RetrievalFilters(user_id="u1"),
        RetrieveMethod.KEYWORD,
    )
    assert [h.id for h in hits] == [seeded["deadline"].id]
    assert hits[0].source == "keyword"
    assert hits[0].score > 2.0


@pytest.mark.asyncio
async def test_keyword_search_respects_memory_types(retrieval, seeded):
    hits = await retrieval.retrieve(
        "deployment",
        RetrievalFilters(user_id="u1", memory_types=["profile"]),
        RetrieveMethod.KEYWORD,
    )
    assert hits == []


@pytest.mark.asyncio
async def test_vector_search_ranks_exact_text_first(retrieval, seeded):
    hits = await retrieval.retrieve(
        "Prefers coffee over tea.",
        RetrievalFilters(user_id="u1", group_id="proj"),
        RetrieveMethod.VECTOR,
    )
    assert hits[0].id == seeded["coffee"].id
    assert hits[0].source == "vector"
    assert {h.memory.user_id for h in hits} == {"u1"}


@pytest.mark.asyncio
async def test_hybrid_fuses_both_branches(retrieval, seeded):
    hits = await retrieval.retrieve(
        "The deployment deadline is Friday.",
        RetrievalFilters(user_id="u1"),
        RetrieveMethod.HYBRID,
        limit=5,
    )
    assert hits[0].id == seeded["deadline"].id
    assert hits[0].source == "hybrid"
    assert hits[0].score == pytest.approx(2 / 61)


# ── Fusion Ordering ─────────────────────────────────────────────────────

def _ranked(*ids: str) -> list[RankedRecord]:
    return [
        RankedRecord(
            memory=StoredMemory(id=i, memory_type="episodic_memory", content=i,
                                user_id="u1", group_id="proj"),
            score=1.0,
            source="stub",
        )
        for i in ids
    ]


class FixedBranches(RetrievalManager):
    async def _keyword(self, query, filters, limit):
        return _ranked("A", "B", "C")

    async def _vector_search(self, query, filters, limit):
        return _ranked("B", "D", "A")


@pytest.mark.asyncio
async def test_hybrid_rrf_ordering(relational, vector, embeddings):
    retrieval = FixedBranches(relational, vector, embeddings)
    hits = await retrieval.retrieve("q", RetrievalFilters(user_id="u1"), RetrieveMethod.HYBRID, 5)
    assert [h.id for h in hits[:2]] == ["B", "A"]
    assert {h.id for h in hits[2:]} == {"C", "D"}
    assert hits[0].score == pytest.approx(1 / 61 + 1 / 62)
    assert hits[1].score == pytest.approx(1 / 61 + 1 / 63)


# ── Degradation ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_hybrid_degrades_to_keyword_when_vector_fails(relational, embeddings, seeded):
    retrieval = RetrievalManager(relational, FailingVector(), embeddings)
    hits = await retrieval.retrieve(
        "deployment deadline", RetrievalFilters(user_id="u1"), RetrieveMethod.HYBRID
    )
    assert [h.id for h in hits] == [seeded["deadline"].id]
    assert hits[0].source == "hybrid"


@pytest.mark.asyncio
async def test_hybrid_raises_when_every_branch_fails(embeddings):
    retrieval = RetrievalManager(FailingRelational(), FailingVector(), embeddings)
    with pytest.raises(StorageError, match="both branches"):
        await retrieval.retrieve("deployment", method=RetrieveMethod.HYBRID)


@pytest.mark.asyncio
async def test_single_strategy_failure_propagates(relational, embeddings):
    retrieval = RetrievalManager(relational, FailingVector(), embeddings)
    with pytest.raises(StorageError):
        await retrieval.retrieve("deployment", method=RetrieveMethod.VECTOR)


# ── Branch Timeouts ─────────────────────────────────────────────────────

class SlowCollection:
    """Chroma collection whose ``query`` blocks the calling thread."""

    def __init__(self, inner, delay):
        self._inner = inner
        self._delay = delay

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def query(self, **kwargs):
        time.sleep(self._delay)
        return self._inner.query(**kwargs)


class StallingKeyword:
    """Relational store whose keyword scan never returns in time."""

    def __init__(self, inner):
        self._inner = inner

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def keyword_candidates(self, *args, **kwargs):
        await asyncio.sleep(5)
        return []


@pytest.mark.asyncio
async def test_hybrid_vector_timeout_keeps_keyword_hits(
    relational, vector, embeddings, seeded, monkeypatch
):
    collection = vector._collection
    monkeypatch.setattr(
        vector, "_collection", lambda memory_type: SlowCollection(collection(memory_type), 1.0)
    )
    retrieval = RetrievalManager(relational, vector, embeddings, branch_timeout=0.2)

    started = time.monotonic()
    hits = await retrieval.retrieve(
        "deployment deadline", RetrievalFilters(user_id="u1"), RetrieveMethod.HYBRID
    )
    elapsed = time.monotonic() - started

    assert [h.id for h in hits] == [seeded["deadline"].id]
    assert hits[0].source == "hybrid"
    assert elapsed < 0.9


@pytest.mark.asyncio
async def test_hybrid_keyword_timeout_keeps_vector_hits(relational, vector, embeddings, seeded):
    retrieval = RetrievalManager(
        StallingKeyword(relational), vector, embeddings, branch_timeout=0.2
    )
    hits = await retrieval.retrieve(
        "Prefers coffee over tea.", RetrievalFilters(user_id="u1"), RetrieveMethod.HYBRID
    )
    assert hits[0].id == seeded["coffee"].id
    assert {h.memory.user_id for h in hits} == {"u1"}


@pytest.mark.asyncio
async def test_single_strategy_timeout_raises(relational, vector, embeddings, seeded):
    retrieval = RetrievalManager(
        StallingKeyword(relational), vector, embeddings, branch_timeout=0.1
    )
    with pytest.raises(StorageError, match="timed out"):
        await retrieval.retrieve("deployment", method=RetrieveMethod.KEYWORD)


# ── Agentic ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_agentic_fuses_expanded_queries(relational, vector, embeddings, seeded):
    retrieval = RetrievalManager(
        relational, vector, embeddings,
        expander=StubExpander(["deployment deadline", "coffee"]),
    )
    hits = await retrieval.retrieve(
        "what matters?", RetrievalFilters(user_id="u1"), RetrieveMethod.AGENTIC
    )
    assert {h.id for h in hits} == {seeded["deadline"].id, seeded["coffee"].id}
    assert all(h.source == "agentic" for h in hits)


@pytest.mark.asyncio
async def test_agentic_falls_back_to_original_query(relational, vector, embeddings, seeded):
    retrieval = RetrievalManager(
        relational, vector, embeddings,
        expander=StubExpander(error=LLMError("timed out")),
    )
    hits = await retrieval.retrieve(
        "Prefers coffee over tea.", RetrievalFilters(user_id="u1"), RetrieveMethod.AGENTIC
    )
    assert hits[0].id == seeded["coffee"].id


# ── Agentic Rounds ──────────────────────────────────────────────────────

class StubJudge:
    def __init__(self, verdict=None, refined=None, error=None, refine_error=None):
        self._verdict = verdict
        self._refined = refined or []
        self._error = error
        self._refine_error = refine_error
        self.judged: list[list[str]] = []
        self.missing: list[list[str]] = []

    async def judge(self, query, documents):
        self.judged.append(list(documents))
        if self._error is not None:
            raise self._error
        return self._verdict

    async def refine(self, query, documents, missing_info):
        self.missing.append(list(missing_info))
        if self._refine_error is not None:
            raise self._refine_error
        return self._refined


INSUFFICIENT = SufficiencyResult(is_sufficient=False, missing_info=("owner",))


class ScriptedHybrid(RetrievalManager):
    script = {"q": ["A", "B"], "r1": ["C", "A"], "r2": ["D"]}

    async def _hybrid(self, query, filters, limit):
        return _ranked(*self.script.get(query, []))


def _scripted(relational, vector, embeddings, **kwargs):
    return ScriptedHybrid(relational, vector, embeddings, **kwargs)


@pytest.mark.asyncio
async def test_agentic_sufficient_first_round(relational, vector, embeddings, seeded):
    judge = StubJudge(SufficiencyResult(is_sufficient=True))
    retrieval = RetrievalManager(relational, vector, embeddings, judge=judge)
    hits = await retrieval.retrieve(
        "deployment deadline", RetrievalFilters(user_id="u1"), RetrieveMethod.AGENTIC
    )
    assert [h.id for h in hits] == [seeded["deadline"].id, seeded["coffee"].id]
    assert all(h.source == "agentic" for h in hits)
    assert judge.judged == [[h.content for h in hits]]
    assert judge.missing == []


@pytest.mark.asyncio
async def test_agentic_second_round_appends_new_hits(relational, vector, embeddings):
    judge = StubJudge(INSUFFICIENT, refined=["r1", "r2"])
    retrieval = _scripted(relational, vector, embeddings, judge=judge)
    hits = await retrieval.retrieve("q", method=RetrieveMethod.AGENTIC)

    assert [h.id for h in hits] == ["A", "B", "C", "D"]
    assert all(h.source == "agentic" for h in hits)
    assert judge.judged == [["A", "B"]]
    assert judge.missing == [["owner"]]


@pytest.mark.asyncio
async def test_agentic_combined_limit(relational, vector, embeddings):
    retrieval = _scripted(
        relational, vector, embeddings,
        judge=StubJudge(INSUFFICIENT, refined=["r1", "r2"]),
        agentic_combined_limit=3,
    )
    hits = await retrieval.retrieve("q", method=RetrieveMethod.AGENTIC)
    assert [h.id for h in hits] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_agentic_second_round_is_reranked(relational, vector, embeddings):
    reranker = StubReranker(lambda docs: [1.0 if d == "D" else 0.1 for d in docs])
    retrieval = _scripted(
        relational, vector, embeddings,
        judge=StubJudge(INSUFFICIENT, refined=["r1", "r2"]),
        reranker=reranker,
    )
    hits = await retrieval.retrieve("q", method=RetrieveMethod.AGENTIC, use_rerank=True)
    assert reranker.documents == ["A", "B", "C", "D"]
    assert [h.id for h in hits] == ["D", "A", "B", "C"]


@pytest.mark.asyncio
async def test_agentic_judge_failure_returns_first_round(relational, vector, embeddings):
    retrieval = _scripted(
        relational, vector, embeddings, judge=StubJudge(error=LLMError("timeout"))
    )
    hits = await retrieval.retrieve("q", method=RetrieveMethod.AGENTIC)
    assert [h.id for h in hits] == ["A", "B"]


@pytest.mark.asyncio
async def test_agentic_refine_failure_uses_expander(relational, vector, embeddings):
    retrieval = _scripted(
        relational, vector, embeddings,
        judge=StubJudge(INSUFFICIENT, refine_error=LLMError("timeout")),
        expander=StubExpander(["r2"]),
    )
    hits = await retrieval.retrieve("q", method=RetrieveMethod.AGENTIC)
    assert [h.id for h in hits] == ["A", "B", "D"]


@pytest.mark.asyncio
async def test_agentic_empty_first_round_skips_judge(relational, vector, embeddings):
    judge = StubJudge(INSUFFICIENT)
    retrieval = _scripted(relational, vector, embeddings, judge=judge)
    assert await retrieval.retrieve("nothing", method=RetrieveMethod.AGENTIC) == []
    assert judge.judged == []


# ── Rerank ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rerank_reorders_fused_results(relational, vector, embeddings, seeded):
    reranker = StubReranker(lambda docs: [1.0 if "coffee" in d else 0.1 for d in docs])
    retrieval = RetrievalManager(relational, vector, embeddings, reranker=reranker)
    hits = await retrieval.retrieve(
        "deployment deadline",
        RetrievalFilters(user_id="u1"),
        RetrieveMethod.HYBRID,
        limit=2,
        use_rerank=True,
    )
    assert len(reranker.documents) == 2
    assert [h.id for h in hits] == [seeded["coffee"].id, seeded["deadline"].id]
    assert hits[0].score == 1.0


@pytest.mark.asyncio
async def test_rerank_mismatch_keeps_fused_order(relational, vector, embeddings, seeded):
    plain = RetrievalManager(relational, vector, embeddings)
    expected = await plain.retrieve("deployment deadline", RetrievalFilters(user_id="u1"))

    retrieval = RetrievalManager(
        relational, vector, embeddings, reranker=StubReranker([0.5])
    )
    hits = await retrieval.retrieve(
        "deployment deadline", RetrievalFilters(user_id="u1"), use_rerank=True
    )
    assert [h.id for h in hits] == [h.id for h in expected]


@pytest.mark.asyncio
async def test_rerank_failure_keeps_fused_order(relational, vector, embeddings, seeded):
    retrieval = RetrievalManager(
        relational, vector, embeddings, reranker=StubReranker(error=LLMError("down"))
    )
    hits = await retrieval.retrieve(
        "deployment deadline", RetrievalFilters(user_id="u1"), use_rerank=True
    )
    assert hits[0].id == seeded["deadline"].id
    assert hits[0].source == "hybrid"


@pytest.mark.asyncio
async def test_rerank_without_reranker_is_noop(retrieval, seeded):
    hits = await retrieval.retrieve(
        "deployment deadline", RetrievalFilters(user_id="u1"), use_rerank=True
    )
    assert hits[0].source == "hybrid"


# ── Layered Search ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_search_layers(relational, vector, embeddings, retrieval):
    profile = await _seed(
        relational, vector, embeddings, "Plans every launch carefully.",
        memory_type="profile", group_id=None,
    )
    scope = await _seed(relational, vector, embeddings, "The launch is on Friday.")
    session = await _seed(
        relational, vector, embeddings, "Launch meeting held.",
        memory_type="event_log", group_id="proj:session:s1",
    )

    layers = await retrieval.search_layers(
        "launch", "u1", "proj", "s1", method=RetrieveMethod.KEYWORD
    )
    assert [h.id for h in layers["user"]] == [profile.id]
    assert [h.id for h in layers["scope"]] == [scope.id]
    assert [h.id for h in layers["session"]] == [session.id]

    without_session = await retrieval.search_layers(
        "launch", "u1", "proj", method=RetrieveMethod.KEYWORD
    )
    assert without_session["session"] == []
    assert set(without_session) == {"user", "scope", "session"}
