"""
MemCore — Reciprocal Rank Fusion Tests
========================================
Scores, ordering and tie-breaking of N-way RRF.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from memcore.memory.fusion import reciprocal_rank_fusion
from memcore.memory.types import RankedRecord, StoredMemory

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _hit(memory_id: str, score: float = 1.0, updated_at: datetime | None = None) -> RankedRecord:
    memory = StoredMemory(
        id=memory_id,
        memory_type="episodic_memory",
        content=f"content {memory_id}",
        user_id="u1",
        group_id=None,
        created_at=NOW,
        updated_at=updated_at or NOW,
    )
    return RankedRecord(memory=memory, score=score, source="test")


def _ids(results: list[RankedRecord]) -> list[str]:
    return [r.id for r in results]


# ── Scores ──────────────────────────────────────────────────────────────


def test_keyword_vector_example_ordering():
    """Keyword [A,B,C] + vector [B,D,A] with k=60 ranks B > A > {C, D}."""
    keyword = [_hit("A"), _hit("B"), _hit("C")]
    vector = [_hit("B"), _hit("D"), _hit("A")]
    fused = reciprocal_rank_fusion([keyword, vector], k=60)

    assert _ids(fused)[:2] == ["B", "A"]
    assert set(_ids(fused)[2:]) == {"C", "D"}
    scores = {r.id: r.score for r in fused}
    assert scores["B"] == pytest.approx(1 / 61 + 1 / 62)
    assert scores["A"] == pytest.approx(1 / 61 + 1 / 63)
    assert scores["C"] == pytest.approx(1 / 63)
    assert scores["D"] == pytest.approx(1 / 62)
    # D (1/62) outranks C (1/63)
    assert _ids(fused)[2:] == ["D", "C"]


def test_document_in_both_lists_ranks_at_least_as_high():
    keyword = [_hit("X"), _hit("Y"), _hit("Z")]
    vector = [_hit("Q"), _hit("R"), _hit("Z")]
    fused = _ids(reciprocal_rank_fusion([keyword, vector]))
    single = _ids(reciprocal_rank_fusion([keyword]))
    assert fused.index("Z") <= single.index("Z")
    assert fused[0] == "Z"


def test_n_way_sums_contributions():
    lists = [[_hit("A"), _hit("B")], [_hit("B")], [_hit("B"), _hit("A")]]
    fused = reciprocal_rank_fusion(lists, k=10)
    scores = {r.id: r.score for r in fused}
    assert scores["B"] == pytest.approx(1 / 12 + 1 / 11 + 1 / 11)
    assert scores["A"] == pytest.approx(1 / 11 + 1 / 12)


def test_duplicate_within_list_counts_once():
    fused = reciprocal_rank_fusion([[_hit("A"), _hit("A"), _hit("B")]], k=60)
    scores = {r.id: r.score for r in fused}
    assert scores["A"] == pytest.approx(1 / 61)
    # B keeps its positional rank
    assert scores["B"] == pytest.approx(1 / 63)


def test_empty_input():
    assert reciprocal_rank_fusion([]) == []
    assert reciprocal_rank_fusion([[], []]) == []


def test_source_label():
    fused = reciprocal_rank_fusion([[_hit("A")]], source="hybrid")
    assert fused[0].source == "hybrid"


# ── Tie Breaking ────────────────────────────────────────────────────────


def test_tie_broken_by_best_rank_then_recency():
    older = NOW - timedelta(days=3)
    # A and B both appear once at rank 1 and once at rank 2: equal score, equal best rank.
    lists = [
        [_hit("A", updated_at=older), _hit("B")],
        [_hit("B"), _hit("A", updated_at=older)],
    ]
    fused = _ids(reciprocal_rank_fusion(lists))
    assert fused == ["B", "A"]


def test_naive_timestamps_are_treated_as_utc():
    naive = datetime(2026, 1, 2)
    lists = [[_hit("A"), _hit("B", updated_at=naive)], [_hit("B", updated_at=naive), _hit("A")]]
    assert _ids(reciprocal_rank_fusion(lists)) == ["B", "A"]
