"""
MemCore — Reciprocal Rank Fusion
==================================
N-way RRF: a document at 1-indexed rank ``r`` in a list contributes
``1 / (k + r)``; contributions are summed across every list containing it.

Ordering: fused score descending, then best (lowest) rank in any list,
then most recent ``updated_at`` / ``created_at``.
"""

from __future__ import annotations

from datetime import timezone
from typing import Sequence

from memcore.memory.types import RankedRecord, StoredMemory

DEFAULT_RRF_K = 60


def _recency(memory: StoredMemory) -> float:
    ts = memory.updated_at or memory.created_at
    if ts is None:
        return 0.0
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def reciprocal_rank_fusion(
    ranked_lists: Sequence[Sequence[RankedRecord]],
    k: int = DEFAULT_RRF_K,
    source: str = "rrf",
) -> list[RankedRecord]:
    """Fuse ranked lists; a repeated id within one list counts once, at its best rank."""
    scores: dict[str, float] = {}
    best_rank: dict[str, int] = {}
    memories: dict[str, StoredMemory] = {}

    for ranked in ranked_lists:
        seen: set[str] = set()
        for rank, item in enumerate(ranked, start=1):
            if item.id in seen:
                continue
            seen.add(item.id)
            scores[item.id] = scores.get(item.id, 0.0) + 1.0 / (k + rank)
            best_rank[item.id] = min(best_rank.get(item.id, rank), rank)
            memories.setdefault(item.id, item.memory)

    ordered = sorted(
        scores,
        key=lambda mid: (-scores[mid], best_rank[mid], -_recency(memories[mid])),
    )
    return [
        RankedRecord(memory=memories[mid], score=scores[mid], source=source)
        for mid in ordered
    ]
