"""
MemCore — Pluggable Capabilities
==================================
Interfaces for the optional LLM-driven capabilities consumed by retrieval
and dedup, plus LLM-backed implementations over ``BaseLLMClient``.

- ``QueryExpander``: query -> sub-queries (agentic retrieval).
- ``Reranker``: query + documents -> one relevance score per document.
- ``DedupConfirmer``: existing vs new content -> same / different.
- ``SufficiencyJudge``: query + retrieved documents -> enough or not, and
  refined queries for what is missing (multi-round agentic retrieval).

Every LLM call is bounded by ``timeout_seconds``; timeouts and unusable
output raise ``LLMError`` so callers can treat them as isolated failures.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from memcore.core.exceptions import LLMError
from memcore.core.logging import get_logger
from memcore.integrations.llm_client import BaseLLMClient
from memcore.memory.prompts import (
    DEDUP_CONFIRM_PROMPT,
    QUERY_EXPANSION_PROMPT,
    REFINE_QUERY_PROMPT,
    RERANK_PROMPT,
    SUFFICIENCY_PROMPT,
)

logger = get_logger(__name__)

_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)、]\s|\(\d+\)|\[\d+\])\s*")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_DOC_CHAR_LIMIT = 500


# ── Interfaces ──────────────────────────────────────────────────────────


@runtime_checkable
class QueryExpander(Protocol):
    async def expand(self, query: str) -> list[str]: ...


@runtime_checkable
class Reranker(Protocol):
    async def rerank(self, query: str, documents: list[str]) -> list[float]:
        """Return one score per document, in document order."""
        ...


@dataclass(frozen=True)
class ConfirmResult:
    is_duplicate: bool
    reasoning: str


@runtime_checkable
class DedupConfirmer(Protocol):
    async def confirm(self, existing: str, new: str) -> ConfirmResult: ...


@dataclass(frozen=True)
class SufficiencyResult:
    is_sufficient: bool
    reasoning: str = ""
    missing_info: tuple[str, ...] = ()


@runtime_checkable
class SufficiencyJudge(Protocol):
    async def judge(self, query: str, documents: list[str]) -> SufficiencyResult: ...

    async def refine(
        self, query: str, documents: list[str], missing_info: Sequence[str]
    ) -> list[str]: ...


# ── LLM-backed Implementations ──────────────────────────────────────────


async def _complete(client: BaseLLMClient, prompt: str, timeout: float, op: str) -> str:
    try:
        response = await asyncio.wait_for(
            client.complete(prompt, max_tokens=512), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        logger.warning("capability.llm.timeout", op=op, timeout_seconds=timeout)
        raise LLMError(f"{op} timed out after {timeout}s") from exc
    except LLMError:
        raise
    except Exception as exc:
        raise LLMError(f"{op} failed: {exc}") from exc
    return response.content or ""


def _numbered(documents: Sequence[str]) -> str:
    return "\n".join(
        f"[{i}] {doc[:_DOC_CHAR_LIMIT]}" for i, doc in enumerate(documents, start=1)
    )


def _query_lines(text: str, limit: int) -> list[str]:
    queries: list[str] = []
    for line in text.splitlines():
        line = _LIST_MARKER_RE.sub("", line).strip().strip('"')
        if line and line not in queries:
            queries.append(line)
    return queries[:limit]


class LLMQueryExpander:
    """Expands a query into up to ``max_queries`` sub-queries."""

    def __init__(
        self,
        client: BaseLLMClient,
        max_queries: int = 3,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._max_queries = max_queries
        self._timeout = timeout_seconds

    async def expand(self, query: str) -> list[str]:
        prompt = QUERY_EXPANSION_PROMPT.format(
            count=f"2-{self._max_queries}" if self._max_queries > 2 else self._max_queries,
            query=query,
        )
        text = await _complete(self._client, prompt, self._timeout, "query_expansion")
        return _query_lines(text, self._max_queries)


class LLMReranker:
    """Scores documents 0-10 with one LLM call; returns scores scaled to [0, 1]."""

    def __init__(self, client: BaseLLMClient, timeout_seconds: float = 30.0) -> None:
        self._client = client
        self._timeout = timeout_seconds

    async def rerank(self, query: str, documents: list[str]) -> list[float]:
        if not documents:
            return []
        prompt = RERANK_PROMPT.format(
            count=len(documents), query=query, documents=_numbered(documents)
        )
        text = await _complete(self._client, prompt, self._timeout, "rerank")

        scores: list[float] = []
        for line in text.splitlines():
            match = _NUMBER_RE.search(_LIST_MARKER_RE.sub("", line))
            if match:
                scores.append(max(0.0, min(10.0, float(match.group()))) / 10.0)
        if len(scores) != len(documents):
            raise LLMError(
                f"rerank returned {len(scores)} scores for {len(documents)} documents"
            )
        return scores


class LLMDedupConfirmer:
    """Asks for a one-line SAME / DIFF verdict."""

    def __init__(self, client: BaseLLMClient, timeout_seconds: float = 30.0) -> None:
        self._client = client
        self._timeout = timeout_seconds

    async def confirm(self, existing: str, new: str) -> ConfirmResult:
        prompt = DEDUP_CONFIRM_PROMPT.format(
            existing=existing[:_DOC_CHAR_LIMIT], new=new[:_DOC_CHAR_LIMIT]
        )
        text = await _complete(self._client, prompt, self._timeout, "dedup_confirm")
        lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
        first = lines[0] if lines else ""
        verdict = first.upper()
        if not (verdict.startswith("SAME") or verdict.startswith("DIFF")):
            raise LLMError(f"unrecognised dedup verdict: {first!r}")
        return ConfirmResult(is_duplicate=verdict.startswith("SAME"), reasoning=first)


class LLMSufficiencyJudge:
    """
    Judges whether a first retrieval round answers the query, and writes
    follow-up queries for the gaps when it does not.
    """

    def __init__(
        self,
        client: BaseLLMClient,
        max_queries: int = 3,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._max_queries = max_queries
        self._timeout = timeout_seconds

    async def judge(self, query: str, documents: list[str]) -> SufficiencyResult:
        if not documents:
            return SufficiencyResult(is_sufficient=False, reasoning="no documents")
        prompt = SUFFICIENCY_PROMPT.format(query=query, documents=_numbered(documents))
        text = await _complete(self._client, prompt, self._timeout, "sufficiency_check")

        lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
        first = lines[0] if lines else ""
        verdict = first.upper()
        if verdict.startswith("INSUFFICIENT"):
            sufficient = False
        elif verdict.startswith("SUFFICIENT"):
            sufficient = True
        else:
            raise LLMError(f"unrecognised sufficiency verdict: {first!r}")

        missing: list[str] = []
        reasons: list[str] = []
        for line in lines[1:]:
            if line.upper().startswith("MISSING:"):
                item = line.split(":", 1)[1].strip()
                if item:
                    missing.append(item)
            else:
                reasons.append(line)
        return SufficiencyResult(
            is_sufficient=sufficient,
            reasoning=" ".join(reasons),
            missing_info=tuple(missing),
        )

    async def refine(
        self, query: str, documents: list[str], missing_info: Sequence[str]
    ) -> list[str]:
        prompt = REFINE_QUERY_PROMPT.format(
            count=f"2-{self._max_queries}" if self._max_queries > 2 else self._max_queries,
            query=query,
            missing="\n".join(f"- {m}" for m in missing_info) or "- (unspecified)",
            documents=_numbered(documents) or "(none)",
        )
        text = await _complete(self._client, prompt, self._timeout, "refine_queries")
        return _query_lines(text, self._max_queries)
