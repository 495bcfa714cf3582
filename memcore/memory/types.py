"""
MemCore — Memory Types
========================
Data model shared by ingestion, dedup, and retrieval.

- ``MemCell``: raw input unit submitted for extraction.
- ``RoutingContext``: caller-supplied three-tier address inputs.
- ``MemoryRecord``: extractor output, with a tagged payload per memory type.
- ``StoredMemory`` / ``RankedRecord``: read-side views returned by the stores.
- Result objects for ingestion, dedup, and undo.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a memory / event / log-entry identifier."""
    return str(uuid.uuid4())


# ── Enumerations ────────────────────────────────────────────────────────


class MemoryType(StrEnum):
    """Built-in memory types. Other strings are accepted as future types."""

    EPISODIC = "episodic_memory"
    FORESIGHT = "foresight"
    EVENT_LOG = "event_log"
    PROFILE = "profile"


class Scene(StrEnum):
    """Context classification of a raw unit."""

    ASSISTANT = "assistant"
    GROUP = "group"
    DOCUMENT = "document"


class RetrieveMethod(StrEnum):
    """Retrieval strategy.  ``HYBRID`` and ``RRF`` both fuse keyword + vector."""

    KEYWORD = "keyword"
    VECTOR = "vector"
    HYBRID = "hybrid"
    RRF = "rrf"
    AGENTIC = "agentic"


# ── Raw Input ───────────────────────────────────────────────────────────


class MemCell(BaseModel):
    """Raw input unit: a conversation slice or a document."""

    model_config = ConfigDict(extra="allow")

    event_id: str | None = None
    user_id: str | None = None
    group_id: str | None = None
    original_data: list[dict[str, Any]] | str = Field(default_factory=list)
    text: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    scene: Scene | None = None
    deleted: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    def render_text(self) -> str:
        """Flatten the payload into plain text for extractors."""
        if self.text:
            return self.text
        if isinstance(self.original_data, str):
            return self.original_data
        lines = []
        for turn in self.original_data:
            speaker = turn.get("role") or turn.get("speaker") or "user"
            content = turn.get("content") or turn.get("text") or ""
            if content:
                lines.append(f"{speaker}: {content}")
        return "\n".join(lines)


class RoutingContext(BaseModel):
    """
    Three-tier routing inputs.

    ``round_message_id`` is stamped into each record's metadata;
    ``skip_session_extraction`` drops the session layer (EventLog);
    ``session_only`` keeps only the session layer.
    """

    user_id: str
    scope: str
    session_id: str | None = None
    round_message_id: str | None = None
    skip_session_extraction: bool = False
    session_only: bool = False


# ── Payload Variants ────────────────────────────────────────────────────


class EpisodicPayload(BaseModel):
    kind: Literal["episodic"] = "episodic"
    content: str | None = None
    summary: str | None = None
    keywords: list[str] = Field(default_factory=list)

    def display_content(self) -> str:
        return self.content or self.summary or ""


class ForesightPayload(BaseModel):
    kind: Literal["foresight"] = "foresight"
    content: str | None = None
    foresight: str | None = None
    evidence: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    duration_days: int | None = None

    def display_content(self) -> str:
        return self.content or self.foresight or ""


class EventLogPayload(BaseModel):
    kind: Literal["event_log"] = "event_log"
    content: str | None = None
    time: str | None = None
    atomic_facts: list[str] = Field(default_factory=list)

    def display_content(self) -> str:
        if self.content:
            return self.content
        return " ".join(f for f in self.atomic_facts if f)


class ProfilePayload(BaseModel):
    kind: Literal["profile"] = "profile"
    content: str | None = None
    items: list[str] = Field(default_factory=list)

    def display_content(self) -> str:
        if self.content:
            return self.content
        return "\n".join(i for i in self.items if i)


class GenericPayload(BaseModel):
    """Free-form payload for memory types without a dedicated shape."""

    kind: Literal["generic"] = "generic"
    content: str | None = None
    summary: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    def display_content(self) -> str:
        return self.content or self.summary or ""


MemoryPayload = Annotated[
    Union[
        EpisodicPayload,
        ForesightPayload,
        EventLogPayload,
        ProfilePayload,
        GenericPayload,
    ],
    Field(discriminator="kind"),
]


# ── Memory Record ───────────────────────────────────────────────────────


class MemoryRecord(BaseModel):
    """A memory record as produced by an extractor and persisted by the manager."""

    id: str | None = None
    memory_type: str = ""
    user_id: str | None = None
    group_id: str | None = None
    payload: MemoryPayload = Field(default_factory=GenericPayload)
    embedding: list[float] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def display_content(self) -> str:
        return self.payload.display_content()

    def to_blob(self, *, include_embedding: bool = False) -> dict[str, Any]:
        """JSON-safe serialization used for relational metadata and dedup payloads."""
        exclude = None if include_embedding else {"embedding"}
        return self.model_dump(mode="json", exclude=exclude)


# ── Read-side Views ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class StoredMemory:
    """One persisted record as read back from a store."""

    id: str
    memory_type: str
    content: str
    user_id: str | None
    group_id: str | None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> MemoryRecord:
        """Rehydrate the full record from the stored metadata blob."""
        if self.metadata.get("payload") is not None:
            record = MemoryRecord.model_validate(self.metadata)
        else:
            record = MemoryRecord(payload=GenericPayload(content=self.content))
        return record.model_copy(update={
            "id": self.id,
            "memory_type": self.memory_type,
            "user_id": self.user_id,
            "group_id": self.group_id,
        })


@dataclass(frozen=True)
class RankedRecord:
    """A retrieval hit with its score and the strategy that produced it."""

    memory: StoredMemory
    score: float
    source: str

    @property
    def id(self) -> str:
        return self.memory.id

    @property
    def content(self) -> str:
        return self.memory.content


# ── Filters & Results ───────────────────────────────────────────────────


class RetrievalFilters(BaseModel):
    user_id: str | None = None
    group_id: str | None = None
    memory_types: list[str] = Field(
        default_factory=lambda: [MemoryType.EPISODIC.value]
    )


@dataclass
class IngestionResult:
    """Outcome of ``process_unit``.  Callers may ignore it."""

    event_id: str
    created: list[MemoryRecord] = field(default_factory=list)
    suppressed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed_types: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DedupDecision:
    accepted: bool
    log_entry_id: str | None = None
    kept_memory_id: str | None = None
    text_similarity: float = -1.0
    vector_similarity: float = -1.0
    reasoning: str = ""


@dataclass(frozen=True)
class UndoResult:
    restored: bool
    restored_id: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class DedupLogEntry:
    """Read-side view of one dedup log row."""

    id: str
    kept_memory_id: str
    kept_memory_content: str
    new_memory_id: str
    new_memory_content: str
    new_memory_type: str
    new_memory_payload: dict[str, Any] | None
    vector_similarity: float
    text_similarity: float
    reasoning: str
    user_id: str | None
    group_id: str | None
    created_at: datetime | None
    rolled_back: bool
    resolved_at: datetime | None = None
    restored_memory_id: str | None = None
