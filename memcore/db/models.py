"""
MemCore — SQLAlchemy Models
=============================
Relational record of truth for memory records and the dedup audit log.

Entities: Memory, DedupLog.

Design decisions:
- ``metadata`` holds the full serialized record (opaque blob); only the
  columns needed for filtering and ordering are promoted.
- JSON columns render as JSONB on PostgreSQL and JSON elsewhere.
- ``group_id`` encodes the three-tier address (NULL = user layer).
- ``DedupLog.rolled_back`` is the claim flag for concurrent-safe undo.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Shared declarative base for all MemCore models."""
    pass


# ── Memory ──────────────────────────────────────────────────────────────

class Memory(Base):
    """
    One durable memory record.

    Written by the ingestion manager (dual-write, relational side) and by
    dedup undo; read by listing, keyword retrieval, and dedup candidate scans.
    """

    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    user_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    group_id: Mapped[str | None] = mapped_column(
        String(512), nullable=True,
        comment="NULL = user layer; scope | scope:docs | scope:session:<id>",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    round_message_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True,
        comment="Conversational round that produced the record",
    )
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=dict,
        comment="Full serialized record",
    )

    __table_args__ = (
        Index("ix_memories_user_id", "user_id"),
        Index("ix_memories_group_id", "group_id"),
        Index("ix_memories_type_group", "type", "group_id"),
        Index("ix_memories_updated_at", "updated_at"),
        Index("ix_memories_round_message_id", "round_message_id"),
    )


# ── Dedup Log ───────────────────────────────────────────────────────────

class DedupLog(Base):
    """
    Reversible suppression event.

    Created when a candidate is judged a near-duplicate of ``kept_memory_id``;
    consumed once by undo, which re-creates the suppressed record.
    """

    __tablename__ = "dedup_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kept_memory_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kept_memory_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    new_memory_id: Mapped[str] = mapped_column(String(64), nullable=False)
    new_memory_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    new_memory_type: Mapped[str] = mapped_column(String(64), nullable=False)
    new_memory_payload: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True,
        comment="Suppressed record, serialized for undo",
    )
    vector_similarity: Mapped[float] = mapped_column(
        Float, nullable=False, default=-1.0,
        comment="-1 when no vector comparison was made",
    )
    text_similarity: Mapped[float] = mapped_column(
        Float, nullable=False, default=-1.0,
        comment="-1 when no text comparison was made",
    )
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    user_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    group_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    rolled_back: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    restored_memory_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_dedup_log_user_id", "user_id"),
        Index("ix_dedup_log_group_id", "group_id"),
        Index("ix_dedup_log_created_at", "created_at"),
    )
