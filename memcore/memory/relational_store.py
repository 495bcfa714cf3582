"""
MemCore — Relational Store
============================
SQLAlchemy-backed record of truth for memory rows and the dedup log.

Every SQLAlchemy failure is re-raised as ``StorageError``.  Missing ids are
not errors: ``get`` returns None, deletes return False / empty lists, and a
lost dedup claim returns False.

Usage:
    store = SQLRelationalStore.from_url("sqlite+aiosqlite:///./memcore.db")
    await store.create_all()
    await store.insert(record)
    rows = await store.list_by_group("u1", "proj", limit=50)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Protocol, Sequence, runtime_checkable

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from memcore.core.config import Settings
from memcore.core.exceptions import StorageError
from memcore.core.logging import get_logger
from memcore.db.models import Base, DedupLog, Memory
from memcore.db.session import (
    create_engine,
    create_engine_from_settings,
    create_session_factory,
    session_scope,
)
from memcore.memory.types import DedupLogEntry, MemoryRecord, StoredMemory

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def group_prefix_clause(column: Any, prefix: str) -> Any:
    """Exact ``prefix`` or anything beginning with ``prefix:``."""
    return or_(column == prefix, column.startswith(f"{prefix}:", autoescape=True))


def _to_stored(row: Memory) -> StoredMemory:
    return StoredMemory(
        id=row.id,
        memory_type=row.type,
        content=row.content or "",
        user_id=row.user_id,
        group_id=row.group_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        metadata=dict(row.metadata_ or {}),
    )


def _to_log_entry(row: DedupLog) -> DedupLogEntry:
    return DedupLogEntry(
        id=row.id,
        kept_memory_id=row.kept_memory_id,
        kept_memory_content=row.kept_memory_content,
        new_memory_id=row.new_memory_id,
        new_memory_content=row.new_memory_content,
        new_memory_type=row.new_memory_type,
        new_memory_payload=row.new_memory_payload,
        vector_similarity=row.vector_similarity,
        text_similarity=row.text_similarity,
        reasoning=row.reasoning,
        user_id=row.user_id,
        group_id=row.group_id,
        created_at=row.created_at,
        rolled_back=row.rolled_back,
        resolved_at=row.resolved_at,
        restored_memory_id=row.restored_memory_id,
    )


# ── Interface ───────────────────────────────────────────────────────────


@runtime_checkable
class RelationalStore(Protocol):
    """Durable row store keyed by memory id, queryable by user / group."""

    async def insert(self, record: MemoryRecord) -> StoredMemory: ...

    async def get(self, memory_id: str) -> StoredMemory | None: ...

    async def list_by_user(self, user_id: str, limit: int = 200) -> list[StoredMemory]: ...

    async def list_by_group(
        self, user_id: str, group_id: str, limit: int = 200
    ) -> list[StoredMemory]: ...

    async def list_by_group_prefix(
        self, user_id: str, group_prefix: str, limit: int = 200
    ) -> list[StoredMemory]: ...

    async def list_by_round_message(
        self, user_id: str, round_message_id: str, limit: int = 50
    ) -> list[StoredMemory]: ...

    async def delete(self, memory_id: str) -> StoredMemory | None: ...

    async def delete_by_group(self, group_id: str) -> list[StoredMemory]: ...

    async def delete_by_group_prefix(self, group_prefix: str) -> list[StoredMemory]: ...

    async def keyword_candidates(
        self,
        tokens: Sequence[str],
        *,
        user_id: str | None,
        group_id: str | None,
        limit: int,
        memory_types: Sequence[str] | None = None,
    ) -> list[StoredMemory]: ...

    async def dedup_candidates(
        self,
        memory_type: str,
        *,
        user_id: str | None,
        group_id: str | None,
        limit: int,
    ) -> list[StoredMemory]: ...

    async def touch(self, memory_id: str) -> bool: ...

    async def record_references(self, memory_ids: Sequence[str]) -> int: ...

    async def count_by_type(
        self, user_id: str | None = None, group_prefix: str | None = None
    ) -> dict[str, int]: ...

    async def count_by_group(
        self, user_id: str, group_prefix: str | None = None
    ) -> dict[str | None, int]: ...

    async def scan(self, after_id: str | None, limit: int) -> list[StoredMemory]: ...

    async def add_dedup_log(self, **fields: Any) -> DedupLogEntry: ...

    async def get_dedup_log(self, entry_id: str) -> DedupLogEntry | None: ...

    async def claim_dedup_log(self, entry_id: str) -> bool: ...

    async def release_dedup_log(self, entry_id: str) -> None: ...

    async def finish_dedup_log(self, entry_id: str, restored_memory_id: str) -> None: ...

    async def list_dedup_log(
        self,
        *,
        scope: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
        include_resolved: bool = False,
    ) -> list[DedupLogEntry]: ...


# ── SQLAlchemy Implementation ───────────────────────────────────────────


class SQLRelationalStore:
    """
    ``RelationalStore`` over an async SQLAlchemy engine.

    Works against PostgreSQL (asyncpg) and SQLite (aiosqlite).
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_factory = create_session_factory(engine)

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> "SQLRelationalStore":
        return cls(create_engine(url, **engine_kwargs))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SQLRelationalStore":
        return cls(create_engine_from_settings(settings))

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create tables directly (tests / local development; production uses Alembic)."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _session(self, op: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("relational.op.error", op=op, error=str(exc))
            raise StorageError(f"Relational store {op} failed: {exc}") from exc

    # ── Memory Rows ─────────────────────────────────────────────────────

    async def insert(self, record: MemoryRecord) -> StoredMemory:
        """Insert one row; ``record`` must already carry id, type and timestamps."""
        now = _utcnow()
        row = Memory(
            id=record.id,
            type=record.memory_type,
            content=record.display_content(),
            user_id=record.user_id,
            group_id=record.group_id,
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
            round_message_id=record.metadata.get("round_message_id"),
            metadata_=record.to_blob(),
        )
        async with self._session("insert") as session:
            session.add(row)
        return _to_stored(row)

    async def get(self, memory_id: str) -> StoredMemory | None:
        async with self._session("get") as session:
            row = await session.get(Memory, memory_id)
            return _to_stored(row) if row is not None else None

    async def _list(self, op: str, *criteria: Any, limit: int) -> list[StoredMemory]:
        async with self._session(op) as session:
            result = await session.execute(
                select(Memory)
                .where(*criteria)
                .order_by(Memory.created_at.desc())
                .limit(limit)
            )
            return [_to_stored(r) for r in result.scalars().all()]

    async def list_by_user(self, user_id: str, limit: int = 200) -> list[StoredMemory]:
        return await self._list("list_by_user", Memory.user_id == user_id, limit=limit)

    async def list_by_group(
        self, user_id: str, group_id: str, limit: int = 200
    ) -> list[StoredMemory]:
        return await self._list(
            "list_by_group",
            Memory.user_id == user_id,
            Memory.group_id == group_id,
            limit=limit,
        )

    async def list_by_group_prefix(
        self, user_id: str, group_prefix: str, limit: int = 200
    ) -> list[StoredMemory]:
        return await self._list(
            "list_by_group_prefix",
            Memory.user_id == user_id,
            group_prefix_clause(Memory.group_id, group_prefix),
            limit=limit,
        )

    async def list_by_round_message(
        self, user_id: str, round_message_id: str, limit: int = 50
    ) -> list[StoredMemory]:
        return await self._list(
            "list_by_round_message",
            Memory.user_id == user_id,
            Memory.round_message_id == round_message_id,
            limit=limit,
        )

    async def delete(self, memory_id: str) -> StoredMemory | None:
        """Delete one row.  Returns the deleted row, or None if it did not exist."""
        async with self._session("delete") as session:
            row = await session.get(Memory, memory_id)
            if row is None:
                return None
            stored = _to_stored(row)
            await session.delete(row)
            return stored

    async def _delete_where(self, op: str, criterion: Any) -> list[StoredMemory]:
        async with self._session(op) as session:
            result = await session.execute(select(Memory).where(criterion))
            rows = [_to_stored(r) for r in result.scalars().all()]
            if rows:
                await session.execute(
                    delete(Memory)
                    .where(Memory.id.in_([r.id for r in rows]))
                    .execution_options(synchronize_session=False)
                )
            return rows

    async def delete_by_group(self, group_id: str) -> list[StoredMemory]:
        return await self._delete_where("delete_by_group", Memory.group_id == group_id)

    async def delete_by_group_prefix(self, group_prefix: str) -> list[StoredMemory]:
        return await self._delete_where(
            "delete_by_group_prefix",
            group_prefix_clause(Memory.group_id, group_prefix),
        )

    async def keyword_candidates(
        self,
        tokens: Sequence[str],
        *,
        user_id: str | None,
        group_id: str | None,
        limit: int,
        memory_types: Sequence[str] | None = None,
    ) -> list[StoredMemory]:
        """Most recently updated rows containing at least one token (case-insensitive)."""
        criteria: list[Any] = []
        if user_id:
            criteria.append(Memory.user_id == user_id)
        if group_id:
            criteria.append(Memory.group_id == group_id)
        if memory_types:
            criteria.append(Memory.type.in_(list(memory_types)))
        if tokens:
            criteria.append(or_(*[
                Memory.content.icontains(t, autoescape=True) for t in tokens
            ]))
        async with self._session("keyword_candidates") as session:
            result = await session.execute(
                select(Memory)
                .where(*criteria)
                .order_by(Memory.updated_at.desc())
                .limit(limit)
            )
            return [_to_stored(r) for r in result.scalars().all()]

    async def dedup_candidates(
        self,
        memory_type: str,
        *,
        user_id: str | None,
        group_id: str | None,
        limit: int,
    ) -> list[StoredMemory]:
        """Rows sharing the ``(memory_type, user_id, group_id)`` bucket, newest first."""
        criteria: list[Any] = [Memory.type == memory_type]
        criteria.append(
            Memory.user_id.is_(None) if user_id is None else Memory.user_id == user_id
        )
        criteria.append(
            Memory.group_id.is_(None) if group_id is None else Memory.group_id == group_id
        )
        async with self._session("dedup_candidates") as session:
            result = await session.execute(
                select(Memory)
                .where(*criteria)
                .order_by(Memory.updated_at.desc())
                .limit(limit)
            )
            return [_to_stored(r) for r in result.scalars().all()]

    async def touch(self, memory_id: str) -> bool:
        async with self._session("touch") as session:
            result = await session.execute(
                update(Memory)
                .where(Memory.id == memory_id)
                .values(updated_at=_utcnow())
            )
            return result.rowcount == 1

    async def record_references(self, memory_ids: Sequence[str]) -> int:
        """Increment ``ref_count`` and set ``last_ref_at`` in each record's metadata."""
        if not memory_ids:
            return 0
        now = _utcnow()
        async with self._session("record_references") as session:
            result = await session.execute(
                select(Memory).where(Memory.id.in_(list(memory_ids)))
            )
            rows = result.scalars().all()
            for row in rows:
                blob = dict(row.metadata_ or {})
                inner = dict(blob.get("metadata") or {})
                inner["ref_count"] = int(inner.get("ref_count", 0)) + 1
                inner["last_ref_at"] = now.isoformat()
                blob["metadata"] = inner
                # reassign so the JSON column is flagged dirty
                row.metadata_ = blob
            return len(rows)

    async def count_by_type(
        self, user_id: str | None = None, group_prefix: str | None = None
    ) -> dict[str, int]:
        criteria: list[Any] = []
        if user_id:
            criteria.append(Memory.user_id == user_id)
        if group_prefix:
            criteria.append(group_prefix_clause(Memory.group_id, group_prefix))
        async with self._session("count_by_type") as session:
            result = await session.execute(
                select(Memory.type, func.count())
                .where(*criteria)
                .group_by(Memory.type)
            )
            return {t: int(n) for t, n in result.all()}

    async def count_by_group(
        self, user_id: str, group_prefix: str | None = None
    ) -> dict[str | None, int]:
        """Row counts per ``group_id`` (None key = user layer)."""
        criteria: list[Any] = [Memory.user_id == user_id]
        if group_prefix:
            criteria.append(or_(
                Memory.group_id.is_(None),
                group_prefix_clause(Memory.group_id, group_prefix),
            ))
        async with self._session("count_by_group") as session:
            result = await session.execute(
                select(Memory.group_id, func.count())
                .where(*criteria)
                .group_by(Memory.group_id)
            )
            return {g: int(n) for g, n in result.all()}

    async def scan(self, after_id: str | None, limit: int) -> list[StoredMemory]:
        """Keyset pagination over all rows by id."""
        stmt = select(Memory).order_by(Memory.id).limit(limit)
        if after_id is not None:
            stmt = stmt.where(Memory.id > after_id)
        async with self._session("scan") as session:
            result = await session.execute(stmt)
            return [_to_stored(r) for r in result.scalars().all()]

    # ── Dedup Log ───────────────────────────────────────────────────────

    async def add_dedup_log(self, **fields: Any) -> DedupLogEntry:
        row = DedupLog(created_at=_utcnow(), rolled_back=False, **fields)
        async with self._session("add_dedup_log") as session:
            session.add(row)
        return _to_log_entry(row)

    async def get_dedup_log(self, entry_id: str) -> DedupLogEntry | None:
        async with self._session("get_dedup_log") as session:
            row = await session.get(DedupLog, entry_id)
            return _to_log_entry(row) if row is not None else None

    async def claim_dedup_log(self, entry_id: str) -> bool:
        """
        Atomically flip ``rolled_back`` false -> true.

        Exactly one concurrent caller sees True.
        """
        async with self._session("claim_dedup_log") as session:
            result = await session.execute(
                update(DedupLog)
                .where(DedupLog.id == entry_id, DedupLog.rolled_back.is_(False))
                .values(rolled_back=True, resolved_at=_utcnow())
            )
            return result.rowcount == 1

    async def release_dedup_log(self, entry_id: str) -> None:
        """Undo a claim whose restore failed, so the entry can be retried."""
        async with self._session("release_dedup_log") as session:
            await session.execute(
                update(DedupLog)
                .where(DedupLog.id == entry_id)
                .values(rolled_back=False, resolved_at=None)
            )

    async def finish_dedup_log(self, entry_id: str, restored_memory_id: str) -> None:
        async with self._session("finish_dedup_log") as session:
            await session.execute(
                update(DedupLog)
                .where(DedupLog.id == entry_id)
                .values(restored_memory_id=restored_memory_id)
            )

    async def list_dedup_log(
        self,
        *,
        scope: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
        include_resolved: bool = False,
    ) -> list[DedupLogEntry]:
        criteria: list[Any] = []
        if scope:
            criteria.append(group_prefix_clause(DedupLog.group_id, scope))
        if user_id:
            criteria.append(DedupLog.user_id == user_id)
        if not include_resolved:
            criteria.append(DedupLog.rolled_back.is_(False))
        async with self._session("list_dedup_log") as session:
            result = await session.execute(
                select(DedupLog)
                .where(*criteria)
                .order_by(DedupLog.created_at.desc())
                .limit(limit)
            )
            return [_to_log_entry(r) for r in result.scalars().all()]
