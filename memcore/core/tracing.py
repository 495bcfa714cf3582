"""
MemCore — Tracing
===================
Correlation ID propagation and span timing for engine operations.

The correlation ID lives in a context variable so that every log line
emitted while an ingestion or retrieval call is in flight carries it,
including lines emitted from concurrently running extractor branches
(``asyncio`` tasks copy the current context on creation).

Usage:
    from memcore.core.tracing import bind_correlation_id, create_span

    with bind_correlation_id():
        with create_span("memory.ingest", event_id="abc") as span:
            ...
        print(span.duration_ms)
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Generator

# ── Context Variable ────────────────────────────────────────────────────
correlation_id_ctx: ContextVar[str | None] = ContextVar(
    "correlation_id", default=None
)


@contextmanager
def bind_correlation_id(cid: str | None = None) -> Generator[str, None, None]:
    """
    Bind a correlation ID for the duration of the block.

    Reuses the ID already bound by an outer caller when ``cid`` is None,
    otherwise generates a fresh UUID v4.
    """
    existing = correlation_id_ctx.get(None)
    value = cid or existing or str(uuid.uuid4())
    token = correlation_id_ctx.set(value)
    try:
        yield value
    finally:
        correlation_id_ctx.reset(token)


@dataclass
class Span:
    """A single timed span within a trace."""

    name: str
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    start_time: float = field(default_factory=time.monotonic)
    end_time: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float | None:
        """Duration in milliseconds, or None if still open."""
        if self.end_time is None:
            return None
        return round((self.end_time - self.start_time) * 1000, 2)

    def close(self) -> None:
        """Close the span, recording end time."""
        if self.end_time is None:
            self.end_time = time.monotonic()


@contextmanager
def create_span(name: str, **metadata: Any) -> Generator[Span, None, None]:
    """
    Context manager that creates and auto-closes a timed span.

    Usage:
        with create_span("retrieval.hybrid", user_id="u1") as span:
            ...
        print(span.duration_ms)
    """
    span = Span(name=name, metadata=metadata)
    try:
        yield span
    finally:
        span.close()
