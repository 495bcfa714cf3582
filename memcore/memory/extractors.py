"""
MemCore — Extractors
======================
The ``Extractor`` capability turns a raw unit into candidate records of one
memory type.  The manager receives a ``{memory_type: Extractor}`` mapping;
a type without an extractor is simply skipped.

LLM-backed extractors ask for a sectioned plain-text reply:

    ## EPISODE        CONTENT / SUMMARY / KEYWORDS
    ## EVENT_LOG      TIME / FACT (repeated)
    ## FORESIGHT      CONTENT / START / END / DURATION / EVIDENCE, items split by ---
    ## PROFILE        ITEM (repeated)

``parse_memory_text`` is tolerant: headers are case-insensitive, values
split on the first colon, unknown keys and sections are ignored.

``LLMUnifiedExtractor`` asks for every applicable section in one call and
splits the parsed reply by type; the per-type extractors remain the
fallback when that call fails.

Usage:
    extractor = ForesightExtractor(AzureOpenAIClient.from_settings(), embeddings=service)
    records = await extractor.extract(unit)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Protocol, Sequence, runtime_checkable

from memcore.core.exceptions import ExtractionError
from memcore.core.logging import get_logger
from memcore.integrations.llm_client import BaseLLMClient
from memcore.memory.embeddings import EmbeddingService
from memcore.memory.prompts import (
    EPISODE_SECTION,
    EVENT_LOG_SECTION,
    EXTRACTION_PROMPT,
    EXTRACTION_SYSTEM,
    FORESIGHT_SECTION,
    PROFILE_SECTION,
)
from memcore.memory.types import (
    EpisodicPayload,
    EventLogPayload,
    ForesightPayload,
    MemCell,
    MemoryRecord,
    MemoryType,
    ProfilePayload,
    Scene,
)

logger = get_logger(__name__)

_SECTION_RE = re.compile(r"^##\s*(\w+)\s*$", re.MULTILINE)
_ITEM_SPLIT_RE = re.compile(r"^\s*---+\s*$", re.MULTILINE)
_SECTION_ALIASES = {"NARRATIVE": "EPISODE"}


# ── Interface ───────────────────────────────────────────────────────────


@runtime_checkable
class Extractor(Protocol):
    """Produces zero or more candidate records of a single memory type."""

    async def extract(self, unit: MemCell) -> list[MemoryRecord]: ...


# ── Parsing ─────────────────────────────────────────────────────────────


@dataclass
class ParsedMemories:
    episode: EpisodicPayload | None = None
    event_log: EventLogPayload | None = None
    foresight: list[ForesightPayload] = field(default_factory=list)
    profile: ProfilePayload | None = None

    def is_empty(self) -> bool:
        return not (self.episode or self.event_log or self.foresight or self.profile)


def split_sections(text: str) -> dict[str, str]:
    """Map upper-cased section name -> body text."""
    normalized = text.strip()
    matches = list(_SECTION_RE.finditer(normalized))
    sections: dict[str, str] = {}
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(normalized)
        name = match.group(1).upper()
        name = _SECTION_ALIASES.get(name, name)
        sections[name] = normalized[match.end():end].strip()
    return sections


def parse_key_values(body: str) -> dict[str, list[str]]:
    """``KEY: value`` lines; split on the first colon, empty values dropped."""
    values: dict[str, list[str]] = {}
    for line in body.splitlines():
        key, sep, value = line.partition(":")
        key = key.strip().upper()
        value = value.strip()
        if not sep or not key or not value:
            continue
        values.setdefault(key, []).append(value)
    return values


def _first(values: dict[str, list[str]], key: str) -> str | None:
    found = values.get(key)
    return found[0] if found else None


def _csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in re.split(r"[,，、]", value) if part.strip()]


def clean_date(value: str | None) -> str | None:
    """Return ``YYYY-MM-DD`` if ``value`` holds a real calendar date, else None."""
    if not value:
        return None
    cleaned = re.sub(r"[^\d-]", "", value)
    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", cleaned):
        return None
    try:
        date.fromisoformat(cleaned)
    except ValueError:
        return None
    return cleaned


def complete_window(
    start: str | None, end: str | None, duration_days: int | None
) -> tuple[str | None, int | None]:
    """Fill the end date from a duration, or the duration from an end date."""
    if not start:
        return end, duration_days
    start_date = date.fromisoformat(start)
    if duration_days is not None and not end:
        end = (start_date + timedelta(days=duration_days)).isoformat()
    elif end and duration_days is None:
        duration_days = (date.fromisoformat(end) - start_date).days
    return end, duration_days


def _parse_duration(value: str | None) -> int | None:
    if not value:
        return None
    match = re.search(r"-?\d+", value)
    return int(match.group()) if match else None


def parse_memory_text(
    text: str,
    *,
    max_facts: int = 10,
    max_foresight: int = 10,
) -> ParsedMemories | None:
    """Parse a sectioned extraction reply.  None when nothing usable is present."""
    if not text or not text.strip():
        return None
    sections = split_sections(text)
    parsed = ParsedMemories()

    if body := sections.get("EPISODE"):
        kv = parse_key_values(body)
        content = _first(kv, "CONTENT")
        if content:
            parsed.episode = EpisodicPayload(
                content=content,
                summary=_first(kv, "SUMMARY") or content[:200],
                keywords=_csv(_first(kv, "KEYWORDS")),
            )

    if body := sections.get("EVENT_LOG"):
        kv = parse_key_values(body)
        facts = kv.get("FACT", [])[:max_facts]
        if facts:
            parsed.event_log = EventLogPayload(time=_first(kv, "TIME"), atomic_facts=facts)

    if body := sections.get("FORESIGHT"):
        blocks = [b.strip() for b in _ITEM_SPLIT_RE.split(body) if b.strip()]
        for block in blocks[:max_foresight]:
            kv = parse_key_values(block)
            content = _first(kv, "CONTENT")
            if not content:
                continue
            start = clean_date(_first(kv, "START"))
            end = clean_date(_first(kv, "END"))
            end, duration = complete_window(start, end, _parse_duration(_first(kv, "DURATION")))
            parsed.foresight.append(ForesightPayload(
                content=content,
                evidence=_first(kv, "EVIDENCE"),
                start_time=start,
                end_time=end,
                duration_days=duration,
            ))

    if body := sections.get("PROFILE"):
        items = parse_key_values(body).get("ITEM", [])
        if items:
            parsed.profile = ProfilePayload(items=items)

    return None if parsed.is_empty() else parsed


# ── LLM-backed Extractors ───────────────────────────────────────────────


def section_for(memory_type: MemoryType | str, max_items: int = 10) -> str:
    """Prompt section describing the expected output for one memory type."""
    memory_type = MemoryType(memory_type)
    if memory_type is MemoryType.EPISODIC:
        return EPISODE_SECTION
    if memory_type is MemoryType.EVENT_LOG:
        return EVENT_LOG_SECTION.format(max_facts=max_items)
    if memory_type is MemoryType.FORESIGHT:
        return FORESIGHT_SECTION.format(max_items=max_items)
    return PROFILE_SECTION


def payloads_for(memory_type: MemoryType | str, parsed: ParsedMemories) -> list:
    memory_type = MemoryType(memory_type)
    if memory_type is MemoryType.EPISODIC:
        return [parsed.episode] if parsed.episode else []
    if memory_type is MemoryType.EVENT_LOG:
        return [parsed.event_log] if parsed.event_log else []
    if memory_type is MemoryType.FORESIGHT:
        return list(parsed.foresight)
    return [parsed.profile] if parsed.profile else []


class _SectionedExtraction:
    """Shared LLM call, parse and embed steps of the sectioned extractors."""

    def __init__(
        self,
        client: BaseLLMClient,
        embeddings: EmbeddingService | None,
        max_facts: int,
        max_foresight: int,
    ) -> None:
        self._client = client
        self._embeddings = embeddings
        self._max_facts = max_facts
        self._max_foresight = max_foresight

    async def _ask(self, unit: MemCell, sections: str, label: str) -> ParsedMemories | None:
        prompt = EXTRACTION_PROMPT.format(
            today=datetime.now(timezone.utc).date().isoformat(),
            scene=(unit.scene or Scene.ASSISTANT).value,
            text=unit.render_text(),
            sections=sections,
        )
        try:
            response = await self._client.complete(prompt, system=EXTRACTION_SYSTEM)
        except Exception as exc:
            raise ExtractionError(
                f"{label} extraction call failed: {exc}", memory_type=label
            ) from exc

        parsed = parse_memory_text(
            response.content, max_facts=self._max_facts, max_foresight=self._max_foresight
        )
        if parsed is None:
            logger.debug("memory.extract.empty", memory_type=label, event_id=unit.event_id)
        return parsed

    async def _records(
        self, memory_type: MemoryType, payloads: list, unit: MemCell
    ) -> list[MemoryRecord]:
        records = [
            MemoryRecord(
                memory_type=memory_type.value,
                user_id=unit.user_id,
                group_id=unit.group_id,
                payload=payload,
                metadata={"event_id": unit.event_id},
            )
            for payload in payloads
        ]
        if records and self._embeddings is not None:
            vectors = await self._embeddings.embed_batch(
                [r.display_content() for r in records]
            )
            records = [
                r.model_copy(update={"embedding": v}) for r, v in zip(records, vectors)
            ]
        return records


class LLMExtractor(_SectionedExtraction):
    """
    Base for single-type LLM extractors.

    Subclasses set ``memory_type``.  When an ``EmbeddingService`` is given,
    each record is embedded on its display content so it can be
    vector-indexed and vector-deduped.
    """

    memory_type: MemoryType

    def __init__(
        self,
        client: BaseLLMClient,
        *,
        embeddings: EmbeddingService | None = None,
        max_items: int = 10,
    ) -> None:
        super().__init__(client, embeddings, max_facts=max_items, max_foresight=max_items)
        self._max_items = max_items

    async def extract(self, unit: MemCell) -> list[MemoryRecord]:
        if not unit.render_text().strip():
            return []
        parsed = await self._ask(
            unit, section_for(self.memory_type, self._max_items), self.memory_type.value
        )
        if parsed is None:
            return []
        return await self._records(
            self.memory_type, payloads_for(self.memory_type, parsed), unit
        )


class EpisodeExtractor(LLMExtractor):
    memory_type = MemoryType.EPISODIC


class EventLogExtractor(LLMExtractor):
    memory_type = MemoryType.EVENT_LOG


class ForesightExtractor(LLMExtractor):
    memory_type = MemoryType.FORESIGHT


class ProfileExtractor(LLMExtractor):
    memory_type = MemoryType.PROFILE


# ── Unified Extraction ──────────────────────────────────────────────────


@runtime_checkable
class UnifiedExtractor(Protocol):
    """Produces candidate records of several memory types from one unit."""

    async def extract_all(
        self, unit: MemCell, memory_types: Sequence[MemoryType]
    ) -> dict[str, list[MemoryRecord]]: ...


class LLMUnifiedExtractor(_SectionedExtraction):
    """
    Extracts every requested memory type with a single LLM call.

    The prompt carries one section per requested type; the reply is parsed
    once and split into ``{memory_type: records}``.  A failed call raises
    ``ExtractionError`` so the manager can fall back to per-type extractors.
    """

    def __init__(
        self,
        client: BaseLLMClient,
        *,
        embeddings: EmbeddingService | None = None,
        max_facts: int = 10,
        max_foresight: int = 10,
    ) -> None:
        super().__init__(client, embeddings, max_facts=max_facts, max_foresight=max_foresight)

    async def extract_all(
        self, unit: MemCell, memory_types: Sequence[MemoryType]
    ) -> dict[str, list[MemoryRecord]]:
        memory_types = [MemoryType(t) for t in memory_types]
        if not memory_types or not unit.render_text().strip():
            return {}

        sections = "\n\n".join(
            section_for(
                t,
                self._max_foresight if t is MemoryType.FORESIGHT else self._max_facts,
            )
            for t in memory_types
        )
        parsed = await self._ask(unit, sections, "unified")
        if parsed is None:
            return {}

        extracted: dict[str, list[MemoryRecord]] = {}
        for memory_type in memory_types:
            records = await self._records(memory_type, payloads_for(memory_type, parsed), unit)
            if records:
                extracted[memory_type.value] = records
        return extracted
