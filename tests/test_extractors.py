"""
MemCore — Extractor Tests
===========================
The sectioned reply parser and the LLM-backed extractors.
"""

from __future__ import annotations

import pytest

from memcore.core.exceptions import ExtractionError
from memcore.integrations.llm_client import MockLLMClient
from memcore.memory.extractors import (
    EpisodeExtractor,
    EventLogExtractor,
    ForesightExtractor,
    LLMUnifiedExtractor,
    ProfileExtractor,
    UnifiedExtractor,
    clean_date,
    complete_window,
    parse_key_values,
    parse_memory_text,
    split_sections,
)
from memcore.memory.types import (
    EpisodicPayload,
    EventLogPayload,
    ForesightPayload,
    MemCell,
    MemoryType,
    ProfilePayload,
)

FULL_REPLY = """
## EPISODE
CONTENT: The user planned the v2 launch for next Friday.
SUMMARY: v2 launch planning
KEYWORDS: launch, v2，planning

## EVENT_LOG
TIME: 2026-03-01
FACT: The user set the launch date.
FACT: The user asked for a checklist.

## FORESIGHT
CONTENT: The user will need a rollback plan.
START: 2026-03-01
DURATION: 7 days
EVIDENCE: launch next Friday
---
CONTENT: The user may ask for release notes.
START: 2026-03-02
END: 2026-03-05

## PROFILE
ITEM: Works as a release manager.
ITEM: Prefers checklists.
"""


# ── Section Parsing ─────────────────────────────────────────────────────


def test_split_sections_is_case_insensitive_and_aliases_narrative():
    sections = split_sections("## narrative\nCONTENT: x\n## Profile\nITEM: y")
    assert set(sections) == {"EPISODE", "PROFILE"}
    assert sections["EPISODE"] == "CONTENT: x"


def test_parse_key_values_splits_on_first_colon():
    kv = parse_key_values("CONTENT: meet at 10:30\nnoise line\nEMPTY:\nfact: a\nFACT: b")
    assert kv["CONTENT"] == ["meet at 10:30"]
    assert kv["FACT"] == ["a", "b"]
    assert "EMPTY" not in kv


def test_parse_full_reply():
    parsed = parse_memory_text(FULL_REPLY)
    assert parsed is not None

    assert parsed.episode.content.startswith("The user planned")
    assert parsed.episode.summary == "v2 launch planning"
    assert parsed.episode.keywords == ["launch", "v2", "planning"]

    assert parsed.event_log.time == "2026-03-01"
    assert parsed.event_log.atomic_facts == [
        "The user set the launch date.",
        "The user asked for a checklist.",
    ]

    assert len(parsed.foresight) == 2
    first, second = parsed.foresight
    assert first.end_time == "2026-03-08"
    assert first.duration_days == 7
    assert first.evidence == "launch next Friday"
    assert second.duration_days == 3

    assert parsed.profile.items == ["Works as a release manager.", "Prefers checklists."]


def test_parse_empty_or_unusable_reply_returns_none():
    assert parse_memory_text("") is None
    assert parse_memory_text("no sections here") is None
    assert parse_memory_text("## EPISODE\nSUMMARY: no content") is None


def test_episode_summary_defaults_to_content_prefix():
    parsed = parse_memory_text("## EPISODE\nCONTENT: " + "x" * 300)
    assert parsed.episode.summary == "x" * 200


def test_event_log_fact_cap():
    body = "\n".join(f"FACT: fact {i}" for i in range(15))
    parsed = parse_memory_text(f"## EVENT_LOG\n{body}", max_facts=10)
    assert len(parsed.event_log.atomic_facts) == 10


def test_foresight_item_cap_and_missing_content():
    items = "\n---\n".join(f"CONTENT: item {i}" for i in range(12))
    parsed = parse_memory_text(f"## FORESIGHT\n{items}\n---\nSTART: 2026-01-01", max_foresight=10)
    assert len(parsed.foresight) == 10


# ── Dates ───────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2026-03-01", "2026-03-01"),
        (" 2026-03-01 (Sunday)", "2026-03-01"),
        ("2026-02-30", None),
        ("next week", None),
        (None, None),
    ],
)
def test_clean_date(raw, expected):
    assert clean_date(raw) == expected


def test_complete_window():
    assert complete_window("2026-01-01", None, 10) == ("2026-01-11", 10)
    assert complete_window("2026-01-01", "2026-01-04", None) == ("2026-01-04", 3)
    assert complete_window(None, None, 5) == (None, 5)


# ── LLM Extractors ──────────────────────────────────────────────────────


def _unit(**kwargs) -> MemCell:
    defaults = dict(
        event_id="evt-1",
        user_id="u1",
        original_data=[{"role": "user", "content": "Launch v2 next Friday."}],
    )
    defaults.update(kwargs)
    return MemCell(**defaults)


@pytest.mark.asyncio
async def test_each_extractor_takes_its_own_section():
    client = MockLLMClient(default_response=FULL_REPLY)
    unit = _unit()

    (episode,) = await EpisodeExtractor(client).extract(unit)
    (event_log,) = await EventLogExtractor(client).extract(unit)
    foresight = await ForesightExtractor(client).extract(unit)
    (profile,) = await ProfileExtractor(client).extract(unit)

    assert isinstance(episode.payload, EpisodicPayload)
    assert episode.memory_type == "episodic_memory"
    assert isinstance(event_log.payload, EventLogPayload)
    assert event_log.display_content().startswith("The user set the launch date.")
    assert len(foresight) == 2
    assert all(isinstance(r.payload, ForesightPayload) for r in foresight)
    assert isinstance(profile.payload, ProfilePayload)
    assert profile.metadata["event_id"] == "evt-1"


@pytest.mark.asyncio
async def test_prompt_contains_unit_text_and_section():
    client = MockLLMClient(default_response=FULL_REPLY)
    await ForesightExtractor(client, max_items=4).extract(_unit())
    prompt = client.calls[0]
    assert "user: Launch v2 next Friday." in prompt
    assert "## FORESIGHT" in prompt


@pytest.mark.asyncio
async def test_extractor_embeds_records(embeddings):
    client = MockLLMClient(default_response=FULL_REPLY)
    records = await ForesightExtractor(client, embeddings=embeddings).extract(_unit())
    assert all(r.embedding and len(r.embedding) == embeddings.dimension for r in records)


@pytest.mark.asyncio
async def test_empty_unit_skips_llm_call():
    client = MockLLMClient(default_response=FULL_REPLY)
    assert await EpisodeExtractor(client).extract(_unit(original_data=[])) == []
    assert client.calls == []


@pytest.mark.asyncio
async def test_unparseable_reply_yields_no_records():
    client = MockLLMClient(default_response="I cannot help with that.")
    assert await ProfileExtractor(client).extract(_unit()) == []


@pytest.mark.asyncio
async def test_client_failure_raises_extraction_error():
    class FailingClient(MockLLMClient):
        async def complete(self, prompt, model=None, max_tokens=2048, system=None):
            raise RuntimeError("boom")

    with pytest.raises(ExtractionError, match="boom"):
        await EpisodeExtractor(FailingClient()).extract(_unit())


# ── Unified Extraction ──────────────────────────────────────────────────

ALL_TYPES = [
    MemoryType.EPISODIC,
    MemoryType.EVENT_LOG,
    MemoryType.FORESIGHT,
    MemoryType.PROFILE,
]


@pytest.mark.asyncio
async def test_unified_extractor_single_call_for_every_type(embeddings):
    client = MockLLMClient(default_response=FULL_REPLY)
    extractor = LLMUnifiedExtractor(client, embeddings=embeddings)
    assert isinstance(extractor, UnifiedExtractor)

    extracted = await extractor.extract_all(_unit(), ALL_TYPES)

    assert len(client.calls) == 1
    assert all(f"## {name}" in client.calls[0] for name in ("EPISODE", "EVENT_LOG", "FORESIGHT", "PROFILE"))
    assert {t: len(r) for t, r in extracted.items()} == {
        "episodic_memory": 1,
        "event_log": 1,
        "foresight": 2,
        "profile": 1,
    }
    assert all(r.embedding for records in extracted.values() for r in records)
    assert extracted["profile"][0].metadata["event_id"] == "evt-1"


@pytest.mark.asyncio
async def test_unified_extractor_asks_only_requested_sections():
    client = MockLLMClient(default_response=FULL_REPLY)
    extracted = await LLMUnifiedExtractor(client).extract_all(
        _unit(), [MemoryType.EPISODIC, MemoryType.EVENT_LOG]
    )
    assert "## FORESIGHT" not in client.calls[0]
    assert set(extracted) == {"episodic_memory", "event_log"}


@pytest.mark.asyncio
async def test_unified_extractor_empty_unit_or_reply():
    client = MockLLMClient(default_response="nothing to report")
    extractor = LLMUnifiedExtractor(client)
    assert await extractor.extract_all(_unit(original_data=[]), ALL_TYPES) == {}
    assert client.calls == []
    assert await extractor.extract_all(_unit(), ALL_TYPES) == {}


@pytest.mark.asyncio
async def test_unified_extractor_client_failure_raises():
    class FailingClient(MockLLMClient):
        async def complete(self, prompt, model=None, max_tokens=2048, system=None):
            raise RuntimeError("quota")

    with pytest.raises(ExtractionError, match="unified extraction call failed"):
        await LLMUnifiedExtractor(FailingClient()).extract_all(_unit(), ALL_TYPES)
