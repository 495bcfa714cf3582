"""
MemCore — Scene Routing Tests
===============================
Which memory types a scene feeds, and the three-tier ``group_id`` table.
"""

from __future__ import annotations

import pytest

from memcore.memory.routing import (
    applicable_types,
    classify_scene,
    docs_group,
    resolve_group_id,
    session_group,
)
from memcore.memory.types import MemoryType, RoutingContext, Scene

ALL_TYPES = [
    MemoryType.EPISODIC,
    MemoryType.EVENT_LOG,
    MemoryType.FORESIGHT,
    MemoryType.PROFILE,
]


# ── Scene Classification ────────────────────────────────────────────────


@pytest.mark.parametrize("scene", [None, Scene.ASSISTANT, "assistant", "unknown"])
def test_assistant_like_scenes(scene):
    flags = classify_scene(scene)
    assert flags.is_assistant
    assert not flags.is_document


def test_document_scene():
    flags = classify_scene(Scene.DOCUMENT)
    assert flags.is_document
    assert not flags.is_assistant


def test_group_scene():
    flags = classify_scene("group")
    assert not flags.is_document
    assert not flags.is_assistant


# ── Applicable Types ────────────────────────────────────────────────────


def test_assistant_scene_runs_all_types():
    assert applicable_types(None) == ALL_TYPES


def test_document_scene_runs_episodic_and_event_log():
    assert applicable_types(Scene.DOCUMENT) == [MemoryType.EPISODIC, MemoryType.EVENT_LOG]


def test_group_scene_runs_nothing():
    assert applicable_types(Scene.GROUP) == []


def test_skip_session_extraction_drops_event_log():
    routing = RoutingContext(user_id="u1", scope="proj", skip_session_extraction=True)
    assert MemoryType.EVENT_LOG not in applicable_types(None, routing)
    assert len(applicable_types(None, routing)) == 3


def test_session_only_keeps_event_log():
    routing = RoutingContext(user_id="u1", scope="proj", session_only=True)
    assert applicable_types(None, routing) == [MemoryType.EVENT_LOG]


# ── Group Resolution ────────────────────────────────────────────────────


def test_layer_helpers():
    assert docs_group("proj") == "proj:docs"
    assert session_group("proj", "s1") == "proj:session:s1"


def test_assistant_addresses_without_session():
    routing = RoutingContext(user_id="u1", scope="proj")
    assert resolve_group_id(MemoryType.EPISODIC, None, routing) == "proj"
    assert resolve_group_id(MemoryType.FORESIGHT, None, routing) == "proj"
    assert resolve_group_id(MemoryType.EVENT_LOG, None, routing) == "proj"
    assert resolve_group_id(MemoryType.PROFILE, None, routing) is None


def test_event_log_goes_to_session_layer():
    routing = RoutingContext(user_id="u1", scope="proj", session_id="s1")
    assert resolve_group_id(MemoryType.EVENT_LOG, None, routing) == "proj:session:s1"
    assert resolve_group_id(MemoryType.EPISODIC, None, routing) == "proj"


def test_document_scene_addresses_docs_group():
    routing = RoutingContext(user_id="u1", scope="proj", session_id="s1")
    assert resolve_group_id(MemoryType.EPISODIC, Scene.DOCUMENT, routing) == "proj:docs"
    assert resolve_group_id(MemoryType.EVENT_LOG, Scene.DOCUMENT, routing) == "proj:docs"


def test_without_routing_keeps_unit_group():
    assert resolve_group_id(MemoryType.EPISODIC, None, None, "chat-9") == "chat-9"
    assert resolve_group_id(MemoryType.PROFILE, None, None, "chat-9") is None


def test_unknown_type_falls_back_to_scope():
    routing = RoutingContext(user_id="u1", scope="proj")
    assert resolve_group_id("custom_type", None, routing) == "proj"
    assert resolve_group_id("custom_type", None, routing, "own") == "own"
