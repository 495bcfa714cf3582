"""
MemCore — Scene Routing & Three-Tier Addressing
=================================================
Decides which memory types a unit feeds, and where each record lands.

Address layers, all encoded in ``group_id``:
- User layer:    ``None``                       (Profile)
- Scope layer:   ``<scope>`` / ``<scope>:docs``  (Episodic, Foresight)
- Session layer: ``<scope>:session:<id>``        (EventLog; falls back to scope)

Scene table:

| Type      | Applies when                |
|-----------|-----------------------------|
| Episodic  | assistant or document scene |
| EventLog  | assistant or document scene |
| Foresight | assistant scene only        |
| Profile   | assistant scene only        |
"""

from __future__ import annotations

from dataclasses import dataclass

from memcore.memory.types import MemoryType, RoutingContext, Scene

DOCS_SUFFIX = "docs"
SESSION_SEGMENT = "session"


def docs_group(scope: str) -> str:
    return f"{scope}:{DOCS_SUFFIX}"


def session_group(scope: str, session_id: str) -> str:
    return f"{scope}:{SESSION_SEGMENT}:{session_id}"


@dataclass(frozen=True)
class SceneFlags:
    is_document: bool
    is_assistant: bool


def classify_scene(scene: Scene | str | None) -> SceneFlags:
    """Absent or unrecognised scenes count as assistant."""
    value = scene.value if isinstance(scene, Scene) else scene
    is_document = value == Scene.DOCUMENT.value
    is_assistant = value not in (Scene.GROUP.value, Scene.DOCUMENT.value)
    return SceneFlags(is_document=is_document, is_assistant=is_assistant)


def applicable_types(
    scene: Scene | str | None,
    routing: RoutingContext | None = None,
) -> list[MemoryType]:
    """Memory types to extract for a unit, in a stable order."""
    flags = classify_scene(scene)
    types: list[MemoryType] = []
    if flags.is_assistant or flags.is_document:
        types.append(MemoryType.EPISODIC)
        types.append(MemoryType.EVENT_LOG)
    if flags.is_assistant:
        types.append(MemoryType.FORESIGHT)
        types.append(MemoryType.PROFILE)

    if routing is not None:
        if routing.session_only:
            types = [t for t in types if t is MemoryType.EVENT_LOG]
        elif routing.skip_session_extraction:
            types = [t for t in types if t is not MemoryType.EVENT_LOG]
    return types


def resolve_group_id(
    memory_type: str,
    scene: Scene | str | None,
    routing: RoutingContext | None,
    unit_group_id: str | None = None,
) -> str | None:
    """
    Compute a record's ``group_id``.

    Without a routing context every type keeps the unit's own group_id,
    except Profile which always lives in the user layer.
    """
    if memory_type == MemoryType.PROFILE:
        return None
    if routing is None:
        return unit_group_id

    flags = classify_scene(scene)
    scope = routing.scope
    if memory_type in (MemoryType.EPISODIC, MemoryType.FORESIGHT):
        return docs_group(scope) if flags.is_document else scope
    if memory_type == MemoryType.EVENT_LOG:
        if flags.is_document:
            return docs_group(scope)
        if routing.session_id:
            return session_group(scope, routing.session_id)
        return scope
    return unit_group_id or scope
