"""
Built-in tools.

These are the tools a phase needs to move the story along: changing phase,
keeping the event log and recording what the world contains. They write
world state; the orchestrator only observes the results.
"""

from __future__ import annotations

import logging
from typing import Any

from taleforge.engine.errors import ToolError
from taleforge.engine.tools import ToolContext, ToolDescriptor
from taleforge.models.phase import Phase
from taleforge.models.session import EventLogEntry

logger = logging.getLogger(__name__)

# Longest event log kept in the snapshot; the context package shows fewer
MAX_EVENT_LOG = 50


async def transition_phase(
    context: ToolContext, phase: str, phase_change_summary: str = ""
) -> dict[str, Any]:
    target = Phase.parse(phase)
    if target is None or context.settings.get_phase(target) is None:
        configured = [p.value for p in context.settings.phase_order]
        raise ToolError(f"Unknown phase '{phase}'. Available phases: {configured}")
    if target == context.phase:
        raise ToolError(f"Already in phase '{target.value}'")

    snapshot = await context.world_state.load_snapshot(context.session_id)
    snapshot.phase = target.value
    snapshot.phase_change_summary = phase_change_summary.strip()
    await context.world_state.save_snapshot(snapshot)

    logger.info(
        f"[{context.session_id}] transition_phase: {context.phase.value} -> {target.value}"
    )
    return {
        "ok": True,
        "from_phase": context.phase.value,
        "to_phase": target.value,
        "message": f"The adventure will continue in the {target.label} phase.",
    }


async def log_event(context: ToolContext, description: str) -> dict[str, Any]:
    description = description.strip()
    if not description:
        raise ToolError("Event description must not be empty")

    snapshot = await context.world_state.load_snapshot(context.session_id)
    snapshot.recent_events = (
        snapshot.recent_events
        + [EventLogEntry(turn=snapshot.turn_number, description=description)]
    )[-MAX_EVENT_LOG:]
    await context.world_state.save_snapshot(snapshot)
    return {"ok": True, "turn": snapshot.turn_number}


async def record_entity(
    context: ToolContext, name: str, description: str
) -> dict[str, Any]:
    name = name.strip()
    if not name:
        raise ToolError("Entity name must not be empty")

    snapshot = await context.world_state.load_snapshot(context.session_id)
    snapshot.world_entities = {**snapshot.world_entities, name: description.strip()}
    await context.world_state.save_snapshot(snapshot)

    await context.memory.archive(
        f"{context.session_id}:entity:{name.lower()}",
        {
            "content": f"{name}: {description}",
            "name": name,
            "kind": "entity",
            "session_id": context.session_id,
        },
    )
    return {"ok": True, "name": name}


async def set_scene(
    context: ToolContext,
    location: str,
    description: str = "",
    present_npcs: list[str] | None = None,
) -> dict[str, Any]:
    snapshot = await context.world_state.load_snapshot(context.session_id)
    snapshot.current_location = location.strip()
    snapshot.location_description = description.strip()
    snapshot.present_npcs = [npc.strip() for npc in present_npcs or [] if npc.strip()]
    await context.world_state.save_snapshot(snapshot)
    return {"ok": True, "location": snapshot.current_location}


async def search_memory(context: ToolContext, query: str) -> dict[str, Any]:
    hits = await context.memory.search(query, {"session_id": context.session_id}, limit=5)
    return {
        "ok": True,
        "results": [{"key": hit.key, "content": hit.content} for hit in hits],
    }


BUILTIN_TOOLS: dict[str, ToolDescriptor] = {
    "transition_phase": ToolDescriptor(
        name="transition_phase",
        description=(
            "Move the adventure into another phase. Provide a summary of what "
            "happened in the current phase so the next phase can pick up the story."
        ),
        parameters={
            "type": "object",
            "properties": {
                "phase": {
                    "type": "string",
                    "enum": [phase.value for phase in Phase],
                    "description": "Phase to enter",
                },
                "phase_change_summary": {
                    "type": "string",
                    "description": "What happened and why the phase is changing",
                },
            },
            "required": ["phase", "phase_change_summary"],
        },
        handler=transition_phase,
    ),
    "log_event": ToolDescriptor(
        name="log_event",
        description="Record a notable story event in the adventure log.",
        parameters={
            "type": "object",
            "properties": {
                "description": {"type": "string", "description": "One-line event"},
            },
            "required": ["description"],
        },
        handler=log_event,
    ),
    "record_entity": ToolDescriptor(
        name="record_entity",
        description="Establish a character, place or object as part of the world.",
        parameters={
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "description": {"type": "string", "description": "Short fact"},
            },
            "required": ["name", "description"],
        },
        handler=record_entity,
    ),
    "set_scene": ToolDescriptor(
        name="set_scene",
        description="Set the player's current location and who is present there.",
        parameters={
            "type": "object",
            "properties": {
                "location": {"type": "string"},
                "description": {"type": "string"},
                "present_npcs": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["location"],
        },
        handler=set_scene,
    ),
    "search_memory": ToolDescriptor(
        name="search_memory",
        description="Search long-term memory of earlier events and established facts.",
        parameters={
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
        handler=search_memory,
    ),
}
