"""
Session world-state snapshot.

This is the slice of world state the orchestrator reads each turn. Tools
write it; the orchestrator only writes it to initialize a session or to
self-heal an unrecognized phase.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class EventLogEntry(BaseModel):
    """A notable event recorded by a tool.

    Attributes:
        turn: Game turn number the event happened on
        description: One-line description
    """

    turn: int
    description: str


class SessionSnapshot(BaseModel):
    """World state for one adventure session.

    Attributes:
        session_id: Unique identifier for the session
        phase: Raw phase value (kept as a string so unknown values can be
               detected and repaired)
        phase_change_summary: Summary written by the tool that changed phase
        turn_number: Number of completed turns
        current_location: Name of the player's location
        location_description: Short description of that location
        present_npcs: Names of characters present at the location
        recent_events: Event log, oldest first
        world_entities: Entity name -> short established fact
        adventure_summary: Running summary of the adventure so far
        current_context: Free-form scene notes maintained by tools
    """

    session_id: str
    phase: str = ""
    phase_change_summary: str = ""
    turn_number: int = 0
    current_location: str = ""
    location_description: str = ""
    present_npcs: list[str] = Field(default_factory=list)
    recent_events: list[EventLogEntry] = Field(default_factory=list)
    world_entities: dict[str, str] = Field(default_factory=dict)
    adventure_summary: str = ""
    current_context: str = ""

    model_config = {"validate_assignment": True}
