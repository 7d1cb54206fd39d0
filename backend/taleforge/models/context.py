"""
Per-turn context package.

Built fresh for every turn from the session snapshot and long-term memory,
rendered into the phase instructions for that submission only, and then
discarded.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ContextPackage(BaseModel):
    """Pre-gathered narrative context for a single turn.

    Attributes:
        scene_summary: Where the player is and who is around
        relevant_entities: Entity name -> short fact for entities mentioned
                           in recent turns
        missing_entities: Names that were referenced but could not be
                          resolved in world state or memory
        recent_events: Event log, most recent last
        recommendations: Hints for the narrator
    """

    scene_summary: str = ""
    relevant_entities: dict[str, str] = Field(default_factory=dict)
    missing_entities: frozenset[str] = frozenset()
    recent_events: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()

    model_config = {"frozen": True}

    @classmethod
    def empty(cls) -> "ContextPackage":
        return cls()

    def is_empty(self) -> bool:
        return not (
            self.scene_summary
            or self.relevant_entities
            or self.missing_entities
            or self.recent_events
            or self.recommendations
        )

    def render(self) -> str:
        """Render as a plain-text block for the phase instructions."""
        if self.is_empty():
            return "No additional context."

        sections: list[str] = []
        if self.scene_summary:
            sections.append(f"SCENE:\n{self.scene_summary}")
        if self.relevant_entities:
            lines = [f"- {name}: {fact}" for name, fact in self.relevant_entities.items()]
            sections.append("KNOWN ENTITIES:\n" + "\n".join(lines))
        if self.missing_entities:
            names = ", ".join(sorted(self.missing_entities))
            sections.append(f"UNRESOLVED REFERENCES: {names}")
        if self.recent_events:
            lines = [f"- {event}" for event in self.recent_events]
            sections.append("RECENT EVENTS:\n" + "\n".join(lines))
        if self.recommendations:
            lines = [f"- {tip}" for tip in self.recommendations]
            sections.append("RECOMMENDATIONS:\n" + "\n".join(lines))
        return "\n\n".join(sections)
