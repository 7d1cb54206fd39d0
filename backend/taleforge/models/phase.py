"""
Narrative phase models.

A session is always in exactly one phase. Each phase owns its own
conversation history, instructions and tool surface. Phase changes are
never requested by the orchestrator itself: a tool writes the new phase
into the session snapshot and the orchestrator observes the difference.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class Phase(str, Enum):
    """Narrative phases in their default order.

    Attributes:
        SETUP: Character and adventure creation
        WORLD_GENERATION: Building the world the adventure takes place in
        EXPLORATION: Free-form exploration and dialogue (default phase)
        COMBAT: Turn-based encounters
        ADVANCEMENT: Character growth between encounters
    """

    SETUP = "setup"
    WORLD_GENERATION = "world_generation"
    EXPLORATION = "exploration"
    COMBAT = "combat"
    ADVANCEMENT = "advancement"

    @property
    def label(self) -> str:
        """Human-readable name, e.g. "World Generation"."""
        return self.value.replace("_", " ").title()

    @classmethod
    def parse(cls, value: str | None) -> "Phase | None":
        """Return the phase for a raw value, or None if it is not recognized."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class PhaseTransition(BaseModel):
    """An observed change of phase during a single turn.

    Attributes:
        from_phase: Phase the turn was executed in
        to_phase: Phase the session snapshot reported afterwards
        handoff_summary: Text carried into the first turn of the new phase
    """

    from_phase: Phase
    to_phase: Phase
    handoff_summary: str

    model_config = {"frozen": True}

    def marker(self) -> str:
        """Text fragment emitted into the player stream at the boundary."""
        return f"\n\n--- Entering {self.to_phase.label} ---\n\n"

    def handoff_input(self) -> str:
        """Synthetic player input that opens the new phase."""
        return f"[Phase hand-off from {self.from_phase.label}] {self.handoff_summary}"
