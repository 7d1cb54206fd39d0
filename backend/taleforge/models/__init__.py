"""Taleforge data models."""

from taleforge.models.compaction import CompactionRecord
from taleforge.models.context import ContextPackage
from taleforge.models.phase import Phase, PhaseTransition
from taleforge.models.session import EventLogEntry, SessionSnapshot
from taleforge.models.turn import ToolInvocation, Turn, TurnRole

__all__ = [
    # Phase
    "Phase",
    "PhaseTransition",
    # Turn
    "ToolInvocation",
    "Turn",
    "TurnRole",
    # Context
    "ContextPackage",
    # Compaction
    "CompactionRecord",
    # Session
    "EventLogEntry",
    "SessionSnapshot",
]
