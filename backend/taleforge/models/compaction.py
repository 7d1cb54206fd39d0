"""
Compaction audit record.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from taleforge.models.phase import Phase
from taleforge.models.turn import Turn


class CompactionRecord(BaseModel):
    """What one compaction pass elided from a live history.

    The record is archived to long-term memory. Only its summary text ever
    re-enters a live history.

    Attributes:
        session_id: Owning session
        phase: Phase whose history was compacted
        start: First elided position (1-based, in the pre-compaction history)
        end: Last elided position (inclusive)
        elided_turns: The turns removed from the live history
        summary: Summary text, empty when compaction fell back to truncation
        archive_key: Key the elided turns were archived under, None if the
                     archive write failed
        truncated: True when no summary could be produced
        created_at: When the pass ran
    """

    session_id: str
    phase: Phase
    start: int
    end: int
    elided_turns: tuple[Turn, ...]
    summary: str = ""
    archive_key: str | None = None
    truncated: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}

    @property
    def elided_count(self) -> int:
        return len(self.elided_turns)
