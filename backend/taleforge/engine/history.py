"""
History store - per-(session, phase) conversation histories.

Every history obeys three structural rules:

    Leading system turn
        The first turn, if present, is a system turn.
    Resolved tool results
        Every tool-result turn answers an invocation declared by the nearest
        preceding assistant turn. The backward scan skips other tool-result
        turns and stops at the first user or system turn.
    Ceilings
        Turn count and total characters stay under configured limits; once
        either is exceeded the history must be compacted before it is
        submitted again.

Appends enforce the leading system turn and may leave the other two rules
transiently broken. Tool results are restored by repair_turns() and the
ceilings by the compactor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from taleforge.config import HistoryLimits
from taleforge.engine.errors import HistoryInvariantError
from taleforge.models.phase import Phase
from taleforge.models.turn import Turn, TurnRole

logger = logging.getLogger(__name__)


# =============================================================================
# Pure helpers
# =============================================================================


def _resolving_assistant(turns: Sequence[Turn], index: int) -> Turn | None:
    """Find the assistant turn a tool-result at `index` belongs to."""
    for position in range(index - 1, -1, -1):
        candidate = turns[position]
        if candidate.role == TurnRole.ASSISTANT:
            return candidate
        if candidate.role in (TurnRole.USER, TurnRole.SYSTEM):
            return None
    return None


def _is_resolved(turns: Sequence[Turn], index: int) -> bool:
    assistant = _resolving_assistant(turns, index)
    if assistant is None:
        return False
    return turns[index].tool_call_ref in assistant.invocation_ids()


def find_dangling_tool_results(turns: Sequence[Turn]) -> list[int]:
    """Return the positions of tool-result turns with no declaring assistant turn."""
    return [
        index
        for index, turn in enumerate(turns)
        if turn.role == TurnRole.TOOL and not _is_resolved(turns, index)
    ]


def repair_turns(turns: Sequence[Turn]) -> tuple[Turn, ...]:
    """Drop tool-result turns that do not answer a preceding assistant turn.

    System, user and assistant turns are always kept and keep their order.
    A tool-result turn is kept only if the backward scan (stopping at the
    first user or system turn) reaches an assistant turn that declared the
    referenced invocation.

    Removing a tool-result never changes which assistant another tool-result
    resolves to, so the operation is idempotent.

    Args:
        turns: History to repair

    Returns:
        The repaired turns (a new tuple; the input is not modified)
    """
    dangling = set(find_dangling_tool_results(turns))
    if dangling:
        logger.info(f"Repair dropped {len(dangling)} dangling tool-result turn(s)")
    return tuple(turn for index, turn in enumerate(turns) if index not in dangling)


def count_chars(turns: Iterable[Turn]) -> int:
    return sum(turn.char_count for turn in turns)


def exceeds_limits(turns: Sequence[Turn], limits: HistoryLimits) -> bool:
    """True if the turn or character ceiling is exceeded."""
    return len(turns) > limits.max_turns or count_chars(turns) > limits.max_chars


def check_leading_system(turns: Sequence[Turn]) -> None:
    """Raise HistoryInvariantError if a non-empty history does not open with
    a system turn."""
    if turns and turns[0].role != TurnRole.SYSTEM:
        raise HistoryInvariantError(
            f"first turn must be a system turn, got '{turns[0].role.value}'"
        )


# =============================================================================
# Store
# =============================================================================


@dataclass
class ConversationHistory:
    """The live history of one (session, phase) pair.

    Attributes:
        session_id: Owning session
        phase: Owning phase
        turns: Ordered, immutable turns
        compactions: Number of compaction passes applied so far
    """

    session_id: str
    phase: Phase
    turns: tuple[Turn, ...] = ()
    compactions: int = 0

    def __len__(self) -> int:
        return len(self.turns)

    @property
    def char_count(self) -> int:
        return count_chars(self.turns)


class HistoryStore:
    """Owns every conversation history, keyed by (session, phase).

    Histories are created empty on first access and live until the session
    is dropped. Callers only ever receive immutable snapshots.

    Example:
        >>> store = HistoryStore(HistoryLimits())
        >>> store.append("s1", Phase.EXPLORATION, [Turn.system("..."), Turn.user("hi")])
        >>> len(store.snapshot("s1", Phase.EXPLORATION))
        2
    """

    def __init__(self, limits: HistoryLimits):
        """Initialize an empty store.

        Args:
            limits: Ceilings used by needs_compaction()
        """
        self.limits = limits
        self._histories: dict[tuple[str, Phase], ConversationHistory] = {}

    def get(self, session_id: str, phase: Phase) -> ConversationHistory:
        """Get the history for a (session, phase) pair, creating it if needed."""
        key = (session_id, phase)
        if key not in self._histories:
            self._histories[key] = ConversationHistory(session_id=session_id, phase=phase)
        return self._histories[key]

    def snapshot(self, session_id: str, phase: Phase) -> tuple[Turn, ...]:
        """Current turns of a history, oldest first."""
        return self.get(session_id, phase).turns

    def append(self, session_id: str, phase: Phase, turns: Sequence[Turn]) -> None:
        """Append turns atomically.

        The batch is rejected, leaving the history unchanged, if it would put
        a non-system turn first in an empty history or a system turn anywhere
        other than position 0.

        Args:
            session_id: Owning session
            phase: Owning phase
            turns: Turns to append, in order

        Raises:
            HistoryInvariantError: If the batch would misplace a system turn
        """
        history = self.get(session_id, phase)
        if not turns:
            return

        start = len(history.turns)
        if start == 0 and turns[0].role != TurnRole.SYSTEM:
            raise HistoryInvariantError(
                f"history for {session_id}/{phase.value} must start with a system "
                f"turn, got '{turns[0].role.value}'"
            )
        for offset, turn in enumerate(turns):
            if turn.role == TurnRole.SYSTEM and start + offset != 0:
                raise HistoryInvariantError(
                    f"system turn at position {start + offset} in "
                    f"{session_id}/{phase.value}; only the first turn may be a system turn"
                )

        history.turns = history.turns + tuple(turns)
        logger.debug(
            f"Appended {len(turns)} turn(s) to {session_id}/{phase.value} "
            f"(now {len(history.turns)})"
        )

    def repair(self, session_id: str, phase: Phase) -> int:
        """Apply repair_turns() in place.

        Returns:
            Number of turns removed
        """
        history = self.get(session_id, phase)
        repaired = repair_turns(history.turns)
        removed = len(history.turns) - len(repaired)
        history.turns = repaired
        return removed

    def replace(
        self,
        session_id: str,
        phase: Phase,
        turns: Sequence[Turn],
        allow_summary: bool = False,
    ) -> None:
        """Rewrite a history wholesale. Reserved for the compactor.

        Args:
            session_id: Owning session
            phase: Owning phase
            turns: New content of the history
            allow_summary: Permit a summary system turn directly after the
                           leading system turn (or first, if there is none)

        Raises:
            HistoryInvariantError: If the new turns misplace a system turn or leave
                                   a tool result unresolved
        """
        check_leading_system(turns)
        allowed = {0, 1} if allow_summary else {0}
        for index, turn in enumerate(turns):
            if turn.role == TurnRole.SYSTEM and index not in allowed:
                raise HistoryInvariantError(
                    f"unexpected system turn at position {index} in "
                    f"{session_id}/{phase.value}"
                )
        dangling = find_dangling_tool_results(turns)
        if dangling:
            raise HistoryInvariantError(
                f"replacement for {session_id}/{phase.value} has dangling "
                f"tool results at {dangling}"
            )

        history = self.get(session_id, phase)
        history.turns = tuple(turns)

    def needs_compaction(self, session_id: str, phase: Phase) -> bool:
        """True if the history exceeds either ceiling."""
        return exceeds_limits(self.snapshot(session_id, phase), self.limits)

    def phases_for(self, session_id: str) -> list[Phase]:
        return [phase for (sid, phase) in self._histories if sid == session_id]

    def drop_session(self, session_id: str) -> None:
        """Release every history owned by a session."""
        for key in [key for key in self._histories if key[0] == session_id]:
            del self._histories[key]
