"""
History compactor - keeps phase histories under their ceilings.

A compacted history looks like:

    [head system turn?, summary system turn, ...last N turns]

The elided middle is summarized by an isolated engine request (no tools,
no history) and archived verbatim to long-term memory. If the summary is
empty or the request fails, the middle is dropped without a summary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from taleforge.engine.errors import EngineError
from taleforge.engine.history import (
    HistoryStore,
    check_leading_system,
    count_chars,
    repair_turns,
)
from taleforge.models.compaction import CompactionRecord
from taleforge.models.phase import Phase
from taleforge.models.turn import Turn, TurnRole

if TYPE_CHECKING:
    from taleforge.config import HistoryLimits
    from taleforge.engine.protocols import GenerationEngine, MemoryStore
    from taleforge.llm.prompt_loader import PromptLoader

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "Previous conversation summary: "
# Longest summary kept in a live history
MAX_SUMMARY_CHARS = 4000


@dataclass(frozen=True)
class CompactionPlan:
    """How a history splits for compaction.

    Attributes:
        head: Leading system turn, if any
        middle: Turns to summarize and elide
        tail: Most recent turns, kept verbatim
        middle_start: 1-based position of the first middle turn
    """

    head: Turn | None
    middle: tuple[Turn, ...]
    tail: tuple[Turn, ...]
    middle_start: int

    @property
    def middle_end(self) -> int:
        return self.middle_start + len(self.middle) - 1


def plan_compaction(turns: Sequence[Turn], keep_recent: int) -> CompactionPlan:
    """Partition a history into head, middle and tail.

    Args:
        turns: Current history
        keep_recent: Number of most recent turns to keep verbatim

    Returns:
        The plan; middle is empty when there is nothing to elide
    """
    head = turns[0] if turns and turns[0].role == TurnRole.SYSTEM else None
    body = list(turns[1:] if head is not None else turns)
    split = max(len(body) - keep_recent, 0)
    return CompactionPlan(
        head=head,
        middle=tuple(body[:split]),
        tail=tuple(body[split:]),
        middle_start=2 if head is not None else 1,
    )


def format_transcript(turns: Sequence[Turn]) -> str:
    """Render turns as a plain transcript for the summarizer."""
    lines: list[str] = []
    for turn in turns:
        if turn.role == TurnRole.USER:
            lines.append(f"PLAYER: {turn.content}")
        elif turn.role == TurnRole.ASSISTANT:
            if turn.content:
                lines.append(f"GAME MASTER: {turn.content}")
            for invocation in turn.tool_invocations:
                lines.append(f"[tool call] {invocation.name} {invocation.arguments}")
        elif turn.role == TurnRole.TOOL:
            lines.append(f"[tool result] {turn.tool_name or turn.tool_call_ref}: {turn.content}")
        else:
            lines.append(f"[note] {turn.content}")
    return "\n".join(lines)


class HistoryCompactor:
    """Summarizes and archives the middle of an over-long history.

    Example:
        >>> compactor = HistoryCompactor(store, engine, memory, loader)
        >>> if store.needs_compaction("s1", Phase.EXPLORATION):
        ...     record = await compactor.compact("s1", Phase.EXPLORATION)
    """

    def __init__(
        self,
        history: HistoryStore,
        engine: "GenerationEngine",
        memory: "MemoryStore",
        prompts: "PromptLoader",
    ):
        """Initialize the compactor.

        Args:
            history: Store holding the histories to compact
            engine: Engine used for the isolated summary request
            memory: Long-term memory the elided turns are archived to
            prompts: Loader for the compaction/summarize.txt prompt
        """
        self.history = history
        self.engine = engine
        self.memory = memory
        self.prompts = prompts

    @property
    def limits(self) -> "HistoryLimits":
        return self.history.limits

    async def compact(self, session_id: str, phase: Phase) -> CompactionRecord | None:
        """Compact a phase history in place.

        Args:
            session_id: Owning session
            phase: Phase whose history is compacted

        Returns:
            The audit record, or None if there was nothing to elide
        """
        conversation = self.history.get(session_id, phase)
        turns = conversation.turns
        plan = plan_compaction(turns, self.limits.keep_recent)
        if not plan.middle:
            logger.debug(f"[{session_id}] Nothing to compact in {phase.value}")
            return None

        sequence = conversation.compactions + 1
        summary = await self._summarize(session_id, phase, plan.middle)
        archive_key = await self._archive(session_id, phase, sequence, plan, summary)

        rewritten: list[Turn] = [plan.head] if plan.head is not None else []
        if summary:
            rewritten.append(Turn.system(SUMMARY_PREFIX + summary))
        rewritten.extend(plan.tail)
        rewritten = self._verify(session_id, phase, rewritten, has_summary=bool(summary))

        self.history.replace(session_id, phase, rewritten, allow_summary=bool(summary))
        conversation.compactions = sequence

        record = CompactionRecord(
            session_id=session_id,
            phase=phase,
            start=plan.middle_start,
            end=plan.middle_end,
            elided_turns=plan.middle,
            summary=summary,
            archive_key=archive_key,
            truncated=not summary,
        )
        logger.info(
            f"[{session_id}] Compacted {phase.value}: {len(turns)} -> {len(rewritten)} turns "
            f"({'summary' if summary else 'truncation'}, archive={archive_key})"
        )
        return record

    async def _summarize(
        self, session_id: str, phase: Phase, middle: Sequence[Turn]
    ) -> str:
        """Isolated summary request; returns "" on failure."""
        try:
            instructions = self.prompts.get_prompt("compaction", "summarize.txt")
            messages = [
                {"role": "system", "content": instructions},
                {"role": "user", "content": format_transcript(middle)},
            ]
            reply = await self.engine.complete(messages, tools=None)
        except (EngineError, OSError) as e:
            logger.warning(
                f"[{session_id}] Summary for {phase.value} failed, truncating instead: {e}"
            )
            return ""

        summary = (reply.text or "").strip()
        if not summary:
            logger.warning(f"[{session_id}] Empty summary for {phase.value}, truncating instead")
        return summary[:MAX_SUMMARY_CHARS]

    async def _archive(
        self,
        session_id: str,
        phase: Phase,
        sequence: int,
        plan: CompactionPlan,
        summary: str,
    ) -> str | None:
        key = (
            f"{session_id}:{phase.value}:compaction-{sequence}:"
            f"turns-{plan.middle_start}-{plan.middle_end}"
        )
        payload = {
            "content": summary or format_transcript(plan.middle),
            "kind": "compaction",
            "session_id": session_id,
            "phase": phase.value,
            "start": plan.middle_start,
            "end": plan.middle_end,
            "turns": [turn.model_dump(mode="json") for turn in plan.middle],
        }
        try:
            await self.memory.archive(key, payload)
        except Exception as e:
            logger.error(
                f"[{session_id}] Archiving compacted turns failed: {type(e).__name__}: {e}"
            )
            return None
        return key

    def _verify(
        self,
        session_id: str,
        phase: Phase,
        turns: list[Turn],
        has_summary: bool,
    ) -> list[Turn]:
        """Restore the structural rules and ceilings on the rewritten history."""
        # Tail tool-results whose assistant turn was elided
        turns = list(repair_turns(turns))
        check_leading_system(turns)

        fixed = sum(1 for t in turns if t.role == TurnRole.SYSTEM)
        fixed = min(fixed, 2 if has_summary else 1)
        while count_chars(turns) > self.limits.max_chars and len(turns) > fixed + 1:
            dropped = turns.pop(fixed)
            logger.warning(
                f"[{session_id}] Compacted {phase.value} history still over the character "
                f"ceiling, dropping a {dropped.role.value} turn from the tail"
            )
            turns = list(repair_turns(turns))
        return turns
