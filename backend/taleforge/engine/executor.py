"""
Turn executor - runs one player turn against the generation engine.

A turn is a single exchange: the player's input, any number of tool rounds
and a final assistant reply. Fragments are streamed to the caller as they
arrive, but nothing is written to the history store until the exchange has
been fully collected. An abandoned or cancelled turn therefore leaves the
history exactly as it was.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator

from taleforge.engine.errors import EngineError, ToolSequencingError
from taleforge.engine.history import HistoryStore, repair_turns
from taleforge.engine.protocols import TextFragment
from taleforge.engine.tools import ToolContext, ToolRegistry
from taleforge.llm.prompt_loader import render_instructions
from taleforge.models.context import ContextPackage
from taleforge.models.phase import Phase
from taleforge.models.turn import ToolInvocation, Turn

if TYPE_CHECKING:
    from taleforge.config import EngineSettings
    from taleforge.engine.protocols import (
        GenerationEngine,
        InstructionLoader,
        MemoryStore,
        WorldStateStore,
    )

logger = logging.getLogger(__name__)

APOLOGY_TEXT = "Something went wrong while telling the story. Please try again."


class TurnOutcome(str, Enum):
    """How a turn ended.

    Attributes:
        PENDING: The stream has not been fully consumed yet
        COMPLETED: The exchange finished and was committed
        DEGRADED: The engine failed; an apology was streamed, nothing committed
        CANCELLED: Delivery stopped early; nothing committed
    """

    PENDING = "pending"
    COMPLETED = "completed"
    DEGRADED = "degraded"
    CANCELLED = "cancelled"


class TurnStream:
    """Lazy, single-pass stream of narrative fragments for one turn.

    Iterate it to drive the turn. Once iteration ends, final_text and
    outcome describe the result.

    Example:
        >>> stream = executor.execute("s1", Phase.EXPLORATION, registry, "look around")
        >>> async for fragment in stream:
        ...     print(fragment, end="")
        >>> stream.outcome
        <TurnOutcome.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        executor: "TurnExecutor",
        session_id: str,
        phase: Phase,
        registry: ToolRegistry,
        player_input: str,
        context: ContextPackage,
        cancel_event: asyncio.Event | None,
    ):
        self._executor = executor
        self.session_id = session_id
        self.phase = phase
        self.registry = registry
        self.player_input = player_input
        self.context = context
        self.cancel_event = cancel_event

        self.final_text = ""
        self.outcome = TurnOutcome.PENDING
        self.committed: list[Turn] = []
        self.repaired = False
        self._started = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._started:
            raise RuntimeError("TurnStream can only be iterated once")
        self._started = True
        return self._executor._run(self)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class TurnExecutor:
    """Executes turns: pre-flight check, streamed tool loop, single commit.

    Example:
        >>> executor = TurnExecutor(settings, history, engine, loader, world_state, memory)
        >>> stream = executor.execute("s1", Phase.EXPLORATION, registry, "open the door")
        >>> text = "".join([fragment async for fragment in stream])
    """

    def __init__(
        self,
        settings: "EngineSettings",
        history: HistoryStore,
        engine: "GenerationEngine",
        instructions: "InstructionLoader",
        world_state: "WorldStateStore",
        memory: "MemoryStore",
    ):
        """Initialize the executor.

        Args:
            settings: Engine settings (tool round limit, pre-flight switch)
            history: Store the exchange is committed to
            engine: Generation engine
            instructions: Source of phase instructions for new histories
            world_state: Passed to tools
            memory: Passed to tools
        """
        self.settings = settings
        self.history = history
        self.engine = engine
        self.instructions = instructions
        self.world_state = world_state
        self.memory = memory

    def execute(
        self,
        session_id: str,
        phase: Phase,
        registry: ToolRegistry,
        player_input: str,
        context: ContextPackage | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnStream:
        """Prepare a turn. Nothing happens until the stream is iterated.

        Args:
            session_id: Session the turn belongs to
            phase: Phase whose history and instructions are used
            registry: Tools the engine may call
            player_input: The player's input (or a phase hand-off)
            context: Context rendered into the instructions for this turn
            cancel_event: When set, delivery stops at the next fragment

        Returns:
            A TurnStream to iterate
        """
        return TurnStream(
            self,
            session_id,
            phase,
            registry,
            player_input,
            context or ContextPackage.empty(),
            cancel_event,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _render(self, turns: list[Turn], context: ContextPackage) -> list[dict]:
        """Build engine messages; the leading system turn gets the context."""
        messages = [turn.to_message() for turn in turns]
        if messages and messages[0]["role"] == "system":
            rendered = "" if context.is_empty() else context.render()
            messages[0]["content"] = render_instructions(turns[0].content, rendered)
        return messages

    async def _preflight(
        self,
        stream: TurnStream,
        turns: list[Turn],
    ) -> list[Turn]:
        """Probe the conversation; repair and retry once on a sequencing fault.

        The repaired conversation is kept whether or not the retry passes.
        Any other probe failure leaves the conversation untouched.
        """
        schemas = stream.registry.schemas()
        try:
            await self.engine.probe(self._render(turns, stream.context), schemas)
            return turns
        except ToolSequencingError as e:
            logger.warning(
                f"[{stream.session_id}] Tool sequencing rejected in {stream.phase.value}, "
                f"repairing history: {e}"
            )
        except EngineError as e:
            logger.warning(
                f"[{stream.session_id}] Pre-flight probe failed, submitting as is: {e}"
            )
            return turns

        repaired = list(repair_turns(turns))
        stream.repaired = True
        try:
            await self.engine.probe(self._render(repaired, stream.context), schemas)
            logger.info(f"[{stream.session_id}] Repaired history accepted")
        except EngineError as e:
            logger.warning(
                f"[{stream.session_id}] Repaired history still rejected, using it anyway: {e}"
            )
        return repaired

    async def _run(self, stream: TurnStream) -> AsyncIterator[str]:
        session_id, phase = stream.session_id, stream.phase

        stored = list(self.history.snapshot(session_id, phase))
        new_turns: list[Turn] = []
        if not stored:
            new_turns.append(Turn.system(self.instructions.load_instructions(phase)))
        new_turns.append(Turn.user(stream.player_input))

        conversation = stored + new_turns
        if self.settings.preflight_probe:
            conversation = await self._preflight(stream, conversation)

        tool_context = ToolContext(
            session_id=session_id,
            phase=phase,
            world_state=self.world_state,
            memory=self.memory,
            settings=self.settings,
        )
        schemas = stream.registry.schemas()
        exchange: list[Turn] = []
        final_text = ""

        try:
            for round_number in range(1, self.settings.max_tool_rounds + 1):
                messages = self._render(conversation + exchange, stream.context)
                text_parts: list[str] = []
                invocations: list[ToolInvocation] = []

                async for item in self.engine.stream(messages, schemas):
                    if stream.cancelled:
                        self._cancel(stream)
                        return
                    if isinstance(item, TextFragment):
                        if item.text:
                            text_parts.append(item.text)
                            yield item.text
                    else:
                        invocations.append(item)

                text = "".join(text_parts)
                if not invocations:
                    final_text = text
                    exchange.append(Turn.assistant(text))
                    break

                exchange.append(Turn.assistant(text, invocations))
                for invocation in invocations:
                    logger.info(
                        f"[{session_id}] Tool call {invocation.name} "
                        f"(round {round_number}, {phase.value})"
                    )
                    result = await stream.registry.invoke(
                        invocation.name, invocation.arguments, tool_context
                    )
                    exchange.append(
                        Turn.tool_result(invocation.id, result, tool_name=invocation.name)
                    )
                if stream.cancelled:
                    self._cancel(stream)
                    return
            else:
                logger.warning(
                    f"[{session_id}] Tool round limit ({self.settings.max_tool_rounds}) "
                    f"reached in {phase.value}; ending turn after the last tool results"
                )
                final_text = text
        except EngineError as e:
            logger.error(f"[{session_id}] Engine failure in {phase.value}: {e}")
            stream.outcome = TurnOutcome.DEGRADED
            stream.final_text = APOLOGY_TEXT
            yield APOLOGY_TEXT
            return

        # Single commit point for the whole exchange
        if stream.repaired:
            removed = self.history.repair(session_id, phase)
            logger.info(f"[{session_id}] Committed repair removed {removed} turn(s)")
        committed = new_turns + exchange
        self.history.append(session_id, phase, committed)

        stream.committed = committed
        stream.final_text = final_text
        stream.outcome = TurnOutcome.COMPLETED

    def _cancel(self, stream: TurnStream) -> None:
        logger.info(
            f"[{stream.session_id}] Turn cancelled in {stream.phase.value}; history unchanged"
        )
        stream.outcome = TurnOutcome.CANCELLED
