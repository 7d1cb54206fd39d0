"""
Phase state machine - the entry point for player turns.

Each call to run_turn executes the player's input in the session's current
phase. If a tool moved the session into another phase during that turn,
the machine emits a transition marker and immediately runs a hand-off turn
in the new phase, repeating until a turn ends without a phase change. A
phase is entered at most once per call.

Turns of the same session are serialized by a per-session lock; different
sessions run independently.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, AsyncIterator

from taleforge.engine.compactor import HistoryCompactor
from taleforge.engine.context import ContextAssembler
from taleforge.engine.executor import TurnExecutor, TurnOutcome, TurnStream
from taleforge.engine.game_tools import BUILTIN_TOOLS
from taleforge.engine.history import HistoryStore
from taleforge.engine.tools import ToolDescriptor, ToolRegistry, build_tool_registries
from taleforge.llm.prompt_loader import PromptLoader
from taleforge.llm.session_logger import close_session_logger, get_session_logger
from taleforge.models.context import ContextPackage
from taleforge.models.phase import Phase, PhaseTransition

if TYPE_CHECKING:
    from taleforge.config import EngineSettings
    from taleforge.engine.protocols import (
        EntitySearch,
        GenerationEngine,
        MemoryStore,
        WorldStateStore,
    )
    from taleforge.models.session import SessionSnapshot

logger = logging.getLogger(__name__)


class PhaseStateMachine:
    """Runs player turns across narrative phases.

    Example:
        >>> machine = PhaseStateMachine.create(settings, engine, world_state, memory)
        >>> async for fragment in machine.run_turn("s1", "I open the gate"):
        ...     print(fragment, end="")
        >>> await machine.current_phase("s1")
        <Phase.EXPLORATION: 'exploration'>
    """

    def __init__(
        self,
        settings: "EngineSettings",
        history: HistoryStore,
        executor: TurnExecutor,
        assembler: ContextAssembler,
        compactor: HistoryCompactor,
        world_state: "WorldStateStore",
        memory: "MemoryStore",
        registries: dict[Phase, ToolRegistry],
    ):
        """Wire the state machine to its components.

        Use create() to build a machine with default components.
        """
        self.settings = settings
        self.history = history
        self.executor = executor
        self.assembler = assembler
        self.compactor = compactor
        self.world_state = world_state
        self.memory = memory
        self.registries = registries
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_phase: dict[str, Phase] = {}
        self._pending_handoffs: dict[str, PhaseTransition] = {}

    @classmethod
    def create(
        cls,
        settings: "EngineSettings",
        engine: "GenerationEngine",
        world_state: "WorldStateStore",
        memory: "MemoryStore",
        prompts: PromptLoader | None = None,
        catalog: dict[str, ToolDescriptor] | None = None,
        entity_search: "EntitySearch | None" = None,
    ) -> "PhaseStateMachine":
        """Build a machine and all of its components from settings.

        Args:
            settings: Engine settings
            engine: Generation engine
            world_state: Session world state store
            memory: Long-term memory store
            prompts: Prompt loader; defaults to the bundled prompts
            catalog: Tools available to phases; defaults to BUILTIN_TOOLS
            entity_search: Override for context entity resolution

        Returns:
            A ready PhaseStateMachine
        """
        if prompts is None:
            prompts = PromptLoader(
                instruction_files={d.name: d.instructions for d in settings.phases}
            )
        history = HistoryStore(settings.history)
        return cls(
            settings=settings,
            history=history,
            executor=TurnExecutor(settings, history, engine, prompts, world_state, memory),
            assembler=ContextAssembler(settings, world_state, memory, entity_search),
            compactor=HistoryCompactor(history, engine, memory, prompts),
            world_state=world_state,
            memory=memory,
            registries=build_tool_registries(settings, catalog or BUILTIN_TOOLS),
        )

    def _lock(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    def _resolve(self, snapshot: "SessionSnapshot") -> tuple[Phase, bool]:
        """Map the snapshot's raw phase onto a configured phase.

        Returns:
            Tuple of (phase to use, whether the snapshot was modified)
        """
        parsed = Phase.parse(snapshot.phase)
        if parsed is None:
            initial = self.settings.initial_phase
            if snapshot.phase:
                logger.warning(
                    f"[{snapshot.session_id}] Unrecognized phase '{snapshot.phase}', "
                    f"resetting to {initial.value}"
                )
            snapshot.phase = initial.value
            return initial, True

        if self.settings.get_phase(parsed) is None:
            logger.warning(
                f"[{snapshot.session_id}] Phase '{parsed.value}' is not configured, "
                f"using {self.settings.default_phase.value}"
            )
            return self.settings.default_phase, False

        return parsed, False

    async def _load_phase(self, session_id: str) -> tuple["SessionSnapshot", Phase]:
        snapshot = await self.world_state.load_snapshot(session_id)
        phase, healed = self._resolve(snapshot)
        if healed:
            await self.world_state.save_snapshot(snapshot)
        return snapshot, phase

    async def current_phase(self, session_id: str) -> Phase:
        """The session's current phase (initializing it if unset)."""
        _, phase = await self._load_phase(session_id)
        return phase

    async def _read_snapshot(self, session_id: str) -> "SessionSnapshot | None":
        try:
            return await self.world_state.load_snapshot(session_id)
        except Exception as e:
            logger.warning(f"[{session_id}] World state unavailable: {e}")
            return None

    async def _write_snapshot(self, snapshot: "SessionSnapshot") -> None:
        try:
            await self.world_state.save_snapshot(snapshot)
        except Exception as e:
            logger.warning(f"[{snapshot.session_id}] Could not save world state: {e}")

    async def _resolve_for_turn(
        self, session_id: str
    ) -> tuple["SessionSnapshot | None", Phase]:
        """Resolve the phase for a turn without letting store faults escape.

        When the world state cannot be read, the session's last resolved
        phase is used, or the first configured phase for a new session.
        """
        snapshot = await self._read_snapshot(session_id)
        if snapshot is None:
            return None, self._last_phase.get(session_id, self.settings.initial_phase)
        phase, healed = self._resolve(snapshot)
        if healed:
            await self._write_snapshot(snapshot)
        return snapshot, phase

    async def run_turn(
        self,
        session_id: str,
        player_input: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Execute a player turn, following any phase transitions it causes.

        A world state or memory fault never ends the turn: the turn runs
        without context and a failed re-read counts as no phase change.

        Args:
            session_id: Session to play in
            player_input: The player's input
            cancel_event: When set, streaming stops and the current turn is
                          not committed

        Yields:
            Narrative fragments, including transition markers
        """
        async with self._lock(session_id):
            snapshot, phase = await self._resolve_for_turn(session_id)
            self._last_phase[session_id] = phase
            visited = {phase}
            turn_input = player_input
            handoff = self._pending_handoffs.pop(session_id, None)
            if handoff is not None and handoff.to_phase != phase:
                handoff = None
            if handoff is not None:
                turn_input = f"{handoff.handoff_input()}\n\n{player_input}"
            first_turn = True

            while True:
                summary_before = snapshot.phase_change_summary if snapshot else None

                if self.history.needs_compaction(session_id, phase):
                    await self._compact(session_id, phase)

                if snapshot is None:
                    context = ContextPackage.empty()
                else:
                    context = await self.assembler.build_context(
                        session_id, phase, self.history.snapshot(session_id, phase), turn_input
                    )
                stream = self.executor.execute(
                    session_id,
                    phase,
                    self.registries[phase],
                    turn_input,
                    context,
                    cancel_event,
                )
                async for fragment in stream:
                    yield fragment
                self._log_turn(session_id, stream)
                completed = stream.outcome == TurnOutcome.COMPLETED

                if not completed and handoff is not None:
                    self._pending_handoffs[session_id] = handoff

                snapshot = await self._read_snapshot(session_id)
                if snapshot is None:
                    return

                if completed and first_turn:
                    snapshot.turn_number += 1
                    await self._write_snapshot(snapshot)
                first_turn = False

                next_phase, healed = self._resolve(snapshot)
                if healed:
                    await self._write_snapshot(snapshot)

                if next_phase == phase:
                    if completed and self.history.needs_compaction(session_id, phase):
                        await self._compact(session_id, phase)
                    return

                self._last_phase[session_id] = next_phase
                summary = snapshot.phase_change_summary
                if not summary or summary == summary_before:
                    summary = f"The adventure moves from {phase.label} to {next_phase.label}."
                transition = PhaseTransition(
                    from_phase=phase, to_phase=next_phase, handoff_summary=summary
                )
                logger.info(
                    f"[{session_id}] Phase transition {phase.value} -> {next_phase.value}"
                )
                yield transition.marker()
                await self._archive_handoff(session_id, transition, snapshot.turn_number)
                if self.settings.session_logging:
                    get_session_logger(session_id).log_transition(transition)

                if not completed:
                    logger.warning(
                        f"[{session_id}] Turn ended {stream.outcome.value} after a phase "
                        f"change, hand-off deferred to the next player input"
                    )
                    self._pending_handoffs[session_id] = transition
                    return

                if next_phase in visited or len(visited) >= len(self.settings.phases):
                    logger.warning(
                        f"[{session_id}] {next_phase.value} already entered during this "
                        f"turn, waiting for player input before continuing"
                    )
                    self._pending_handoffs[session_id] = transition
                    return

                visited.add(next_phase)
                phase = next_phase
                handoff = transition
                turn_input = transition.handoff_input()

    async def _compact(self, session_id: str, phase: Phase) -> None:
        record = await self.compactor.compact(session_id, phase)
        if record is not None and self.settings.session_logging:
            get_session_logger(session_id).log_compaction(record)

    async def _archive_handoff(
        self, session_id: str, transition: PhaseTransition, turn_number: int
    ) -> None:
        key = (
            f"{session_id}:{transition.from_phase.value}:handoff-"
            f"{transition.to_phase.value}-{turn_number}"
        )
        try:
            await self.memory.archive(
                key,
                {
                    "content": transition.handoff_summary,
                    "kind": "handoff",
                    "session_id": session_id,
                    "from_phase": transition.from_phase.value,
                    "to_phase": transition.to_phase.value,
                },
            )
        except Exception as e:
            logger.warning(f"[{session_id}] Could not archive phase hand-off: {e}")

    def _log_turn(self, session_id: str, stream: TurnStream) -> None:
        if not self.settings.session_logging:
            return
        get_session_logger(session_id).log_turn(
            phase=stream.phase,
            player_input=stream.player_input,
            committed=stream.committed,
            final_text=stream.final_text,
            outcome=stream.outcome.value,
        )

    def drop_session(self, session_id: str) -> None:
        """Forget a session's histories, lock and session log."""
        self.history.drop_session(session_id)
        self._locks.pop(session_id, None)
        self._last_phase.pop(session_id, None)
        self._pending_handoffs.pop(session_id, None)
        close_session_logger(session_id)
