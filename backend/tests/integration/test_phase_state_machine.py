"""
Integration tests for the phase state machine.

These tests drive complete turns through PhaseStateMachine with a scripted
engine and in-memory stores:
- Session initialization and phase self-healing
- Phase transitions with hand-off turns
- The per-turn guard against phase loops
- Compaction between turns
- Per-session serialization
"""

import asyncio

import pytest

from taleforge.config import HistoryLimits
from taleforge.engine.compactor import SUMMARY_PREFIX
from taleforge.engine.errors import EngineError
from taleforge.engine.executor import APOLOGY_TEXT
from taleforge.engine.phases import PhaseStateMachine
from taleforge.engine.world_state import InMemoryWorldStateStore
from taleforge.llm import session_logger
from taleforge.models.phase import Phase
from taleforge.models.session import SessionSnapshot
from taleforge.models.turn import TurnRole
from tests.factories import build_settings
from tests.mocks.llm import ScriptedEngine, tool_call

pytestmark = pytest.mark.integration

SESSION = "session-1"
COMBAT_MARKER = "\n\n--- Entering Combat ---\n\n"
EXPLORATION_MARKER = "\n\n--- Entering Exploration ---\n\n"


class YieldingEngine(ScriptedEngine):
    """Scripted engine that gives up control between fragments."""

    async def stream(self, messages, tools):
        async for item in super().stream(messages, tools):
            await asyncio.sleep(0)
            yield item


async def collect(machine, session_id: str, player_input: str, cancel_event=None) -> list[str]:
    return [
        fragment
        async for fragment in machine.run_turn(session_id, player_input, cancel_event)
    ]


async def start_in(world_state, phase: Phase, session_id: str = SESSION, **fields) -> None:
    await world_state.save_snapshot(
        SessionSnapshot(session_id=session_id, phase=phase.value, **fields)
    )


class FlakyWorldState(InMemoryWorldStateStore):
    """In-memory store that raises while offline."""

    def __init__(self):
        super().__init__()
        self.offline = False

    async def load_snapshot(self, session_id):
        if self.offline:
            raise ConnectionError("world state offline")
        return await super().load_snapshot(session_id)

    async def save_snapshot(self, snapshot):
        if self.offline:
            raise ConnectionError("world state offline")
        await super().save_snapshot(snapshot)


class TestSessionStart:
    """Tests for new sessions and unrecognized phases."""

    @pytest.mark.asyncio
    async def test_new_session_starts_in_first_phase(self, make_machine, world_state) -> None:
        engine = ScriptedEngine([["Welcome, traveler."]])
        machine = make_machine(engine)

        fragments = await collect(machine, SESSION, "begin")

        assert fragments == ["Welcome, traveler."]
        snapshot = await world_state.load_snapshot(SESSION)
        assert snapshot.phase == "setup"
        assert snapshot.turn_number == 1
        turns = machine.history.snapshot(SESSION, Phase.SETUP)
        assert [t.role for t in turns] == [TurnRole.SYSTEM, TurnRole.USER, TurnRole.ASSISTANT]

    @pytest.mark.asyncio
    async def test_self_contained_phase_gets_bare_instructions(self, make_machine) -> None:
        engine = ScriptedEngine([["ok"]])
        machine = make_machine(engine)

        await collect(machine, SESSION, "begin")

        assert engine.get_last_call("stream").system_prompt == "SETUP INSTRUCTIONS"

    @pytest.mark.asyncio
    async def test_unknown_phase_self_heals(self, make_machine, world_state) -> None:
        """An unrecognized phase is reset to the first phase and saved."""
        await world_state.save_snapshot(SessionSnapshot(session_id=SESSION, phase="dungeon"))
        machine = make_machine(ScriptedEngine())

        assert await machine.current_phase(SESSION) == Phase.SETUP
        assert (await world_state.load_snapshot(SESSION)).phase == "setup"

    @pytest.mark.asyncio
    async def test_unconfigured_phase_uses_default(
        self, make_machine, engine_settings, world_state
    ) -> None:
        """A known but unconfigured phase runs in the default phase, unsaved."""
        settings = build_settings(
            phases=[d for d in engine_settings.phases if d.name != Phase.COMBAT]
        )
        await start_in(world_state, Phase.COMBAT)
        engine = ScriptedEngine([["You look around."]])
        machine = make_machine(engine, settings)

        await collect(machine, SESSION, "look")

        assert len(machine.history.snapshot(SESSION, Phase.EXPLORATION)) == 3
        assert (await world_state.load_snapshot(SESSION)).phase == "combat"


class TestTransitions:
    """Tests for phase transitions within a turn."""

    @pytest.mark.asyncio
    async def test_transition_runs_handoff_turn(self, make_machine, world_state) -> None:
        """A phase change yields a marker and continues in the new phase."""
        await start_in(world_state, Phase.EXPLORATION)
        engine = ScriptedEngine(
            [
                [
                    "You step into the alley. ",
                    tool_call(
                        "transition_phase",
                        phase="combat",
                        phase_change_summary="Goblins ambush the player in the alley.",
                    ),
                ],
                ["Blades flash in the dark."],
                ["Roll for initiative!"],
            ]
        )
        machine = make_machine(engine)

        fragments = await collect(machine, SESSION, "enter the alley")

        assert fragments == [
            "You step into the alley. ",
            "Blades flash in the dark.",
            COMBAT_MARKER,
            "Roll for initiative!",
        ]
        combat = machine.history.snapshot(SESSION, Phase.COMBAT)
        assert combat[0].content.startswith("COMBAT INSTRUCTIONS")
        assert combat[1].content == (
            "[Phase hand-off from Exploration] Goblins ambush the player in the alley."
        )
        assert combat[2].content == "Roll for initiative!"
        assert await machine.current_phase(SESSION) == Phase.COMBAT

        exploration = machine.history.snapshot(SESSION, Phase.EXPLORATION)
        assert [t.role.value for t in exploration] == [
            "system",
            "user",
            "assistant",
            "tool",
            "assistant",
        ]

    @pytest.mark.asyncio
    async def test_handoff_is_archived(self, make_machine, world_state, memory) -> None:
        await start_in(world_state, Phase.EXPLORATION)
        engine = ScriptedEngine(
            [
                [tool_call("transition_phase", phase="combat", phase_change_summary="Ambush.")],
                ["Fight!"],
            ]
        )
        machine = make_machine(engine)

        await collect(machine, SESSION, "go")

        payload = memory.get(f"{SESSION}:exploration:handoff-combat-1")
        assert payload["content"] == "Ambush."
        assert payload["kind"] == "handoff"

    @pytest.mark.asyncio
    async def test_missing_summary_gets_fallback(self, make_machine, world_state) -> None:
        await start_in(world_state, Phase.EXPLORATION)
        engine = ScriptedEngine(
            [
                [tool_call("transition_phase", phase="combat", phase_change_summary="")],
                ["Fight!"],
            ]
        )
        machine = make_machine(engine)

        await collect(machine, SESSION, "go")

        handoff = machine.history.snapshot(SESSION, Phase.COMBAT)[1]
        assert handoff.content == (
            "[Phase hand-off from Exploration] The adventure moves from Exploration to Combat."
        )

    @pytest.mark.asyncio
    async def test_stale_summary_gets_fallback(self, make_machine, world_state) -> None:
        """A summary left over from an earlier transition is not reused."""
        await start_in(world_state, Phase.EXPLORATION, phase_change_summary="Old news.")
        engine = ScriptedEngine(
            [
                [tool_call("transition_phase", phase="combat", phase_change_summary="Old news.")],
                ["Fight!"],
            ]
        )
        machine = make_machine(engine)

        await collect(machine, SESSION, "go")

        handoff = machine.history.snapshot(SESSION, Phase.COMBAT)[1]
        assert "The adventure moves from Exploration to Combat." in handoff.content

    @pytest.mark.asyncio
    async def test_phase_loop_stops_at_revisit(self, make_machine, world_state) -> None:
        """A phase is not entered twice in one call; the loop waits for the player."""
        await start_in(world_state, Phase.EXPLORATION)
        engine = ScriptedEngine(
            [
                [tool_call("transition_phase", phase="combat", phase_change_summary="Fight.")],
                ["To arms!"],
                [tool_call("transition_phase", phase="exploration", phase_change_summary="Fled.")],
                ["You run."],
            ]
        )
        machine = make_machine(engine)

        fragments = await collect(machine, SESSION, "go")

        assert fragments == ["To arms!", COMBAT_MARKER, "You run.", EXPLORATION_MARKER]
        engine.assert_called("stream", times=4)
        assert await machine.current_phase(SESSION) == Phase.EXPLORATION
        # No hand-off turn was run back in exploration
        assert len(machine.history.snapshot(SESSION, Phase.EXPLORATION)) == 5

    @pytest.mark.asyncio
    async def test_turn_number_counts_player_turns(self, make_machine, world_state) -> None:
        """Hand-off turns do not advance the turn counter."""
        await start_in(world_state, Phase.EXPLORATION)
        engine = ScriptedEngine(
            [
                [tool_call("transition_phase", phase="combat", phase_change_summary="Fight.")],
                ["To arms!"],
                ["Clash!"],
            ]
        )
        machine = make_machine(engine)

        await collect(machine, SESSION, "go")

        assert (await world_state.load_snapshot(SESSION)).turn_number == 1


class TestIncompleteTurns:
    """Tests for cancelled and failed turns."""

    @pytest.mark.asyncio
    async def test_cancelled_turn_commits_nothing(self, make_machine, world_state) -> None:
        await start_in(world_state, Phase.EXPLORATION)
        machine = make_machine(ScriptedEngine([["one ", "two"]]))
        cancel = asyncio.Event()
        cancel.set()

        fragments = await collect(machine, SESSION, "go", cancel_event=cancel)

        assert fragments == []
        assert machine.history.snapshot(SESSION, Phase.EXPLORATION) == ()
        assert (await world_state.load_snapshot(SESSION)).turn_number == 0

    @pytest.mark.asyncio
    async def test_engine_failure_streams_apology(self, make_machine, world_state) -> None:
        await start_in(world_state, Phase.EXPLORATION)
        machine = make_machine(ScriptedEngine([EngineError("provider down")]))

        fragments = await collect(machine, SESSION, "go")

        assert fragments == [APOLOGY_TEXT]
        assert machine.history.snapshot(SESSION, Phase.EXPLORATION) == ()
        assert (await world_state.load_snapshot(SESSION)).turn_number == 0

    @pytest.mark.asyncio
    async def test_failure_after_phase_change_defers_handoff(
        self, make_machine, world_state, memory
    ) -> None:
        """The marker is still emitted and the hand-off leads the next input."""
        await start_in(world_state, Phase.EXPLORATION)
        engine = ScriptedEngine(
            [
                [tool_call("transition_phase", phase="combat", phase_change_summary="Ambush!")],
                EngineError("provider down"),
                ["Steel rings out."],
            ]
        )
        machine = make_machine(engine)

        fragments = await collect(machine, SESSION, "go")

        assert fragments == [APOLOGY_TEXT, COMBAT_MARKER]
        assert machine.history.snapshot(SESSION, Phase.EXPLORATION) == ()
        assert memory.get(f"{SESSION}:exploration:handoff-combat-0")["content"] == "Ambush!"

        fragments = await collect(machine, SESSION, "draw my sword")

        assert fragments == ["Steel rings out."]
        combat = machine.history.snapshot(SESSION, Phase.COMBAT)
        assert combat[1].content == (
            "[Phase hand-off from Exploration] Ambush!\n\ndraw my sword"
        )
        assert (await world_state.load_snapshot(SESSION)).turn_number == 1

    @pytest.mark.asyncio
    async def test_deferred_handoff_survives_another_failure(
        self, make_machine, world_state
    ) -> None:
        await start_in(world_state, Phase.EXPLORATION)
        engine = ScriptedEngine(
            [
                [tool_call("transition_phase", phase="combat", phase_change_summary="Ambush!")],
                EngineError("provider down"),
                EngineError("still down"),
                ["Steel rings out."],
            ]
        )
        machine = make_machine(engine)

        await collect(machine, SESSION, "go")
        assert await collect(machine, SESSION, "draw") == [APOLOGY_TEXT]
        await collect(machine, SESSION, "draw again")

        combat = machine.history.snapshot(SESSION, Phase.COMBAT)
        assert combat[1].content == (
            "[Phase hand-off from Exploration] Ambush!\n\ndraw again"
        )


class TestCompaction:
    """Tests for compaction between turns."""

    @pytest.mark.asyncio
    async def test_history_compacted_after_crossing_ceiling(
        self, make_machine, world_state
    ) -> None:
        settings = build_settings(history=HistoryLimits(max_turns=6, keep_recent=3))
        await start_in(world_state, Phase.EXPLORATION)
        engine = ScriptedEngine(replies=["The player asked three questions."])
        machine = make_machine(engine, settings)

        for index in range(3):
            await collect(machine, SESSION, f"question {index}")

        engine.assert_called("complete", times=1)
        turns = machine.history.snapshot(SESSION, Phase.EXPLORATION)
        assert len(turns) == 5
        assert turns[0].content.startswith("EXPLORATION INSTRUCTIONS")
        assert turns[1].content == SUMMARY_PREFIX + "The player asked three questions."
        assert turns[-2].content == "question 2"


class TestConcurrency:
    """Tests for per-session serialization."""

    @pytest.mark.asyncio
    async def test_same_session_turns_do_not_interleave(self, make_machine, world_state) -> None:
        await start_in(world_state, Phase.EXPLORATION)
        machine = make_machine(YieldingEngine([["a1 ", "a2"], ["b1 ", "b2"]]))

        first, second = await asyncio.gather(
            collect(machine, SESSION, "first"),
            collect(machine, SESSION, "second"),
        )

        assert first == ["a1 ", "a2"]
        assert second == ["b1 ", "b2"]
        turns = machine.history.snapshot(SESSION, Phase.EXPLORATION)
        assert [t.content for t in turns[1:]] == ["first", "a1 a2", "second", "b1 b2"]
        assert (await world_state.load_snapshot(SESSION)).turn_number == 2

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, make_machine, world_state) -> None:
        await start_in(world_state, Phase.EXPLORATION, session_id="a")
        await start_in(world_state, Phase.COMBAT, session_id="b")
        machine = make_machine(YieldingEngine())

        await asyncio.gather(collect(machine, "a", "look"), collect(machine, "b", "strike"))

        assert machine.history.snapshot("a", Phase.EXPLORATION)[1].content == "look"
        assert machine.history.snapshot("b", Phase.COMBAT)[1].content == "strike"
        assert machine.history.snapshot("a", Phase.COMBAT) == ()


class TestWorldStateOutage:
    """Tests for turns while the world state store is unreachable."""

    @pytest.fixture
    def flaky_state(self) -> FlakyWorldState:
        return FlakyWorldState()

    @pytest.fixture
    def flaky_machine(self, engine_settings, memory, prompt_loader, flaky_state):
        def _make(engine: ScriptedEngine) -> PhaseStateMachine:
            return PhaseStateMachine.create(
                engine_settings, engine, flaky_state, memory, prompts=prompt_loader
            )

        return _make

    @pytest.mark.asyncio
    async def test_turn_completes_in_last_phase(self, flaky_machine, flaky_state) -> None:
        await start_in(flaky_state, Phase.EXPLORATION)
        machine = flaky_machine(
            ScriptedEngine([["The docks are quiet."], ["Gulls circle overhead."]])
        )
        await collect(machine, SESSION, "look")

        flaky_state.offline = True
        fragments = await collect(machine, SESSION, "listen")

        assert fragments == ["Gulls circle overhead."]
        turns = machine.history.snapshot(SESSION, Phase.EXPLORATION)
        assert [t.content for t in turns[1:]] == [
            "look",
            "The docks are quiet.",
            "listen",
            "Gulls circle overhead.",
        ]
        flaky_state.offline = False
        assert (await flaky_state.load_snapshot(SESSION)).turn_number == 1

    @pytest.mark.asyncio
    async def test_new_session_uses_first_phase(self, flaky_machine, flaky_state) -> None:
        flaky_state.offline = True
        machine = flaky_machine(ScriptedEngine([["Welcome, traveler."]]))

        fragments = await collect(machine, SESSION, "begin")

        assert fragments == ["Welcome, traveler."]
        assert len(machine.history.snapshot(SESSION, Phase.SETUP)) == 3


class TestSessionEnd:
    """Tests for drop_session()."""

    @pytest.mark.asyncio
    async def test_drop_session_forgets_session(self, make_machine, world_state) -> None:
        await start_in(world_state, Phase.EXPLORATION)
        machine = make_machine(ScriptedEngine([["ok"]]))
        await collect(machine, SESSION, "look")
        session_logger.get_session_logger(SESSION)

        machine.drop_session(SESSION)

        assert SESSION not in session_logger._session_loggers
        assert machine.history.snapshot(SESSION, Phase.EXPLORATION) == ()
