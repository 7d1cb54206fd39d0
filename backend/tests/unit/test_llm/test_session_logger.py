"""Unit tests for the per-session log file."""

from taleforge.llm import session_logger
from taleforge.llm.session_logger import (
    SessionLogger,
    close_session_logger,
    get_session_logger,
)
from taleforge.models.compaction import CompactionRecord
from taleforge.models.phase import Phase, PhaseTransition
from taleforge.models.turn import ToolInvocation, Turn


class TestSessionLogger:
    """Tests for SessionLogger output."""

    def test_no_file_until_first_write(self, tmp_path) -> None:
        SessionLogger("s1", logs_dir=tmp_path)
        assert list(tmp_path.iterdir()) == []

    def test_turn_transition_and_compaction(self, tmp_path) -> None:
        logger = SessionLogger("s1", logs_dir=tmp_path)

        logger.log_turn(
            phase=Phase.EXPLORATION,
            player_input="search the desk",
            committed=[
                Turn.user("search the desk"),
                Turn.assistant("", [ToolInvocation(id="a", name="log_event")]),
                Turn.tool_result("a", '{"ok": true}', tool_name="log_event"),
                Turn.assistant("You find a key."),
            ],
            final_text="You find a key.",
            outcome="completed",
        )
        logger.log_transition(
            PhaseTransition(
                from_phase=Phase.EXPLORATION, to_phase=Phase.COMBAT, handoff_summary="Ambush."
            )
        )
        logger.log_compaction(
            CompactionRecord(
                session_id="s1",
                phase=Phase.EXPLORATION,
                start=2,
                end=9,
                elided_turns=(),
                summary="",
                archive_key=None,
                truncated=True,
            )
        )

        text = logger.log_file.read_text()
        assert "TURN #1" in text
        assert "→ log_event {}" in text
        assert '← log_event: {"ok": true}' in text
        assert "You find a key." in text
        assert "exploration -> combat" in text
        assert "Hand-off: Ambush." in text
        assert "Archive key: (not archived)" in text
        assert "Summary: (none, truncated)" in text


class TestSessionLoggerRegistry:
    """Tests for the per-session logger registry."""

    def test_close_evicts_logger(self) -> None:
        first = get_session_logger("s-close")
        assert get_session_logger("s-close") is first

        close_session_logger("s-close")

        assert "s-close" not in session_logger._session_loggers
        assert get_session_logger("s-close") is not first
        close_session_logger("s-close")

    def test_close_unknown_session(self) -> None:
        close_session_logger("never-opened")
