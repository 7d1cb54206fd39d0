"""
Session-based turn logger.

Creates a human-readable log file for each adventure session with clearly
separated turns, phase transitions and history compactions.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taleforge.models.compaction import CompactionRecord
    from taleforge.models.phase import Phase, PhaseTransition
    from taleforge.models.turn import Turn


# Get project root and logs directory
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent
LOGS_DIR = PROJECT_ROOT / "logs"


class SessionLogger:
    """Logs orchestrated turns for a session to a dedicated file."""

    def __init__(self, session_id: str, logs_dir: Path | None = None):
        self.session_id = session_id
        self.logs_dir = Path(logs_dir) if logs_dir is not None else LOGS_DIR
        self.turn_count = 0
        self.log_file: Path | None = None

    def _ensure_log_file(self) -> Path:
        """Create the log file on first write."""
        if self.log_file is None:
            self.logs_dir.mkdir(parents=True, exist_ok=True)

            # Use timestamp of first write in filename
            started = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
            self.log_file = self.logs_dir / f"{started}_{self.session_id}.log"

            with open(self.log_file, "w") as f:
                f.write("Taleforge Session Log\n")
                f.write("=====================\n")
                f.write(f"Session ID: {self.session_id}\n")
                f.write(f"Started: {datetime.now().isoformat()}\n")
                f.write("\n")

        return self.log_file

    def log_turn(
        self,
        phase: "Phase",
        player_input: str,
        committed: "list[Turn]",
        final_text: str,
        outcome: str,
    ) -> None:
        """Log one executed turn.

        Args:
            phase: Phase the turn ran in
            player_input: Player (or hand-off) input
            committed: Turns appended to the history (empty if nothing was)
            final_text: Final assistant text delivered to the player
            outcome: "completed", "degraded" or "cancelled"
        """
        log_file = self._ensure_log_file()
        self.turn_count += 1

        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with open(log_file, "a") as f:
            f.write("═" * 70 + "\n")
            f.write(f"TURN #{self.turn_count} | {timestamp} | {phase.value} | {outcome}\n")
            f.write("═" * 70 + "\n\n")

            f.write("─── PLAYER INPUT ───\n")
            f.write(f'"{player_input}"\n\n')

            tool_turns = [t for t in committed if t.tool_invocations or t.tool_call_ref]
            if tool_turns:
                f.write("─── TOOLS ───\n")
                for turn in tool_turns:
                    for invocation in turn.tool_invocations:
                        arguments = json.dumps(invocation.arguments, ensure_ascii=False)
                        if len(arguments) > 200:
                            arguments = arguments[:200] + "..."
                        f.write(f"→ {invocation.name} {arguments}\n")
                    if turn.tool_call_ref:
                        result = turn.content
                        if len(result) > 200:
                            result = result[:200] + "..."
                        f.write(f"← {turn.tool_name or turn.tool_call_ref}: {result}\n")
                f.write("\n")

            f.write("─── NARRATIVE ───\n")
            f.write(f"{final_text or '(empty)'}\n\n")

    def log_transition(self, transition: "PhaseTransition") -> None:
        """Log a phase transition and its hand-off summary."""
        log_file = self._ensure_log_file()
        with open(log_file, "a") as f:
            f.write("─── PHASE TRANSITION ───\n")
            f.write(f"{transition.from_phase.value} -> {transition.to_phase.value}\n")
            f.write(f"Hand-off: {transition.handoff_summary}\n\n")

    def log_compaction(self, record: "CompactionRecord") -> None:
        """Log a history compaction pass."""
        log_file = self._ensure_log_file()
        with open(log_file, "a") as f:
            f.write("─── COMPACTION ───\n")
            f.write(
                f"Phase: {record.phase.value} | elided turns {record.start}-{record.end} "
                f"({record.elided_count})\n"
            )
            f.write(f"Archive key: {record.archive_key or '(not archived)'}\n")
            if record.truncated:
                f.write("Summary: (none, truncated)\n\n")
            else:
                f.write(f"Summary: {record.summary}\n\n")


# Store active loggers per session
_session_loggers: dict[str, SessionLogger] = {}


def get_session_logger(session_id: str) -> SessionLogger:
    """Get or create a session logger for the given session."""
    if session_id not in _session_loggers:
        _session_loggers[session_id] = SessionLogger(session_id)
    return _session_loggers[session_id]


def close_session_logger(session_id: str) -> None:
    """Forget the session logger for an ended session."""
    _session_loggers.pop(session_id, None)
