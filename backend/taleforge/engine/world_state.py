"""
World-state stores - session snapshots in memory or as JSON files.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path

from taleforge.models.session import SessionSnapshot

logger = logging.getLogger(__name__)

# Default directory for JSON snapshots, relative to the project root
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent
STATE_DIR = Path(os.getenv("TALEFORGE_STATE_DIR", PROJECT_ROOT / "state"))


class InMemoryWorldStateStore:
    """Keeps snapshots in a dict. Callers always receive copies, so a
    snapshot only changes once it is saved back."""

    def __init__(self):
        self._snapshots: dict[str, SessionSnapshot] = {}

    async def load_snapshot(self, session_id: str) -> SessionSnapshot:
        if session_id not in self._snapshots:
            self._snapshots[session_id] = SessionSnapshot(session_id=session_id)
        return self._snapshots[session_id].model_copy(deep=True)

    async def save_snapshot(self, snapshot: SessionSnapshot) -> None:
        self._snapshots[snapshot.session_id] = snapshot.model_copy(deep=True)

    def exists(self, session_id: str) -> bool:
        return session_id in self._snapshots


class JsonWorldStateStore:
    """Stores one JSON file per session.

    Example:
        >>> store = JsonWorldStateStore("/tmp/taleforge-state")
        >>> snapshot = await store.load_snapshot("abc")
        >>> snapshot.current_location = "Harbor"
        >>> await store.save_snapshot(snapshot)
    """

    def __init__(self, state_dir: str | Path | None = None):
        """
        Initialize the store.

        Args:
            state_dir: Directory for snapshot files. Defaults to STATE_DIR.
        """
        self.state_dir = Path(state_dir) if state_dir is not None else STATE_DIR

    def _path_for(self, session_id: str) -> Path:
        safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", session_id)
        return self.state_dir / f"{safe_id}.json"

    def _read(self, path: Path) -> SessionSnapshot:
        return SessionSnapshot.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, snapshot: SessionSnapshot) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self._path_for(snapshot.session_id)
        # Atomic replace
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(path)

    async def load_snapshot(self, session_id: str) -> SessionSnapshot:
        path = self._path_for(session_id)
        if not await asyncio.to_thread(path.exists):
            logger.info(f"No saved state for session {session_id}, creating a new one")
            snapshot = SessionSnapshot(session_id=session_id)
            await self.save_snapshot(snapshot)
            return snapshot

        return await asyncio.to_thread(self._read, path)

    async def save_snapshot(self, snapshot: SessionSnapshot) -> None:
        await asyncio.to_thread(self._write, snapshot)

    def exists(self, session_id: str) -> bool:
        return self._path_for(session_id).exists()
