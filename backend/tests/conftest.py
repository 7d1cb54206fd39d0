"""
Shared pytest fixtures for Taleforge backend tests.

This module provides:
- engine_settings: Phase layout and thresholds mirroring phases.yaml
- prompt_loader: Prompts with predictable text in a temporary directory
- world_state / memory / history_store: In-memory collaborators
- scripted_engine / make_machine: Deterministic engine and machine factory
- Custom markers for test categorization
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

# Add backend to path for imports
backend_path = Path(__file__).parent.parent
if str(backend_path) not in sys.path:
    sys.path.insert(0, str(backend_path))

from taleforge.config import EngineSettings  # noqa: E402
from taleforge.engine.history import HistoryStore  # noqa: E402
from taleforge.engine.memory import InMemoryMemoryStore  # noqa: E402
from taleforge.engine.phases import PhaseStateMachine  # noqa: E402
from taleforge.engine.world_state import InMemoryWorldStateStore  # noqa: E402
from taleforge.llm.prompt_loader import PromptLoader  # noqa: E402
from taleforge.models.phase import Phase  # noqa: E402
from tests.mocks.llm import ScriptedEngine  # noqa: E402
from tests.factories import build_settings  # noqa: E402


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line(
        "markers", "e2e: marks tests as end-to-end tests requiring real LLM"
    )


# =============================================================================
# Settings and Prompts
# =============================================================================


@pytest.fixture
def engine_settings() -> EngineSettings:
    """Default settings: all phases, 20 turns / 50k chars, keep 6."""
    return build_settings()


@pytest.fixture
def prompts_dir(tmp_path: Path) -> Path:
    """Prompt files with recognizable text.

    Non-self-contained phases carry a {context} placeholder.
    """
    root = tmp_path / "prompts"
    (root / "phases").mkdir(parents=True)
    (root / "compaction").mkdir()
    for phase in Phase:
        body = f"{phase.value.upper()} INSTRUCTIONS"
        if phase not in (Phase.SETUP, Phase.WORLD_GENERATION):
            body += "\n\n{context}"
        (root / "phases" / f"{phase.value}.txt").write_text(body)
    (root / "compaction" / "summarize.txt").write_text("SUMMARIZE THE EXCERPT")
    return root


@pytest.fixture
def prompt_loader(prompts_dir: Path) -> PromptLoader:
    return PromptLoader(prompts_dir)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def world_state() -> InMemoryWorldStateStore:
    return InMemoryWorldStateStore()


@pytest.fixture
def memory() -> InMemoryMemoryStore:
    return InMemoryMemoryStore()


@pytest.fixture
def history_store(engine_settings: EngineSettings) -> HistoryStore:
    return HistoryStore(engine_settings.history)


@pytest.fixture
def scripted_engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def make_machine(
    engine_settings: EngineSettings,
    world_state: InMemoryWorldStateStore,
    memory: InMemoryMemoryStore,
    prompt_loader: PromptLoader,
) -> Callable[..., PhaseStateMachine]:
    """Factory for a PhaseStateMachine around a scripted engine."""

    def _make(engine: ScriptedEngine, settings: EngineSettings | None = None):
        return PhaseStateMachine.create(
            settings=settings or engine_settings,
            engine=engine,
            world_state=world_state,
            memory=memory,
            prompts=prompt_loader,
        )

    return _make
