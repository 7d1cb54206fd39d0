"""
Engine configuration - phase layout from YAML, thresholds from the environment
"""

import logging
import os
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from taleforge.engine.errors import ConfigurationError
from taleforge.models.phase import Phase

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_PHASES_FILE = Path(__file__).parent / "phases.yaml"


class HistoryLimits(BaseModel):
    """Ceilings that trigger compaction of a phase history.

    Attributes:
        max_turns: Maximum number of turns in a live history
        max_chars: Maximum total content characters in a live history
        keep_recent: Turns preserved verbatim at the tail when compacting
    """

    max_turns: int = Field(default=20, ge=3)
    max_chars: int = Field(default=50_000, ge=1)
    keep_recent: int = Field(default=6, ge=1)

    @model_validator(mode="after")
    def check_keep_recent(self) -> "HistoryLimits":
        # Head system turn + summary turn + tail must fit under the ceiling
        if self.keep_recent > self.max_turns - 2:
            raise ValueError(
                f"keep_recent ({self.keep_recent}) must be at most max_turns - 2 "
                f"({self.max_turns - 2})"
            )
        return self


class ContextLimits(BaseModel):
    """Bounds on the per-turn context package.

    Attributes:
        recent_turns: How many recent user/assistant turns are scanned for
                      entity references
        max_recent_events: Cap on the event log carried into a turn
        entity_char_budget: Total characters allowed for entity facts
    """

    recent_turns: int = Field(default=3, ge=0)
    max_recent_events: int = Field(default=5, ge=0)
    entity_char_budget: int = Field(default=1500, ge=0)


class PhaseDefinition(BaseModel):
    """One configured phase.

    Attributes:
        name: The phase
        instructions: Prompt file under llm/prompts/phases/
        self_contained: Skip world-context gathering for this phase
        tools: Names of the tools the phase exposes
    """

    name: Phase
    instructions: str
    self_contained: bool = False
    tools: list[str] = Field(default_factory=list)


class EngineSettings(BaseModel):
    """Everything the orchestrator needs to know at startup."""

    phases: list[PhaseDefinition]
    default_phase: Phase = Phase.EXPLORATION
    history: HistoryLimits = Field(default_factory=HistoryLimits)
    context: ContextLimits = Field(default_factory=ContextLimits)
    max_tool_rounds: int = Field(default=8, ge=1)
    preflight_probe: bool = True
    temperature: float = 0.7
    max_tokens: int = 2048
    timeout_seconds: float = 60.0
    session_logging: bool = False

    @model_validator(mode="after")
    def check_phases(self) -> "EngineSettings":
        if not self.phases:
            raise ValueError("at least one phase must be configured")
        names = [definition.name for definition in self.phases]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate phase definitions: {[n.value for n in names]}")
        if self.default_phase not in names:
            raise ValueError(
                f"default phase '{self.default_phase.value}' is not configured"
            )
        return self

    @property
    def phase_order(self) -> list[Phase]:
        return [definition.name for definition in self.phases]

    @property
    def initial_phase(self) -> Phase:
        """Phase a new session starts in."""
        return self.phases[0].name

    def get_phase(self, phase: Phase) -> PhaseDefinition | None:
        for definition in self.phases:
            if definition.name == phase:
                return definition
        return None

    def is_self_contained(self, phase: Phase) -> bool:
        definition = self.get_phase(phase)
        return definition.self_contained if definition else False


def _env_int(name: str) -> int | None:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else None


def _env_float(name: str) -> float | None:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else None


def _env_bool(name: str) -> bool | None:
    value = os.getenv(name)
    if value in (None, ""):
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def _drop_none(values: dict) -> dict:
    return {key: value for key, value in values.items() if value is not None}


def load_settings(phases_file: str | Path | None = None) -> EngineSettings:
    """
    Load engine settings.

    The phase layout is read from YAML; numeric thresholds and switches can
    be overridden through environment variables.

    Args:
        phases_file: Path to the phase YAML. Defaults to TALEFORGE_PHASES_FILE
                     or the bundled phases.yaml.

    Returns:
        Validated EngineSettings

    Raises:
        ConfigurationError: If the file is missing or the values are invalid
    """
    path = Path(phases_file or os.getenv("TALEFORGE_PHASES_FILE") or DEFAULT_PHASES_FILE)
    if not path.exists():
        raise ConfigurationError(f"Phase configuration not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    try:
        history = _drop_none(
            {
                "max_turns": _env_int("HISTORY_MAX_TURNS"),
                "max_chars": _env_int("HISTORY_MAX_CHARS"),
                "keep_recent": _env_int("HISTORY_KEEP_RECENT"),
            }
        )
        context = _drop_none(
            {
                "recent_turns": _env_int("CONTEXT_RECENT_TURNS"),
                "max_recent_events": _env_int("CONTEXT_MAX_EVENTS"),
                "entity_char_budget": _env_int("CONTEXT_ENTITY_CHAR_BUDGET"),
            }
        )
        overrides = _drop_none(
            {
                "max_tool_rounds": _env_int("MAX_TOOL_ROUNDS"),
                "preflight_probe": _env_bool("PREFLIGHT_PROBE"),
                "temperature": _env_float("LLM_TEMPERATURE"),
                "max_tokens": _env_int("LLM_MAX_TOKENS"),
                "timeout_seconds": _env_float("LLM_TIMEOUT_SECONDS"),
                "session_logging": _env_bool("SESSION_LOGGING"),
            }
        )

        settings = EngineSettings(
            phases=data.get("phases", []),
            default_phase=data.get("default_phase", Phase.EXPLORATION.value),
            history={**data.get("history", {}), **history},
            context={**data.get("context", {}), **context},
            **{**data.get("engine", {}), **overrides},
        )
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(f"Invalid engine configuration in {path}: {e}") from e

    logger.info(
        f"Loaded {len(settings.phases)} phase(s) from {path}; "
        f"history ceiling={settings.history.max_turns} turns/"
        f"{settings.history.max_chars} chars"
    )
    return settings
