"""
Tool registries - the per-phase tool surface exposed to the generation engine.

Registries are built once at startup from the phase configuration and a
catalog of tool descriptors. There is no runtime discovery: a phase sees
exactly the tools its configuration names.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from taleforge.engine.errors import ConfigurationError, ToolError
from taleforge.models.phase import Phase

if TYPE_CHECKING:
    from taleforge.config import EngineSettings
    from taleforge.engine.protocols import MemoryStore, WorldStateStore

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Union[Any, Awaitable[Any]]]


@dataclass
class ToolContext:
    """What a tool handler can reach while it runs.

    Attributes:
        session_id: Session the tool runs for
        phase: Phase the turn is executing in
        world_state: Session world state
        memory: Long-term memory
        settings: Engine settings (phase layout)
    """

    session_id: str
    phase: Phase
    world_state: "WorldStateStore"
    memory: "MemoryStore"
    settings: "EngineSettings"


@dataclass(frozen=True)
class ToolDescriptor:
    """A tool the engine may invoke.

    Attributes:
        name: Name the engine calls the tool by
        description: What the tool does, shown to the engine
        parameters: JSON schema of the arguments object
        handler: Callable taking (context, **arguments); may be async
    """

    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler

    def schema(self) -> dict[str, Any]:
        """OpenAI-style function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ToolRegistry:
    """Immutable tool set for one phase."""

    phase: Phase
    tools: tuple[ToolDescriptor, ...] = field(default_factory=tuple)

    def names(self) -> list[str]:
        return [tool.name for tool in self.tools]

    def get(self, name: str) -> ToolDescriptor | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self.tools]

    async def invoke(
        self, name: str, arguments: dict[str, Any], context: ToolContext
    ) -> str:
        """Run a tool and return its result as the tool-result payload.

        Failures never propagate: unknown tools, bad arguments and handler
        exceptions become {"ok": false, "error": ...} payloads so the
        engine can react to them on its next round.

        Args:
            name: Tool name requested by the engine
            arguments: Decoded arguments
            context: Session context for the handler

        Returns:
            JSON text for the tool-result turn
        """
        tool = self.get(name)
        if tool is None:
            logger.warning(f"Engine requested unknown tool '{name}' in {self.phase.value}")
            return _error_payload(f"Unknown tool '{name}' in phase {self.phase.value}")

        try:
            result = tool.handler(context, **arguments)
            if inspect.isawaitable(result):
                result = await result
        except TypeError as e:
            logger.warning(f"Bad arguments for tool '{name}': {e}")
            return _error_payload(f"Invalid arguments for '{name}': {e}")
        except ToolError as e:
            logger.info(f"Tool '{name}' rejected call: {e}")
            return _error_payload(str(e))
        except Exception as e:
            logger.error(f"Tool '{name}' failed: {type(e).__name__}: {e}")
            return _error_payload(f"{type(e).__name__}: {e}")

        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False, default=str)


def _error_payload(message: str) -> str:
    return json.dumps({"ok": False, "error": message})


def build_tool_registries(
    settings: "EngineSettings",
    catalog: dict[str, ToolDescriptor],
) -> dict[Phase, ToolRegistry]:
    """Build the static Phase -> ToolRegistry mapping.

    Args:
        settings: Engine settings listing each phase's tool names
        catalog: All available tools by name

    Returns:
        One registry per configured phase

    Raises:
        ConfigurationError: If a phase names a tool missing from the catalog
    """
    registries: dict[Phase, ToolRegistry] = {}
    for definition in settings.phases:
        missing = [name for name in definition.tools if name not in catalog]
        if missing:
            raise ConfigurationError(
                f"Phase '{definition.name.value}' references unknown tools: {missing}"
            )
        registries[definition.name] = ToolRegistry(
            phase=definition.name,
            tools=tuple(catalog[name] for name in definition.tools),
        )
        logger.debug(
            f"Registry for {definition.name.value}: {registries[definition.name].names()}"
        )
    return registries
