"""
Protocol definitions for the orchestration engine's collaborators.

The engine never talks to a concrete LLM provider, database or prompt
directory directly. Each collaborator is described here as a Protocol so
tests can inject scripted fakes and deployments can swap implementations.

Component Flow:
    Player Input -> PhaseStateMachine -> ContextAssembler -> ContextPackage
                          |                     |
                          |              WorldStateStore / MemoryStore
                          v
                     TurnExecutor -> GenerationEngine (stream, tools)
                          |
                          v
                     HistoryStore <- HistoryCompactor -> MemoryStore
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from taleforge.models.phase import Phase
    from taleforge.models.session import SessionSnapshot
    from taleforge.models.turn import ToolInvocation


@dataclass(frozen=True)
class TextFragment:
    """A piece of streamed narrative text."""

    text: str


@dataclass(frozen=True)
class EngineReply:
    """A complete, non-streamed engine response.

    Attributes:
        text: Final assistant text
        tool_invocations: Tools the engine asked to run
    """

    text: str
    tool_invocations: tuple["ToolInvocation", ...] = ()


@dataclass(frozen=True)
class MemoryFact:
    """A long-term memory search hit.

    Attributes:
        key: Archive key of the stored item
        content: Searchable text of the item
        score: Relevance to the query (higher is better)
        metadata: Arbitrary metadata stored with the item
    """

    key: str
    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EntityMatch:
    """An entity reference resolved to an established fact.

    Attributes:
        name: Name as referenced in the conversation
        fact: Short established fact about the entity
        relevance: Ranking weight in [0, 1]; low-relevance entries are
                   dropped first when the context budget is tight
    """

    name: str
    fact: str
    relevance: float


@runtime_checkable
class GenerationEngine(Protocol):
    """Protocol for the external text-generation engine.

    Implementations translate OpenAI-style message dicts and tool schemas
    into provider calls. Errors are reported as EngineError subclasses;
    a conversation rejected for tool sequencing raises ToolSequencingError.
    """

    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator["TextFragment | ToolInvocation"]:
        """Stream one engine round.

        Text fragments are yielded as they arrive. Tool invocations are
        yielded once fully assembled, after the text of the round.

        Args:
            messages: Conversation to submit
            tools: Tool schemas the engine may call

        Returns:
            Async iterator of TextFragment and ToolInvocation items
        """
        ...

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> EngineReply:
        """Run a single non-streaming request.

        Args:
            messages: Conversation to submit
            tools: Optional tool schemas. None sends a tool-free request.

        Returns:
            The engine's reply
        """
        ...

    async def probe(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> None:
        """Check that the engine accepts a conversation without generating a turn.

        Raises:
            ToolSequencingError: If the tool-result ordering is rejected
            EngineError: For any other failure
        """
        ...


@runtime_checkable
class WorldStateStore(Protocol):
    """Protocol for session world state.

    load_snapshot must create and persist a fresh snapshot for an unknown
    session rather than fail.
    """

    async def load_snapshot(self, session_id: str) -> "SessionSnapshot":
        ...

    async def save_snapshot(self, snapshot: "SessionSnapshot") -> None:
        ...


@runtime_checkable
class MemoryStore(Protocol):
    """Protocol for long-term memory (archived turns, established facts)."""

    async def search(
        self,
        query: str,
        filters: dict[str, Any] | None = None,
        limit: int = 5,
    ) -> list[MemoryFact]:
        """Search stored items.

        Args:
            query: Free-text query
            filters: Metadata key/value pairs every hit must match
            limit: Maximum number of hits

        Returns:
            Hits sorted by descending score
        """
        ...

    async def archive(self, key: str, payload: dict[str, Any]) -> None:
        """Store an item under a key, replacing any previous item."""
        ...


@runtime_checkable
class EntitySearch(Protocol):
    """Protocol for finding and resolving entity references in text."""

    async def find_entities(
        self,
        session_id: str,
        text: str,
        snapshot: "SessionSnapshot",
    ) -> tuple[list[EntityMatch], set[str]]:
        """Extract entity references from text and resolve them.

        Args:
            session_id: Session the text belongs to
            text: Recent conversation text and the player's input
            snapshot: Current world state

        Returns:
            Tuple of (resolved matches, names that could not be resolved)
        """
        ...


@runtime_checkable
class InstructionLoader(Protocol):
    """Protocol for loading a phase's base instructions."""

    def load_instructions(self, phase: "Phase") -> str:
        ...
