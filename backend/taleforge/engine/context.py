"""
Context assembler - gathers world context for a single turn.

The package is built from three sources:
    (a) entity references in the last few turns and the player's input,
        resolved against world state and long-term memory
    (b) the session snapshot (location, present characters, event log)
    (c) bounds: a capped event list and a character budget for entity facts

Self-contained phases (setup, world generation) get an empty package, and
any failure while gathering degrades to an empty package rather than
blocking the turn.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Sequence

from taleforge.config import ContextLimits, EngineSettings
from taleforge.engine.protocols import EntityMatch
from taleforge.models.context import ContextPackage
from taleforge.models.phase import Phase
from taleforge.models.turn import Turn, TurnRole

if TYPE_CHECKING:
    from taleforge.engine.protocols import EntitySearch, MemoryStore, WorldStateStore
    from taleforge.models.session import SessionSnapshot

logger = logging.getLogger(__name__)


# =============================================================================
# Entity extraction
# =============================================================================

_CANDIDATE = re.compile(
    r"(?P<article>\bthe\s+)?(?P<name>\b[A-Z][A-Za-z'-]*(?:[ \t]+[A-Z][A-Za-z'-]*)*)"
)

# Capitalized words that start sentences or commands rather than name things
_STOPWORDS = {
    "I", "I'm", "I'll", "I've", "I'd", "You", "He", "She", "It", "We", "They",
    "The", "A", "An", "This", "That", "These", "Those", "My", "Your", "His",
    "Her", "Its", "Our", "Their", "What", "Where", "When", "Why", "How", "Who",
    "Which", "Is", "Are", "Was", "Were", "Do", "Does", "Did", "Can", "Could",
    "Would", "Should", "Will", "Shall", "May", "Might", "Must", "Let", "Please",
    "Yes", "No", "Ok", "Okay", "Then", "And", "But", "Or", "So", "If", "As",
    "At", "In", "On", "With", "After", "Before", "Now", "There", "Here",
    "Tell", "Ask", "Go", "Look", "Take", "Attack", "Talk", "Use", "Open",
    "Search", "Examine", "Give", "Show", "Find", "Follow", "Enter", "Leave",
}


def extract_entity_names(text: str) -> list[str]:
    """Pull likely proper-noun references out of free text.

    Capitalized word runs are candidates. Leading stopwords ("Tell",
    "The", "Where") are stripped, a preceding lowercase "the" is kept as
    part of the reference, and possessive "'s" is removed.

    Example:
        >>> extract_entity_names("Where is Mira? Ask the Warden about it.")
        ['Mira', 'the Warden']
    """
    names: list[str] = []
    seen: set[str] = set()
    for match in _CANDIDATE.finditer(text):
        words = match.group("name").split()
        stripped = False
        while words and words[0] in _STOPWORDS:
            words.pop(0)
            stripped = True
        if not words:
            continue
        if words[-1].endswith("'s"):
            words[-1] = words[-1][:-2]
        name = " ".join(word for word in words if word)
        if not name or name in _STOPWORDS:
            continue
        if match.group("article") and not stripped:
            name = f"the {name}"
        key = name.lower()
        if key not in seen:
            seen.add(key)
            names.append(name)
    return names


def _lookup_key(name: str) -> str:
    lowered = name.lower()
    return lowered[4:] if lowered.startswith("the ") else lowered


class MemoryEntitySearch:
    """Resolve extracted names against world state, then long-term memory.

    Names established in the snapshot (world entities, present characters,
    the current location) resolve with full relevance. Otherwise the best
    memory hit whose text contains the name is used, weighted by its score.
    """

    def __init__(self, memory: "MemoryStore", min_score: float = 0.5):
        self.memory = memory
        self.min_score = min_score

    async def find_entities(
        self,
        session_id: str,
        text: str,
        snapshot: "SessionSnapshot",
    ) -> tuple[list[EntityMatch], set[str]]:
        known: dict[str, str] = {
            _lookup_key(name): fact for name, fact in snapshot.world_entities.items()
        }
        for npc in snapshot.present_npcs:
            known.setdefault(
                _lookup_key(npc),
                f"Present at {snapshot.current_location or 'the current location'}.",
            )
        if snapshot.current_location:
            known.setdefault(
                _lookup_key(snapshot.current_location),
                snapshot.location_description or "The player's current location.",
            )

        matches: list[EntityMatch] = []
        missing: set[str] = set()
        for name in extract_entity_names(text):
            key = _lookup_key(name)
            if key in known:
                matches.append(EntityMatch(name=name, fact=known[key], relevance=1.0))
                continue

            hits = await self.memory.search(key, {"session_id": session_id}, limit=3)
            hit = next(
                (h for h in hits if h.score >= self.min_score and key in h.content.lower()),
                None,
            )
            if hit is not None:
                matches.append(
                    EntityMatch(name=name, fact=hit.content, relevance=min(hit.score, 1.0) * 0.9)
                )
            else:
                missing.add(name)
        return matches, missing


# =============================================================================
# Assembler
# =============================================================================


def fit_entity_budget(matches: Sequence[EntityMatch], budget: int) -> dict[str, str]:
    """Keep the most relevant entities whose facts fit in `budget` characters.

    Entries are dropped lowest-relevance first; kept facts are never
    shortened.
    """
    ranked = sorted(matches, key=lambda m: m.relevance, reverse=True)
    total = sum(len(m.name) + len(m.fact) for m in ranked)
    while ranked and total > budget:
        dropped = ranked.pop()
        total -= len(dropped.name) + len(dropped.fact)
        logger.debug(f"Context budget dropped entity '{dropped.name}'")
    return {match.name: match.fact for match in ranked}


def _scene_summary(snapshot: "SessionSnapshot") -> str:
    parts: list[str] = []
    if snapshot.current_location:
        location = f"Location: {snapshot.current_location}."
        if snapshot.location_description:
            location += f" {snapshot.location_description}"
        parts.append(location)
    if snapshot.present_npcs:
        parts.append(f"Present: {', '.join(snapshot.present_npcs)}.")
    if snapshot.current_context:
        parts.append(f"Notes: {snapshot.current_context}")
    if snapshot.adventure_summary:
        parts.append(f"Story so far: {snapshot.adventure_summary}")
    return "\n".join(parts)


class ContextAssembler:
    """Builds the ContextPackage for one turn.

    Example:
        >>> assembler = ContextAssembler(settings, world_state, memory)
        >>> package = await assembler.build_context(
        ...     "s1", Phase.EXPLORATION, recent_turns, "Ask Mira about the key"
        ... )
        >>> package.relevant_entities
        {'Mira': 'The lighthouse keeper.'}
    """

    def __init__(
        self,
        settings: EngineSettings,
        world_state: "WorldStateStore",
        memory: "MemoryStore",
        entity_search: "EntitySearch | None" = None,
    ):
        """Initialize the assembler.

        Args:
            settings: Engine settings (self-contained flags and context limits)
            world_state: Source of the session snapshot
            memory: Long-term memory, used by the default entity search
            entity_search: Override for entity extraction and resolution
        """
        self.settings = settings
        self.limits: ContextLimits = settings.context
        self.world_state = world_state
        self.entity_search = entity_search or MemoryEntitySearch(memory)

    async def build_context(
        self,
        session_id: str,
        phase: Phase,
        recent_turns: Sequence[Turn],
        player_input: str,
    ) -> ContextPackage:
        """Gather context for a turn.

        Args:
            session_id: Session the turn belongs to
            phase: Phase the turn executes in
            recent_turns: Current history of that phase
            player_input: The new player input

        Returns:
            The package; empty for self-contained phases or on any failure
        """
        if self.settings.is_self_contained(phase):
            logger.debug(f"[{session_id}] {phase.value} is self-contained, skipping context")
            return ContextPackage.empty()

        try:
            return await self._gather(session_id, recent_turns, player_input)
        except Exception as e:
            logger.warning(
                f"[{session_id}] Context gathering failed, continuing without it: "
                f"{type(e).__name__}: {e}"
            )
            return ContextPackage.empty()

    async def _gather(
        self, session_id: str, recent_turns: Sequence[Turn], player_input: str
    ) -> ContextPackage:
        snapshot = await self.world_state.load_snapshot(session_id)

        conversational = [
            turn.content
            for turn in recent_turns
            if turn.role in (TurnRole.USER, TurnRole.ASSISTANT) and turn.content
        ]
        window = conversational[-self.limits.recent_turns:] if self.limits.recent_turns else []
        text = "\n".join(window + [player_input])

        matches, missing = await self.entity_search.find_entities(session_id, text, snapshot)
        entities = fit_entity_budget(matches, self.limits.entity_char_budget)

        cap = self.limits.max_recent_events
        events = snapshot.recent_events[-cap:] if cap else []

        recommendations = [
            f"'{name}' has not been established yet. Introduce it deliberately "
            f"or treat it as the player's speculation."
            for name in sorted(missing)
        ]
        if not snapshot.current_location:
            recommendations.append(
                "No location is set. Establish where the player is before describing the scene."
            )

        package = ContextPackage(
            scene_summary=_scene_summary(snapshot),
            relevant_entities=entities,
            missing_entities=frozenset(missing),
            recent_events=tuple(f"Turn {e.turn}: {e.description}" for e in events),
            recommendations=tuple(recommendations),
        )
        logger.debug(
            f"[{session_id}] Context: {len(entities)} entities, {len(missing)} missing, "
            f"{len(package.recent_events)} events"
        )
        return package
