"""
Game API endpoints - Start sessions, stream turns and report phases
"""

import logging
import uuid

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from taleforge.config import load_settings
from taleforge.engine.memory import InMemoryMemoryStore
from taleforge.engine.phases import PhaseStateMachine
from taleforge.engine.world_state import JsonWorldStateStore
from taleforge.llm.client import LiteLLMEngine
from taleforge.models.phase import Phase

logger = logging.getLogger(__name__)

router = APIRouter()

# Known sessions (for prototype - would use Redis/DB in production)
game_sessions: set[str] = set()

_machine: PhaseStateMachine | None = None


def get_machine() -> PhaseStateMachine:
    """Get the process-wide state machine, building it on first use."""
    global _machine
    if _machine is None:
        settings = load_settings()
        _machine = PhaseStateMachine.create(
            settings=settings,
            engine=LiteLLMEngine(
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
                timeout=settings.timeout_seconds,
            ),
            world_state=JsonWorldStateStore(),
            memory=InMemoryMemoryStore(),
        )
    return _machine


def set_machine(machine: PhaseStateMachine | None) -> None:
    """Replace the process-wide state machine (used by tests)."""
    global _machine
    _machine = machine


class NewGameResponse(BaseModel):
    """Response after starting a new game"""

    session_id: str
    phase: Phase


class TurnRequest(BaseModel):
    """A player's input for an existing session"""

    session_id: str
    input: str = Field(min_length=1)


class PhaseResponse(BaseModel):
    """Current phase of a session"""

    session_id: str
    phase: Phase


@router.post("/new", response_model=NewGameResponse)
async def new_game():
    """Start a new game session"""
    machine = get_machine()
    session_id = str(uuid.uuid4())
    phase = await machine.current_phase(session_id)
    game_sessions.add(session_id)
    logger.info(f"Started session {session_id} in {phase.value}")
    return NewGameResponse(session_id=session_id, phase=phase)


@router.post("/turn")
async def play_turn(request: TurnRequest):
    """Stream the narrative for one player turn as plain text"""
    if request.session_id not in game_sessions:
        raise HTTPException(status_code=404, detail="Game session not found")

    machine = get_machine()
    return StreamingResponse(
        machine.run_turn(request.session_id, request.input),
        media_type="text/plain; charset=utf-8",
    )


@router.get("/phase/{session_id}", response_model=PhaseResponse)
async def get_phase(session_id: str):
    """Get the session's current phase"""
    if session_id not in game_sessions:
        raise HTTPException(status_code=404, detail="Game session not found")

    phase = await get_machine().current_phase(session_id)
    return PhaseResponse(session_id=session_id, phase=phase)


@router.delete("/{session_id}")
async def end_game(session_id: str):
    """Forget a session's conversation histories"""
    if session_id not in game_sessions:
        raise HTTPException(status_code=404, detail="Game session not found")

    get_machine().drop_session(session_id)
    game_sessions.discard(session_id)
    return {"session_id": session_id, "ended": True}
