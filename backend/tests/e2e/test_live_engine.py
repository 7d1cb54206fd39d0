"""End-to-end tests for LiteLLMEngine and the phase state machine with real LLM calls.

These tests verify that the provider accepts the engine's requests: streamed
tool rounds, one-token probes and tool-free summary requests. They are
marked as slow and e2e, so they are skipped by default in CI.

Run these tests with:
    pytest tests/e2e/test_live_engine.py -v -m e2e

Prerequisites:
    - Set GEMINI_API_KEY (or configure LLM_PROVIDER and its key)
    - Have network access to the LLM provider
"""

from __future__ import annotations

import os

import pytest

from taleforge.engine.errors import ToolSequencingError
from taleforge.engine.phases import PhaseStateMachine
from taleforge.llm.client import LiteLLMEngine, get_api_key_env, get_provider
from taleforge.models.phase import Phase
from taleforge.models.session import SessionSnapshot

PROVIDER_KEY = get_api_key_env()

# Skip all tests in this module if the configured provider has no API key
pytestmark = [
    pytest.mark.slow,
    pytest.mark.e2e,
    pytest.mark.skipif(
        PROVIDER_KEY is not None and not os.environ.get(PROVIDER_KEY),
        reason=f"{PROVIDER_KEY} not set for LLM_PROVIDER={get_provider()}",
    ),
]


@pytest.fixture
def live_engine() -> LiteLLMEngine:
    return LiteLLMEngine(temperature=0.3, max_tokens=512)


class TestLiveEngine:
    """Requests against the configured provider."""

    @pytest.mark.asyncio
    async def test_probe_accepts_valid_conversation(self, live_engine) -> None:
        await live_engine.probe(
            [
                {"role": "system", "content": "You narrate a short adventure."},
                {"role": "user", "content": "I wake up."},
            ],
            [],
        )

    @pytest.mark.asyncio
    async def test_probe_rejects_orphan_tool_result(self, live_engine) -> None:
        """Providers refuse a tool result with no preceding tool call."""
        with pytest.raises(ToolSequencingError):
            await live_engine.probe(
                [
                    {"role": "system", "content": "You narrate a short adventure."},
                    {"role": "user", "content": "I wake up."},
                    {"role": "tool", "tool_call_id": "call_missing", "content": "{}"},
                ],
                [],
            )

    @pytest.mark.asyncio
    async def test_complete_returns_text(self, live_engine) -> None:
        reply = await live_engine.complete(
            [
                {"role": "system", "content": "Summarize in one sentence."},
                {"role": "user", "content": "PLAYER: I open the door.\nGAME MASTER: It creaks."},
            ]
        )
        assert reply.text.strip()


class TestLiveTurn:
    """A full turn through the state machine."""

    @pytest.mark.asyncio
    async def test_exploration_turn(
        self, engine_settings, live_engine, world_state, memory
    ) -> None:
        await world_state.save_snapshot(
            SessionSnapshot(session_id="live", phase=Phase.EXPLORATION.value)
        )
        machine = PhaseStateMachine.create(
            engine_settings, live_engine, world_state, memory
        )

        text = "".join([f async for f in machine.run_turn("live", "I look around the harbor.")])

        assert text.strip()
        assert len(machine.history.snapshot("live", Phase.EXPLORATION)) >= 3
