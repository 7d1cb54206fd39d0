"""
LLM client - Provider-agnostic generation engine using LiteLLM
"""

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator

from dotenv import load_dotenv

from taleforge.engine.errors import EngineError, EngineTimeoutError, ToolSequencingError
from taleforge.engine.protocols import EngineReply, TextFragment
from taleforge.models.turn import ToolInvocation

# Load environment variables
load_dotenv()

# Configure logging
logger = logging.getLogger(__name__)

# Provider error texts that mean "a tool result does not follow its tool call"
_TOOL_SEQUENCING_MARKERS = (
    "must be a response to a preceeding message",
    "must be a response to a preceding message",
    "tool_use_id",
    "tool_result",
    "function response turn comes immediately after a function call",
)


def get_provider() -> str:
    """Get configured LLM provider"""
    return os.getenv("LLM_PROVIDER", "gemini")


def get_model() -> str:
    """Get configured model name"""
    return os.getenv("LLM_MODEL", "gemini-3-pro-preview")


def get_model_string() -> str:
    """Get the full model string for LiteLLM"""
    provider = get_provider()
    model = get_model()

    # LiteLLM uses prefixed model names for some providers
    if provider == "gemini":
        return f"gemini/{model}"
    elif provider == "anthropic":
        return f"anthropic/{model}"
    elif provider == "ollama":
        return f"ollama/{model}"
    else:
        # OpenAI doesn't need a prefix
        return model


_API_KEY_ENV = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def get_api_key_env() -> str | None:
    """Get the environment variable holding the configured provider's API key

    Returns None for providers that need no key (ollama).
    """
    return _API_KEY_ENV.get(get_provider())


def classify_error(error: Exception) -> EngineError:
    """Map a provider exception onto the engine's error hierarchy."""
    if isinstance(error, EngineError):
        return error

    message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in _TOOL_SEQUENCING_MARKERS):
        return ToolSequencingError(message)
    if isinstance(error, asyncio.TimeoutError) or "timeout" in type(error).__name__.lower():
        return EngineTimeoutError(f"{type(error).__name__}: {message}")
    return EngineError(f"{type(error).__name__}: {message}")


def _decode_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Tool arguments are not valid JSON: {raw[:200]}")
        return {}
    return decoded if isinstance(decoded, dict) else {"value": decoded}


class LiteLLMEngine:
    """Generation engine backed by litellm.acompletion.

    Example:
        >>> engine = LiteLLMEngine(temperature=0.8)
        >>> async for item in engine.stream(messages, tools):
        ...     if isinstance(item, TextFragment):
        ...         print(item.text, end="")
    """

    def __init__(
        self,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        timeout: float = 60.0,
    ):
        """
        Initialize the engine.

        Args:
            model: Optional LiteLLM model string override
            temperature: Creativity (0-1)
            max_tokens: Maximum response length per round
            timeout: Seconds before a request is abandoned
        """
        self.model = model or get_model_string()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    def _kwargs(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        **overrides: Any,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout": self.timeout,
        }
        # Providers reject an empty tools list
        if tools:
            kwargs["tools"] = tools
        kwargs.update(overrides)
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> EngineReply:
        """
        Get a single completion.

        Args:
            messages: List of OpenAI-style message dicts
            tools: Optional tool schemas; None sends a tool-free request

        Returns:
            EngineReply with the text and any requested tool invocations
        """
        import litellm

        # Configure API keys from environment
        _configure_api_keys()

        logger.info(
            f"LLM Request: model={self.model}, messages={len(messages)}, "
            f"tools={len(tools or [])}, max_tokens={self.max_tokens}"
        )

        try:
            response = await litellm.acompletion(**self._kwargs(messages, tools))
        except Exception as e:
            logger.error(f"LLM Error: {type(e).__name__}: {e}")
            raise classify_error(e) from e

        choice = response.choices[0]
        content = choice.message.content or ""
        finish_reason = getattr(choice, "finish_reason", "unknown")

        logger.info(
            f"LLM Response: finish_reason={finish_reason}, content_length={len(content)}"
        )
        if finish_reason == "length":
            logger.warning(
                f"Response TRUNCATED due to max_tokens limit ({self.max_tokens}). "
                f"Consider increasing LLM_MAX_TOKENS."
            )

        invocations = tuple(
            ToolInvocation(
                id=call.id,
                name=call.function.name,
                arguments=_decode_arguments(call.function.arguments),
            )
            for call in (getattr(choice.message, "tool_calls", None) or [])
        )
        return EngineReply(text=content, tool_invocations=invocations)

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[TextFragment | ToolInvocation]:
        """
        Stream one round of generation.

        Text deltas are yielded immediately. Tool-call deltas arrive in
        pieces keyed by index and are yielded as complete invocations once
        the provider stream ends.

        Args:
            messages: List of OpenAI-style message dicts
            tools: Tool schemas the model may call

        Yields:
            TextFragment for text, ToolInvocation for each requested tool
        """
        import litellm

        _configure_api_keys()

        logger.info(
            f"LLM Stream: model={self.model}, messages={len(messages)}, tools={len(tools)}"
        )

        pending: dict[int, dict[str, str]] = {}
        try:
            response = await litellm.acompletion(**self._kwargs(messages, tools, stream=True))
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if getattr(delta, "content", None):
                    yield TextFragment(delta.content)
                for call in getattr(delta, "tool_calls", None) or []:
                    slot = pending.setdefault(
                        call.index or 0, {"id": "", "name": "", "arguments": ""}
                    )
                    if call.id:
                        slot["id"] = call.id
                    if call.function is not None:
                        if call.function.name:
                            slot["name"] = call.function.name
                        if call.function.arguments:
                            slot["arguments"] += call.function.arguments
        except Exception as e:
            logger.error(f"LLM Error: {type(e).__name__}: {e}")
            raise classify_error(e) from e

        for index in sorted(pending):
            slot = pending[index]
            yield ToolInvocation(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                arguments=_decode_arguments(slot["arguments"]),
            )

    async def probe(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> None:
        """
        Submit a conversation with a one-token budget to check it is accepted.

        Tools are declared so the provider validates tool-call ordering,
        but tool_choice="none" keeps the probe from triggering any calls.

        Raises:
            ToolSequencingError: If the provider rejects the tool ordering
            EngineError: For any other failure
        """
        import litellm

        _configure_api_keys()

        overrides: dict[str, Any] = {"max_tokens": 1, "drop_params": True}
        if tools:
            overrides["tool_choice"] = "none"

        logger.debug(f"LLM Probe: model={self.model}, messages={len(messages)}")
        try:
            await litellm.acompletion(**self._kwargs(messages, tools, **overrides))
        except Exception as e:
            logger.warning(f"LLM Probe failed: {type(e).__name__}: {e}")
            raise classify_error(e) from e


def _configure_api_keys():
    """Configure API keys for LiteLLM from environment"""
    import litellm

    provider = get_provider()
    logger.debug(f"Configuring API keys for provider: {provider}")

    if provider == "gemini":
        api_key = os.getenv("GEMINI_API_KEY")
        if api_key:
            os.environ["GEMINI_API_KEY"] = api_key
            logger.debug(f"GEMINI_API_KEY configured (length: {len(api_key)})")
        else:
            logger.warning("GEMINI_API_KEY not found in environment")

    elif provider == "openai":
        api_key = os.getenv("OPENAI_API_KEY")
        if api_key:
            litellm.api_key = api_key
            logger.debug(f"OPENAI_API_KEY configured (length: {len(api_key)})")
        else:
            logger.warning("OPENAI_API_KEY not found in environment")

    elif provider == "anthropic":
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if api_key:
            os.environ["ANTHROPIC_API_KEY"] = api_key
            logger.debug(f"ANTHROPIC_API_KEY configured (length: {len(api_key)})")
        else:
            logger.warning("ANTHROPIC_API_KEY not found in environment")

    elif provider == "ollama":
        base_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
        os.environ["OLLAMA_API_BASE"] = base_url
        logger.debug(f"OLLAMA_API_BASE configured: {base_url}")
