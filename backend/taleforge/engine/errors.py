"""
Exception hierarchy for the orchestration engine.
"""


class TaleforgeError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(TaleforgeError):
    """Phase layout or thresholds are invalid."""


class HistoryInvariantError(TaleforgeError):
    """An operation would leave a conversation history structurally invalid.

    Raised by the history store before any mutation, so the history is
    unchanged when the caller sees it.
    """


class EngineError(TaleforgeError):
    """The generation engine failed to produce a response."""


class ToolSequencingError(EngineError):
    """The engine rejected the conversation because a tool result does not
    follow the assistant turn that requested it."""


class EngineTimeoutError(EngineError):
    """The engine did not answer within the configured timeout."""


class ToolError(TaleforgeError):
    """A tool was unknown or rejected its arguments."""
