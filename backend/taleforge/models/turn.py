"""
Conversation turn models.

Turns are immutable. A history is rewritten by building a new tuple of
turns, never by editing one in place.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class TurnRole(str, Enum):
    """Author of a turn."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolInvocation(BaseModel):
    """A tool call requested by the generation engine.

    Attributes:
        id: Engine-assigned call identifier, echoed by the tool-result turn
        name: Registered tool name
        arguments: Decoded JSON arguments
    """

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments, ensure_ascii=False),
            },
        }


class Turn(BaseModel):
    """A single message in a conversation history.

    Attributes:
        role: Who authored the turn
        content: Text content (may be empty for assistant turns that only
                 invoke tools)
        tool_invocations: Tool calls requested by an assistant turn
        tool_call_ref: Invocation id a tool-result turn answers
        tool_name: Name of the tool that produced a tool-result turn
    """

    role: TurnRole
    content: str = ""
    tool_invocations: tuple[ToolInvocation, ...] = ()
    tool_call_ref: str | None = None
    tool_name: str | None = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_role_fields(self) -> "Turn":
        if self.tool_invocations and self.role != TurnRole.ASSISTANT:
            raise ValueError("only assistant turns may carry tool invocations")
        if self.role == TurnRole.TOOL and not self.tool_call_ref:
            raise ValueError("tool-result turns require a tool_call_ref")
        if self.tool_call_ref is not None and self.role != TurnRole.TOOL:
            raise ValueError("tool_call_ref is only valid on tool-result turns")
        return self

    # Constructors used throughout the engine

    @classmethod
    def system(cls, content: str) -> "Turn":
        return cls(role=TurnRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role=TurnRole.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str = "", invocations: tuple[ToolInvocation, ...] | list = ()
    ) -> "Turn":
        return cls(
            role=TurnRole.ASSISTANT, content=content, tool_invocations=tuple(invocations)
        )

    @classmethod
    def tool_result(cls, call_id: str, content: str, tool_name: str | None = None) -> "Turn":
        return cls(
            role=TurnRole.TOOL,
            content=content,
            tool_call_ref=call_id,
            tool_name=tool_name,
        )

    @property
    def char_count(self) -> int:
        """Characters counted against the history ceiling."""
        total = len(self.content)
        for invocation in self.tool_invocations:
            total += len(invocation.name) + len(json.dumps(invocation.arguments))
        return total

    def invocation_ids(self) -> set[str]:
        return {invocation.id for invocation in self.tool_invocations}

    def to_message(self) -> dict[str, Any]:
        """Render as an OpenAI-style chat message (the shape LiteLLM expects)."""
        if self.role == TurnRole.ASSISTANT and self.tool_invocations:
            return {
                "role": "assistant",
                "content": self.content or None,
                "tool_calls": [inv.to_message() for inv in self.tool_invocations],
            }
        if self.role == TurnRole.TOOL:
            message: dict[str, Any] = {
                "role": "tool",
                "tool_call_id": self.tool_call_ref,
                "content": self.content,
            }
            if self.tool_name:
                message["name"] = self.tool_name
            return message
        return {"role": self.role.value, "content": self.content}
