"""Shared chat types: messages, tool calls and requests."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolChoice(str, Enum):
    AUTO = "auto"
    NONE = "none"
    REQUIRED = "required"


@dataclass
class ToolCall:
    """A tool call embedded in a chat message."""

    name: str
    arguments: Any = field(default_factory=dict)
    id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "arguments": self.arguments, "id": self.id}


@dataclass
class ChatMessage:
    """A single chat message.

    ``tool_calls`` is always a list (possibly empty) so the serialised shape
    does not depend on whether the model called a tool.
    """

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_plan: str | None = None
    # Extra keys carried through to the template (name, tool_call_id, ...)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Canonical key-ordered form: role, content, tool_calls, tool_plan."""
        return {
            "role": self.role.value,
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "tool_plan": self.tool_plan,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_template_dict(self) -> dict[str, Any]:
        """Form handed to Jinja chat templates (OpenAI message shape)."""
        msg: dict[str, Any] = {**self.extra, "role": self.role.value, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "type": "function",
                    "id": tc.id,
                    "function": {"name": tc.name, "arguments": tc.arguments},
                }
                for tc in self.tool_calls
            ]
        if self.tool_plan is not None:
            msg["tool_plan"] = self.tool_plan
        return msg


@dataclass
class ChatRequest:
    """A decoded chat request with every optional field defaulted."""

    messages: list[ChatMessage]
    tools: list[dict[str, Any]] = field(default_factory=list)
    tool_choice: ToolChoice = ToolChoice.AUTO
    parallel_tool_calls: bool = False
    stream: bool = False

    def tool_names(self) -> list[str]:
        names = []
        for tool in self.tools:
            func = tool.get("function", tool)
            name = func.get("name") if isinstance(func, dict) else None
            if isinstance(name, str):
                names.append(name)
        return names
