"""Decoding of the canonical (JSON) chat request payload.

Only ``messages`` is structurally required. Every optional field is decoded on
its own and falls back to its default when it is absent, null or malformed.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from hibiki.chat.types import ChatMessage, ChatRequest, Role, ToolCall, ToolChoice
from hibiki.errors import RequestError

logger = logging.getLogger(__name__)

# Message keys handled explicitly; anything else is passed through to templates.
_MESSAGE_KEYS = {"role", "content", "tool_calls", "tool_plan"}


def parse_chat_request(payload: str | bytes | dict[str, Any]) -> ChatRequest:
    """Decode a request payload into a :class:`ChatRequest`.

    Raises:
        RequestError: if the payload is not a JSON object or ``messages`` is
            missing, not a list, empty, or contains a message without a
            valid role.
    """
    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise RequestError(f"Request is not valid JSON: {e}") from e
    else:
        data = payload

    if not isinstance(data, dict):
        raise RequestError("Request must be a JSON object")

    raw_messages = data.get("messages")
    if raw_messages is None:
        raise RequestError("Request is missing 'messages'")
    if not isinstance(raw_messages, list):
        raise RequestError("'messages' must be a list")
    if not raw_messages:
        raise RequestError("'messages' must contain at least one message")

    messages = [_parse_message(i, m) for i, m in enumerate(raw_messages)]

    return ChatRequest(
        messages=messages,
        tools=_parse_tools(data.get("tools")),
        tool_choice=_parse_tool_choice(data.get("tool_choice")),
        parallel_tool_calls=_parse_flag(data, "parallel_tool_calls"),
        stream=_parse_flag(data, "stream"),
    )


def _parse_message(index: int, raw: Any) -> ChatMessage:
    if not isinstance(raw, dict):
        raise RequestError(f"messages[{index}] must be an object")
    try:
        role = Role(raw.get("role"))
    except ValueError:
        raise RequestError(f"messages[{index}] has invalid role: {raw.get('role')!r}") from None

    content = _content_text(index, raw.get("content"))
    tool_calls = _parse_tool_calls(index, raw.get("tool_calls"))

    tool_plan = raw.get("tool_plan")
    if tool_plan is not None and not isinstance(tool_plan, str):
        logger.warning("messages[%d].tool_plan is not a string, ignoring", index)
        tool_plan = None

    extra = {k: v for k, v in raw.items() if k not in _MESSAGE_KEYS}
    return ChatMessage(
        role=role, content=content, tool_calls=tool_calls, tool_plan=tool_plan, extra=extra
    )


def _content_text(index: int, content: Any) -> str:
    """Flatten message content to text (string or list of text parts)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    logger.warning("messages[%d].content has unsupported type %s, using empty content",
                   index, type(content).__name__)
    return ""


def _parse_tool_calls(index: int, raw: Any) -> list[ToolCall]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        logger.warning("messages[%d].tool_calls is not a list, ignoring", index)
        return []

    calls: list[ToolCall] = []
    for tc in raw:
        if not isinstance(tc, dict):
            logger.warning("messages[%d] has a malformed tool call, skipping", index)
            continue
        # Accept both the OpenAI shape and the flat {name, arguments, id} shape
        func = tc.get("function") if isinstance(tc.get("function"), dict) else tc
        name = func.get("name")
        if not isinstance(name, str):
            logger.warning("messages[%d] has a tool call without a name, skipping", index)
            continue
        arguments = func.get("arguments")
        calls.append(ToolCall(
            name=name,
            arguments={} if arguments is None else arguments,
            id=str(tc.get("id") or ""),
        ))
    return calls


def _parse_tools(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        logger.warning("'tools' is not a list, using no tools")
        return []
    tools = [t for t in raw if isinstance(t, dict)]
    if len(tools) != len(raw):
        logger.warning("Dropped %d malformed tool definitions", len(raw) - len(tools))
    return tools


def _parse_tool_choice(raw: Any) -> ToolChoice:
    if raw is None:
        return ToolChoice.AUTO
    if isinstance(raw, str):
        try:
            return ToolChoice(raw)
        except ValueError:
            pass
    logger.warning("Unsupported tool_choice %r, using 'auto'", raw)
    return ToolChoice.AUTO


def _parse_flag(data: dict[str, Any], key: str) -> bool:
    raw = data.get(key)
    if raw is None:
        return False
    if isinstance(raw, bool):
        return raw
    logger.warning("'%s' is not a boolean, using false", key)
    return False
