"""Completion parser: raw model text back into a structured chat message.

Each format has one extraction function; :func:`_parser_for` maps every
:class:`ChatFormat` to it with an exhaustive ``match`` so a new format cannot
fall through unhandled. Text without any tool-call markup is the common case
and always parses to a content-only message.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from typing import Any, Callable, assert_never

from hibiki.chat.formats import ChatFormat
from hibiki.chat.types import ChatMessage, Role, ToolCall
from hibiki.errors import ChatParseError

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()

_HERMES_TOOL_CALL_RE = re.compile(r"<tool_call>\s*(\{.*?\})\s*</tool_call>", re.DOTALL)
_HERMES_OPEN_RE = re.compile(r"<tool_call>")

_LLAMA_3_CALL_RE = re.compile(
    r'\{\s*(?:"type"\s*:\s*"function"\s*,\s*)?"name"\s*:\s*"([^"]+)"\s*,\s*"parameters"\s*:'
)
_PYTHON_TAG = "<|python_tag|>"
_BUILTIN_CALL_RE = re.compile(r"^\s*([A-Za-z_]\w*)\.call\((.*)\)\s*$", re.DOTALL)

_DEEPSEEK_CALLS_BEGIN = "<｜tool▁calls▁begin｜>"
_DEEPSEEK_CALL_RE = re.compile(
    r"<｜tool▁call▁begin｜>function<｜tool▁sep｜>([^\n]+)\n```json\n(.*?)\n?```\s*<｜tool▁call▁end｜>",
    re.DOTALL,
)

_FUNCTOOLS_PREFIX = " functools["
_MISTRAL_PREFIX = "[TOOL_CALLS]"

_FUNCTIONARY_SECTION_RE = re.compile(r">>>(?=[\w.-]+\n\{|python\n|all\n)")
_FUNCTIONARY_NAME_RE = re.compile(r"^([\w.-]+)\n(.*)$", re.DOTALL)
_FUNCTION_TAG_RE = re.compile(r"<function=([\w.-]+)>")
_FUNCTION_CLOSE = "</function>"

_R7B_THINKING_RE = re.compile(r"<\|START_THINKING\|>(.*?)<\|END_THINKING\|>", re.DOTALL)
_R7B_ACTION_RE = re.compile(r"<\|START_ACTION\|>(.*?)<\|END_ACTION\|>", re.DOTALL)
_R7B_RESPONSE_RE = re.compile(r"<\|START_RESPONSE\|>(.*?)<\|END_RESPONSE\|>", re.DOTALL)

Parser = Callable[[str], ChatMessage]


def parse_chat_message(text: str, fmt: ChatFormat | int) -> ChatMessage:
    """Parse completion *text* produced under format *fmt*.

    Raises:
        ChatParseError: if the text does not follow the format's convention.
        ValueError: if *fmt* is not a valid format.
    """
    if not isinstance(fmt, ChatFormat):
        fmt = ChatFormat.from_int(fmt)
    message = _parser_for(fmt)(text)
    logger.debug("Parsed %s completion: %d tool call(s)", fmt.label, len(message.tool_calls))
    return message


def _parser_for(fmt: ChatFormat) -> Parser:
    match fmt:
        case ChatFormat.CONTENT_ONLY:
            return _parse_content_only
        case ChatFormat.GENERIC:
            return _parse_generic
        case ChatFormat.MISTRAL_NEMO:
            return _parse_mistral_nemo
        case ChatFormat.LLAMA_3_X:
            return _parse_llama_3_x
        case ChatFormat.LLAMA_3_X_WITH_BUILTIN_TOOLS:
            return _parse_llama_3_x_builtin
        case ChatFormat.DEEPSEEK_R1:
            return _parse_deepseek_r1
        case ChatFormat.FIREFUNCTION_V2:
            return _parse_firefunction_v2
        case ChatFormat.FUNCTIONARY_V3_2:
            return _parse_functionary_v3_2
        case ChatFormat.FUNCTIONARY_V3_1_LLAMA_3_1:
            return _parse_functionary_v3_1
        case ChatFormat.HERMES_2_PRO:
            return _parse_hermes_2_pro
        case ChatFormat.COMMAND_R7B:
            return _parse_command_r7b
        case ChatFormat.COUNT:
            raise ValueError("COUNT is not a chat format")
        case _:
            assert_never(fmt)


# ─── Helpers ─────────────────────────────────────────────────────────────────


def _assistant(content: str = "", tool_calls: list[ToolCall] | None = None,
               tool_plan: str | None = None) -> ChatMessage:
    return ChatMessage(role=Role.ASSISTANT, content=content,
                       tool_calls=tool_calls or [], tool_plan=tool_plan)


def _decode_json_at(text: str, pos: int, fmt: ChatFormat) -> tuple[Any, int]:
    """Decode one JSON value starting at *pos* (leading whitespace allowed)."""
    while pos < len(text) and text[pos].isspace():
        pos += 1
    try:
        return _decoder.raw_decode(text, pos)
    except json.JSONDecodeError as e:
        raise ChatParseError(f"Invalid JSON in {fmt.label} tool call: {e}", fmt) from e


def _loads(text: str, fmt: ChatFormat) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ChatParseError(f"Invalid JSON in {fmt.label} tool call: {e}", fmt) from e


def _tool_call_from_object(obj: Any, fmt: ChatFormat, args_key: str = "arguments",
                           name_key: str = "name", id_key: str = "id") -> ToolCall:
    if not isinstance(obj, dict) or not isinstance(obj.get(name_key), str):
        raise ChatParseError(f"Malformed {fmt.label} tool call: {obj!r}", fmt)
    arguments = obj.get(args_key, {})
    call_id = obj.get(id_key)
    return ToolCall(
        name=obj[name_key],
        arguments={} if arguments is None else arguments,
        id="" if call_id is None else str(call_id),
    )


def _tool_call_list(value: Any, fmt: ChatFormat, **keys: str) -> list[ToolCall]:
    if not isinstance(value, list):
        raise ChatParseError(f"Expected a list of {fmt.label} tool calls", fmt)
    return [_tool_call_from_object(item, fmt, **keys) for item in value]


def _code_arguments(body: str) -> Any:
    return {"code": body}


# ─── Format parsers ──────────────────────────────────────────────────────────


def _parse_content_only(text: str) -> ChatMessage:
    return _assistant(text)


def _parse_generic(text: str) -> ChatMessage:
    fmt = ChatFormat.GENERIC
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ChatParseError(f"Generic completion is not JSON: {e}", fmt) from e
    if not isinstance(data, dict):
        raise ChatParseError("Generic completion must be a JSON object", fmt)

    if "tool_calls" in data:
        return _assistant(tool_calls=_tool_call_list(data["tool_calls"], fmt))
    if "tool_call" in data:
        return _assistant(tool_calls=[_tool_call_from_object(data["tool_call"], fmt)])
    if "response" in data:
        response = data["response"]
        if isinstance(response, str):
            return _assistant(response)
        return _assistant(json.dumps(response, indent=2, ensure_ascii=False))
    raise ChatParseError("Generic completion has no 'tool_call(s)' or 'response'", fmt)


def _parse_prefixed_array(text: str, prefix: str, fmt: ChatFormat, rewind: int = 0) -> ChatMessage:
    # rewind: trailing prefix characters that belong to the JSON value
    idx = text.find(prefix)
    if idx < 0:
        return _assistant(text)
    value, _ = _decode_json_at(text, idx + len(prefix) - rewind, fmt)
    return _assistant(text[:idx].strip(), _tool_call_list(value, fmt))


def _parse_mistral_nemo(text: str) -> ChatMessage:
    return _parse_prefixed_array(text, _MISTRAL_PREFIX, ChatFormat.MISTRAL_NEMO)


def _parse_firefunction_v2(text: str) -> ChatMessage:
    return _parse_prefixed_array(text, _FUNCTOOLS_PREFIX, ChatFormat.FIREFUNCTION_V2, rewind=1)


def _parse_llama_3_x_json(text: str, fmt: ChatFormat) -> ChatMessage:
    calls: list[ToolCall] = []
    content_parts: list[str] = []
    pos = 0
    while True:
        match = _LLAMA_3_CALL_RE.search(text, pos)
        if match is None:
            break
        content_parts.append(text[pos:match.start()])
        obj, pos = _decode_json_at(text, match.start(), fmt)
        calls.append(_tool_call_from_object(obj, fmt, args_key="parameters"))
        # Multiple calls may be separated by ';' or whitespace
        while pos < len(text) and (text[pos].isspace() or text[pos] == ";"):
            pos += 1

    if not calls:
        return _assistant(text)
    content_parts.append(text[pos:])
    return _assistant("".join(content_parts).strip(), calls)


def _parse_llama_3_x(text: str) -> ChatMessage:
    return _parse_llama_3_x_json(text, ChatFormat.LLAMA_3_X)


def _parse_builtin_call(body: str, fmt: ChatFormat) -> ToolCall:
    match = _BUILTIN_CALL_RE.match(body)
    if match is None:
        return ToolCall(name="python", arguments=_code_arguments(body.strip()))
    name, raw_args = match.groups()
    try:
        call = ast.parse(f"_({raw_args})", mode="eval").body
        if not isinstance(call, ast.Call) or call.args:
            raise ValueError("builtin tool calls take keyword arguments only")
        arguments = {kw.arg: ast.literal_eval(kw.value) for kw in call.keywords}
    except (SyntaxError, ValueError) as e:
        raise ChatParseError(f"Malformed builtin tool call {name}: {e}", fmt) from e
    return ToolCall(name=name, arguments=arguments)


def _parse_llama_3_x_builtin(text: str) -> ChatMessage:
    fmt = ChatFormat.LLAMA_3_X_WITH_BUILTIN_TOOLS
    idx = text.find(_PYTHON_TAG)
    if idx < 0:
        return _parse_llama_3_x_json(text, fmt)
    call = _parse_builtin_call(text[idx + len(_PYTHON_TAG):], fmt)
    return _assistant(text[:idx].strip(), [call])


def _parse_deepseek_r1(text: str) -> ChatMessage:
    fmt = ChatFormat.DEEPSEEK_R1
    idx = text.find(_DEEPSEEK_CALLS_BEGIN)
    if idx < 0:
        return _assistant(text)
    calls = [
        ToolCall(name=name.strip(), arguments=_loads(args, fmt))
        for name, args in _DEEPSEEK_CALL_RE.findall(text, idx)
    ]
    if not calls:
        raise ChatParseError("DeepSeek R1 tool call block contains no valid calls", fmt)
    return _assistant(text[:idx].strip(), calls)


def _parse_functionary_v3_2(text: str) -> ChatMessage:
    fmt = ChatFormat.FUNCTIONARY_V3_2
    segments = _FUNCTIONARY_SECTION_RE.split(text)
    content_parts: list[str] = []
    calls: list[ToolCall] = []

    for i, segment in enumerate(segments):
        if i == 0 and not segment:
            continue
        match = _FUNCTIONARY_NAME_RE.match(segment)
        if match is None:
            if i == 0:
                content_parts.append(segment)
                continue
            raise ChatParseError(f"Malformed functionary section: {segment[:40]!r}", fmt)

        name, body = match.groups()
        if name == "all":
            content_parts.append(body)
        elif name == "python":
            stripped = body.strip()
            if stripped.startswith("{"):
                calls.append(ToolCall(name=name, arguments=_loads(stripped, fmt)))
            else:
                calls.append(ToolCall(name=name, arguments=_code_arguments(body)))
        elif i == 0 and not body.lstrip().startswith("{"):
            # Plain text that happens to start with a word on its own line
            content_parts.append(segment)
        else:
            calls.append(ToolCall(name=name, arguments=_loads(body.strip(), fmt)))

    content = "".join(content_parts)
    return _assistant(content.strip() if calls else content, calls)


def _parse_functionary_v3_1(text: str) -> ChatMessage:
    fmt = ChatFormat.FUNCTIONARY_V3_1_LLAMA_3_1
    python_idx = text.find(_PYTHON_TAG)
    tail_call = None
    if python_idx >= 0:
        tail_call = ToolCall(name="python",
                             arguments=_code_arguments(text[python_idx + len(_PYTHON_TAG):]))
        text = text[:python_idx]

    content_parts: list[str] = []
    calls: list[ToolCall] = []
    pos = 0
    for match in _FUNCTION_TAG_RE.finditer(text):
        if match.start() < pos:
            continue
        content_parts.append(text[pos:match.start()])
        arguments, end = _decode_json_at(text, match.end(), fmt)
        close = text.find(_FUNCTION_CLOSE, end)
        if close < 0 or text[end:close].strip():
            raise ChatParseError(f"Unterminated <function={match.group(1)}> call", fmt)
        calls.append(ToolCall(name=match.group(1), arguments=arguments))
        pos = close + len(_FUNCTION_CLOSE)
    content_parts.append(text[pos:])

    if tail_call is not None:
        calls.append(tail_call)
    content = "".join(content_parts)
    return _assistant(content.strip() if calls else content, calls)


def _parse_hermes_2_pro(text: str) -> ChatMessage:
    fmt = ChatFormat.HERMES_2_PRO
    calls: list[ToolCall] = []
    for match in _HERMES_TOOL_CALL_RE.finditer(text):
        calls.append(_tool_call_from_object(_loads(match.group(1), fmt), fmt))

    content = _HERMES_TOOL_CALL_RE.sub("", text)
    if _HERMES_OPEN_RE.search(content):
        raise ChatParseError("Unterminated or malformed <tool_call> block", fmt)
    return _assistant(content.strip() if calls else content, calls)


def _parse_command_r7b(text: str) -> ChatMessage:
    fmt = ChatFormat.COMMAND_R7B
    tool_plan = None
    thinking = _R7B_THINKING_RE.search(text)
    if thinking:
        tool_plan = thinking.group(1).strip()
        text = text[: thinking.start()] + text[thinking.end():]

    action = _R7B_ACTION_RE.search(text)
    if action:
        calls = _tool_call_list(
            _loads(action.group(1).strip(), fmt), fmt,
            args_key="parameters", name_key="tool_name", id_key="tool_call_id",
        )
        return _assistant(text[: action.start()].strip(), calls, tool_plan)

    response = _R7B_RESPONSE_RE.search(text)
    if response:
        return _assistant(response.group(1), tool_plan=tool_plan)
    return _assistant(text.strip() if tool_plan is not None else text, tool_plan=tool_plan)
