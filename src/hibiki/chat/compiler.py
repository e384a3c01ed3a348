"""Chat request compiler: capability negotiation, format selection, rendering."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import jinja2

from hibiki.chat.formats import ChatFormat
from hibiki.chat.request import parse_chat_request
from hibiki.chat.templates import ChatTemplate, TemplateCapabilities, TemplateSet
from hibiki.chat.types import ChatMessage, ChatRequest, Role, ToolChoice
from hibiki.errors import CompilationError

logger = logging.getLogger(__name__)

LLAMA_3_BUILTIN_TOOLS = ("wolfram_alpha", "web_search", "brave_search", "python", "code_interpreter")

_ADDITIONAL_STOPS: dict[ChatFormat, tuple[str, ...]] = {
    ChatFormat.LLAMA_3_X: ("<|eom_id|>",),
    ChatFormat.LLAMA_3_X_WITH_BUILTIN_TOOLS: ("<|eom_id|>",),
    ChatFormat.FUNCTIONARY_V3_1_LLAMA_3_1: ("<|eom_id|>",),
}


@dataclass(frozen=True)
class CompiledChatParams:
    """A rendered prompt and the format its completion must be parsed with.

    Borrows the :class:`TemplateSet` it was compiled from; the template set
    must outlive it.
    """

    prompt: str
    format: ChatFormat
    additional_stops: tuple[str, ...] = ()
    parallel_tool_calls: bool = False
    stream: bool = False
    template_set: TemplateSet | None = field(default=None, repr=False, compare=False)

    @property
    def prompt_bytes(self) -> bytes:
        return self.prompt.encode("utf-8")


def select_format(template: ChatTemplate, request: ChatRequest) -> ChatFormat:
    """Pick the tool-call convention from the template source."""
    if not request.tools or request.tool_choice is ToolChoice.NONE:
        return ChatFormat.CONTENT_ONLY

    src = template.source
    if "<｜tool▁calls▁begin｜>" in src:
        return ChatFormat.DEEPSEEK_R1
    if ">>>all" in src:
        return ChatFormat.FUNCTIONARY_V3_2
    if " functools[" in src:
        return ChatFormat.FIREFUNCTION_V2
    if "<|start_header_id|>" in src and "<function=" in src:
        return ChatFormat.FUNCTIONARY_V3_1_LLAMA_3_1
    if "<|start_header_id|>ipython<|end_header_id|>" in src:
        if "<|python_tag|>" in src and _requested_builtin_tools(request):
            return ChatFormat.LLAMA_3_X_WITH_BUILTIN_TOOLS
        return ChatFormat.LLAMA_3_X
    if "<tool_call>" in src:
        return ChatFormat.HERMES_2_PRO
    if "[TOOL_CALLS]" in src:
        return ChatFormat.MISTRAL_NEMO
    if "<|END_THINKING|><|START_ACTION|>" in src:
        return ChatFormat.COMMAND_R7B
    return ChatFormat.GENERIC


def _requested_builtin_tools(request: ChatRequest) -> list[str]:
    return [name for name in request.tool_names() if name in LLAMA_3_BUILTIN_TOOLS]


def compile_chat(
    template_set: TemplateSet,
    request: ChatRequest | str | bytes | dict[str, Any],
    add_generation_prompt: bool = True,
) -> CompiledChatParams:
    """Compile a chat request into a prompt and a format tag.

    Parallel tool calls requested against a template that cannot render them
    are silently downgraded to single calls.

    Raises:
        RequestError: if the payload lacks a usable ``messages`` list.
        CompilationError: if the template fails to render.
    """
    if not isinstance(request, ChatRequest):
        request = parse_chat_request(request)

    use_tools = bool(request.tools) and request.tool_choice is not ToolChoice.NONE
    template = template_set.template_for(use_tools)
    caps = template.capabilities

    if use_tools and request.tool_choice not in caps.tool_choices:
        logger.warning(
            "Template '%s' cannot render tool calls, tool_choice=%s relies on the prompt alone",
            template.name, request.tool_choice.value,
        )

    parallel = request.parallel_tool_calls and use_tools
    if parallel and not caps.supports_parallel_tool_calls:
        logger.warning(
            "Template '%s' cannot render parallel tool calls, disabling them", template.name
        )
        parallel = False

    fmt = select_format(template, request)
    logger.debug("Selected chat format %s for template '%s'", fmt.label, template.name)

    messages = [_template_message(m, caps) for m in request.messages]
    context: dict[str, Any] = {
        "tool_choice": request.tool_choice.value,
        "parallel_tool_calls": parallel,
    }
    tools = request.tools if use_tools else None

    match fmt:
        case ChatFormat.CONTENT_ONLY:
            pass
        case ChatFormat.GENERIC:
            messages = _add_system(messages, _generic_instructions(request, parallel))
        case ChatFormat.LLAMA_3_X | ChatFormat.LLAMA_3_X_WITH_BUILTIN_TOOLS:
            context["date_string"] = datetime.now().strftime("%d %b %Y")
            context["tools_in_user_message"] = False
            if fmt is ChatFormat.LLAMA_3_X_WITH_BUILTIN_TOOLS:
                context["builtin_tools"] = _requested_builtin_tools(request)
        case ChatFormat.COMMAND_R7B:
            messages = [_command_r7b_message(m) for m in messages]
        case (
            ChatFormat.MISTRAL_NEMO
            | ChatFormat.DEEPSEEK_R1
            | ChatFormat.FIREFUNCTION_V2
            | ChatFormat.FUNCTIONARY_V3_2
            | ChatFormat.FUNCTIONARY_V3_1_LLAMA_3_1
            | ChatFormat.HERMES_2_PRO
        ):
            pass
        case ChatFormat.COUNT:
            raise CompilationError("COUNT is not a chat format")

    if tools and not caps.supports_tools:
        messages = _add_system(messages, _tool_polyfill(tools))
    if not caps.supports_system_role:
        messages = _merge_system_into_user(messages)

    try:
        prompt = template.render(
            messages,
            tools=tools,
            add_generation_prompt=add_generation_prompt,
            extra_context=context,
        )
    except jinja2.TemplateError as e:
        raise CompilationError(f"Template '{template.name}' failed to render: {e}") from e
    except (TypeError, ValueError, KeyError) as e:
        raise CompilationError(
            f"Template '{template.name}' failed to render: {type(e).__name__}: {e}"
        ) from e

    return CompiledChatParams(
        prompt=prompt,
        format=fmt,
        additional_stops=_ADDITIONAL_STOPS.get(fmt, ()),
        parallel_tool_calls=parallel,
        stream=request.stream,
        template_set=template_set,
    )


# ─── Message preparation ─────────────────────────────────────────────────────


def _template_message(message: ChatMessage, caps: TemplateCapabilities) -> dict[str, Any]:
    msg = message.to_template_dict()
    for tc in msg.get("tool_calls", []):
        func = tc["function"]
        func["arguments"] = _arguments_for_template(func["arguments"], caps)
    return msg


def _arguments_for_template(arguments: Any, caps: TemplateCapabilities) -> Any:
    if caps.requires_object_arguments:
        if isinstance(arguments, str):
            try:
                return json.loads(arguments)
            except json.JSONDecodeError:
                return arguments
        return arguments
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments, ensure_ascii=False)


def _add_system(messages: list[dict[str, Any]], text: str) -> list[dict[str, Any]]:
    if messages and messages[0]["role"] == Role.SYSTEM.value:
        first = dict(messages[0])
        first["content"] = (first.get("content") or "") + "\n\n" + text
        return [first, *messages[1:]]
    return [{"role": Role.SYSTEM.value, "content": text}, *messages]


def _merge_system_into_user(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Fold system messages into the next user turn."""
    merged: list[dict[str, Any]] = []
    pending: list[str] = []
    for msg in messages:
        if msg["role"] == Role.SYSTEM.value:
            pending.append(msg.get("content") or "")
            continue
        if pending and msg["role"] == Role.USER.value:
            msg = {**msg, "content": "\n".join([*pending, msg.get("content") or ""])}
            pending = []
        merged.append(msg)
    if pending:
        merged.append({"role": Role.USER.value, "content": "\n".join(pending)})
    return merged


def _command_r7b_message(msg: dict[str, Any]) -> dict[str, Any]:
    # Command R7B templates render the plan from tool_plan only on tool call turns
    if msg.get("tool_plan") is not None and not msg.get("tool_calls"):
        msg = dict(msg)
        msg["content"] = msg.pop("tool_plan") + (msg.get("content") or "")
    return msg


def _generic_instructions(request: ChatRequest, parallel: bool) -> str:
    if parallel:
        shape = (
            '{"tool_calls": [{"name": "<tool name>", "arguments": {...}, "id": "<call id>"}, ...]}'
        )
        call_key = "tool_calls"
    else:
        shape = '{"tool_call": {"name": "<tool name>", "arguments": {...}}}'
        call_key = "tool_call"
    lines = [
        f"Respond in JSON format, either with `{call_key}` (a request to call tools)"
        " or with `response` (a reply to the user's request).",
        f"To call tools, respond with: {shape}",
        'To reply, respond with: {"response": "<your reply>"}',
    ]
    if request.tool_choice is ToolChoice.REQUIRED:
        lines.append(f"You must respond with `{call_key}`.")
    return "\n".join(lines)


def _tool_polyfill(tools: list[dict[str, Any]]) -> str:
    return (
        "You can call any of the following tools to satisfy the user's requests: "
        + json.dumps(tools, indent=2, ensure_ascii=False)
    )
