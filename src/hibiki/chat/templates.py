"""Template sets and capability resolution.

A :class:`TemplateSet` owns the Jinja chat templates registered in a model's
GGUF metadata: the default template and, when present, the tool-use
sub-template. Capabilities are discovered by rendering small probe
conversations and looking for needles in the output, since templates do not
declare what they support.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import cached_property
from typing import Any

import jinja2
from jinja2.sandbox import ImmutableSandboxedEnvironment

from hibiki.chat.types import ToolChoice
from hibiki.errors import TemplateResolutionError
from hibiki.llama import ModelMetadata, read_model_metadata

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_KEY = "tokenizer.chat_template"
NAMED_TEMPLATE_PREFIX = "tokenizer.chat_template."
TOOL_USE_TEMPLATE = "tool_use"

_USER_NEEDLE = "Hey"
_SYSTEM_NEEDLE = "<System Needle>"
_ARGS_NEEDLE = {"argument_needle": "print('Hello, World!')"}
_PROBE_TOOL = {
    "name": "some_tool",
    "type": "function",
    "function": {
        "name": "some_tool",
        "description": "Some tool.",
        "parameters": {
            "type": "object",
            "properties": {"arg": {"type": "string", "description": "Some argument."}},
            "required": ["arg"],
        },
    },
}


def _raise_exception(message: str) -> None:
    raise jinja2.exceptions.TemplateError(message)


def _strftime_now(format_string: str = "%Y-%m-%d %H:%M:%S") -> str:
    return datetime.now().strftime(format_string)


def _tojson(
    value: Any,
    ensure_ascii: bool = False,
    indent: int | None = None,
    separators: tuple[str, str] | None = None,
    sort_keys: bool = False,
) -> str:
    # Jinja's builtin tojson HTML-escapes its output, which corrupts prompts
    return json.dumps(
        value, ensure_ascii=ensure_ascii, indent=indent, separators=separators, sort_keys=sort_keys
    )


def _make_environment() -> ImmutableSandboxedEnvironment:
    env = ImmutableSandboxedEnvironment(
        loader=jinja2.BaseLoader(),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["tojson"] = _tojson
    env.globals["raise_exception"] = _raise_exception
    env.globals["strftime_now"] = _strftime_now
    return env


@dataclass(frozen=True)
class TemplateCapabilities:
    """What a chat template can render, as discovered by probing."""

    supports_system_role: bool = False
    supports_tools: bool = False
    supports_tool_calls: bool = False
    supports_tool_responses: bool = False
    supports_parallel_tool_calls: bool = False
    requires_object_arguments: bool = False

    @property
    def tool_choices(self) -> frozenset[ToolChoice]:
        """Tool-choice policies the template can honour."""
        if self.supports_tool_calls:
            return frozenset(ToolChoice)
        return frozenset({ToolChoice.NONE})


class ChatTemplate:
    """One compiled Jinja chat template."""

    def __init__(self, source: str, bos_token: str = "", eos_token: str = "", name: str = "default") -> None:
        self.source = source
        self.name = name
        self.bos_token = bos_token
        self.eos_token = eos_token
        try:
            self._template = _make_environment().from_string(source)
        except jinja2.TemplateSyntaxError as e:
            raise TemplateResolutionError(f"Chat template '{name}' does not compile: {e}") from e

    def render(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        add_generation_prompt: bool = True,
        extra_context: dict[str, Any] | None = None,
    ) -> str:
        """Render *messages*; Jinja errors propagate to the caller."""
        context: dict[str, Any] = {
            "messages": messages,
            "add_generation_prompt": add_generation_prompt,
            "bos_token": self.bos_token,
            "eos_token": self.eos_token,
        }
        if tools:
            context["tools"] = tools
        if extra_context:
            context.update(extra_context)
        return self._template.render(**context)

    def _try_render(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None) -> str:
        try:
            return self.render(messages, tools=tools, add_generation_prompt=False)
        except Exception as e:  # probes may hit anything a template does
            logger.debug("Probe render of '%s' failed: %s", self.name, e)
            return ""

    @cached_property
    def capabilities(self) -> TemplateCapabilities:
        user = {"role": "user", "content": _USER_NEEDLE}

        system_out = self._try_render([{"role": "system", "content": _SYSTEM_NEEDLE}, user])
        tools_out = self._try_render([user], tools=[_PROBE_TOOL])

        def tool_call(name: str, arguments: Any) -> dict[str, Any]:
            return {"id": "call_1___", "type": "function",
                    "function": {"name": name, "arguments": arguments}}

        def calls_message(calls: list[dict[str, Any]]) -> dict[str, Any]:
            return {"role": "assistant", "content": "", "tool_calls": calls}

        def renders_arguments(out: str) -> bool:
            return '"argument_needle":' in out or "'argument_needle':" in out

        str_out = self._try_render([user, calls_message([tool_call("ipython", json.dumps(_ARGS_NEEDLE))])])
        obj_out = self._try_render([user, calls_message([tool_call("ipython", _ARGS_NEEDLE)])])
        renders_str = renders_arguments(str_out)
        renders_obj = renders_arguments(obj_out)
        supports_tool_calls = renders_str or renders_obj
        requires_object_arguments = renders_obj and not renders_str

        parallel = responses = False
        if supports_tool_calls:
            args = _ARGS_NEEDLE if requires_object_arguments else json.dumps(_ARGS_NEEDLE)
            tc1 = tool_call("test_tool1", args)
            tc2 = tool_call("test_tool2", args)
            out = self._try_render([user, calls_message([tc1, tc2])])
            parallel = "test_tool1" in out and "test_tool2" in out
            out = self._try_render([
                user,
                calls_message([tc1]),
                {"role": "tool", "name": "test_tool1", "content": "Some response!",
                 "tool_call_id": "call_911_"},
            ])
            responses = "Some response!" in out

        caps = TemplateCapabilities(
            supports_system_role=_SYSTEM_NEEDLE in system_out,
            supports_tools="some_tool" in tools_out,
            supports_tool_calls=supports_tool_calls,
            supports_tool_responses=responses,
            supports_parallel_tool_calls=parallel,
            requires_object_arguments=requires_object_arguments,
        )
        logger.debug("Capabilities of template '%s': %s", self.name, caps)
        return caps


@dataclass
class TemplateSet:
    """The chat templates of one model family.

    Created once per model and shared by every request compiled against it.
    Compilation only reads from a template set.
    """

    default: ChatTemplate
    tool_use: ChatTemplate | None = None
    model_name: str = ""

    def template_for(self, use_tools: bool) -> ChatTemplate:
        """The template that renders a request with or without tools."""
        if use_tools and self.tool_use is not None:
            return self.tool_use
        return self.default

    def capabilities(self, use_tools: bool = True) -> TemplateCapabilities:
        return self.template_for(use_tools).capabilities

    @property
    def has_tool_use_template(self) -> bool:
        return self.tool_use is not None


def _looks_like_template(text: str) -> bool:
    return "{{" in text or "{%" in text


def resolve_template_set(
    model: Any,
    template_name: str | None = None,
    bos_token: str = "",
    eos_token: str = "",
) -> TemplateSet:
    """Resolve the template set for *model*.

    Args:
        model: GGUF path, ``llama_cpp.Llama`` instance, metadata mapping or
            :class:`ModelMetadata`.
        template_name: Name of a template registered in the model metadata
            (``tokenizer.chat_template.<name>``), or inline Jinja source.
            ``None`` selects the model's default template.
        bos_token: Fallback BOS text when the model does not provide one.
        eos_token: Fallback EOS text when the model does not provide one.

    Raises:
        TemplateResolutionError: if no template can be resolved.
    """
    meta = model if isinstance(model, ModelMetadata) else read_model_metadata(model)
    bos = meta.bos_token or bos_token
    eos = meta.eos_token or eos_token

    named = {
        key[len(NAMED_TEMPLATE_PREFIX):]: value
        for key, value in meta.values.items()
        if key.startswith(NAMED_TEMPLATE_PREFIX) and isinstance(value, str)
    }
    default_source = meta.values.get(DEFAULT_TEMPLATE_KEY)
    tool_use_source = named.get(TOOL_USE_TEMPLATE)
    default_name = "default"

    if template_name:
        if template_name in named:
            default_source = named[template_name]
            default_name = template_name
        elif _looks_like_template(template_name):
            # An inline override replaces every template the model ships
            default_source = template_name
            default_name = "override"
            tool_use_source = None
        else:
            raise TemplateResolutionError(
                f"Model {meta.name or '<unnamed>'} has no chat template named {template_name!r}"
            )

    if not isinstance(default_source, str) or not default_source.strip():
        raise TemplateResolutionError(
            f"Model {meta.name or '<unnamed>'} has no chat template and no override was given"
        )

    tool_use = None
    if tool_use_source and default_name != TOOL_USE_TEMPLATE:
        tool_use = ChatTemplate(tool_use_source, bos, eos, name=TOOL_USE_TEMPLATE)

    template_set = TemplateSet(
        default=ChatTemplate(default_source, bos, eos, name=default_name),
        tool_use=tool_use,
        model_name=meta.name,
    )
    logger.info(
        "Resolved chat template '%s' for %s (tool_use=%s)",
        default_name, meta.name or "<unnamed>", tool_use is not None,
    )
    return template_set
