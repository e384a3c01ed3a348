"""Chat request compilation and completion parsing."""

from hibiki.chat.compiler import CompiledChatParams, compile_chat
from hibiki.chat.formats import ChatFormat
from hibiki.chat.parser import parse_chat_message
from hibiki.chat.request import parse_chat_request
from hibiki.chat.templates import TemplateCapabilities, TemplateSet, resolve_template_set
from hibiki.chat.types import ChatMessage, ChatRequest, Role, ToolCall

__all__ = [
    "ChatFormat",
    "ChatMessage",
    "ChatRequest",
    "CompiledChatParams",
    "Role",
    "TemplateCapabilities",
    "TemplateSet",
    "ToolCall",
    "compile_chat",
    "parse_chat_message",
    "parse_chat_request",
    "resolve_template_set",
]
