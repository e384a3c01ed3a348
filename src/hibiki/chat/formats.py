"""The closed set of textual tool-call conventions (format tags).

Internally a format is a :class:`ChatFormat` member. The boundary exchanges a
plain integer; :meth:`ChatFormat.from_int` and ``int(fmt)`` are the only
conversions, and ``COUNT`` exists solely for bounds checks at that edge.
"""

from __future__ import annotations

import re
from enum import IntEnum


class ChatFormat(IntEnum):
    CONTENT_ONLY = 0
    GENERIC = 1
    MISTRAL_NEMO = 2
    LLAMA_3_X = 3
    LLAMA_3_X_WITH_BUILTIN_TOOLS = 4
    DEEPSEEK_R1 = 5
    FIREFUNCTION_V2 = 6
    FUNCTIONARY_V3_2 = 7
    FUNCTIONARY_V3_1_LLAMA_3_1 = 8
    HERMES_2_PRO = 9
    COMMAND_R7B = 10

    COUNT = 11  # bounds sentinel, never a runtime value

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def from_int(cls, value: int) -> ChatFormat:
        """Convert a boundary integer into a format, rejecting the sentinel."""
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"Chat format must be an integer, got {value!r}")
        if not 0 <= value < cls.COUNT:
            raise ValueError(f"Chat format out of range: {value}")
        return cls(value)

    @classmethod
    def from_label(cls, label: str) -> ChatFormat:
        """Look up a format by label ("llama-3.x") or member name ("LLAMA_3_X")."""
        key = _normalize(label)
        for fmt in cls.members():
            if _normalize(fmt.label) == key:
                return fmt
        raise ValueError(f"Unknown chat format: {label!r}")

    @classmethod
    def members(cls) -> list[ChatFormat]:
        """All valid formats, excluding the sentinel."""
        return [fmt for fmt in cls if fmt is not cls.COUNT]


def _normalize(label: str) -> str:
    return re.sub(r"[._\s]+", "-", label.strip().lower())


_LABELS: dict[ChatFormat, str] = {
    ChatFormat.CONTENT_ONLY: "content-only",
    ChatFormat.GENERIC: "generic",
    ChatFormat.MISTRAL_NEMO: "mistral-nemo",
    ChatFormat.LLAMA_3_X: "llama-3.x",
    ChatFormat.LLAMA_3_X_WITH_BUILTIN_TOOLS: "llama-3.x-with-builtin-tools",
    ChatFormat.DEEPSEEK_R1: "deepseek-r1",
    ChatFormat.FIREFUNCTION_V2: "firefunction-v2",
    ChatFormat.FUNCTIONARY_V3_2: "functionary-v3.2",
    ChatFormat.FUNCTIONARY_V3_1_LLAMA_3_1: "functionary-v3.1-llama-3.1",
    ChatFormat.HERMES_2_PRO: "hermes-2-pro",
    ChatFormat.COMMAND_R7B: "command-r7b",
    ChatFormat.COUNT: "count",
}
