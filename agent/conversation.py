"""Conversation entries -- the live context sent to the backend.

A ConversationEntry is a role plus one or more parts: plain text, a tool-call
request made by the assistant, or the result of running that call. Entries
are immutable; the engine only ever appends new ones.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple, Union

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"

ROLES = (SYSTEM, USER, ASSISTANT, TOOL)


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ToolCallPart:
    call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class ToolResultPart:
    call_id: str
    tool_name: str
    content: str
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"toolName": self.tool_name, "content": self.content}


Part = Union[TextPart, ToolCallPart, ToolResultPart]


def part_text(part: Part) -> str:
    """Text used for size accounting; structured parts count as their JSON."""
    if isinstance(part, TextPart):
        return part.text
    return json.dumps(part.to_dict(), ensure_ascii=False, default=str)


@dataclass(frozen=True)
class ConversationEntry:
    role: str
    parts: Tuple[Part, ...]
    synthetic: bool = False

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role: {self.role!r}")
        if not isinstance(self.parts, tuple):
            object.__setattr__(self, "parts", tuple(self.parts))

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> List[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> List[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    @property
    def char_count(self) -> int:
        return sum(len(part_text(p)) for p in self.parts)

    @classmethod
    def system(cls, text: str, synthetic: bool = False) -> "ConversationEntry":
        return cls(SYSTEM, (TextPart(text),), synthetic=synthetic)

    @classmethod
    def user(cls, text: str) -> "ConversationEntry":
        return cls(USER, (TextPart(text),))

    @classmethod
    def assistant(cls, text: str = "", tool_calls: Iterable[ToolCallPart] = ()) -> "ConversationEntry":
        parts: List[Part] = [TextPart(text)] if text else []
        parts.extend(tool_calls)
        if not parts:
            parts.append(TextPart(""))
        return cls(ASSISTANT, tuple(parts))

    @classmethod
    def tool_result(cls, result: ToolResultPart) -> "ConversationEntry":
        return cls(TOOL, (result,))

    @classmethod
    def from_message(cls, role: str, text: str) -> "ConversationEntry":
        return cls(role, (TextPart(text),))
