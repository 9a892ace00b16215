"""Script model and loaders.

A Script is an immutable, ordered list of Turns; each Turn holds Messages
(static templates or AI placeholders) and post-processing Instructions.

Two on-disk formats load into the same model:

Structured YAML/JSON::

    parameters: {name: World}
    turns:
      - messages:
          - {role: user, content: "Hello {{name}}"}
          - {role: assistant, content: "", aiPlaceholder: true, variable: GREETING}
        instructions: [summarize, {name: echo, value: "done"}]

Front matter plus ``---`` separated turns::

    parameters:
      name: World
    ---
    user: Hello {{name}}
    assistant: [[GREETING]]
    $summarize
    $echo: done
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from agent.conversation import ASSISTANT, SYSTEM, USER

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_VARIABLE = "RESPONSE"
MESSAGE_ROLES = (SYSTEM, USER, ASSISTANT)

REQUIRE_TOOL_CALL = "require_tool_call"

_TURN_SEPARATOR = re.compile(r"^(?:---|\*\*\*)[ \t]*$", re.MULTILINE)
_ROLE_LINE = re.compile(r"^(system|user|assistant):\s*(.*)$", re.IGNORECASE)
_AI_PLACEHOLDER = re.compile(r"\[\[(\w+)(?::[^\]]*)?\]\]")
_CALL_SYNTAX = re.compile(r"^(\w+)(?:\((.*)\))?$")
_CALL_PARAM = re.compile(r"""(\w+)=(?:'([^']*)'|"([^"]*)"|([^\s,]+))""")


class ScriptError(ValueError):
    """A script document is malformed."""


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Message:
    role: str
    content: str = ""
    ai_placeholder: bool = False
    variable: str = DEFAULT_RESPONSE_VARIABLE
    # Sent as written, without placeholder substitution
    literal: bool = False

    def __post_init__(self):
        if self.role not in MESSAGE_ROLES:
            raise ScriptError(f"Unsupported message role: {self.role!r}")


@dataclass(frozen=True)
class Instruction:
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    raw: str = field(default="", compare=False)

    def __post_init__(self):
        object.__setattr__(self, "args", _freeze(self.args))

    @property
    def value(self) -> str:
        v = self.args.get("value", "")
        return "" if v is None else str(v)


@dataclass(frozen=True)
class Turn:
    messages: Tuple[Message, ...] = ()
    instructions: Tuple[Instruction, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "messages", tuple(self.messages))
        object.__setattr__(self, "instructions", tuple(self.instructions))

    @property
    def requires_tool_call(self) -> bool:
        return any(i.name == REQUIRE_TOOL_CALL for i in self.instructions)

    @property
    def has_ai_placeholder(self) -> bool:
        return any(m.ai_placeholder for m in self.messages)


@dataclass(frozen=True)
class Script:
    parameters: Mapping[str, Any] = field(default_factory=dict)
    turns: Tuple[Turn, ...] = ()
    source: Optional[str] = field(default=None, compare=False)
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "parameters", _freeze(self.parameters))
        object.__setattr__(self, "turns", tuple(self.turns))
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @classmethod
    def single_message(cls, text: str, role: str = USER) -> "Script":
        """A one-turn script whose only message is *text* taken literally."""
        return cls(turns=(Turn(messages=(Message(role=role, content=text, literal=True),)),))


# =============================================================================
# Structured format
# =============================================================================


def _message_from_dict(data: Any, where: str) -> Message:
    if not isinstance(data, dict):
        raise ScriptError(f"{where}: message must be a mapping")
    role = str(data.get("role", "")).strip().lower()
    content = data.get("content", "")
    if content is None:
        content = ""
    if not isinstance(content, str):
        raise ScriptError(f"{where}: content must be a string")
    ai = data.get("aiPlaceholder", data.get("ai_placeholder", False))
    if not isinstance(ai, bool):
        raise ScriptError(f"{where}: aiPlaceholder must be a boolean")
    variable = data.get("variable") or DEFAULT_RESPONSE_VARIABLE
    try:
        return Message(role=role, content=content, ai_placeholder=ai, variable=str(variable))
    except ScriptError as e:
        raise ScriptError(f"{where}: {e}") from e


def _instruction_from_item(item: Any, where: str) -> Instruction:
    if isinstance(item, str):
        return _parse_instruction_text(item)
    if isinstance(item, dict):
        args = dict(item)
        name = args.pop("name", None)
        if not name:
            raise ScriptError(f"{where}: instruction mapping needs a 'name'")
        return Instruction(name=str(name), args=args, raw=str(item))
    raise ScriptError(f"{where}: instruction must be a name or a mapping")


def script_from_dict(data: Mapping[str, Any], source: Optional[str] = None) -> Script:
    """Build a Script from a structured ``{parameters, turns, source}`` document."""
    if not isinstance(data, Mapping):
        raise ScriptError("script document must be a mapping")
    parameters = data.get("parameters") or {}
    if not isinstance(parameters, Mapping):
        raise ScriptError("'parameters' must be a mapping")
    raw_turns = data.get("turns") or []
    if not isinstance(raw_turns, list):
        raise ScriptError("'turns' must be a list")

    turns = []
    for t_index, raw_turn in enumerate(raw_turns):
        where = f"turns[{t_index}]"
        if not isinstance(raw_turn, Mapping):
            raise ScriptError(f"{where}: turn must be a mapping")
        messages = [
            _message_from_dict(m, f"{where}.messages[{m_index}]")
            for m_index, m in enumerate(raw_turn.get("messages") or [])
        ]
        instructions = [
            _instruction_from_item(i, f"{where}.instructions[{i_index}]")
            for i_index, i in enumerate(raw_turn.get("instructions") or [])
        ]
        turns.append(Turn(messages=tuple(messages), instructions=tuple(instructions)))

    metadata = {k: v for k, v in data.items() if k not in ("parameters", "turns", "source")}
    return Script(
        parameters=parameters,
        turns=tuple(turns),
        source=data.get("source") or source,
        metadata=metadata,
    )


# =============================================================================
# Front-matter format
# =============================================================================


def _parse_call_params(text: str) -> Dict[str, str]:
    params = {}
    for match in _CALL_PARAM.finditer(text):
        params[match.group(1)] = match.group(2) or match.group(3) or match.group(4)
    return params


def _parse_instruction_text(text: str) -> Instruction:
    """Parse ``name``, ``name: value`` or ``name(k=v, ...)`` (leading ``$`` optional)."""
    body = text.strip()
    if body.startswith("$"):
        body = body[1:].strip()
    colon = body.find(":")
    if colon > 0 and "(" not in body[:colon]:
        name = body[:colon].strip()
        value = body[colon + 1:].strip()
        unquoted = value
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            unquoted = value[1:-1]
        return Instruction(name=name, args={"value": unquoted}, raw=value)
    match = _CALL_SYNTAX.match(body)
    if match:
        return Instruction(name=match.group(1), args=_parse_call_params(match.group(2) or ""), raw=body)
    raise ScriptError(f"Cannot parse instruction: {text!r}")


def _make_message(role: str, content: str) -> Message:
    content = content.strip()
    match = _AI_PLACEHOLDER.search(content)
    if match:
        return Message(role=role, content="", ai_placeholder=True, variable=match.group(1))
    return Message(role=role, content=content)


def _parse_turn(text: str) -> Optional[Turn]:
    messages: List[Message] = []
    instructions: List[Instruction] = []
    role: Optional[str] = None
    buffer: List[str] = []
    multiline = False

    def flush():
        nonlocal role, buffer
        if role is not None and "\n".join(buffer).strip():
            messages.append(_make_message(role, "\n".join(buffer)))
        role, buffer = None, []

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            if multiline and role is not None:
                buffer.append("")
            continue
        if stripped.startswith("$"):
            flush()
            multiline = False
            instructions.append(_parse_instruction_text(stripped))
            continue
        role_match = _ROLE_LINE.match(stripped)
        if role_match:
            flush()
            role = role_match.group(1).lower()
            content = role_match.group(2)
            multiline = content in ("|", "|-")
            buffer = [] if multiline or not content else [content]
            continue
        if role is None:
            role = USER
        buffer.append(stripped)
    flush()

    if not messages and not instructions:
        return None
    return Turn(messages=tuple(messages), instructions=tuple(instructions))


def parse_front_matter_script(text: str, source: Optional[str] = None) -> Script:
    parts = _TURN_SEPARATOR.split(text)
    front_text = parts[0].strip()
    front: Dict[str, Any] = {}
    if front_text:
        try:
            loaded = yaml.safe_load(front_text)
        except yaml.YAMLError as e:
            raise ScriptError(f"Invalid front matter: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ScriptError("Front matter must be a mapping")
        front = loaded or {}

    parameters = front.get("parameters") or {}
    if not isinstance(parameters, dict):
        raise ScriptError("'parameters' must be a mapping")

    turns = []
    for part in parts[1:]:
        turn = _parse_turn(part)
        if turn is not None:
            turns.append(turn)

    metadata = {k: v for k, v in front.items() if k not in ("parameters", "source")}
    return Script(
        parameters=parameters,
        turns=tuple(turns),
        source=front.get("source") or source,
        metadata=metadata,
    )


# =============================================================================
# Entry points
# =============================================================================


def parse_script(text: str, source: Optional[str] = None) -> Script:
    """Parse either script format from text.

    A document that loads as a single YAML/JSON mapping with a ``turns`` key
    is structured; anything else is read as front matter plus turns.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        data = None
    if isinstance(data, dict) and "turns" in data:
        return script_from_dict(data, source=source)
    return parse_front_matter_script(text, source=source)


def load_script(path: Union[str, Path]) -> Script:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ScriptError(f"Script not found: {path}") from e
    script = parse_script(text, source=str(path))
    logger.debug("Loaded script %s with %d turn(s)", path, len(script.turns))
    return script
