"""
Base tool abstraction for aterm-agent.

Tools follow a simple pattern:
1. Declare a schema (name, display name, description, typed parameters)
2. Validate the untyped argument map from the backend into a pydantic model
3. Build an invocation and ``execute()`` it, returning a ToolInvocationResult

``validate_params`` is the single place where dynamic input from the backend
crosses into typed tool logic. Everything after it works on the typed model.
"""

import asyncio
import json
import typing
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, ValidationError

OutputCallback = Callable[[str], None]


class ToolErrorKind(str, Enum):
    INVALID_PARAMETERS = "invalid_parameters"
    RESOURCE_NOT_FOUND = "resource_not_found"
    EXECUTION_ERROR = "execution_error"
    NO_CHANGE_PRODUCED = "no_change_produced"
    CONFLICTING_CONCURRENT_WRITE = "conflicting_concurrent_write"


class ToolInvocationError(Exception):
    """Base class for the typed failures a tool may raise."""

    kind: ToolErrorKind = ToolErrorKind.EXECUTION_ERROR

    def to_tool_error(self) -> "ToolError":
        return ToolError(kind=self.kind, message=str(self))


class InvalidParameters(ToolInvocationError):
    kind = ToolErrorKind.INVALID_PARAMETERS


class ResourceNotFound(ToolInvocationError):
    kind = ToolErrorKind.RESOURCE_NOT_FOUND


class ExecutionError(ToolInvocationError):
    kind = ToolErrorKind.EXECUTION_ERROR


class NoChangeProduced(ToolInvocationError):
    kind = ToolErrorKind.NO_CHANGE_PRODUCED


class ConflictingConcurrentWrite(ToolInvocationError):
    kind = ToolErrorKind.CONFLICTING_CONCURRENT_WRITE


class OperationCancelled(Exception):
    """Raised when a cancellation handle fired before the work committed."""


class CancellationToken:
    """Cooperative cancellation handle shared by the engine and its tools."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


def check_cancelled(cancel: Optional[CancellationToken]) -> None:
    """Raise OperationCancelled if *cancel* is set; ``None`` never cancels."""
    if cancel is not None:
        cancel.raise_if_cancelled()


@dataclass(frozen=True)
class ParameterSpec:
    """One named, typed parameter of a tool."""

    name: str
    type: str
    description: str = ""
    required: bool = False
    items: Optional[Dict[str, Any]] = None

    def to_property(self) -> Dict[str, Any]:
        prop: Dict[str, Any] = {"type": self.type, "description": self.description}
        if self.items is not None:
            prop["items"] = dict(self.items)
        return prop


@dataclass(frozen=True)
class ToolDeclaration:
    """Schema a tool exposes to the backend's function-calling interface."""

    name: str
    display_name: str
    description: str
    parameters: Tuple[ParameterSpec, ...] = ()

    @property
    def required(self) -> List[str]:
        return [p.name for p in self.parameters if p.required]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the backend-neutral declaration export shape."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {p.name: p.to_property() for p in self.parameters},
                "required": self.required,
            },
        }


@dataclass(frozen=True)
class ToolError:
    kind: ToolErrorKind
    message: str


@dataclass
class ToolInvocationResult:
    """Result from executing a tool."""

    content: str
    display: str = ""
    error: Optional[ToolError] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def from_error(cls, error: ToolError, display: Optional[str] = None) -> "ToolInvocationResult":
        return cls(
            content=f"Error ({error.kind.value}): {error.message}",
            display=display if display is not None else f"Error: {error.message}",
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "content": self.content}
        if self.error is not None:
            data["error"] = {"kind": self.error.kind.value, "message": self.error.message}
        if self.metadata:
            data["metadata"] = self.metadata
        return data


class ToolParams(BaseModel):
    """Base for typed tool parameter structs: strict types, no unknown keys."""

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)


_JSON_TYPES = {str: "string", int: "integer", float: "number", bool: "boolean", dict: "object"}


def _json_type(annotation: Any) -> Tuple[str, Optional[Dict[str, Any]]]:
    args = [a for a in typing.get_args(annotation) if a is not type(None)]
    origin = typing.get_origin(annotation)
    if origin is typing.Union and len(args) == 1:
        return _json_type(args[0])
    if origin in (list, List, tuple, Tuple):
        item_type = _json_type(args[0])[0] if args else "string"
        return "array", {"type": item_type}
    return _JSON_TYPES.get(annotation, "string"), None


def parameters_from_model(model: Type[BaseModel]) -> Tuple[ParameterSpec, ...]:
    """Derive ParameterSpecs from a pydantic params model's fields."""
    specs = []
    for name, info in model.model_fields.items():
        json_type, items = _json_type(info.annotation)
        specs.append(ParameterSpec(
            name=name,
            type=json_type,
            description=info.description or "",
            required=info.is_required(),
            items=items,
        ))
    return tuple(specs)


def _format_validation_error(tool_name: str, err: ValidationError) -> str:
    problems = []
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        problems.append(f"{loc}: {item.get('msg', 'invalid')}")
    return f"Invalid parameters for {tool_name}: " + "; ".join(problems)


class ToolInvocation(ABC):
    """A validated, ready-to-run tool call."""

    def __init__(self, params: ToolParams):
        self.params = params

    @abstractmethod
    def describe(self) -> str:
        """One-line human description of what this invocation will do."""

    def locations(self) -> List[str]:
        """Resources (usually absolute paths) this invocation touches."""
        return []

    @abstractmethod
    async def execute(
        self,
        cancel: Optional[CancellationToken] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ToolInvocationResult:
        """Run the invocation; raise a ToolInvocationError subclass on failure."""


class Tool(ABC):
    """
    Abstract base class for tools.

    Subclasses set ``name``, ``display_name``, ``description`` and
    ``params_model`` and implement ``build()``.
    """

    name: str = ""
    display_name: str = ""
    description: str = ""
    params_model: Type[ToolParams] = ToolParams
    read_only: bool = False

    @property
    def declaration(self) -> ToolDeclaration:
        return ToolDeclaration(
            name=self.name,
            display_name=self.display_name or self.name,
            description=self.description,
            parameters=parameters_from_model(self.params_model),
        )

    def validate_params(self, raw: Any) -> ToolParams:
        """Convert an untyped argument map into this tool's params model."""
        if raw is None:
            raw = {}
        if isinstance(raw, str):
            try:
                raw = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError as e:
                raise InvalidParameters(f"Arguments for {self.name} are not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise InvalidParameters(
                f"Arguments for {self.name} must be an object, got {type(raw).__name__}"
            )
        try:
            return self.params_model.model_validate(raw)
        except ValidationError as e:
            raise InvalidParameters(_format_validation_error(self.name, e)) from e

    @abstractmethod
    def build(self, params: ToolParams) -> ToolInvocation:
        """Create an invocation for already-validated params."""

    def create_invocation(self, raw: Any) -> ToolInvocation:
        return self.build(self.validate_params(raw))
