"""Backend contract and the OpenAI-compatible adapter.

The engine talks to a backend through one non-streaming call:
``generate(BackendRequest, credential) -> BackendResponse``. Anything that
implements that coroutine can drive a session; tests use scripted fakes.
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncOpenAI,
    RateLimitError,
)

from agent.conversation import ASSISTANT, TOOL, ConversationEntry
from agent.credentials import (
    CredentialPoolEntry,
    NonTransientBackendError,
    TransientBackendError,
    is_transient_error,
)
from tools.base import ToolDeclaration

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600.0

_TOOL_CALL_BLOCK = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL)
_NAMED_ARGS = re.compile(r"^([A-Za-z_][\w.-]*)\s*(\{.*\})$", re.DOTALL)


@dataclass(frozen=True)
class ToolCallRequest:
    call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BackendRequest:
    model: str
    entries: Tuple[ConversationEntry, ...]
    tools: Tuple[ToolDeclaration, ...] = ()


@dataclass(frozen=True)
class BackendResponse:
    text: str = ""
    tool_calls: Tuple[ToolCallRequest, ...] = ()


class Backend(Protocol):
    async def generate(
        self, request: BackendRequest, credential: Optional[CredentialPoolEntry]
    ) -> BackendResponse:
        ...


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def parse_tool_calls_from_text(text: str) -> List[ToolCallRequest]:
    """
    Extract tool calls embedded in text as <tool_call> XML tags.

    Accepted forms inside ``<tool_call>...</tool_call>``:
    - ``{"name": "...", "arguments": {...}}``
    - ``name{...arguments...}``

    Malformed blocks are skipped.
    """
    calls = []
    for block in _TOOL_CALL_BLOCK.findall(text or ""):
        name, arguments, call_id = None, None, None
        try:
            data = json.loads(block)
            if isinstance(data, dict):
                name = data.get("name")
                arguments = data.get("arguments", {})
                call_id = data.get("id")
        except json.JSONDecodeError:
            match = _NAMED_ARGS.match(block)
            if match:
                try:
                    name, arguments = match.group(1), json.loads(match.group(2))
                except json.JSONDecodeError:
                    name = None
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                arguments = None
        if not name or not isinstance(arguments, dict):
            logger.debug("Skipping malformed tool call block: %s", block[:200])
            continue
        calls.append(ToolCallRequest(call_id=str(call_id or _new_call_id()), name=str(name), arguments=arguments))
    return calls


def strip_tool_call_markup(text: str) -> str:
    return _TOOL_CALL_BLOCK.sub("", text or "").strip()


# =============================================================================
# OpenAI-compatible wire conversion
# =============================================================================


def entries_to_messages(entries: Sequence[ConversationEntry]) -> List[Dict[str, Any]]:
    """Convert conversation entries to chat-completions messages."""
    messages: List[Dict[str, Any]] = []
    for entry in entries:
        if entry.role == TOOL:
            for result in entry.tool_results:
                messages.append({
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": result.content,
                })
            continue
        message: Dict[str, Any] = {"role": entry.role, "content": entry.text}
        if entry.role == ASSISTANT and entry.tool_calls:
            message["content"] = entry.text or None
            message["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in entry.tool_calls
            ]
        messages.append(message)
    return messages


def declarations_to_tools(declarations: Sequence[ToolDeclaration]) -> List[Dict[str, Any]]:
    return [{"type": "function", "function": decl.to_dict()} for decl in declarations]


def _parse_arguments(raw: Any, tool_name: str) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        logger.warning("Invalid JSON arguments for %s: %s", tool_name, e)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAICompatibleBackend:
    """Backend adapter for any OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        base_url: str,
        client_factory: Callable[..., Any] = AsyncOpenAI,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        self.base_url = base_url
        self.client_factory = client_factory
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._clients: Dict[str, Any] = {}

    def _client_for(self, credential: Optional[CredentialPoolEntry]) -> Any:
        secret = credential.secret if credential is not None else "no-key-required"
        client = self._clients.get(secret)
        if client is None:
            client = self.client_factory(api_key=secret, base_url=self.base_url)
            self._clients[secret] = client
        return client

    def _build_api_kwargs(self, request: BackendRequest) -> Dict[str, Any]:
        api_kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": entries_to_messages(request.entries),
            "timeout": self.timeout,
        }
        if request.tools:
            api_kwargs["tools"] = declarations_to_tools(request.tools)
        if self.max_tokens is not None:
            api_kwargs["max_tokens"] = self.max_tokens
        if self.temperature is not None:
            api_kwargs["temperature"] = self.temperature
        return api_kwargs

    async def generate(
        self, request: BackendRequest, credential: Optional[CredentialPoolEntry]
    ) -> BackendResponse:
        client = self._client_for(credential)
        try:
            response = await client.chat.completions.create(**self._build_api_kwargs(request))
        except (RateLimitError, APIConnectionError) as e:
            raise TransientBackendError(str(e)) from e
        except APIStatusError as e:
            if e.status_code >= 500 or e.status_code == 429 or is_transient_error(e):
                raise TransientBackendError(f"Error code: {e.status_code} - {e}") from e
            raise NonTransientBackendError(f"Error code: {e.status_code} - {e}") from e

        if not getattr(response, "choices", None):
            raise TransientBackendError("Invalid API response: no choices returned")
        message = response.choices[0].message

        text = message.content or ""
        tool_calls = []
        for tc in getattr(message, "tool_calls", None) or []:
            name = tc.function.name
            tool_calls.append(ToolCallRequest(
                call_id=tc.id or _new_call_id(),
                name=name,
                arguments=_parse_arguments(tc.function.arguments, name),
            ))

        if not tool_calls and "<tool_call>" in text:
            tool_calls = parse_tool_calls_from_text(text)
            text = strip_tool_call_markup(text)

        return BackendResponse(text=text, tool_calls=tuple(tool_calls))

    async def aclose(self) -> None:
        for client in self._clients.values():
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        self._clients.clear()
