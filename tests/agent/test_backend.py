"""Tests for agent.backend -- wire conversion and the OpenAI-compatible adapter.

The OpenAI client is replaced with a SimpleNamespace whose
``chat.completions.create`` is an AsyncMock, so no network is touched.

Run with:
    python -m pytest tests/agent/test_backend.py -v
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from agent.backend import (
    BackendRequest,
    OpenAICompatibleBackend,
    declarations_to_tools,
    entries_to_messages,
)
from agent.conversation import ConversationEntry, ToolCallPart, ToolResultPart
from agent.credentials import CredentialPoolEntry, NonTransientBackendError, TransientBackendError
from tools.base import ParameterSpec, ToolDeclaration

URL = "https://api.example.test/v1/chat/completions"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _completion(content="", tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def _backend(create):
    created = []

    def factory(**kwargs):
        client = SimpleNamespace(
            chat=SimpleNamespace(completions=SimpleNamespace(create=create)),
            close=AsyncMock(),
            kwargs=kwargs,
        )
        created.append(client)
        return client

    return OpenAICompatibleBackend("https://api.example.test/v1", client_factory=factory), created


def _request(tools=()):
    return BackendRequest(model="gpt-4o-mini", entries=(ConversationEntry.user("hi"),), tools=tuple(tools))


def _status_error(status):
    response = httpx.Response(status, request=httpx.Request("POST", URL))
    return openai.APIStatusError(f"status {status}", response=response, body=None)


CREDENTIAL = CredentialPoolEntry(secret="sk-test-secret-value", id="k1")


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------

class TestEntriesToMessages:
    def test_text_entries(self):
        messages = entries_to_messages([
            ConversationEntry.system("sys"),
            ConversationEntry.user("hello"),
            ConversationEntry.assistant("hi there"),
        ])
        assert messages == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
        ]

    def test_tool_call_and_result(self):
        messages = entries_to_messages([
            ConversationEntry.assistant("", [ToolCallPart("c1", "read_file", {"path": "a.py"})]),
            ConversationEntry.tool_result(ToolResultPart("c1", "read_file", "print(1)")),
        ])
        assert messages[0]["content"] is None
        assert messages[0]["tool_calls"] == [{
            "id": "c1",
            "type": "function",
            "function": {"name": "read_file", "arguments": json.dumps({"path": "a.py"})},
        }]
        assert messages[1] == {"role": "tool", "tool_call_id": "c1", "content": "print(1)"}

    def test_declarations_to_tools(self):
        decl = ToolDeclaration("shell", "Shell", "Run", (ParameterSpec("command", "string", "cmd", True),))
        tools = declarations_to_tools([decl])
        assert tools[0]["type"] == "function"
        assert tools[0]["function"]["name"] == "shell"
        assert tools[0]["function"]["parameters"]["required"] == ["command"]


# ---------------------------------------------------------------------------
# OpenAICompatibleBackend
# ---------------------------------------------------------------------------

class TestOpenAICompatibleBackend:
    @pytest.mark.asyncio
    async def test_text_response(self):
        create = AsyncMock(return_value=_completion("hello"))
        backend, created = _backend(create)
        response = await backend.generate(_request(), CREDENTIAL)
        assert response.text == "hello"
        assert response.tool_calls == ()
        assert created[0].kwargs == {"api_key": "sk-test-secret-value", "base_url": "https://api.example.test/v1"}
        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_tools_sent_when_declared(self):
        create = AsyncMock(return_value=_completion("ok"))
        backend, _ = _backend(create)
        decl = ToolDeclaration("read_file", "Read File", "Read")
        await backend.generate(_request([decl]), CREDENTIAL)
        assert create.call_args.kwargs["tools"][0]["function"]["name"] == "read_file"

    @pytest.mark.asyncio
    async def test_native_tool_calls(self):
        create = AsyncMock(return_value=_completion(None, [
            _tool_call("c1", "read_file", '{"path": "a.py"}'),
            _tool_call("c2", "shell", "{not json"),
        ]))
        backend, _ = _backend(create)
        response = await backend.generate(_request(), CREDENTIAL)
        assert response.text == ""
        assert [(c.call_id, c.name, c.arguments) for c in response.tool_calls] == [
            ("c1", "read_file", {"path": "a.py"}),
            ("c2", "shell", {}),
        ]

    @pytest.mark.asyncio
    async def test_text_embedded_tool_calls(self):
        text = 'Checking.<tool_call>{"name": "lint_file", "arguments": {"path": "x.py"}}</tool_call>'
        backend, _ = _backend(AsyncMock(return_value=_completion(text)))
        response = await backend.generate(_request(), CREDENTIAL)
        assert response.text == "Checking."
        assert response.tool_calls[0].name == "lint_file"

    @pytest.mark.asyncio
    async def test_client_cached_per_secret(self):
        backend, created = _backend(AsyncMock(return_value=_completion("x")))
        other = CredentialPoolEntry(secret="sk-other-secret-value", id="k2")
        await backend.generate(_request(), CREDENTIAL)
        await backend.generate(_request(), CREDENTIAL)
        await backend.generate(_request(), other)
        assert len(created) == 2

    @pytest.mark.asyncio
    async def test_no_credential_uses_placeholder_key(self):
        backend, created = _backend(AsyncMock(return_value=_completion("x")))
        await backend.generate(_request(), None)
        assert created[0].kwargs["api_key"] == "no-key-required"

    @pytest.mark.asyncio
    async def test_empty_choices_is_transient(self):
        backend, _ = _backend(AsyncMock(return_value=SimpleNamespace(choices=[])))
        with pytest.raises(TransientBackendError):
            await backend.generate(_request(), CREDENTIAL)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_status_is_transient(self, status):
        backend, _ = _backend(AsyncMock(side_effect=_status_error(status)))
        with pytest.raises(TransientBackendError):
            await backend.generate(_request(), CREDENTIAL)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404])
    async def test_client_error_is_non_transient(self, status):
        backend, _ = _backend(AsyncMock(side_effect=_status_error(status)))
        with pytest.raises(NonTransientBackendError):
            await backend.generate(_request(), CREDENTIAL)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        error = openai.APIConnectionError(request=httpx.Request("POST", URL))
        backend, _ = _backend(AsyncMock(side_effect=error))
        with pytest.raises(TransientBackendError):
            await backend.generate(_request(), CREDENTIAL)

    @pytest.mark.asyncio
    async def test_aclose_closes_clients(self):
        backend, created = _backend(AsyncMock(return_value=_completion("x")))
        await backend.generate(_request(), CREDENTIAL)
        await backend.aclose()
        created[0].close.assert_awaited_once()
