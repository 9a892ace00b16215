"""Tests for agent.tool_executor -- execute_tool_call / execute_tool_calls.

Tests the module-level executors, the ToolExecConfig dataclass and the
conversion of every failure mode into a failed ToolInvocationResult.

Run with:
    python -m pytest tests/agent/test_tool_executor.py -v
"""

import asyncio
import dataclasses

import pytest
from pydantic import Field

from agent.backend import ToolCallRequest
from agent.tool_executor import (
    CANCELLED_MESSAGE,
    ToolExecConfig,
    execute_tool_call,
    execute_tool_calls,
)
from tools.base import (
    CancellationToken,
    NoChangeProduced,
    Tool,
    ToolErrorKind,
    ToolInvocation,
    ToolInvocationResult,
    ToolParams,
)
from tools.registry import ToolRegistry


# ---------------------------------------------------------------------------
# Mock tools -- lightweight stand-ins driven by their parameters
# ---------------------------------------------------------------------------

class SleepParams(ToolParams):
    label: str = Field(description="Value to return")
    delay: float = Field(default=0.0, description="Seconds to sleep")


class SleepInvocation(ToolInvocation):
    def __init__(self, tool, params):
        super().__init__(params)
        self.tool = tool

    def describe(self):
        return f"sleep {self.params.delay} then return {self.params.label}"

    async def execute(self, cancel=None, on_output=None):
        self.tool.started.append(self.params.label)
        await asyncio.sleep(self.params.delay)
        if on_output is not None:
            on_output(f"done {self.params.label}")
        return ToolInvocationResult(content=self.params.label)


class SleepTool(Tool):
    name = "sleep"
    description = "Sleep then echo"
    params_model = SleepParams

    def __init__(self):
        self.started = []

    def build(self, params):
        return SleepInvocation(self, params)


class FailingInvocation(ToolInvocation):
    def describe(self):
        return "fail"

    async def execute(self, cancel=None, on_output=None):
        if self.params.mode == "typed":
            raise NoChangeProduced("nothing to do")
        raise RuntimeError("kaboom")


class FailParams(ToolParams):
    mode: str = "typed"


class FailingTool(Tool):
    name = "fail"
    params_model = FailParams

    def build(self, params):
        return FailingInvocation(params)


class BigParams(ToolParams):
    size: int


class BigInvocation(ToolInvocation):
    def describe(self):
        return "big"

    async def execute(self, cancel=None, on_output=None):
        return ToolInvocationResult(content="x" * self.params.size)


class BigTool(Tool):
    name = "big"
    params_model = BigParams

    def build(self, params):
        return BigInvocation(params)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _registry():
    return ToolRegistry([SleepTool(), FailingTool(), BigTool()])


def _call(name, call_id="call_1", **arguments):
    return ToolCallRequest(call_id=call_id, name=name, arguments=arguments)


# ---------------------------------------------------------------------------
# ToolExecConfig
# ---------------------------------------------------------------------------

class TestToolExecConfig:
    def test_frozen(self):
        config = ToolExecConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.max_result_chars = 5

    def test_defaults(self):
        config = ToolExecConfig()
        assert config.max_result_chars == 100_000
        assert config.allowed_tools is None


# ---------------------------------------------------------------------------
# Single call
# ---------------------------------------------------------------------------

class TestExecuteToolCall:
    @pytest.mark.asyncio
    async def test_success(self):
        result = await execute_tool_call(_registry(), _call("sleep", label="hi"))
        assert result.success
        assert result.content == "hi"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await execute_tool_call(_registry(), _call("nope"))
        assert not result.success
        assert result.error.kind == ToolErrorKind.INVALID_PARAMETERS
        assert "Unknown tool: nope" in result.content

    @pytest.mark.asyncio
    async def test_disallowed_tool_treated_as_unknown(self):
        config = ToolExecConfig(allowed_tools=frozenset({"big"}))
        result = await execute_tool_call(_registry(), _call("sleep", label="x"), config=config)
        assert result.error.kind == ToolErrorKind.INVALID_PARAMETERS

    @pytest.mark.asyncio
    async def test_invalid_parameters(self):
        tool_registry = _registry()
        result = await execute_tool_call(tool_registry, _call("sleep", label=5))
        assert result.error.kind == ToolErrorKind.INVALID_PARAMETERS
        assert tool_registry.get_tool("sleep").started == []

    @pytest.mark.asyncio
    async def test_typed_tool_error(self):
        result = await execute_tool_call(_registry(), _call("fail", mode="typed"))
        assert result.error.kind == ToolErrorKind.NO_CHANGE_PRODUCED
        assert result.content == "Error (no_change_produced): nothing to do"

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_execution_error(self):
        result = await execute_tool_call(_registry(), _call("fail", mode="crash"))
        assert result.error.kind == ToolErrorKind.EXECUTION_ERROR
        assert "kaboom" in result.content

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        cancel = CancellationToken()
        cancel.cancel()
        result = await execute_tool_call(_registry(), _call("sleep", label="x"), cancel=cancel)
        assert result.content == CANCELLED_MESSAGE
        assert not result.success

    @pytest.mark.asyncio
    async def test_truncation(self):
        config = ToolExecConfig(max_result_chars=100)
        result = await execute_tool_call(_registry(), _call("big", size=5000), config=config)
        assert result.content.startswith("x" * 100)
        assert "[Truncated: tool response was 5,000 chars" in result.content

    @pytest.mark.asyncio
    async def test_under_limit_untouched(self):
        result = await execute_tool_call(_registry(), _call("big", size=50))
        assert result.content == "x" * 50

    @pytest.mark.asyncio
    async def test_output_callback_receives_call_id(self):
        seen = []
        await execute_tool_call(
            _registry(), _call("sleep", call_id="c9", label="z"),
            on_output=lambda call_id, line: seen.append((call_id, line)),
        )
        assert seen == [("c9", "done z")]


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

class TestExecuteToolCalls:
    @pytest.mark.asyncio
    async def test_empty(self):
        assert await execute_tool_calls(_registry(), []) == []

    @pytest.mark.asyncio
    async def test_results_in_request_order(self):
        calls = [
            _call("sleep", call_id="a", label="slow", delay=0.05),
            _call("sleep", call_id="b", label="fast", delay=0.0),
        ]
        outcomes = await execute_tool_calls(_registry(), calls)
        assert [o.request.call_id for o in outcomes] == ["a", "b"]
        assert [o.result.content for o in outcomes] == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_runs_concurrently(self):
        calls = [_call("sleep", call_id=str(i), label=str(i), delay=0.2) for i in range(5)]
        loop = asyncio.get_running_loop()
        start = loop.time()
        await execute_tool_calls(_registry(), calls)
        assert loop.time() - start < 0.8

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self):
        calls = [_call("fail", call_id="a", mode="crash"), _call("sleep", call_id="b", label="ok")]
        outcomes = await execute_tool_calls(_registry(), calls)
        assert not outcomes[0].result.success
        assert outcomes[1].result.content == "ok"

    @pytest.mark.asyncio
    async def test_to_part(self):
        outcomes = await execute_tool_calls(_registry(), [_call("fail", call_id="a")])
        part = outcomes[0].to_part()
        assert part.call_id == "a"
        assert part.tool_name == "fail"
        assert part.is_error is True
