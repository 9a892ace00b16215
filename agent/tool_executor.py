"""Tool call execution with frozen configuration.

Runs every tool call of one backend response concurrently and returns one
outcome per call, in call-request order. A failing tool never raises out of
here: validation errors, typed tool errors, cancellations and unexpected
exceptions all become failed ToolInvocationResults so the model can react.
"""

from dataclasses import dataclass
import asyncio
import logging
import time
from typing import Callable, FrozenSet, List, Optional, Sequence

from agent.backend import ToolCallRequest
from agent.conversation import ToolResultPart
from tools.base import (
    CancellationToken,
    OperationCancelled,
    ToolError,
    ToolErrorKind,
    ToolInvocationError,
    ToolInvocationResult,
)
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 100_000

CANCELLED_MESSAGE = "[Tool execution cancelled - user interrupted]"

ToolOutputCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class ToolExecConfig:
    """Immutable configuration for tool execution."""

    max_result_chars: int = MAX_TOOL_RESULT_CHARS
    allowed_tools: Optional[FrozenSet[str]] = None
    log_prefix: str = ""
    log_prefix_chars: int = 100


@dataclass(frozen=True)
class ToolCallOutcome:
    request: ToolCallRequest
    result: ToolInvocationResult
    duration: float = 0.0

    def to_part(self) -> ToolResultPart:
        return ToolResultPart(
            call_id=self.request.call_id,
            tool_name=self.request.name,
            content=self.result.content,
            is_error=not self.result.success,
        )


def _cancelled_result() -> ToolInvocationResult:
    return ToolInvocationResult(
        content=CANCELLED_MESSAGE,
        display="Cancelled",
        error=ToolError(kind=ToolErrorKind.EXECUTION_ERROR, message="cancelled"),
    )


def _truncate(result: ToolInvocationResult, limit: int) -> ToolInvocationResult:
    content = result.content
    if len(content) <= limit:
        return result
    original_len = len(content)
    result.content = (
        content[:limit]
        + f"\n\n[Truncated: tool response was {original_len:,} chars, "
        f"exceeding the {limit:,} char limit]"
    )
    return result


async def execute_tool_call(
    registry: ToolRegistry,
    request: ToolCallRequest,
    *,
    config: ToolExecConfig = ToolExecConfig(),
    cancel: Optional[CancellationToken] = None,
    on_output: Optional[ToolOutputCallback] = None,
) -> ToolInvocationResult:
    """Resolve, validate and run one tool call; never raises for tool failures."""
    tool = registry.get_tool(request.name)
    if tool is None or (config.allowed_tools is not None and request.name not in config.allowed_tools):
        return ToolInvocationResult.from_error(
            ToolError(kind=ToolErrorKind.INVALID_PARAMETERS, message=f"Unknown tool: {request.name}")
        )

    if cancel is not None and cancel.cancelled:
        return _cancelled_result()

    output_cb = None
    if on_output is not None:
        def output_cb(line: str) -> None:
            on_output(request.call_id, line)

    try:
        invocation = tool.create_invocation(request.arguments)
        logger.debug("%s%s", config.log_prefix, invocation.describe()[: config.log_prefix_chars])
        result = await invocation.execute(cancel=cancel, on_output=output_cb)
    except ToolInvocationError as e:
        logger.info("Tool %s failed (%s): %s", request.name, e.kind.value, e)
        result = ToolInvocationResult.from_error(e.to_tool_error())
    except OperationCancelled:
        logger.info("Tool %s cancelled", request.name)
        result = _cancelled_result()
    except Exception as e:
        logger.exception("Unexpected error in tool %s", request.name)
        result = ToolInvocationResult.from_error(
            ToolError(kind=ToolErrorKind.EXECUTION_ERROR, message=f"Tool execution error: {e}")
        )

    return _truncate(result, config.max_result_chars)


async def execute_tool_calls(
    registry: ToolRegistry,
    requests: Sequence[ToolCallRequest],
    *,
    config: ToolExecConfig = ToolExecConfig(),
    cancel: Optional[CancellationToken] = None,
    on_output: Optional[ToolOutputCallback] = None,
) -> List[ToolCallOutcome]:
    """Run all *requests* concurrently; outcomes come back in request order."""

    async def run_one(request: ToolCallRequest) -> ToolCallOutcome:
        start = time.monotonic()
        result = await execute_tool_call(registry, request, config=config, cancel=cancel, on_output=on_output)
        duration = time.monotonic() - start
        logger.debug(
            "%sTool %s (%s) finished in %.2fs, success=%s",
            config.log_prefix, request.name, request.call_id, duration, result.success,
        )
        return ToolCallOutcome(request=request, result=result, duration=duration)

    if not requests:
        return []
    return list(await asyncio.gather(*(run_one(r) for r in requests)))
