"""Execution engine -- the turn state machine driving one assisted session.

A session consumes a Script turn by turn. Static messages are rendered from
the script parameters and earlier outputs; AI-placeholder messages (and
turns without one) run a backend exchange. An exchange sends the pruned
context plus the tool declarations, appends the assistant reply, dispatches
any requested tool calls concurrently and loops until the backend answers
without tool calls.

States::

    IDLE -> RENDERING_TURN -> AWAITING_BACKEND -> PARSING_RESPONSE
         -> DISPATCHING_TOOLS -> AWAITING_BACKEND ... -> COMPLETED | FAILED

Every public entry point returns an ExecutionResult; exceptions are turned
into a FAILED state and a terminal ErrorEvent.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

from agent.backend import Backend, BackendRequest, BackendResponse
from agent.context_window import ContextWindowManager, create_summary
from agent.conversation import USER, ConversationEntry, ToolCallPart
from agent.credentials import BackendCallError, CredentialRotationManager
from agent.events import (
    DEFAULT_CHANNEL_SIZE,
    Done,
    EngineEvent,
    ErrorEvent,
    EventChannel,
    TextChunk,
    ToolCallStarted,
    ToolResultEvent,
)
from agent.intent import IntentLabel, intent_guidance, is_question_only
from agent.knowledge import KnowledgeStore
from agent.script import REQUIRE_TOOL_CALL, Script, ScriptError, Turn
from agent.template import UnresolvedPlaceholderError, render
from agent.tool_executor import ToolExecConfig, execute_tool_calls
from tools.base import CancellationToken
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 25
DEFAULT_MAX_ATTEMPTS = 10

RESPONSE_VARIABLE = "RESPONSE"
LATEST_RESULT_VARIABLE = "LatestResult"
SUMMARY_VARIABLE = "SUMMARY"

TOOL_CALL_NUDGE = (
    "This step requires a tool call. Call one of the available tools to make "
    "progress instead of answering in text."
)


class EngineState(str, Enum):
    IDLE = "idle"
    RENDERING_TURN = "rendering_turn"
    AWAITING_BACKEND = "awaiting_backend"
    PARSING_RESPONSE = "parsing_response"
    DISPATCHING_TOOLS = "dispatching_tools"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionAborted(Exception):
    """The host cancelled the session or closed its event channel."""


@dataclass
class ExecutionResult:
    success: bool
    output: str = ""
    variables: Dict[str, Any] = field(default_factory=dict)
    entries: Tuple[ConversationEntry, ...] = ()
    backend_calls: int = 0
    tool_calls: int = 0
    aborted: bool = False
    error: Optional[str] = None
    state: EngineState = EngineState.COMPLETED


@dataclass
class _Session:
    variables: Dict[str, Any]
    registry: ToolRegistry
    events: Optional[EventChannel] = None
    cancel: Optional[CancellationToken] = None
    backend_calls: int = 0
    tool_calls: int = 0
    knowledge_checked: bool = False
    first_user_message: str = ""


class ExecutionEngine:
    """Drives scripts against one backend and one tool registry.

    One engine instance owns one session's conversation entries; nothing
    here is shared between engines.
    """

    def __init__(
        self,
        backend: Backend,
        registry: ToolRegistry,
        *,
        model: str,
        credentials: Optional[CredentialRotationManager] = None,
        provider: Optional[str] = None,
        context_manager: Optional[ContextWindowManager] = None,
        knowledge: Optional[KnowledgeStore] = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        exec_config: Optional[ToolExecConfig] = None,
        channel_size: int = DEFAULT_CHANNEL_SIZE,
        context_length: Optional[int] = None,
    ):
        if max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be at least 1")
        self.backend = backend
        self.registry = registry
        self.model = model
        self.credentials = credentials
        self.provider = provider
        self.context_manager = context_manager or ContextWindowManager()
        self.knowledge = knowledge
        self.max_tool_rounds = max_tool_rounds
        self.max_attempts = max_attempts
        self.exec_config = exec_config or ToolExecConfig()
        self.channel_size = channel_size
        self.context_length = context_length

        self.state = EngineState.IDLE
        self.state_history: List[EngineState] = [EngineState.IDLE]
        self.last_result: Optional[ExecutionResult] = None
        self._entries: List[ConversationEntry] = []
        self._running = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def entries(self) -> Tuple[ConversationEntry, ...]:
        return tuple(self._entries)

    @property
    def running(self) -> bool:
        return self._running

    def reset(self) -> None:
        """Discard the session's conversation and return to IDLE."""
        if self._running:
            raise RuntimeError("Cannot reset while a script is running")
        self._entries.clear()
        self.last_result = None
        self.state = EngineState.IDLE
        self.state_history = [EngineState.IDLE]

    async def execute_script(
        self,
        script: Script,
        params: Optional[Mapping[str, Any]] = None,
        *,
        events: Optional[EventChannel] = None,
        cancel: Optional[CancellationToken] = None,
        intents: Optional[Sequence[IntentLabel]] = None,
    ) -> ExecutionResult:
        """Run every turn of *script* and return the outcome.

        Exactly one terminal event (Done or ErrorEvent) is sent on *events*.
        """
        if self._running:
            raise RuntimeError("A script is already running on this engine")
        self._running = True

        variables: Dict[str, Any] = dict(script.parameters)
        variables.update(params or {})
        registry = self.registry
        if intents and is_question_only(intents):
            registry = self.registry.read_only_view()
        session = _Session(variables=variables, registry=registry, events=events, cancel=cancel)

        if self.state != EngineState.IDLE:
            self._transition(EngineState.IDLE)
        logger.info("Starting script %s (%d turn(s))", script.source or "<inline>", len(script.turns))

        try:
            output = await self._run(session, script, intents)
        except SessionAborted as e:
            logger.info("Session aborted: %s", e)
            self._transition(EngineState.COMPLETED)
            result = self._result(session, success=True, aborted=True)
            await self._emit_terminal(session, Done(output=result.output, aborted=True))
        except (UnresolvedPlaceholderError, ScriptError) as e:
            logger.error("Script error: %s", e)
            result = await self._fail(session, str(e), "script_error")
        except BackendCallError as e:
            logger.error("Backend call failed: %s", e)
            result = await self._fail(session, str(e), type(e).__name__)
        except asyncio.CancelledError:
            self._transition(EngineState.COMPLETED)
            self.last_result = self._result(session, success=True, aborted=True)
            self._running = False
            raise
        except Exception as e:
            logger.exception("Unexpected engine failure")
            result = await self._fail(session, f"{type(e).__name__}: {e}", "internal_error")
        else:
            self._transition(EngineState.COMPLETED)
            result = self._result(session, success=True, output=output)
            self._record_knowledge(session, output)
            await self._emit_terminal(session, Done(output=output))
            logger.info(
                "Script completed: %d backend call(s), %d tool call(s)",
                session.backend_calls, session.tool_calls,
            )

        self.last_result = result
        self._running = False
        return result

    async def stream(
        self,
        script: Script,
        params: Optional[Mapping[str, Any]] = None,
        *,
        intents: Optional[Sequence[IntentLabel]] = None,
    ) -> AsyncIterator[EngineEvent]:
        """Run *script* in a task and yield its events.

        Leaving the iteration early closes the channel and cancels the
        session; the final ExecutionResult is kept on ``last_result``.
        """
        if self._running:
            raise RuntimeError("A script is already running on this engine")
        channel = EventChannel(self.channel_size)
        cancel = CancellationToken()

        async def run() -> ExecutionResult:
            try:
                return await self.execute_script(script, params, events=channel, cancel=cancel, intents=intents)
            except Exception as e:
                # Raised before a session started, so no terminal event was sent
                await channel.send(ErrorEvent(message=str(e), kind=type(e).__name__))
                raise

        task = asyncio.ensure_future(run())
        try:
            async for event in channel:
                yield event
        finally:
            if not channel.finished:
                channel.close()
                cancel.cancel("event stream closed")
            await task

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    async def _run(self, session: _Session, script: Script, intents: Optional[Sequence[IntentLabel]]) -> str:
        if intents:
            self._append(ConversationEntry.system(intent_guidance(intents)))

        for index, turn in enumerate(script.turns):
            self._check_abort(session)
            self._transition(EngineState.RENDERING_TURN)
            logger.debug("Turn %d: %d message(s)", index + 1, len(turn.messages))

            for message in turn.messages:
                if message.ai_placeholder:
                    output = await self._exchange(session, turn)
                    self._store_output(session, output, message.variable)
                    continue
                text = message.content if message.literal else render(message.content, session.variables)
                if message.role == USER and not session.first_user_message:
                    session.first_user_message = text
                self._append(ConversationEntry.from_message(message.role, text))

            if turn.messages and not turn.has_ai_placeholder:
                output = await self._exchange(session, turn)
                self._store_output(session, output)

            await self._run_instructions(session, turn)

        return str(session.variables.get(LATEST_RESULT_VARIABLE, ""))

    def _store_output(self, session: _Session, output: str, variable: Optional[str] = None) -> None:
        if variable:
            session.variables[variable] = output
        session.variables[RESPONSE_VARIABLE] = output
        session.variables[LATEST_RESULT_VARIABLE] = output

    async def _run_instructions(self, session: _Session, turn: Turn) -> None:
        for instruction in turn.instructions:
            name = instruction.name.lower()
            if name == "echo":
                await self._emit(session, TextChunk(render(instruction.value, session.variables)))
            elif name == "set":
                assignments = {k: v for k, v in instruction.args.items() if k != "value"}
                if instruction.value:
                    key, sep, value = instruction.value.partition("=")
                    if not sep or not key.strip():
                        raise ScriptError(f"$set expects key=value, got {instruction.value!r}")
                    assignments[key.strip()] = value.strip()
                for key, value in assignments.items():
                    session.variables[key] = render(str(value), session.variables)
            elif name == "print":
                await self._emit(session, TextChunk(str(session.variables.get(LATEST_RESULT_VARIABLE, ""))))
            elif name == "summarize":
                session.variables[SUMMARY_VARIABLE] = create_summary(self._entries)
            elif name == REQUIRE_TOOL_CALL:
                continue
            else:
                logger.warning("Ignoring unknown instruction: %s", instruction.name)

    # ------------------------------------------------------------------
    # Backend exchange
    # ------------------------------------------------------------------

    async def _exchange(self, session: _Session, turn: Turn) -> str:
        """One request/response exchange, looping through tool-call rounds."""
        self._prime_knowledge(session)
        rounds = 0
        nudged = False
        called_tools = False

        while True:
            self._check_abort(session)
            response = await self._call_backend(session)

            self._transition(EngineState.PARSING_RESPONSE)
            calls = list(response.tool_calls)
            self._append(ConversationEntry.assistant(
                response.text,
                [ToolCallPart(call_id=c.call_id, name=c.name, arguments=c.arguments) for c in calls],
            ))
            if response.text:
                await self._emit(session, TextChunk(response.text))

            if not calls:
                if turn.requires_tool_call and not called_tools and not nudged:
                    nudged = True
                    logger.info("Backend answered without a tool call; nudging once")
                    self._append(ConversationEntry.user(TOOL_CALL_NUDGE))
                    continue
                return response.text

            self._transition(EngineState.DISPATCHING_TOOLS)
            for call in calls:
                await self._emit(session, ToolCallStarted(call.call_id, call.name, dict(call.arguments)))

            outcomes = await execute_tool_calls(
                session.registry,
                calls,
                config=self.exec_config,
                cancel=session.cancel,
                on_output=self._log_tool_output,
            )
            for outcome in outcomes:
                self._append(ConversationEntry.tool_result(outcome.to_part()))
                await self._emit(session, ToolResultEvent(
                    call_id=outcome.request.call_id,
                    tool_name=outcome.request.name,
                    content=outcome.result.content,
                    display=outcome.result.display,
                    error=outcome.result.error.message if outcome.result.error else None,
                ))
            session.tool_calls += len(calls)
            called_tools = True

            rounds += 1
            if rounds >= self.max_tool_rounds:
                logger.warning(
                    "Reached max tool rounds (%d); ending exchange with the latest response",
                    self.max_tool_rounds,
                )
                return response.text

    async def _call_backend(self, session: _Session) -> BackendResponse:
        self._transition(EngineState.AWAITING_BACKEND)
        pruned = self.context_manager.prune_chat_history(
            self._entries, self.model, max_tokens=self.context_length
        )
        request = BackendRequest(
            model=self.model,
            entries=tuple(pruned),
            tools=tuple(session.registry.declarations()),
        )

        async def operation(credential):
            return await self.backend.generate(request, credential)

        if self.credentials is None:
            pending = operation(None)
        else:
            pending = self.credentials.call_with_retry(operation, self.max_attempts, self.provider)

        session.backend_calls += 1
        response = await self._await_cancellable(session, pending)
        logger.debug(
            "Backend call %d: %d chars, %d tool call(s)",
            session.backend_calls, len(response.text), len(response.tool_calls),
        )
        return response

    async def _await_cancellable(self, session: _Session, coro):
        """Await *coro*, abandoning it as soon as the session is cancelled."""
        if session.cancel is None:
            return await coro
        call_task = asyncio.ensure_future(coro)
        cancel_task = asyncio.ensure_future(session.cancel.wait())
        try:
            await asyncio.wait({call_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
        if not call_task.done():
            call_task.cancel()
            try:
                await call_task
            except asyncio.CancelledError:
                pass
            raise SessionAborted(session.cancel.reason or "cancelled")
        return call_task.result()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, state: EngineState) -> None:
        if state != self.state:
            logger.debug("Engine state %s -> %s", self.state.value, state.value)
        self.state = state
        self.state_history.append(state)

    def _append(self, entry: ConversationEntry) -> None:
        self._entries.append(entry)

    def _check_abort(self, session: _Session) -> None:
        if session.cancel is not None and session.cancel.cancelled:
            raise SessionAborted(session.cancel.reason or "cancelled")
        if session.events is not None and session.events.closed:
            raise SessionAborted("event channel closed")

    async def _emit(self, session: _Session, event: EngineEvent) -> None:
        if session.events is None:
            return
        if not await session.events.send(event):
            raise SessionAborted("event channel closed")

    async def _emit_terminal(self, session: _Session, event: EngineEvent) -> None:
        if session.events is not None:
            await session.events.send(event)

    async def _fail(self, session: _Session, message: str, kind: str) -> ExecutionResult:
        self._transition(EngineState.FAILED)
        result = self._result(session, success=False, error=message)
        await self._emit_terminal(session, ErrorEvent(message=message, kind=kind))
        return result

    def _result(self, session: _Session, *, success: bool, output: Optional[str] = None,
                aborted: bool = False, error: Optional[str] = None) -> ExecutionResult:
        if output is None:
            output = str(session.variables.get(LATEST_RESULT_VARIABLE, ""))
        return ExecutionResult(
            success=success,
            output=output,
            variables=dict(session.variables),
            entries=self.entries,
            backend_calls=session.backend_calls,
            tool_calls=session.tool_calls,
            aborted=aborted,
            error=error,
            state=self.state,
        )

    def _prime_knowledge(self, session: _Session) -> None:
        if self.knowledge is None or session.knowledge_checked:
            return
        session.knowledge_checked = True
        if not session.first_user_message:
            return
        snippet = self.knowledge.lookup(session.first_user_message)
        if snippet:
            logger.debug("Adding prior knowledge snippet (%d chars)", len(snippet))
            self._append(ConversationEntry.system(f"Relevant prior knowledge:\n{snippet}"))

    def _record_knowledge(self, session: _Session, output: str) -> None:
        if self.knowledge is None or not session.first_user_message or not output:
            return
        try:
            self.knowledge.record(session.first_user_message, output)
        except Exception as e:
            logger.warning("Failed to record knowledge: %s", e)

    @staticmethod
    def _log_tool_output(call_id: str, line: str) -> None:
        logger.debug("[%s] %s", call_id, line)
