"""Engine events and the bounded channel that carries them to the host.

The engine is the only producer and the host the only consumer. ``send``
waits for space, so a slow host applies backpressure to the session. The
host stops a session by closing the channel; ``send`` then returns False and
the engine treats that as cancellation.
"""

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional, Union

DEFAULT_CHANNEL_SIZE = 64


@dataclass(frozen=True)
class TextChunk:
    text: str
    type: ClassVar[str] = "text_chunk"


@dataclass(frozen=True)
class ToolCallStarted:
    call_id: str
    name: str
    arguments: Dict[str, Any]
    type: ClassVar[str] = "tool_call_started"


@dataclass(frozen=True)
class ToolResultEvent:
    call_id: str
    tool_name: str
    content: str
    display: str = ""
    error: Optional[str] = None
    type: ClassVar[str] = "tool_result"


@dataclass(frozen=True)
class Done:
    output: str = ""
    aborted: bool = False
    type: ClassVar[str] = "done"


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    kind: str = "error"
    type: ClassVar[str] = "error"


EngineEvent = Union[TextChunk, ToolCallStarted, ToolResultEvent, Done, ErrorEvent]


def is_terminal(event: EngineEvent) -> bool:
    return isinstance(event, (Done, ErrorEvent))


def event_to_dict(event: EngineEvent) -> Dict[str, Any]:
    data = dataclasses.asdict(event)
    data["type"] = event.type
    return data


class ChannelClosed(Exception):
    """The consumer closed the channel."""


class EventChannel:
    """Bounded single-producer/single-consumer event queue."""

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: "asyncio.Queue[EngineEvent]" = asyncio.Queue(maxsize)
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        """True once the consumer has received the terminal event."""
        return self._finished

    async def send(self, event: EngineEvent) -> bool:
        """Queue *event*, waiting for space. False once the consumer has closed."""
        if self._closed:
            return False
        await self._queue.put(event)
        return not self._closed

    def close(self) -> None:
        """Consumer side: stop accepting events and release a blocked producer."""
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def receive(self) -> EngineEvent:
        if self._closed:
            raise ChannelClosed()
        event = await self._queue.get()
        if is_terminal(event):
            self._finished = True
        return event

    def __aiter__(self) -> "EventChannel":
        return self

    async def __anext__(self) -> EngineEvent:
        if self._finished or self._closed:
            raise StopAsyncIteration
        return await self.receive()
