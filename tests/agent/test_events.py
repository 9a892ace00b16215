"""Tests for agent.events -- event types and the bounded EventChannel.

Run with:
    python -m pytest tests/agent/test_events.py -v
"""

import asyncio

import pytest

from agent.events import (
    ChannelClosed,
    Done,
    ErrorEvent,
    EventChannel,
    TextChunk,
    ToolCallStarted,
    event_to_dict,
    is_terminal,
)


class TestEvents:
    def test_terminal_events(self):
        assert is_terminal(Done())
        assert is_terminal(ErrorEvent("boom"))
        assert not is_terminal(TextChunk("hi"))

    def test_event_to_dict(self):
        assert event_to_dict(ToolCallStarted("c1", "shell", {"command": "ls"})) == {
            "type": "tool_call_started",
            "call_id": "c1",
            "name": "shell",
            "arguments": {"command": "ls"},
        }
        assert event_to_dict(Done(output="x"))["type"] == "done"


class TestEventChannel:
    @pytest.mark.asyncio
    async def test_iteration_stops_after_terminal_event(self):
        channel = EventChannel()
        await channel.send(TextChunk("a"))
        await channel.send(TextChunk("b"))
        await channel.send(Done(output="b"))
        received = [event async for event in channel]
        assert received == [TextChunk("a"), TextChunk("b"), Done(output="b")]
        assert channel.finished

    @pytest.mark.asyncio
    async def test_send_blocks_when_full(self):
        channel = EventChannel(maxsize=1)
        await channel.send(TextChunk("a"))
        blocked = asyncio.ensure_future(channel.send(TextChunk("b")))
        await asyncio.sleep(0.01)
        assert not blocked.done()
        assert await channel.receive() == TextChunk("a")
        assert await blocked is True

    @pytest.mark.asyncio
    async def test_close_releases_blocked_sender(self):
        channel = EventChannel(maxsize=1)
        await channel.send(TextChunk("a"))
        blocked = asyncio.ensure_future(channel.send(TextChunk("b")))
        await asyncio.sleep(0.01)
        channel.close()
        assert await asyncio.wait_for(blocked, timeout=1) is False

    @pytest.mark.asyncio
    async def test_send_after_close(self):
        channel = EventChannel()
        channel.close()
        assert await channel.send(TextChunk("a")) is False
        with pytest.raises(ChannelClosed):
            await channel.receive()

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            EventChannel(maxsize=0)
