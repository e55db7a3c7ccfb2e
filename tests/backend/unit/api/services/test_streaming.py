"""Tests for the SSE channel and the streaming multiplexer."""

from __future__ import annotations

import asyncio
import json
import sys

from collections.abc import Callable

import pytest

from api.services.execution_engine import ExecutionEngine, ProcessSlots
from api.services.streaming import DONE_FRAME, SSEChannel, StreamingMultiplexer, sse_frame
from core.command_resolver import CommandResolver
from core.tool_registry import SpawnTool, ToolRegistry

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake tools are POSIX shell scripts")


def make_multiplexer(*tools: SpawnTool, limit: int = 2) -> StreamingMultiplexer:
    engine = ExecutionEngine(ToolRegistry(list(tools)), CommandResolver(), ProcessSlots(limit), 10_000)
    return StreamingMultiplexer(engine)


def decode(frames: list[str]) -> list[object]:
    decoded: list[object] = []
    for frame in frames:
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        body = frame[len("data: ") : -2]
        decoded.append(body if body == "[DONE]" else json.loads(body))
    return decoded


class TestSSEChannel:
    """Tests for frame writing and terminal states."""

    @pytest.mark.asyncio
    async def test_frames_until_end(self) -> None:
        channel = SSEChannel()
        channel.send_chunk("a")
        channel.send_error("bad")
        channel.end()

        frames = [frame async for frame in channel.frames()]

        assert decode(frames) == [{"chunk": "a"}, {"error": "bad"}, "[DONE]"]

    @pytest.mark.asyncio
    async def test_writes_after_end_are_dropped(self) -> None:
        channel = SSEChannel()
        channel.end()

        assert channel.send_chunk("late") is False
        assert [frame async for frame in channel.frames()] == [DONE_FRAME]

    @pytest.mark.asyncio
    async def test_disconnect_drops_unread_frames(self) -> None:
        channel = SSEChannel()
        channel.send_chunk("unread")
        channel.disconnect()

        assert channel.writable is False
        assert [frame async for frame in channel.frames()] == []

    def test_frame_keeps_unicode(self) -> None:
        assert sse_frame({"chunk": "가사"}) == 'data: {"chunk": "가사"}\n\n'


class TestStreamingMultiplexer:
    """Tests for relaying executions into event streams."""

    @pytest.mark.asyncio
    async def test_chunks_then_done(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        tool = make_spawn_tool("chunks", "printf 'one '; sleep 0.1; printf 'two'")
        multiplexer = make_multiplexer(tool)

        sink, cancel = multiplexer.start(tool, "x", None, 5_000)
        frames = decode([frame async for frame in multiplexer.relay(sink, cancel)])

        assert frames[-1] == "[DONE]"
        assert "".join(f["chunk"] for f in frames[:-1]) == "one two"  # type: ignore[index]

    @pytest.mark.asyncio
    async def test_failure_emits_one_error_before_done(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        tool = make_spawn_tool("fail", "printf 'partial'; echo 'exploded' >&2; exit 2")
        multiplexer = make_multiplexer(tool)

        sink, cancel = multiplexer.start(tool, "x", None, 5_000)
        frames = decode([frame async for frame in multiplexer.relay(sink, cancel)])

        assert frames == [{"chunk": "partial"}, {"error": "exploded"}, "[DONE]"]

    @pytest.mark.asyncio
    async def test_timeout_emits_error(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        tool = make_spawn_tool("slow", "sleep 5")
        multiplexer = make_multiplexer(tool)

        sink, cancel = multiplexer.start(tool, "x", None, 150)
        frames = decode([frame async for frame in multiplexer.relay(sink, cancel)])

        assert frames == [{"error": "Timeout after 150ms"}, "[DONE]"]

    @pytest.mark.asyncio
    async def test_concurrency_error_is_streamed(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        tool = make_spawn_tool("echo", 'printf "%s" "$1"')
        multiplexer = make_multiplexer(tool, limit=1)
        lease = multiplexer._engine.slots.acquire()

        sink, cancel = multiplexer.start(tool, "x", None, 5_000)
        frames = decode([frame async for frame in multiplexer.relay(sink, cancel)])
        lease.release()

        assert len(frames) == 2
        assert "Too many concurrent requests" in frames[0]["error"]  # type: ignore[index]
        assert frames[1] == "[DONE]"

    @pytest.mark.asyncio
    async def test_abort_stops_chunks(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        """After the consumer leaves, no further frames are produced and the slot is freed."""
        tool = make_spawn_tool("chatty", "while true; do printf 'tick '; sleep 0.05; done")
        multiplexer = make_multiplexer(tool)

        sink, cancel = multiplexer.start(tool, "x", None, 10_000)
        relay = multiplexer.relay(sink, cancel)
        first = await relay.__anext__()
        await relay.aclose()

        assert json.loads(first[len("data: ") :])["chunk"].startswith("tick")
        assert cancel.is_set()
        assert sink.disconnected

        for _ in range(100):
            if multiplexer.active_streams == 0:
                break
            await asyncio.sleep(0.02)
        assert multiplexer.active_streams == 0
        assert multiplexer._engine.active_processes == 0
        assert sink.send_chunk("late") is False

