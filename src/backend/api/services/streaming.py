"""
Server-sent event relay for streamed generations.

Frames are ``data: <json>\\n\\n`` lines: ``{"chunk": "..."}`` for output,
``{"error": "..."}`` for a failure, and ``data: [DONE]`` as the terminator.
A stream always ends with ``[DONE]`` unless the caller went away, in which
case nothing more is written.
"""

from __future__ import annotations

import asyncio
import contextlib
import json

from collections.abc import AsyncIterator

from api.services.execution_engine import (
    ExecutionCompleted,
    ExecutionEngine,
    ExecutionFailed,
    OutputChunk,
)
from core.exceptions import AbortedError
from core.tool_registry import AnyTool
from utils.logger import logger
from utils.metrics import streams_active

DONE_FRAME = "data: [DONE]\n\n"

#: Headers sent with every event stream
SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_frame(payload: dict[str, str]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class SSEChannel:
    """Write side of one event stream; writes after end or disconnect are dropped."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._ended = False
        self._disconnected = False

    @property
    def writable(self) -> bool:
        return not (self._ended or self._disconnected)

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def _put(self, frame: str) -> bool:
        if not self.writable:
            return False
        self._queue.put_nowait(frame)
        return True

    def send_chunk(self, text: str) -> bool:
        return self._put(sse_frame({"chunk": text}))

    def send_error(self, message: str) -> bool:
        return self._put(sse_frame({"error": message}))

    def end(self) -> None:
        if self._put(DONE_FRAME):
            self._ended = True
            self._queue.put_nowait(None)

    def disconnect(self) -> None:
        """Mark the caller gone, drop unread frames and unblock any reader."""
        if not self._disconnected:
            self._disconnected = True
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(None)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


class StreamingMultiplexer:
    """Runs executions as background tasks that feed an :class:`SSEChannel`."""

    def __init__(self, engine: ExecutionEngine) -> None:
        self._engine = engine
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active_streams(self) -> int:
        return len(self._tasks)

    async def stream(
        self,
        tool: AnyTool,
        prompt: str,
        model: str | None,
        timeout_ms: int,
        sink: SSEChannel,
        cancel: asyncio.Event,
    ) -> None:
        """Relay one execution into ``sink``.

        Spawn-mode output is forwarded chunk by chunk as it arrives; an API
        tool produces a single chunk. Failures become one error frame before
        ``[DONE]``; an aborted execution writes nothing further.
        """
        events = self._engine.events(tool, prompt, model, timeout_ms, cancel)
        try:
            with streams_active.track_inprogress():
                async with contextlib.aclosing(events) as stream:
                    async for event in stream:
                        if sink.disconnected:
                            cancel.set()
                            break
                        match event:
                            case OutputChunk(text=text):
                                sink.send_chunk(text)
                            case ExecutionCompleted():
                                sink.end()
                            case ExecutionFailed(error=AbortedError()):
                                sink.disconnect()
                            case ExecutionFailed(error=error):
                                sink.send_error(error.message)
                                sink.end()
        except Exception as e:
            logger.error(f"[{tool.id}] stream failed: {e}", exc_info=True)
            sink.send_error(f"Internal error: {e}")
            sink.end()

    def start(
        self,
        tool: AnyTool,
        prompt: str,
        model: str | None,
        timeout_ms: int,
    ) -> tuple[SSEChannel, asyncio.Event]:
        """Schedule a stream and return its channel and cancel handle."""
        sink = SSEChannel()
        cancel = asyncio.Event()
        task = asyncio.create_task(
            self.stream(tool, prompt, model, timeout_ms, sink, cancel),
            name=f"stream-{tool.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return sink, cancel

    async def relay(self, sink: SSEChannel, cancel: asyncio.Event) -> AsyncIterator[str]:
        """Response body iterator; leaving it early aborts the execution."""
        try:
            async for frame in sink.frames():
                yield frame
        finally:
            if sink.writable:
                sink.disconnect()
                cancel.set()

