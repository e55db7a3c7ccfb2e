"""
Execution engine: runs one tool invocation under a slot cap, a timeout and a
cancellation signal.

Every execution is an async generator of events (output chunks, then exactly
one completion or failure). Blocking callers consume it with
:meth:`ExecutionEngine.execute`; the streaming multiplexer relays the chunks
as they arrive.

Slot accounting:

- spawn-mode executions take one slot before their first suspension point,
  so N simultaneous requests against a cap of N - 1 see exactly one
  :class:`ConcurrencyExceededError`;
- the slot is released in a ``finally`` on every exit path (success, nonzero
  exit, timeout, abort, spawn error, consumer going away), and release is
  idempotent;
- API-mode executions never take a slot.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import time

from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from core.command_resolver import CommandResolver
from core.constants import PROMPT_PREVIEW_LENGTH
from core.exceptions import (
    AbortedError,
    ConcurrencyExceededError,
    ExecutionTimeoutError,
    GatewayError,
    ProcessFailureError,
    ToolUnavailableError,
)
from core.tool_registry import AnyTool, ApiTool, SpawnTool, ToolRegistry, create_tool_process, force_kill
from utils.logger import logger
from utils.metrics import generation_duration_seconds, generations_total, processes_active

#: Bytes requested per stdout read
READ_CHUNK_SIZE = 4096


# ============================================================================
# Slots
# ============================================================================


class SlotLease:
    """One acquired slot; releasing twice is a no-op."""

    __slots__ = ("_pool", "_released")

    def __init__(self, pool: ProcessSlots) -> None:
        self._pool = pool
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._pool._active -= 1
            processes_active.dec()


class ProcessSlots:
    """Counter of live spawn-mode processes bounded by ``limit``."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    def acquire(self) -> SlotLease:
        """Take a slot without suspending.

        Raises:
            ConcurrencyExceededError: If every slot is in use.
        """
        if self._active >= self.limit:
            raise ConcurrencyExceededError(self.limit)
        self._active += 1
        processes_active.inc()
        return SlotLease(self)


# ============================================================================
# Events
# ============================================================================


@dataclass(frozen=True, slots=True)
class OutputChunk:
    text: str


@dataclass(frozen=True, slots=True)
class ExecutionCompleted:
    output: str
    model: str


@dataclass(frozen=True, slots=True)
class ExecutionFailed:
    error: GatewayError


ExecutionEvent = OutputChunk | ExecutionCompleted | ExecutionFailed


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    tool: str
    mode: str
    model: str
    output: str
    elapsed_ms: int


class Outcome(Enum):
    DONE = "done"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


class _Settler:
    """Races awaited tasks against one shared deadline and one cancel event.

    A task that finished wins over a deadline or cancellation observed in the
    same wakeup, so each execution settles exactly once.
    """

    def __init__(self, timeout_ms: int, cancel: asyncio.Event | None) -> None:
        self._loop = asyncio.get_running_loop()
        self._deadline = self._loop.time() + timeout_ms / 1000
        self._cancel = cancel
        self._cancel_waiter = self._loop.create_task(cancel.wait()) if cancel is not None else None

    def pending_outcome(self) -> Outcome | None:
        if self._cancel is not None and self._cancel.is_set():
            return Outcome.ABORTED
        if self._loop.time() >= self._deadline:
            return Outcome.TIMEOUT
        return None

    async def wait(self, task: asyncio.Future[Any]) -> Outcome:
        watched: set[asyncio.Future[Any]] = {task}
        if self._cancel_waiter is not None:
            watched.add(self._cancel_waiter)

        remaining = self._deadline - self._loop.time()
        done: set[asyncio.Future[Any]] = set()
        if remaining > 0:
            done, _ = await asyncio.wait(watched, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)

        if task in done:
            return Outcome.DONE
        task.cancel()
        if self._cancel is not None and self._cancel.is_set():
            return Outcome.ABORTED
        return Outcome.TIMEOUT

    def close(self) -> None:
        if self._cancel_waiter is not None:
            self._cancel_waiter.cancel()


def _unsettled_error(outcome: Outcome, timeout_ms: int) -> GatewayError:
    if outcome is Outcome.ABORTED:
        return AbortedError()
    return ExecutionTimeoutError(timeout_ms)


def _record_outcome(tool: AnyTool, event: ExecutionCompleted | ExecutionFailed, elapsed: float) -> None:
    outcome = "success" if isinstance(event, ExecutionCompleted) else event.error.code.value
    generations_total.labels(tool=tool.id, mode=tool.mode.value, outcome=outcome).inc()
    generation_duration_seconds.labels(tool=tool.id, mode=tool.mode.value).observe(elapsed)


def _preview(prompt: str) -> str:
    if len(prompt) > PROMPT_PREVIEW_LENGTH:
        return prompt[:PROMPT_PREVIEW_LENGTH] + "..."
    return prompt


# ============================================================================
# Engine
# ============================================================================


class ExecutionEngine:
    """Dispatches executions to the spawn or API path of a tool."""

    def __init__(
        self,
        registry: ToolRegistry,
        resolver: CommandResolver,
        slots: ProcessSlots,
        default_timeout_ms: int,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.slots = slots
        self.default_timeout_ms = default_timeout_ms

    @property
    def active_processes(self) -> int:
        return self.slots.active

    async def execute(
        self,
        tool_id: str,
        prompt: str,
        model: str | None = None,
        timeout_ms: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Run to completion and return the parsed output.

        Raises:
            GatewayError: The execution's failure (unknown tool, concurrency,
                timeout, abort, process or upstream failure).
        """
        tool = self.registry.get(tool_id)
        started = time.monotonic()
        async with contextlib.aclosing(self.events(tool, prompt, model, timeout_ms, cancel)) as events:
            async for event in events:
                match event:
                    case ExecutionCompleted(output=output, model=effective_model):
                        return ExecutionResult(
                            tool=tool.id,
                            mode=tool.mode.value,
                            model=effective_model,
                            output=output,
                            elapsed_ms=int((time.monotonic() - started) * 1000),
                        )
                    case ExecutionFailed(error=error):
                        raise error
        raise GatewayError(f"{tool.id} execution ended without a result")

    async def events(
        self,
        tool: AnyTool,
        prompt: str,
        model: str | None = None,
        timeout_ms: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ExecutionEvent]:
        """Yield output chunks, then one :class:`ExecutionCompleted` or :class:`ExecutionFailed`."""
        timeout_ms = timeout_ms or self.default_timeout_ms
        match tool:
            case SpawnTool():
                inner = self._spawn_events(tool, prompt, model, timeout_ms, cancel)
            case ApiTool():
                inner = self._api_events(tool, prompt, model, timeout_ms, cancel)
        started = time.monotonic()
        async with contextlib.aclosing(inner) as stream:
            async for event in stream:
                if isinstance(event, ExecutionCompleted | ExecutionFailed):
                    _record_outcome(tool, event, time.monotonic() - started)
                yield event

    # -------------------------------------------------------------- spawn path

    async def _spawn_events(
        self,
        tool: SpawnTool,
        prompt: str,
        model: str | None,
        timeout_ms: int,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[ExecutionEvent]:
        try:
            lease = self.slots.acquire()
        except ConcurrencyExceededError as e:
            logger.warning(f"[{tool.id}] rejected: {e.message}")
            yield ExecutionFailed(e)
            return

        try:
            command_path = await self.resolver.resolve(tool.command)
            if not command_path:
                yield ExecutionFailed(
                    ToolUnavailableError(
                        f"Failed to locate {tool.command} executable. Ensure it is installed and available in PATH."
                    )
                )
                return

            invocation = tool.build_invocation(prompt, model)
            preview = _preview(prompt)
            logger.info(
                f"[{tool.id}] CLI request model={invocation.model}",
                command=command_path,
                args=[f'"{preview}"' if a == prompt else a for a in invocation.args],
                prompt_length=len(prompt),
            )

            if cancel is not None and cancel.is_set():
                yield ExecutionFailed(AbortedError())
                return

            try:
                proc = await create_tool_process(command_path, invocation.args, invocation.env, invocation.cwd)
            except OSError as e:
                logger.error(f"[{tool.id}] failed to start {command_path}: {e}")
                yield ExecutionFailed(ProcessFailureError(f"Failed to start {command_path}: {e}", cause=e))
                return

            reader = self._read_process(tool, proc, invocation.model, timeout_ms, cancel)
            async with contextlib.aclosing(reader) as stream:
                async for event in stream:
                    yield event
        finally:
            lease.release()

    async def _read_process(
        self,
        tool: SpawnTool,
        proc: asyncio.subprocess.Process,
        model: str,
        timeout_ms: int,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[ExecutionEvent]:
        assert proc.stdout is not None and proc.stderr is not None
        settler = _Settler(timeout_ms, cancel)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        stdout_parts: list[str] = []

        try:
            while True:
                read_task = asyncio.ensure_future(proc.stdout.read(READ_CHUNK_SIZE))
                outcome = await settler.wait(read_task)
                if outcome is not Outcome.DONE:
                    yield self._kill_failure(tool, proc, outcome, timeout_ms)
                    return
                data = read_task.result()
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    stdout_parts.append(text)
                    yield OutputChunk(text)

            tail = decoder.decode(b"", final=True)
            if tail:
                stdout_parts.append(tail)
                yield OutputChunk(tail)

            for task in (asyncio.ensure_future(proc.wait()), stderr_task):
                outcome = await settler.wait(task)
                if outcome is not Outcome.DONE:
                    yield self._kill_failure(tool, proc, outcome, timeout_ms)
                    return

            stderr = stderr_task.result().decode("utf-8", errors="replace")
            if proc.returncode != 0:
                logger.warning(f"[{tool.id}] FAILED - exit code {proc.returncode}", stderr_length=len(stderr))
                yield ExecutionFailed(ProcessFailureError.from_exit(proc.returncode or -1, stderr))
                return

            result = tool.parse_output("".join(stdout_parts))
            logger.info(f"[{tool.id}] SUCCESS - response length: {len(result)} chars")
            yield ExecutionCompleted(result, model)
        finally:
            settler.close()
            stderr_task.cancel()
            if proc.returncode is None:
                force_kill(proc)
                await proc.wait()

    def _kill_failure(
        self,
        tool: SpawnTool,
        proc: asyncio.subprocess.Process,
        outcome: Outcome,
        timeout_ms: int,
    ) -> ExecutionFailed:
        force_kill(proc)
        error = _unsettled_error(outcome, timeout_ms)
        logger.warning(f"[{tool.id}] killed: {error.message}", pid=proc.pid)
        return ExecutionFailed(error)

    # ---------------------------------------------------------------- API path

    async def _api_events(
        self,
        tool: ApiTool,
        prompt: str,
        model: str | None,
        timeout_ms: int,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[ExecutionEvent]:
        invocation = tool.build_invocation(prompt, model)
        logger.info(
            f"[{tool.id}] API request model={invocation.model}",
            prompt_preview=_preview(prompt),
            prompt_length=len(prompt),
        )

        settler = _Settler(timeout_ms, cancel)
        call: asyncio.Future[Any] | None = None
        try:
            if (early := settler.pending_outcome()) is not None:
                yield ExecutionFailed(_unsettled_error(early, timeout_ms))
                return

            call = asyncio.ensure_future(tool.client.generate(invocation))
            outcome = await settler.wait(call)
            if outcome is not Outcome.DONE:
                await asyncio.wait({call})
                error = _unsettled_error(outcome, timeout_ms)
                logger.warning(f"[{tool.id}] {error.message}")
                yield ExecutionFailed(error)
                return

            try:
                result = tool.parse_output(call.result())
            except GatewayError as e:
                logger.warning(f"[{tool.id}] FAILED - {e.message}", error_code=e.code.value)
                yield ExecutionFailed(e)
                return

            logger.info(f"[{tool.id}] SUCCESS - response length: {len(result)} chars")
            yield OutputChunk(result)
            yield ExecutionCompleted(result, invocation.model)
        finally:
            settler.close()
            if call is not None and not call.done():
                call.cancel()
