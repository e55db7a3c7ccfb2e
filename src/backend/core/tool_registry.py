"""
Tool registry: the fixed table of generation tools.

Each tool is one of two variants sharing a capability interface
(``probe``, ``build_invocation``, ``parse_output``):

- :class:`SpawnTool` launches a local CLI and reads its stdout.
- :class:`ApiTool` calls a remote API through an authenticated client.

The execution engine selects the code path with a ``match`` on the variant.
Descriptors are immutable once the registry is built.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import subprocess
import tempfile

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from core.command_resolver import CommandResolver, should_use_shell
from core.constants import CLAUDE_DEFAULT_MODEL, CLAUDE_REASONING_OFF_PROMPT, GEMINI_DEFAULT_MODEL
from core.exceptions import UnknownToolError
from core.local_state import LocalToolState
from core.model_ids import (
    canonicalize_gemini_model,
    normalize_model_id,
    resolve_claude_model,
    resolve_gemini_model,
)
from utils.logger import logger

if TYPE_CHECKING:
    from integrations.gemini_client import GeminiCodeAssistClient


class InvocationMode(str, Enum):
    SPAWN = "spawn"
    API = "api"


@dataclass(frozen=True, slots=True)
class ProbeResult:
    available: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"available": self.available}
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True, slots=True)
class SpawnInvocation:
    """Arguments for one CLI run; the executable path is resolved separately."""

    args: list[str]
    model: str
    env: Mapping[str, str] = field(default_factory=lambda: {"NO_COLOR": "1"})
    cwd: str = field(default_factory=tempfile.gettempdir)


@dataclass(frozen=True, slots=True)
class ApiInvocation:
    """Request body for one remote API call."""

    model: str
    request: dict[str, Any]


ArgsBuilder = Callable[[str, str, LocalToolState], tuple[list[str], str]]


@dataclass(frozen=True)
class SpawnTool:
    """A generation backend invoked by launching an external executable."""

    id: str
    command: str
    default_model: str
    args_builder: ArgsBuilder
    local_state: LocalToolState
    check_args: tuple[str, ...] = ("--version",)
    canonicalizer: Callable[[str], str] = normalize_model_id

    @property
    def name(self) -> str:
        return self.command

    @property
    def mode(self) -> InvocationMode:
        return InvocationMode.SPAWN

    def canonical_model(self, model: str) -> str:
        return self.canonicalizer(model)

    def build_invocation(self, prompt: str, model: str | None) -> SpawnInvocation:
        args, effective_model = self.args_builder(prompt, normalize_model_id(model), self.local_state)
        return SpawnInvocation(args=args, model=effective_model or self.default_model or "default")

    def parse_output(self, stdout: str) -> str:
        return stdout.strip()

    async def probe(self, resolver: CommandResolver, timeout: float) -> ProbeResult:
        """Resolve the executable and run its version check."""
        command_path = await resolver.resolve(self.command)
        if not command_path:
            return ProbeResult(
                False,
                f"{self.command} executable not found. "
                "Ensure it is installed and available in PATH, then restart the host application.",
            )

        try:
            proc = await create_tool_process(command_path, list(self.check_args), {"NO_COLOR": "1"})
        except OSError as e:
            return ProbeResult(False, f"{self.command} check failed: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            return ProbeResult(False, f"{self.command} check failed: timed out after {timeout:g}s")
        finally:
            if proc.returncode is None:
                force_kill(proc)
                await proc.wait()

        if proc.returncode != 0:
            detail = (
                stderr.decode("utf-8", errors="replace").strip()
                or stdout.decode("utf-8", errors="replace").strip()
                or f"exit code {proc.returncode}"
            )
            return ProbeResult(False, f"{self.command} is installed but check command failed: {detail}")
        return ProbeResult(True)


@dataclass(frozen=True)
class ApiTool:
    """A generation backend invoked through an authenticated remote API."""

    id: str
    name: str
    default_model: str
    client: GeminiCodeAssistClient
    request_builder: Callable[[str], dict[str, Any]]
    output_parser: Callable[[dict[str, Any]], str]
    canonicalizer: Callable[[str], str] = normalize_model_id

    @property
    def mode(self) -> InvocationMode:
        return InvocationMode.API

    def canonical_model(self, model: str) -> str:
        return self.canonicalizer(model)

    def build_invocation(self, prompt: str, model: str | None) -> ApiInvocation:
        effective = self.canonicalizer(normalize_model_id(model)) or self.default_model
        return ApiInvocation(model=effective, request=self.request_builder(prompt))

    def parse_output(self, payload: dict[str, Any]) -> str:
        return self.output_parser(payload).strip()

    async def probe(self, resolver: CommandResolver, timeout: float) -> ProbeResult:
        try:
            error = await asyncio.wait_for(self.client.probe(), timeout=timeout)
        except asyncio.TimeoutError:
            return ProbeResult(False, f"{self.name} credential check timed out")
        return ProbeResult(error is None, error)


AnyTool = SpawnTool | ApiTool


async def create_tool_process(
    command_path: str,
    args: list[str],
    env_overrides: Mapping[str, str],
    cwd: str | None = None,
) -> asyncio.subprocess.Process:
    """Start a tool process with stdin closed and stdout/stderr piped.

    Batch wrappers on Windows go through the shell; everything else is
    executed directly and placed in its own session so a kill reaches it.

    Raises:
        OSError: If the process cannot be started.
    """
    env = {**os.environ, **env_overrides}
    if should_use_shell(command_path):
        return await asyncio.create_subprocess_shell(
            subprocess.list2cmdline([command_path, *args]),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    return await asyncio.create_subprocess_exec(
        command_path,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
        start_new_session=os.name == "posix",
    )


def force_kill(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the process and, on POSIX, its whole session; exited processes are ignored."""
    if proc.returncode is not None:
        return
    if os.name == "posix":
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


# ============================================================================
# Argument builders
# ============================================================================


def build_claude_args(prompt: str, model: str, state: LocalToolState) -> tuple[list[str], str]:
    requested = model or CLAUDE_DEFAULT_MODEL
    effective = resolve_claude_model(requested, CLAUDE_DEFAULT_MODEL)
    if requested != effective:
        logger.warning(f'[claude] blocked model "{requested}" requested; using "{effective}" instead')
    args = [
        "--model",
        effective,
        "--print",
        "--dangerously-skip-permissions",
        "--append-system-prompt",
        CLAUDE_REASONING_OFF_PROMPT,
        prompt,
    ]
    return args, effective


def build_codex_args(prompt: str, model: str, state: LocalToolState) -> tuple[list[str], str]:
    args: list[str] = []
    if model:
        args += ["--config", f'model="{model}"']
    effort = state.codex_reasoning_effort(model)
    args += ["--config", f'model_reasoning_effort="{effort}"']
    logger.info(f'[codex] forcing model_reasoning_effort="{effort}"' + (f" for {model}" if model else ""))
    return [*args, "exec", "--skip-git-repo-check", prompt], model


def build_gemini_cli_args(prompt: str, model: str, state: LocalToolState) -> tuple[list[str], str]:
    effective = resolve_gemini_model(model, GEMINI_DEFAULT_MODEL)
    return ["--model", effective, "--prompt", prompt, "--output-format", "text"], effective


# ============================================================================
# Registry
# ============================================================================


class ToolRegistry:
    """Immutable mapping of tool id to descriptor, in registration order."""

    def __init__(self, tools: list[AnyTool]) -> None:
        self._tools: dict[str, AnyTool] = {}
        for tool in tools:
            if tool.id in self._tools:
                raise ValueError(f"Duplicate tool id: {tool.id}")
            self._tools[tool.id] = tool

    def get(self, tool_id: str) -> AnyTool:
        """Return the descriptor for ``tool_id``.

        Raises:
            UnknownToolError: If no such tool is registered.
        """
        try:
            return self._tools[tool_id]
        except KeyError:
            raise UnknownToolError(tool_id) from None

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools

    def __iter__(self) -> Iterator[AnyTool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def ids(self) -> list[str]:
        return list(self._tools)


def build_default_registry(local_state: LocalToolState, gemini_client: GeminiCodeAssistClient) -> ToolRegistry:
    from integrations.gemini_client import build_generate_request, extract_response_text

    return ToolRegistry(
        [
            SpawnTool(
                id="claude",
                command="claude",
                default_model=CLAUDE_DEFAULT_MODEL,
                args_builder=build_claude_args,
                local_state=local_state,
            ),
            SpawnTool(
                id="codex",
                command="codex",
                default_model="",
                args_builder=build_codex_args,
                local_state=local_state,
            ),
            ApiTool(
                id="gemini",
                name="gemini-code-assist",
                default_model=GEMINI_DEFAULT_MODEL,
                client=gemini_client,
                request_builder=build_generate_request,
                output_parser=extract_response_text,
                canonicalizer=canonicalize_gemini_model,
            ),
            SpawnTool(
                id="gemini-cli",
                command="gemini",
                default_model=GEMINI_DEFAULT_MODEL,
                args_builder=build_gemini_cli_args,
                local_state=local_state,
                canonicalizer=canonicalize_gemini_model,
            ),
        ]
    )
