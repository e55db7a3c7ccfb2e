"""Tests for tool descriptors, argument builders and the registry."""

from __future__ import annotations

import asyncio
import os
import sys

from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from core.command_resolver import CommandResolver
from core.constants import CLAUDE_REASONING_OFF_PROMPT
from core.exceptions import UnknownToolError
from core.local_state import LocalToolState
from core.tool_registry import (
    ApiTool,
    InvocationMode,
    ProbeResult,
    SpawnTool,
    ToolRegistry,
    build_claude_args,
    build_codex_args,
    build_default_registry,
    build_gemini_cli_args,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake tools are POSIX shell scripts")


class TestArgumentBuilders:
    """Tests for the per-tool command lines."""

    def test_claude_args(self, local_state: LocalToolState) -> None:
        args, model = build_claude_args("hello", "claude-opus-4-1", local_state)

        assert model == "claude-opus-4-1"
        assert args == [
            "--model",
            "claude-opus-4-1",
            "--print",
            "--dangerously-skip-permissions",
            "--append-system-prompt",
            CLAUDE_REASONING_OFF_PROMPT,
            "hello",
        ]

    def test_claude_haiku_substituted(self, local_state: LocalToolState) -> None:
        args, model = build_claude_args("hello", "claude-3-5-haiku", local_state)

        assert model == "claude-sonnet-4-5"
        assert args[:2] == ["--model", "claude-sonnet-4-5"]

    def test_claude_default(self, local_state: LocalToolState) -> None:
        _, model = build_claude_args("hello", "", local_state)

        assert model == "claude-sonnet-4-5"

    def test_codex_args_with_model(self, local_state: LocalToolState) -> None:
        args, model = build_codex_args("fix it", "gpt-5", local_state)

        assert model == "gpt-5"
        assert args == [
            "--config",
            'model="gpt-5"',
            "--config",
            'model_reasoning_effort="medium"',
            "exec",
            "--skip-git-repo-check",
            "fix it",
        ]

    def test_codex_effort_from_cache(self, local_state: LocalToolState) -> None:
        cache = local_state.codex_models_cache_path
        cache.parent.mkdir(parents=True)
        cache.write_text(
            '{"models": [{"slug": "gpt-5", "supported_reasoning_levels": [{"effort": "low"}, {"effort": "high"}]}]}'
        )

        args, _ = build_codex_args("x", "gpt-5", local_state)

        assert 'model_reasoning_effort="low"' in args

    def test_codex_without_model(self, local_state: LocalToolState) -> None:
        args, model = build_codex_args("x", "", local_state)

        assert model == ""
        assert args[:2] == ["--config", 'model_reasoning_effort="medium"']

    def test_gemini_cli_args(self, local_state: LocalToolState) -> None:
        args, model = build_gemini_cli_args("write", "3-flash", local_state)

        assert model == "gemini-3-flash-preview"
        assert args == ["--model", "gemini-3-flash-preview", "--prompt", "write", "--output-format", "text"]


class TestSpawnTool:
    def test_invocation(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        tool = make_spawn_tool("echo", "exit 0")

        invocation = tool.build_invocation("prompt", "  chosen  ")

        assert invocation.args == ["prompt"]
        assert invocation.model == "chosen"
        assert invocation.env["NO_COLOR"] == "1"
        assert tool.mode is InvocationMode.SPAWN
        assert tool.name == tool.command

    def test_default_model_reported(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        tool = make_spawn_tool("echo", "exit 0", default_model="")

        assert tool.build_invocation("prompt", None).model == "default"

    def test_parse_output_trims(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        assert make_spawn_tool("echo", "exit 0").parse_output("\n  text \n") == "text"


@posix_only
class TestSpawnProbe:
    """Availability probe runs ``--version`` with a bound."""

    @pytest.mark.asyncio
    async def test_available(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        tool = make_spawn_tool("ok", "exit 0")

        assert await tool.probe(CommandResolver(), 5) == ProbeResult(True)

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path, local_state: LocalToolState) -> None:
        tool = SpawnTool(
            id="ghost",
            command=str(tmp_path / "no-such-tool"),
            default_model="",
            args_builder=build_codex_args,
            local_state=local_state,
        )
        resolver = CommandResolver(environ={"PATH": str(tmp_path)})

        async def no_npm() -> list[str]:
            return []

        resolver.npm_global_bin_dirs = no_npm  # type: ignore[method-assign]

        result = await tool.probe(resolver, 5)

        assert result.available is False
        assert "executable not found" in (result.error or "")

    @pytest.mark.asyncio
    async def test_failing_check(self, make_script: Callable[[str, str], Path], local_state: LocalToolState) -> None:
        script = make_script("broken", "")
        tool = SpawnTool(
            id="broken",
            command=str(script),
            default_model="",
            args_builder=build_codex_args,
            local_state=local_state,
            check_args=("--health",),
        )
        script.write_text("#!/bin/sh\necho 'not logged in' >&2\nexit 3\n")

        result = await tool.probe(CommandResolver(), 5)

        assert result == ProbeResult(False, f"{script} is installed but check command failed: not logged in")

    @pytest.mark.asyncio
    async def test_hanging_check_times_out(
        self, make_script: Callable[[str, str], Path], local_state: LocalToolState
    ) -> None:
        script = make_script("hang", "")
        script.write_text("#!/bin/sh\nsleep 10\n")
        tool = SpawnTool(
            id="hang",
            command=str(script),
            default_model="",
            args_builder=build_codex_args,
            local_state=local_state,
        )

        result = await tool.probe(CommandResolver(), 0.2)

        assert result.available is False
        assert "timed out" in (result.error or "")

    @pytest.mark.asyncio
    async def test_cancelled_probe_kills_check(
        self, make_script: Callable[[str, str], Path], local_state: LocalToolState
    ) -> None:
        script = make_script("slow", "")
        script.write_text('#!/bin/sh\necho $$ > "$(dirname "$0")/slow.pid"\nexec sleep 30\n')
        tool = SpawnTool(
            id="slow",
            command=str(script),
            default_model="",
            args_builder=build_codex_args,
            local_state=local_state,
        )

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(tool.probe(CommandResolver(), 10), timeout=0.5)

        pid = int((script.parent / "slow.pid").read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)


class TestApiTool:
    def _tool(self, client: MagicMock) -> ApiTool:
        return ApiTool(
            id="api",
            name="remote",
            default_model="gemini-2.5-flash",
            client=client,
            request_builder=lambda prompt: {"contents": prompt},
            output_parser=lambda payload: payload["text"],
            canonicalizer=lambda m: m.lower(),
        )

    def test_invocation(self) -> None:
        tool = self._tool(MagicMock())

        invocation = tool.build_invocation("hi", " Gemini-2.5-Pro ")

        assert invocation.model == "gemini-2.5-pro"
        assert invocation.request == {"contents": "hi"}
        assert tool.mode is InvocationMode.API

    def test_default_model(self) -> None:
        assert self._tool(MagicMock()).build_invocation("hi", None).model == "gemini-2.5-flash"

    def test_parse_output(self) -> None:
        assert self._tool(MagicMock()).parse_output({"text": " out "}) == "out"

    @pytest.mark.asyncio
    async def test_probe_reports_client_error(self) -> None:
        client = MagicMock()

        async def probe() -> str | None:
            return "No credentials"

        client.probe = probe

        assert await self._tool(client).probe(CommandResolver(), 1) == ProbeResult(False, "No credentials")


class TestToolRegistry:
    def test_lookup_and_order(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        registry = ToolRegistry([make_spawn_tool("b", "exit 0"), make_spawn_tool("a", "exit 0")])

        assert registry.ids == ["b", "a"]
        assert "a" in registry
        assert len(registry) == 2
        assert registry.get("a").id == "a"

    def test_unknown_tool(self) -> None:
        with pytest.raises(UnknownToolError, match="Unknown tool: nope"):
            ToolRegistry([]).get("nope")

    def test_duplicate_ids_rejected(self, make_spawn_tool: Callable[..., SpawnTool]) -> None:
        tool = make_spawn_tool("dup", "exit 0")

        with pytest.raises(ValueError, match="Duplicate"):
            ToolRegistry([tool, tool])

    def test_default_registry(self, local_state: LocalToolState) -> None:
        registry = build_default_registry(local_state, MagicMock())

        assert registry.ids == ["claude", "codex", "gemini", "gemini-cli"]
        assert registry.get("gemini").mode is InvocationMode.API
        assert registry.get("gemini-cli").name == "gemini"
        assert registry.get("gemini").canonical_model("3-flash") == "gemini-3-flash-preview"

    def test_probe_result_dict(self) -> None:
        assert ProbeResult(True).to_dict() == {"available": True}
        assert ProbeResult(False, "x").to_dict() == {"available": False, "error": "x"}
