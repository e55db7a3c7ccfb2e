"""Tests for executable resolution and PATH expansion."""

from __future__ import annotations

import asyncio
import os
import sys

from collections.abc import Callable
from pathlib import Path

import pytest

from core import command_resolver
from core.command_resolver import (
    CommandResolver,
    expand_path,
    is_runnable_file,
    read_command_lines,
    should_use_shell,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX executables")


async def _no_npm_dirs() -> list[str]:
    return []


class TestHelpers:
    @pytest.mark.parametrize(
        ("path", "platform", "expected"),
        [
            (r"C:\npm\claude.cmd", "win32", True),
            (r"C:\npm\claude.BAT", "win32", True),
            (r"C:\npm\claude.exe", "win32", False),
            ("/usr/bin/claude.cmd", "linux", False),
        ],
    )
    def test_should_use_shell(self, path: str, platform: str, expected: bool) -> None:
        assert should_use_shell(path, platform) is expected

    def test_is_runnable_file(self, tmp_path: Path) -> None:
        plain = tmp_path / "plain.txt"
        plain.write_text("x")

        assert is_runnable_file("", "linux") is False
        assert is_runnable_file(str(tmp_path), "linux") is False
        assert is_runnable_file(str(plain), "win32") is True

    @posix_only
    def test_is_runnable_requires_exec_bit_on_posix(self, tmp_path: Path) -> None:
        plain = tmp_path / "plain.sh"
        plain.write_text("#!/bin/sh\n")
        plain.chmod(0o644)

        assert is_runnable_file(str(plain), "linux") is False
        plain.chmod(0o755)
        assert is_runnable_file(str(plain), "linux") is True

    @posix_only
    @pytest.mark.asyncio
    async def test_read_command_lines(self) -> None:
        lines = await read_command_lines(["/bin/sh", "-c", "echo one; echo; echo \"'two'\""])

        assert lines == ["one", "two"]

    @pytest.mark.asyncio
    async def test_read_command_lines_missing_binary(self) -> None:
        assert await read_command_lines(["definitely-not-a-real-binary-4821"]) == []

    @posix_only
    @pytest.mark.asyncio
    async def test_read_command_lines_cancelled_kills_helper(self, tmp_path: Path) -> None:
        pid_file = tmp_path / "helper.pid"

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                read_command_lines(["/bin/sh", "-c", f"echo $$ > '{pid_file}'; exec sleep 30"], timeout=10),
                timeout=0.5,
            )

        with pytest.raises(ProcessLookupError):
            os.kill(int(pid_file.read_text()), 0)


class TestExpandPath:
    def test_prepends_existing_missing_dirs(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        existing = tmp_path / "bin"
        existing.mkdir()
        already = tmp_path / "already"
        already.mkdir()
        monkeypatch.setattr(
            command_resolver,
            "extra_bin_dirs",
            lambda platform, environ: [str(existing), str(already), str(tmp_path / "missing")],
        )
        environ = {"PATH": str(already)}

        added = expand_path(environ, "linux")

        assert added == [str(existing)]
        assert environ["PATH"] == os.pathsep.join([str(existing), str(already)])

    def test_empty_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(command_resolver, "extra_bin_dirs", lambda platform, environ: [str(tmp_path)])
        environ: dict[str, str] = {}

        expand_path(environ, "linux")

        assert environ["PATH"] == str(tmp_path)


@posix_only
class TestCommandResolver:
    """Tests for CommandResolver.resolve on POSIX."""

    @pytest.mark.asyncio
    async def test_absolute_path_resolves_directly(self, make_script: Callable[[str, str], Path]) -> None:
        script = make_script("direct", "exit 0")

        assert await CommandResolver(platform="linux", environ={}).resolve(str(script)) == str(script)

    @pytest.mark.asyncio
    async def test_found_in_path_entries(
        self, make_script: Callable[[str, str], Path], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        script = make_script("fake-tool-on-path", "exit 0")
        resolver = CommandResolver(platform="linux", environ={"PATH": f'"{script.parent}"'})
        monkeypatch.setattr(resolver, "npm_global_bin_dirs", _no_npm_dirs)

        assert await resolver.resolve("fake-tool-on-path") == str(script)

    @pytest.mark.asyncio
    async def test_missing_returns_none(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        resolver = CommandResolver(platform="linux", environ={"PATH": str(tmp_path)})
        monkeypatch.setattr(resolver, "npm_global_bin_dirs", _no_npm_dirs)

        assert await resolver.resolve("definitely-not-a-real-tool-4821") is None
        assert await resolver.resolve("   ") is None

    @pytest.mark.asyncio
    async def test_non_executable_skipped(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        (tmp_path / "not-exec-tool-4821").write_text("#!/bin/sh\n")
        resolver = CommandResolver(platform="linux", environ={"PATH": str(tmp_path)})
        monkeypatch.setattr(resolver, "npm_global_bin_dirs", _no_npm_dirs)

        assert await resolver.resolve("not-exec-tool-4821") is None

    @pytest.mark.asyncio
    async def test_npm_dirs_cached(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list[list[str]] = []

        async def fake_lines(argv: list[str], timeout: float = 5.0) -> list[str]:
            calls.append(list(argv))
            return []

        monkeypatch.setattr(command_resolver, "read_command_lines", fake_lines)
        resolver = CommandResolver(platform="linux", environ={})

        await resolver.npm_global_bin_dirs()
        await resolver.npm_global_bin_dirs()

        assert calls == [["npm", "bin", "-g"], ["npm", "config", "get", "prefix"]]


class TestWindowsCandidates:
    """Windows prefers npm wrappers over extensionless shims."""

    @pytest.mark.asyncio
    async def test_prefers_cmd_wrapper(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        (tmp_path / "claude").write_text("shim")
        (tmp_path / "claude.cmd").write_text("@echo off")

        async def nothing(argv: list[str], timeout: float = 5.0) -> list[str]:
            return []

        monkeypatch.setattr(command_resolver, "read_command_lines", nothing)
        resolver = CommandResolver(platform="win32", environ={"PATH": str(tmp_path)})

        assert await resolver.resolve("claude") == os.path.join(str(tmp_path), "claude.cmd")
