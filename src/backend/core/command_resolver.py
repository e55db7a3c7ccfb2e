"""
Executable resolution for spawn-mode tools.

GUI launchers and service managers often start the gateway with a trimmed
PATH, so resolution tries, in order: an absolute path, the OS lookup commands
(``command -v``/``which``, ``where`` on Windows), then every PATH entry plus
the npm global bin directories. On Windows the ``.cmd``/``.exe``/``.bat``
wrappers npm installs are preferred over extensionless POSIX shims.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
import shlex
import sys

from collections.abc import MutableMapping, Sequence
from pathlib import Path

from core.constants import EXTRA_BIN_DIRS_POSIX, WINDOWS_WRAPPER_EXTENSIONS
from utils.logger import logger

#: Timeout for lookup helpers such as ``which`` and ``npm config get prefix``
LOOKUP_TIMEOUT_SECONDS = 5.0

_QUOTED = re.compile(r"""^['"](.*)['"]$""")


def _clean_line(value: str) -> str:
    return _QUOTED.sub(r"\1", value.strip()).strip()


def is_windows(platform: str = sys.platform) -> bool:
    return platform.startswith("win")


def extra_bin_dirs(platform: str = sys.platform, environ: MutableMapping[str, str] | None = None) -> list[str]:
    environ = os.environ if environ is None else environ
    home = Path.home()
    if is_windows(platform):
        candidates = [
            str(home / ".local" / "bin"),
            str(home / ".cargo" / "bin"),
            os.path.join(environ.get("APPDATA", ""), "npm") if environ.get("APPDATA") else "",
            os.path.join(environ.get("LOCALAPPDATA", ""), "Programs", "nodejs") if environ.get("LOCALAPPDATA") else "",
        ]
    else:
        candidates = [os.path.expanduser(d) for d in EXTRA_BIN_DIRS_POSIX]
    return [d for d in candidates if d]


def expand_path(
    environ: MutableMapping[str, str] | None = None,
    platform: str = sys.platform,
) -> list[str]:
    """Prepend well-known user binary dirs that exist but are missing from PATH.

    Returns:
        The directories that were added.
    """
    environ = os.environ if environ is None else environ
    current = environ.get("PATH", "")
    present = set(current.split(os.pathsep))
    missing = [d for d in extra_bin_dirs(platform, environ) if d not in present and os.path.isdir(d)]
    if missing:
        environ["PATH"] = os.pathsep.join([*missing, current]) if current else os.pathsep.join(missing)
    return missing


def is_runnable_file(path: str, platform: str = sys.platform) -> bool:
    if not path:
        return False
    try:
        if not os.path.isfile(path):
            return False
    except OSError:
        return False
    return is_windows(platform) or os.access(path, os.X_OK)


def should_use_shell(command_path: str, platform: str = sys.platform) -> bool:
    """Batch wrappers can only run through cmd.exe."""
    if not is_windows(platform):
        return False
    return command_path.lower().endswith((".cmd", ".bat"))


async def read_command_lines(argv: Sequence[str], timeout: float = LOOKUP_TIMEOUT_SECONDS) -> list[str]:
    """Run a lookup helper and return its non-empty stdout lines; failures yield []."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return []

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        return []
    finally:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    if proc.returncode != 0:
        return []
    lines = (_clean_line(line) for line in stdout.decode("utf-8", errors="replace").splitlines())
    return [line for line in lines if line]


class CommandResolver:
    """Locates tool executables; npm global bin dirs are looked up once and cached."""

    def __init__(
        self,
        platform: str = sys.platform,
        environ: MutableMapping[str, str] | None = None,
    ) -> None:
        self._platform = platform
        self._environ = os.environ if environ is None else environ
        self._npm_dirs: list[str] | None = None

    def _name_candidates(self, command: str) -> list[str]:
        if not is_windows(self._platform):
            return [command]
        lower = command.lower()
        names = [f"{command}{ext}" for ext in WINDOWS_WRAPPER_EXTENSIONS if not lower.endswith(ext)]
        names.append(command)
        return names

    async def npm_global_bin_dirs(self) -> list[str]:
        if self._npm_dirs is not None:
            return self._npm_dirs

        dirs: list[str] = []

        def add(value: str) -> None:
            if value and value not in dirs and os.path.isdir(value):
                dirs.append(value)

        npm = "npm.cmd" if is_windows(self._platform) else "npm"
        for line in await read_command_lines([npm, "bin", "-g"]):
            add(line)
        for prefix in await read_command_lines([npm, "config", "get", "prefix"]):
            if prefix in ("undefined", "null"):
                continue
            if is_windows(self._platform):
                add(prefix)
            add(os.path.join(prefix, "bin"))

        self._npm_dirs = dirs
        return dirs

    async def search_dirs(self) -> list[str]:
        dirs: list[str] = []
        for entry in [*self._environ.get("PATH", "").split(os.pathsep), *await self.npm_global_bin_dirs()]:
            entry = _clean_line(entry)
            if entry and entry not in dirs:
                dirs.append(entry)
        return dirs

    async def _lookup_with_os(self, token: str) -> list[str]:
        if is_windows(self._platform):
            return await read_command_lines(["where", token])
        found = await read_command_lines(["/bin/sh", "-c", f"command -v {shlex.quote(token)}"])
        found += await read_command_lines(["which", token])
        return found

    async def resolve(self, command: str) -> str | None:
        """Return the absolute path of a runnable executable, or None."""
        command = command.strip()
        if not command:
            return None

        candidates: list[str] = []

        def add(candidate: str) -> None:
            candidate = _clean_line(candidate)
            if not candidate:
                return
            if is_windows(self._platform) and not os.path.splitext(candidate)[1]:
                for ext in WINDOWS_WRAPPER_EXTENSIONS:
                    if f"{candidate}{ext}" not in candidates:
                        candidates.append(f"{candidate}{ext}")
            if candidate not in candidates:
                candidates.append(candidate)

        if os.path.isabs(command):
            if not is_windows(self._platform) and is_runnable_file(command, self._platform):
                return command
            add(command)

        token = os.path.basename(command)
        if token:
            for found in await self._lookup_with_os(token):
                add(found)

        names = self._name_candidates(command)
        for directory in await self.search_dirs():
            for name in names:
                add(os.path.join(directory, name))

        for candidate in candidates:
            if is_runnable_file(candidate, self._platform):
                return candidate

        logger.debug(f"Executable not found: {command}", candidates=len(candidates))
        return None
