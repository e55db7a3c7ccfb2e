"""
Compatibility shim: recover the Gemini CLI's OAuth client id/secret.

Older credential files written by the Gemini CLI do not record the OAuth
client they were issued for. The installed CLI ships those constants inside
its bundled ``oauth2.js``, so as a last resort they are read from there. The
file layout belongs to a third-party package and may change at any release;
callers must treat a ``None`` result as "not configured".
"""

from __future__ import annotations

import asyncio
import re

from pathlib import Path
from typing import NamedTuple

from core.command_resolver import CommandResolver
from utils.file_store import read_text_safe
from utils.logger import logger

_CLIENT_ID = re.compile(r"""OAUTH_CLIENT_ID\s*=\s*['"]([^'"]+)['"]""")
_CLIENT_SECRET = re.compile(r"""OAUTH_CLIENT_SECRET\s*=\s*['"]([^'"]+)['"]""")

#: oauth2.js locations relative to the package root of the installed gemini CLI
_OAUTH_MODULE_PATHS: tuple[tuple[str, ...], ...] = (
    ("node_modules", "@google", "gemini-cli-core", "dist", "src", "code_assist", "oauth2.js"),
    ("..", "gemini-cli-core", "dist", "src", "code_assist", "oauth2.js"),
    ("dist", "src", "code_assist", "oauth2.js"),
)


class OAuthClientCredentials(NamedTuple):
    client_id: str
    client_secret: str


def extract_client_credentials(source: str) -> OAuthClientCredentials | None:
    """Pull the client id/secret constants out of oauth2.js source text."""
    client_id = _CLIENT_ID.search(source)
    client_secret = _CLIENT_SECRET.search(source)
    if not client_id or not client_secret:
        return None
    return OAuthClientCredentials(client_id.group(1), client_secret.group(1))


def candidate_module_paths(executable: Path) -> list[Path]:
    """oauth2.js candidates for a resolved gemini executable.

    npm installs ``bin/gemini`` as a link into
    ``lib/node_modules/@google/gemini-cli/dist/index.js``; the CLI package
    root is found by walking up from the link target.
    """
    try:
        target = executable.resolve()
    except OSError:
        target = executable

    roots: list[Path] = []
    for parent in target.parents:
        if parent.name == "gemini-cli" or (parent / "package.json").is_file():
            roots.append(parent)
            break
    prefix = executable.parent.parent
    roots.append(prefix / "lib" / "node_modules" / "@google" / "gemini-cli")
    roots.append(prefix / "node_modules" / "@google" / "gemini-cli")

    candidates: list[Path] = []
    for root in roots:
        for parts in _OAUTH_MODULE_PATHS:
            path = root.joinpath(*parts)
            if path not in candidates:
                candidates.append(path)
    return candidates


class OAuthClientDiscovery:
    """Locates the installed gemini CLI and reads its OAuth constants once."""

    def __init__(self, resolver: CommandResolver, command: str = "gemini") -> None:
        self._resolver = resolver
        self._command = command
        self._result: OAuthClientCredentials | None = None
        self._searched = False

    async def discover(self) -> OAuthClientCredentials | None:
        if self._searched:
            return self._result

        executable = await self._resolver.resolve(self._command)
        if executable:
            self._result = await asyncio.to_thread(self._scan, Path(executable))
        self._searched = True

        if self._result is None:
            logger.debug("Gemini OAuth client constants not found in the installed CLI")
        return self._result

    def _scan(self, executable: Path) -> OAuthClientCredentials | None:
        for path in candidate_module_paths(executable):
            source = read_text_safe(path)
            if not source:
                continue
            found = extract_client_credentials(source)
            if found is not None:
                logger.info(f"Gemini OAuth client constants read from {path}")
                return found
        return None

    def reset(self) -> None:
        self._searched = False
        self._result = None
