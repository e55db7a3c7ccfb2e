"""Shared test fixtures for the CLI gateway test suite.

Fake tools are small POSIX shell scripts written to ``tmp_path``; their
absolute paths resolve without a PATH lookup. Upstream HTTP is always an
``httpx.MockTransport``.
"""

from __future__ import annotations

import os
import stat

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import httpx
import pytest

from api.context import GatewayContext
from api.services.update_orchestrator import DeploymentProcess
from core.command_resolver import CommandResolver, is_runnable_file
from core.constants import Settings, clear_settings_cache
from core.local_state import LocalToolState
from core.tool_registry import SpawnTool, ToolRegistry

# ============================================================================
# Test Isolation
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Drop cached settings and GATEWAY_* env vars around every test."""
    for key in list(os.environ):
        if key.startswith("GATEWAY_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


# ============================================================================
# Settings
# ============================================================================


@pytest.fixture
def deploy_dir(tmp_path: Path) -> Path:
    path = tmp_path / "cli-proxy"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, deploy_dir: Path) -> Settings:
    """Settings pointing every filesystem knob into ``tmp_path``."""
    return Settings(
        log_dir=tmp_path / "logs",
        deploy_dir=deploy_dir,
        addon_dir=tmp_path / "addons",
        gemini_home=tmp_path / "home" / ".gemini",
        version_manifest_url="https://updates.test/version.json",
        raw_base_url="https://updates.test",
        gemini_project_id="proj-test",
        max_concurrent_processes=2,
        min_timeout_ms=10,
        restart_delay=0,
        shutdown_timeout=2,
        shutdown_poll_interval=0.01,
        tool_check_timeout=5,
        health_check_timeout=5,
    )


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def local_state(home: Path) -> LocalToolState:
    return LocalToolState(home=home)


# ============================================================================
# Fake tools
# ============================================================================

VERSION_CHECK = 'if [ "$1" = "--version" ]; then echo "fake 1.0"; exit 0; fi\n'


@pytest.fixture
def make_script(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write an executable shell script that answers ``--version``."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text(f"#!/bin/sh\n{VERSION_CHECK}{body}\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


class MappedResolver(CommandResolver):
    """Resolver that answers from a fixed name-to-path table; absolute executables resolve as-is."""

    def __init__(self, mapping: dict[str, str] | None = None) -> None:
        super().__init__(environ={})
        self.mapping = dict(mapping or {})

    async def resolve(self, command: str) -> str | None:
        if os.path.isabs(command) and is_runnable_file(command):
            return command
        return self.mapping.get(command)


@pytest.fixture
def mapped_resolver() -> MappedResolver:
    return MappedResolver()


def prompt_only_args(prompt: str, model: str, state: LocalToolState) -> tuple[list[str], str]:
    return [prompt], model


@pytest.fixture
def make_spawn_tool(
    make_script: Callable[[str, str], Path], local_state: LocalToolState
) -> Callable[..., SpawnTool]:
    """Build a spawn tool backed by a fake script; the prompt is passed as ``$1``."""

    def _make(tool_id: str, body: str, default_model: str = "fake-model") -> SpawnTool:
        script = make_script(tool_id, body)
        return SpawnTool(
            id=tool_id,
            command=str(script),
            default_model=default_model,
            args_builder=prompt_only_args,
            local_state=local_state,
        )

    return _make


# ============================================================================
# HTTP mocks
# ============================================================================


class RecordingHandler:
    """MockTransport handler that records requests and replays queued responses per URL path."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, list[httpx.Response | Callable[[httpx.Request], Any]]] = {}

    def add(self, path: str, *responses: httpx.Response | Callable[[httpx.Request], Any]) -> None:
        self.routes.setdefault(path, []).extend(responses)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, text="not found")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item) and not isinstance(item, httpx.Response):
            result = item(request)
            if hasattr(result, "__await__"):
                result = await result
            return result
        return item

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def http_handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def transport(http_handler: RecordingHandler) -> httpx.MockTransport:
    return httpx.MockTransport(http_handler)


# ============================================================================
# Gateway context
# ============================================================================


class DeploymentRecorder:
    """Captures detached spawns and exit requests instead of performing them."""

    def __init__(self) -> None:
        self.spawned: list[tuple[list[str], dict[str, Any]]] = []
        self.exits = 0

    def popen(self, args: list[str], **kwargs: Any) -> None:
        self.spawned.append((list(args), kwargs))

    def exit(self) -> None:
        self.exits += 1


@pytest.fixture
def deployment_recorder() -> DeploymentRecorder:
    return DeploymentRecorder()


@pytest.fixture
def deployment(deploy_dir: Path, deployment_recorder: DeploymentRecorder) -> DeploymentProcess:
    return DeploymentProcess(
        deploy_dir,
        exit_hook=deployment_recorder.exit,
        popen=deployment_recorder.popen,
        argv=["gateway.pyz"],
        executable="/usr/bin/python3",
        platform="linux",
    )


@pytest.fixture
def build_context(
    settings: Settings,
    home: Path,
    transport: httpx.MockTransport,
    deployment: DeploymentProcess,
    mapped_resolver: MappedResolver,
) -> Callable[..., GatewayContext]:
    """Build a fully wired context over fake tools and mocked HTTP.

    Only absolute script paths and names registered in ``mapped_resolver``
    resolve, so nothing on the host PATH is ever executed.
    """

    def _build(registry: ToolRegistry | None = None, **overrides: Any) -> GatewayContext:
        effective = settings.model_copy(update=overrides) if overrides else settings
        return GatewayContext.build(
            effective,
            home=home,
            resolver=mapped_resolver,
            registry=registry,
            transport=transport,
            deployment=deployment,
        )

    return _build
