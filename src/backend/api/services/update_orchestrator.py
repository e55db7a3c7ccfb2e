"""
Self-update and self-removal of the gateway deployment.

Update checks compare the remote manifest against the embedded gateway
version and the versions parsed out of installed addon files. Applying an
update is restricted to a fixed allow-list of targets, and every download is
written to a path that must resolve to exactly ``<directory>/<basename>``.

Replacing the gateway's own bundle is followed by a dependency reinstall and
a restart: a detached replacement process is spawned, then this one exits.
Cleanup removes the deployment directory out of process after a delay, once
this process has exited.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import subprocess
import sys

from collections.abc import Callable, MutableMapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from api.services.admission import AdmissionController
from core.command_resolver import CommandResolver, is_windows, should_use_shell
from core.constants import (
    ADDON_FILES,
    ALLOWED_UPDATE_TARGETS,
    BUNDLED_ADDON_FILES,
    CLEANUP_CONFIRM_TOKEN,
    CLEANUP_TARGET,
    LOCAL_VERSION,
    PROXY_BUNDLE_FILE,
    PROXY_REMOTE_DIR,
    PROXY_REQUIREMENTS_FILE,
    Settings,
)
from core.exceptions import (
    CleanupConflictError,
    CleanupRejectedError,
    InvalidUpdateTargetError,
    UnsafeCleanupTargetError,
    UpdateError,
)
from models.schemas.updates import (
    AddonUpdateInfo,
    CleanupRequest,
    CleanupResponse,
    ProxyUpdateInfo,
    UpdateCheckResult,
    UpdateFileResult,
)
from utils.cache import TTLCache
from utils.file_store import read_text_safe, write_bytes_atomic
from utils.logger import logger

_ADDON_VERSION = re.compile(r"""version:\s*['"]([^'"]+)['"]""")

_MANIFEST_CACHE_KEY = "manifest"

#: Delay between the cleanup response and scheduling the removal (seconds)
CLEANUP_SCHEDULE_DELAY = 0.1

#: Delay between scheduling the removal and exiting (seconds)
CLEANUP_EXIT_DELAY = 0.25


# ============================================================================
# Versions and paths
# ============================================================================


def parse_version(version: object) -> tuple[int, int, int]:
    """First three dot-separated parts as ints; missing or non-numeric parts count as 0."""
    parts = str(version or "0.0.0").split(".")
    numbers: list[int] = []
    for part in (parts + ["0", "0", "0"])[:3]:
        try:
            numbers.append(int(part))
        except ValueError:
            numbers.append(0)
    return numbers[0], numbers[1], numbers[2]


def is_newer_version(remote: object, local: object) -> bool:
    return parse_version(remote) > parse_version(local)


def extract_addon_version(path: Path) -> str | None:
    content = read_text_safe(path)
    if not content:
        return None
    match = _ADDON_VERSION.search(content)
    return match.group(1) if match else None


def spicetify_config_dir(
    platform: str = sys.platform,
    environ: MutableMapping[str, str] | None = None,
    home: Path | None = None,
) -> Path:
    """Config directory of the host application (spicetify)."""
    environ = os.environ if environ is None else environ
    home = home or Path.home()
    if not is_windows(platform):
        return home / ".config" / "spicetify"

    candidates = [
        Path(environ["LOCALAPPDATA"]) / "spicetify" if environ.get("LOCALAPPDATA") else None,
        Path(environ["APPDATA"]) / "spicetify" if environ.get("APPDATA") else None,
        home / ".config" / "spicetify",
        home / ".spicetify",
    ]
    existing = [c for c in candidates if c is not None]
    for candidate in existing:
        if (candidate / "CustomApps" / "ivLyrics").exists():
            return candidate
    for candidate in existing:
        if candidate.exists():
            return candidate
    return existing[0]


def default_addon_dir(platform: str = sys.platform, environ: MutableMapping[str, str] | None = None) -> Path:
    return spicetify_config_dir(platform, environ) / "CustomApps" / "ivLyrics"


def resolve_download_path(directory: Path, filename: str) -> Path:
    """Local destination for ``filename`` inside ``directory``.

    Raises:
        UpdateError: If the name would resolve anywhere other than directly
            inside ``directory``.
    """
    local = directory / filename
    resolved = local.resolve()
    if resolved != local.parent.resolve() / local.name or resolved.parent != directory.resolve():
        raise UpdateError(f"Invalid path detected: {filename}")
    return resolved


# ============================================================================
# Process-level side effects
# ============================================================================


def _default_exit() -> None:
    logging.shutdown()
    os._exit(0)


class DeploymentProcess:
    """Spawns detached helpers and ends the current process.

    Everything here outlives the server, so tests inject ``exit_hook`` and
    ``popen`` instead of letting it run for real.
    """

    def __init__(
        self,
        deploy_dir: Path,
        exit_hook: Callable[[], None] = _default_exit,
        popen: Callable[..., Any] = subprocess.Popen,
        argv: Sequence[str] | None = None,
        executable: str = sys.executable,
        platform: str = sys.platform,
    ) -> None:
        self.deploy_dir = deploy_dir
        self._exit_hook = exit_hook
        self._popen = popen
        self._argv = list(argv) if argv is not None else list(sys.argv)
        self._executable = executable
        self._platform = platform

    @property
    def removal_strategy(self) -> str:
        return "cmd-rmdir-delayed" if is_windows(self._platform) else "sh-rmrf-delayed"

    def _spawn_detached(self, args: list[str], cwd: Path | None = None) -> None:
        kwargs: dict[str, Any] = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "close_fds": True,
            "env": dict(os.environ),
        }
        if cwd is not None:
            kwargs["cwd"] = str(cwd)
        if is_windows(self._platform):
            kwargs["creationflags"] = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(
                subprocess, "CREATE_NEW_PROCESS_GROUP", 0
            )
        else:
            kwargs["start_new_session"] = True
        self._popen(args, **kwargs)

    def replacement_command(self) -> list[str]:
        """Command line of the replacement gateway.

        Runs the deployment's bundle when one is present, so a freshly
        downloaded ``gateway.pyz`` takes over from whatever was started before.
        """
        bundle = self.deploy_dir / PROXY_BUNDLE_FILE
        if bundle.is_file():
            return [self._executable, str(bundle), *self._argv[1:]]
        return [self._executable, *self._argv]

    def spawn_replacement(self) -> None:
        """Start a fresh gateway with the same interpreter and arguments."""
        self._spawn_detached(self.replacement_command(), cwd=self.deploy_dir)

    def removal_command(self, directory: Path) -> list[str]:
        resolved = str(directory.resolve())
        if is_windows(self._platform):
            escaped = resolved.replace('"', '""')
            return ["cmd.exe", "/d", "/s", "/c", f'ping 127.0.0.1 -n 4 > nul && rmdir /s /q "{escaped}"']
        escaped = resolved.replace("'", "'\\''")
        return ["/bin/sh", "-c", f"sleep 2; rm -rf '{escaped}'"]

    def schedule_removal(self, directory: Path) -> None:
        self._spawn_detached(self.removal_command(directory))

    def exit(self) -> None:
        self._exit_hook()


# ============================================================================
# Orchestrator
# ============================================================================


class UpdateOrchestrator:
    """Update checks, artifact downloads, restart and cleanup."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        resolver: CommandResolver,
        admission: AdmissionController,
        process: DeploymentProcess,
        addon_dir: Path | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._http = http_client
        self._resolver = resolver
        self._admission = admission
        self.process = process
        self.addon_dir = addon_dir or settings.addon_dir or default_addon_dir()
        self._sleep = sleep
        self._cache: TTLCache[UpdateCheckResult] = TTLCache(max_size=1, default_ttl=settings.update_cache_ttl)

    @property
    def deploy_dir(self) -> Path:
        return self.process.deploy_dir

    # ---------------------------------------------------------------- checks

    def cached_result(self) -> UpdateCheckResult | None:
        return self._cache.peek(_MANIFEST_CACHE_KEY)

    def invalidate_cache(self) -> None:
        self._cache.clear()

    async def check_for_updates(self, force: bool = False) -> UpdateCheckResult:
        """Compare local versions with the remote manifest.

        Network and parse failures are reported in the result, never raised,
        and are not cached.
        """
        if not force and (cached := self._cache.get(_MANIFEST_CACHE_KEY)) is not None:
            return cached

        try:
            response = await self._http.get(
                self._settings.version_manifest_url,
                timeout=self._settings.manifest_timeout,
            )
            if response.is_error:
                raise UpdateError(f"HTTP {response.status_code}")
            manifest = response.json()
        except (httpx.HTTPError, UpdateError, ValueError) as e:
            message = e.message if isinstance(e, UpdateError) else str(e) or type(e).__name__
            logger.warning(f"[update] Failed to check for updates: {message}")
            return UpdateCheckResult(has_updates=False, error=message, checked_at=datetime.now(UTC))

        result = self._compare(manifest if isinstance(manifest, dict) else {})
        size = len(result.model_dump_json(by_alias=True))
        if size < self._settings.update_cache_max_size:
            self._cache.set(_MANIFEST_CACHE_KEY, result)
        else:
            logger.warning(f"[update] Result too large ({size} bytes), skipping cache")
        return result

    def _compare(self, manifest: dict[str, Any]) -> UpdateCheckResult:
        proxy: ProxyUpdateInfo | None = None
        proxy_info = manifest.get("proxy")
        remote_proxy = proxy_info.get("version") if isinstance(proxy_info, dict) else None
        if remote_proxy and is_newer_version(remote_proxy, LOCAL_VERSION):
            proxy = ProxyUpdateInfo(current=LOCAL_VERSION, latest=str(remote_proxy))

        addons: dict[str, AddonUpdateInfo] = {}
        remote_addons = manifest.get("addons")
        for filename, info in (remote_addons if isinstance(remote_addons, dict) else {}).items():
            if not isinstance(info, dict):
                continue
            remote_version = info.get("version")
            try:
                local_version = extract_addon_version(resolve_download_path(self.addon_dir, str(filename)))
            except UpdateError:
                continue
            if remote_version and local_version and is_newer_version(remote_version, local_version):
                addons[str(filename)] = AddonUpdateInfo(
                    current=local_version,
                    latest=str(remote_version),
                    id=info.get("id"),
                )

        return UpdateCheckResult(
            proxy=proxy,
            addons=addons,
            has_updates=bool(proxy or addons),
            checked_at=datetime.now(UTC),
        )

    # --------------------------------------------------------------- updates

    async def _download(self, remote_path: str, directory: Path, filename: str) -> UpdateFileResult:
        local_path = resolve_download_path(directory, filename)
        url = f"{self._settings.raw_base_url.rstrip('/')}/{quote(remote_path)}"
        try:
            response = await self._http.get(url, timeout=self._settings.download_timeout)
        except httpx.HTTPError as e:
            raise UpdateError(f"Failed to download {filename}: {e}", cause=e) from e
        if response.is_error:
            raise UpdateError(f"Failed to download {filename}: HTTP {response.status_code}")

        try:
            write_bytes_atomic(local_path, response.content)
        except OSError as e:
            raise UpdateError(f"Failed to write {filename}: {e}", cause=e) from e
        logger.info(f"[update] {filename} updated", path=str(local_path))
        return UpdateFileResult(file=filename, status="updated")

    async def _install_dependencies(self) -> UpdateFileResult:
        pip = await self._resolver.resolve("pip")
        if not pip:
            logger.warning("[update] pip not found; skipping dependency install after proxy update")
            return UpdateFileResult(
                file="pip install",
                status="skipped",
                note="pip not found in PATH; restart may fail if new dependencies are required",
            )

        requirements = self.deploy_dir / PROXY_REQUIREMENTS_FILE
        args = [pip, "install", "-r", str(requirements)]
        logger.info(f"[update] Running dependency install: {pip} install -r {requirements}")
        try:
            if should_use_shell(pip):
                proc = await asyncio.create_subprocess_shell(
                    subprocess.list2cmdline(args),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.deploy_dir,
                )
            else:
                proc = await asyncio.create_subprocess_exec(
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.deploy_dir,
                )
        except OSError as e:
            raise UpdateError(f"pip install failed after proxy update: {e}", cause=e) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._settings.dependency_install_timeout
            )
        except asyncio.TimeoutError:
            raise UpdateError(
                f"pip install failed after proxy update: timed out after {self._settings.dependency_install_timeout:g}s"
            ) from None
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        if proc.returncode != 0:
            detail = (
                stderr.decode("utf-8", errors="replace").strip()
                or stdout.decode("utf-8", errors="replace").strip()
                or f"exit code {proc.returncode}"
            )
            raise UpdateError(f"pip install failed after proxy update: {detail}")
        return UpdateFileResult(file="pip install", status="ok")

    async def apply_update(self, target: object) -> tuple[list[UpdateFileResult], bool]:
        """Download the artifacts for ``target``.

        Returns:
            The per-artifact results and whether a restart is required.

        Raises:
            InvalidUpdateTargetError: If ``target`` is missing or not allow-listed
                (checked before any filesystem access).
            UpdateError: If a required download, write or reinstall fails.
        """
        if not isinstance(target, str) or not target:
            raise InvalidUpdateTargetError("Missing target (addons, proxy, all, or filename)")
        if target not in ALLOWED_UPDATE_TARGETS:
            raise InvalidUpdateTargetError(f"Invalid target: {target}")

        results: list[UpdateFileResult] = []
        needs_restart = False

        if target in ("addons", "all"):
            for filename in BUNDLED_ADDON_FILES:
                if resolve_download_path(self.addon_dir, filename).exists():
                    results.append(await self._download(filename, self.addon_dir, filename))

        if target in ("proxy", "all"):
            results.append(
                await self._download(f"{PROXY_REMOTE_DIR}/{PROXY_BUNDLE_FILE}", self.deploy_dir, PROXY_BUNDLE_FILE)
            )
            try:
                results.append(
                    await self._download(
                        f"{PROXY_REMOTE_DIR}/{PROXY_REQUIREMENTS_FILE}", self.deploy_dir, PROXY_REQUIREMENTS_FILE
                    )
                )
            except UpdateError as e:
                logger.warning(f"[update] {e.message}")
            results.append(await self._install_dependencies())
            needs_restart = True
            results.append(UpdateFileResult(file="proxy", status="updated", note="Server will restart automatically"))

        if target in ADDON_FILES:
            results.append(await self._download(target, self.addon_dir, target))

        if results:
            self.invalidate_cache()
        return results, needs_restart

    async def restart_after_delay(self) -> None:
        logger.info(f"[update] Proxy updated. Restarting server in {self._settings.restart_delay:g}s...")
        await self._sleep(self._settings.restart_delay)
        try:
            self.process.spawn_replacement()
        except OSError as e:
            logger.error(f"[update] Failed to spawn replacement process: {e}")
            return
        self.process.exit()

    # --------------------------------------------------------------- cleanup

    @staticmethod
    def parse_cleanup_body(raw: bytes) -> CleanupRequest:
        """Cleanup bodies may arrive as JSON or as JSON sent with text/plain."""
        try:
            payload = json.loads(raw or b"{}")
        except ValueError:
            payload = {}
        return CleanupRequest.model_validate(payload if isinstance(payload, dict) else {})

    def plan_cleanup(self, request: CleanupRequest) -> CleanupResponse:
        """Validate a cleanup request and, unless it is a dry run, close admission.

        Raises:
            CleanupConflictError: If a shutdown is already in progress.
            CleanupRejectedError: Wrong target or missing confirmation token.
            UnsafeCleanupTargetError: The deployment directory name is unexpected.
        """
        if self._admission.is_closed:
            raise CleanupConflictError("Server is shutting down")
        if request.target != CLEANUP_TARGET:
            raise CleanupRejectedError(f"Missing/invalid target (expected: {CLEANUP_TARGET})")
        if request.confirm != CLEANUP_CONFIRM_TOKEN:
            raise CleanupRejectedError("Missing confirmation token")

        proxy_dir = self.deploy_dir.resolve()
        if proxy_dir.name.lower() != self._settings.expected_deploy_dir_name.lower():
            raise UnsafeCleanupTargetError(f"Unsafe proxy dir: {proxy_dir}")

        strategy = self.process.removal_strategy
        if request.dry_run is True:
            return CleanupResponse(dry_run=True, proxy_dir=str(proxy_dir), strategy=strategy)

        self._admission.close("cleanup")
        return CleanupResponse(
            proxy_dir=str(proxy_dir),
            strategy=strategy,
            note="Cleanup scheduled. Server will exit shortly.",
        )

    async def finish_cleanup(self, proxy_dir: Path) -> None:
        await self._sleep(CLEANUP_SCHEDULE_DELAY)
        try:
            self.process.schedule_removal(proxy_dir)
            logger.info(f"[cleanup] Removal of {proxy_dir} scheduled")
        except OSError as e:
            logger.error(f"[cleanup] Failed to schedule proxy removal: {e}")
        finally:
            await self._sleep(CLEANUP_EXIT_DELAY)
            self.process.exit()
