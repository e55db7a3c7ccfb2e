"""
Constants and configuration for the CLI gateway.
Centralizes all magic numbers and configuration values.
Includes Pydantic validation for environment variables.
"""

from __future__ import annotations

import os
import threading
import zipimport

from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import (
    DotEnvSettingsSource,
    PydanticBaseSettingsSource,
)

# ============================================================================
# Project Paths
# ============================================================================


def detect_deploy_dir(module_file: str | Path, loader: object = None) -> Path:
    """Directory holding the running gateway artifact.

    When imported from a zipapp bundle this is the directory containing the
    archive. In a source checkout it is the project root (the parent of src/).
    """
    if isinstance(loader, zipimport.zipimporter):
        return Path(loader.archive).resolve().parent
    return Path(module_file).resolve().parent.parent.parent.parent


#: Deployment directory: next to gateway.pyz when bundled, the project root otherwise
PROJECT_ROOT = detect_deploy_dir(__file__, __loader__)

#: Backend source directory for .env file resolution
_BACKEND_DIR = Path(__file__).parent.parent

# ============================================================================
# Versioning & Self-Update
# ============================================================================

#: Version of this gateway, compared against the remote manifest's proxy version
LOCAL_VERSION = "2.2.5"

#: Remote manifest describing the latest gateway and addon versions
VERSION_MANIFEST_URL = "https://raw.githubusercontent.com/Ketchio-dev/ivLyrics-AI-CLI-Provider/main/version.json"

#: Base URL for raw artifact downloads
RAW_BASE_URL = "https://raw.githubusercontent.com/Ketchio-dev/ivLyrics-AI-CLI-Provider/main"

#: Addon files the gateway may refresh in the host application's addon directory
ADDON_FILES: tuple[str, ...] = (
    "Addon_AI_CLI_Provider.js",
    "Addon_AI_CLI_ClaudeCode.js",
    "Addon_AI_CLI_CodexCLI.js",
    "Addon_AI_CLI_GeminiCLI.js",
)

#: Addons refreshed by the "addons" and "all" targets (only when installed locally)
BUNDLED_ADDON_FILES: tuple[str, ...] = ("Addon_AI_CLI_Provider.js",)

#: Every accepted value for POST /update {target}
ALLOWED_UPDATE_TARGETS: frozenset[str] = frozenset({"addons", "proxy", "all", *ADDON_FILES})

#: Remote directory holding the gateway's own artifacts
PROXY_REMOTE_DIR = "cli-proxy"

#: Gateway bundle replaced on proxy update (required)
PROXY_BUNDLE_FILE = "gateway.pyz"

#: Dependency list refreshed on proxy update (optional)
PROXY_REQUIREMENTS_FILE = "requirements.txt"

#: Confirmation token required by POST /cleanup
CLEANUP_CONFIRM_TOKEN = "REMOVE_PROXY"

#: Only target accepted by POST /cleanup
CLEANUP_TARGET = "proxy"

# ============================================================================
# Tool Defaults
# ============================================================================

#: Default Claude model (any "haiku" tier is substituted with this)
CLAUDE_DEFAULT_MODEL = "claude-sonnet-4-5"

#: Default Gemini model for both the API and the CLI tool
GEMINI_DEFAULT_MODEL = "gemini-2.5-flash"

#: System prompt appended to Claude invocations to disable extended thinking
CLAUDE_REASONING_OFF_PROMPT = (
    "Reasoning mode is disabled. Do not use extended thinking. "
    "Return concise final answers without chain-of-thought or step-by-step deliberation."
)

#: Codex reasoning effort levels, lowest first
CODEX_REASONING_ORDER: tuple[str, ...] = ("low", "medium", "high", "xhigh")

#: Codex reasoning effort used when the model's supported levels are unknown
CODEX_FALLBACK_REASONING = "medium"

#: Gemini shorthand ids mapped to their canonical model id
GEMINI_MODEL_ALIASES: dict[str, str] = {
    "3.0-flash": "gemini-3-flash-preview",
    "3-flash": "gemini-3-flash-preview",
    "3-flash-preview": "gemini-3-flash-preview",
    "gemini-3.0-flash": "gemini-3-flash-preview",
    "gemini-3-flash": "gemini-3-flash-preview",
    "gemini-3.0-flash-preview": "gemini-3-flash-preview",
}

#: Maximum accepted length of a caller-supplied model id
MODEL_ID_MAX_LENGTH = 200

#: Maximum number of Gemini history files scanned during model discovery
GEMINI_HISTORY_MAX_FILES = 600

#: Characters of the prompt shown in request logs
PROMPT_PREVIEW_LENGTH = 50

# ============================================================================
# Process Environment
# ============================================================================

#: Extra binary directories prepended to PATH when they exist (POSIX)
EXTRA_BIN_DIRS_POSIX: tuple[str, ...] = ("~/.local/bin", "~/.cargo/bin", "/opt/homebrew/bin", "/usr/local/bin")

#: Executable wrapper extensions tried on Windows, in preference order
WINDOWS_WRAPPER_EXTENSIONS: tuple[str, ...] = (".cmd", ".exe", ".bat")

# ============================================================================
# Gemini Code Assist API
# ============================================================================

#: OAuth token endpoint used for refresh-token grants
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

#: Code Assist base endpoint
CODE_ASSIST_ENDPOINT = "https://cloudcode-pa.googleapis.com/v1internal"

#: OAuth error codes after which the cached token state is discarded
UNRECOVERABLE_OAUTH_ERRORS: frozenset[str] = frozenset(
    {"invalid_grant", "invalid_client", "unauthorized_client", "invalid_request"}
)

#: Seconds before expiry at which an access token is treated as expired
TOKEN_EXPIRY_SKEW_SECONDS = 60

# ============================================================================
# Logging
# ============================================================================

#: Maximum size of a log file before rotation (5 MB)
LOG_MAX_SIZE = 5 * 1024 * 1024

#: Rotated log files kept per log
LOG_BACKUP_COUNT = 1

# ============================================================================
# Environment Configuration with Pydantic Validation
# ============================================================================


def _get_env_files() -> list[Path]:
    """Determine which .env files to load.

    Load order (later files override earlier - pydantic-settings last-wins):
    1. .env (base defaults)
    2. .env.local (local overrides, gitignored)

    Returns:
        List of Path objects for env files that exist.
    """
    candidates = [_BACKEND_DIR / ".env", _BACKEND_DIR / ".env.local"]
    return [p for p in candidates if p.exists()]


class Settings(BaseSettings):
    """Gateway settings with validation.

    Configuration priority (highest to lowest):
    1. Values passed to Settings() constructor
    2. Environment variables prefixed with GATEWAY_
    3. .env.local > .env (dotenv files, last wins)
    """

    # Server
    port: int = Field(default=19284, ge=1, le=65535, description="Loopback port the gateway listens on")
    debug: bool = Field(default=False, description="Enable debug logging")

    # Execution
    max_concurrent_processes: int = Field(default=5, ge=1, description="Maximum live spawn-mode processes")
    default_timeout_ms: int = Field(default=120_000, description="Timeout applied when a request omits one (ms)")
    min_timeout_ms: int = Field(default=5_000, description="Lower clamp for caller-supplied timeouts (ms)")
    max_timeout_ms: int = Field(default=600_000, description="Upper clamp for caller-supplied timeouts (ms)")
    tool_check_timeout: float = Field(default=10.0, description="Availability probe timeout per tool (seconds)")
    health_check_timeout: float = Field(default=12.0, description="Per-tool bound inside GET /health (seconds)")

    # Admission
    rate_limit_max_requests: int = Field(default=120, ge=1, description="Generation requests admitted per window")
    rate_limit_window: float = Field(default=60.0, gt=0, description="Rate limit window length (seconds)")

    # Model discovery
    model_discovery_ttl: float = Field(default=30.0, description="Model list cache lifetime per tool (seconds)")

    # Updates
    version_manifest_url: str = Field(default=VERSION_MANIFEST_URL, description="Remote version manifest URL")
    raw_base_url: str = Field(default=RAW_BASE_URL, description="Base URL for artifact downloads")
    update_cache_ttl: float = Field(default=3600.0, description="Update manifest cache lifetime (seconds)")
    update_cache_max_size: int = Field(default=1_048_576, description="Skip caching manifests larger than this (bytes)")
    manifest_timeout: float = Field(default=10.0, description="Manifest fetch timeout (seconds)")
    download_timeout: float = Field(default=30.0, description="Artifact download timeout (seconds)")
    dependency_install_timeout: float = Field(default=180.0, description="Dependency reinstall timeout (seconds)")
    restart_delay: float = Field(default=1.0, description="Delay before the post-update restart (seconds)")
    deploy_dir: Path = Field(default=PROJECT_ROOT, description="Directory holding the gateway deployment")
    expected_deploy_dir_name: str = Field(default="cli-proxy", description="Required base name for self-removal")
    addon_dir: Path | None = Field(default=None, description="Host addon directory (auto-detected when unset)")

    # Gemini Code Assist
    gemini_home: Path = Field(default=Path("~/.gemini"), description="Gemini CLI state directory")
    gemini_oauth_client_id: str | None = Field(default=None, description="OAuth client id override")
    gemini_oauth_client_secret: str | None = Field(default=None, description="OAuth client secret override")
    gemini_project_id: str | None = Field(default=None, description="Code Assist project override")
    gemini_project_ttl: float = Field(default=86_400.0, description="Resolved project id lifetime (seconds)")
    gemini_max_retries: int = Field(default=3, ge=0, description="Retries after HTTP 429 from Code Assist")
    gemini_backoff_base: float = Field(default=2.0, description="Linear backoff step after HTTP 429 (seconds)")
    gemini_backoff_cap: float = Field(default=30.0, description="Maximum single backoff wait (seconds)")
    http_connect_timeout: float = Field(default=10.0, description="HTTP connect timeout (seconds)")

    # Shutdown
    shutdown_timeout: float = Field(default=30.0, description="Hard deadline for draining live processes (seconds)")
    shutdown_poll_interval: float = Field(default=0.3, description="Active process poll interval (seconds)")

    # Logging
    log_dir: Path = Field(default=PROJECT_ROOT / "logs", description="Directory for JSON log files")
    log_max_bytes: int = Field(default=LOG_MAX_SIZE, description="Rotate log files above this size (bytes)")
    log_backup_count: int = Field(default=LOG_BACKUP_COUNT, description="Rotated log files to keep")

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Env vars override dotenv files; constructor values override both."""
        dotenv_source = DotEnvSettingsSource(
            settings_cls,
            env_file=_get_env_files(),
            env_file_encoding="utf-8",
        )
        return (init_settings, env_settings, dotenv_source)

    @field_validator("gemini_home", "deploy_dir", "log_dir", "addon_dir", mode="after")
    @classmethod
    def expand_user_paths(cls, v: Path | None) -> Path | None:
        """Expand ~ so paths from .env files behave like shell paths."""
        if v is None:
            return None
        return Path(os.path.expanduser(v))

    @model_validator(mode="after")
    def validate_timeout_bounds(self) -> Settings:
        """Ensure the timeout clamp is well formed."""
        if self.min_timeout_ms > self.max_timeout_ms:
            raise ValueError("min_timeout_ms must not exceed max_timeout_ms")
        if not self.min_timeout_ms <= self.default_timeout_ms <= self.max_timeout_ms:
            raise ValueError("default_timeout_ms must lie within [min_timeout_ms, max_timeout_ms]")
        return self

    def clamp_timeout_ms(self, requested: float | None) -> int:
        """Clamp a caller-supplied timeout, falling back to the default."""
        if not requested:
            return self.default_timeout_ms
        return int(max(self.min_timeout_ms, min(self.max_timeout_ms, requested)))


# ============================================================================
# Settings Management
# ============================================================================


class _SettingsManager:
    """Thread-safe lazily created settings singleton."""

    __slots__ = ("_instance", "_lock")

    def __init__(self) -> None:
        self._instance: Settings | None = None
        self._lock = threading.Lock()

    def get(self) -> Settings:
        if self._instance is not None:
            return self._instance
        with self._lock:
            if self._instance is None:
                self._instance = Settings()
            return self._instance

    def reload(self) -> Settings:
        with self._lock:
            self._instance = Settings()
            return self._instance

    def clear(self) -> None:
        with self._lock:
            self._instance = None


_settings_manager = _SettingsManager()


def get_settings() -> Settings:
    """Get the cached settings instance.

    Raises:
        ValueError: If configuration is invalid.
    """
    return _settings_manager.get()


def reload_settings() -> Settings:
    """Force reload settings from the environment and dotenv files."""
    return _settings_manager.reload()


def clear_settings_cache() -> None:
    """Clear cached settings instance.

    Primarily useful for testing to ensure fresh settings on each test.
    """
    _settings_manager.clear()
