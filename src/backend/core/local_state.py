"""
Read-only views over the tools' own on-disk state.

The gateway never writes these files; they belong to the claude, codex and
gemini CLIs. All readers tolerate missing or malformed files.
"""

from __future__ import annotations

import re

from collections.abc import Iterator
from pathlib import Path
from typing import Any

from core.constants import CODEX_FALLBACK_REASONING, CODEX_REASONING_ORDER
from core.model_ids import normalize_model_id
from utils.file_store import iter_json_files, read_json_object, read_text_safe

_CODEX_CONFIG_MODEL = re.compile(r'^model\s*=\s*"([^"]+)"', re.MULTILINE)


def pick_lowest_reasoning_effort(supported: list[str]) -> str:
    """Lowest known effort among ``supported``; unknown-only lists yield their first entry."""
    efforts = list(dict.fromkeys(e for e in (normalize_model_id(s) for s in supported) if e))
    if not efforts:
        return ""
    for effort in CODEX_REASONING_ORDER:
        if effort in efforts:
            return effort
    return efforts[0]


class LocalToolState:
    """Locates per-tool state below a home directory (injectable for tests)."""

    def __init__(self, home: Path | None = None, gemini_home: Path | None = None) -> None:
        self.home = home or Path.home()
        self.gemini_home = gemini_home or self.home / ".gemini"

    # ------------------------------------------------------------------ codex

    @property
    def codex_models_cache_path(self) -> Path:
        return self.home / ".codex" / "models_cache.json"

    @property
    def codex_config_path(self) -> Path:
        return self.home / ".codex" / "config.toml"

    def codex_cached_models(self) -> list[dict[str, Any]]:
        models = read_json_object(self.codex_models_cache_path).get("models")
        if not isinstance(models, list):
            return []
        return [m for m in models if isinstance(m, dict)]

    def codex_configured_model(self) -> str:
        text = read_text_safe(self.codex_config_path)
        if not text:
            return ""
        match = _CODEX_CONFIG_MODEL.search(text)
        return normalize_model_id(match.group(1)) if match else ""

    def codex_model_metadata(self, model_id: str) -> dict[str, Any] | None:
        wanted = normalize_model_id(model_id)
        if not wanted:
            return None
        for model in self.codex_cached_models():
            if codex_model_slug(model) == wanted:
                return model
        return None

    def codex_reasoning_effort(self, model_id: str) -> str:
        """Lowest reasoning effort the selected codex model supports.

        Codex has no "off" level, so the lowest supported level stands in for it.
        """
        selected = normalize_model_id(model_id) or self.codex_configured_model()
        if not selected:
            return CODEX_FALLBACK_REASONING
        metadata = self.codex_model_metadata(selected) or {}
        levels = metadata.get("supported_reasoning_levels") or []
        supported = [str(level.get("effort", "")) for level in levels if isinstance(level, dict)]
        return pick_lowest_reasoning_effort(supported) or CODEX_FALLBACK_REASONING

    # ----------------------------------------------------------------- claude

    @property
    def claude_stats_path(self) -> Path:
        return self.home / ".claude" / "stats-cache.json"

    def claude_used_models(self) -> list[str]:
        """Model ids from the usage statistics, in first-seen order."""
        stats = read_json_object(self.claude_stats_path)
        seen: list[str] = []

        usage = stats.get("modelUsage")
        if isinstance(usage, dict):
            seen.extend(usage.keys())

        monthly = stats.get("monthlyUsage")
        if isinstance(monthly, dict):
            for month in monthly.values():
                if isinstance(month, dict):
                    seen.extend(month.keys())

        return [m for m in dict.fromkeys(seen) if isinstance(m, str)]

    # ----------------------------------------------------------------- gemini

    @property
    def gemini_creds_path(self) -> Path:
        return self.gemini_home / "oauth_creds.json"

    def gemini_history_files(self, max_files: int) -> Iterator[Path]:
        return iter_json_files(self.gemini_home / "tmp", max_files)


def codex_model_slug(model: dict[str, Any]) -> str:
    return normalize_model_id(model.get("slug") or model.get("id") or model.get("model"))
