"""
Model discovery from the tools' own local state.

No remote listing endpoint is called. Each tool family reads what its CLI
leaves on disk (usage statistics, a cached catalog, a configured default,
session history) and the result is tagged with the signal it came from, so
callers can tell a discovered model from a hardcoded fallback. Results are
cached per tool for a short TTL.
"""

from __future__ import annotations

import asyncio
import re

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from core.command_resolver import CommandResolver
from core.constants import GEMINI_HISTORY_MAX_FILES
from core.local_state import LocalToolState, codex_model_slug
from core.model_ids import canonicalize_gemini_model, is_blocked_claude_model, normalize_model_id
from core.tool_registry import AnyTool, ToolRegistry
from models.schemas.models import AllToolModels, ModelInfo, ToolModels
from utils.cache import TTLCache
from utils.file_store import read_text_safe
from utils.logger import logger

_HISTORY_MODEL = re.compile(r'"model"\s*:\s*"([^"]+)"')

#: Aliases the claude CLI accepts in place of a full model id
CLAUDE_CLI_ALIASES: tuple[str, ...] = ("opus", "sonnet")


@dataclass
class DiscoveredModels:
    default_model: str
    models: dict[str, ModelInfo] = field(default_factory=dict)
    source: str = "fallback"

    def add(self, model_id: object, source: str, name: object = None) -> None:
        normalized = normalize_model_id(model_id)
        if not normalized or normalized in self.models:
            return
        display = normalize_model_id(name) or normalized
        self.models[normalized] = ModelInfo(id=normalized, name=display, source=source)

    def sorted_models(self) -> list[ModelInfo]:
        return sorted(self.models.values(), key=lambda m: m.id)


def discover_claude_models(state: LocalToolState, default_model: str) -> DiscoveredModels:
    found = DiscoveredModels(default_model)
    for model_id in state.claude_used_models():
        if model_id.startswith("claude-") and not is_blocked_claude_model(model_id):
            found.add(model_id, "claude-stats")

    for alias in CLAUDE_CLI_ALIASES:
        found.add(alias, "claude-alias")
    found.add(default_model, "proxy-default")

    found.source = "claude-stats" if found.models else "fallback"
    return found


def discover_codex_models(state: LocalToolState, default_model: str) -> DiscoveredModels:
    cached = state.codex_cached_models()
    configured = state.codex_configured_model()
    found = DiscoveredModels(configured or default_model)

    for model in cached:
        visibility = model.get("visibility")
        if visibility and visibility != "list":
            continue
        slug = codex_model_slug(model)
        found.add(slug, "codex-cache", model.get("display_name") or slug)
    found.add(configured, "codex-config")

    if cached:
        found.source = "codex-cache"
    elif configured:
        found.source = "codex-config"
    return found


def discover_gemini_models(state: LocalToolState, default_model: str) -> DiscoveredModels:
    found = DiscoveredModels(default_model)
    for path in state.gemini_history_files(GEMINI_HISTORY_MAX_FILES):
        text = read_text_safe(path)
        if not text:
            continue
        for match in _HISTORY_MODEL.finditer(text):
            model_id = canonicalize_gemini_model(match.group(1))
            if model_id.startswith("gemini-"):
                found.add(model_id, "gemini-history")

    found.add(default_model, "proxy-default")
    found.source = "gemini-history" if len(found.models) > 1 else "fallback"
    return found


Discoverer = Callable[[LocalToolState, str], DiscoveredModels]

#: Discovery strategy per tool id
DISCOVERERS: dict[str, Discoverer] = {
    "claude": discover_claude_models,
    "codex": discover_codex_models,
    "gemini": discover_gemini_models,
    "gemini-cli": discover_gemini_models,
}


class ModelDiscoveryService:
    """Builds and caches :class:`ToolModels` per tool."""

    def __init__(
        self,
        registry: ToolRegistry,
        resolver: CommandResolver,
        local_state: LocalToolState,
        ttl: float,
        probe_timeout: float,
        cache: TTLCache[ToolModels] | None = None,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._local_state = local_state
        self._probe_timeout = probe_timeout
        self._cache: TTLCache[ToolModels] = cache or TTLCache(max_size=32, default_ttl=ttl)

    def _discover(self, tool: AnyTool) -> DiscoveredModels:
        discoverer = DISCOVERERS.get(tool.id)
        if discoverer is None:
            found = DiscoveredModels(tool.default_model)
            found.add(tool.default_model, "proxy-default")
            return found
        return discoverer(self._local_state, tool.default_model)

    async def list_models(self, tool_id: str, force: bool = False) -> ToolModels:
        """Discovery result for one tool; ``force`` bypasses the cache.

        Raises:
            UnknownToolError: If ``tool_id`` is not registered.
        """
        tool = self._registry.get(tool_id)
        if not force and (cached := self._cache.get(tool.id)) is not None:
            return cached

        discovered = await asyncio.to_thread(self._discover, tool)
        probe = await tool.probe(self._resolver, self._probe_timeout)
        result = ToolModels(
            tool=tool.id,
            available=probe.available,
            error=probe.error,
            default_model=discovered.default_model or "",
            models=discovered.sorted_models(),
            source=discovered.source,
            fetched_at=datetime.now(UTC),
        )
        self._cache.set(tool.id, result)
        logger.debug(f"[{tool.id}] discovered {len(result.models)} models", source=result.source)
        return result

    async def list_all(self, force: bool = False) -> AllToolModels:
        results = await asyncio.gather(*(self.list_models(tool_id, force) for tool_id in self._registry.ids))
        return AllToolModels(
            tools={result.tool: result for result in results},
            fetched_at=datetime.now(UTC),
        )

    def invalidate(self, tool_id: str | None = None) -> None:
        if tool_id is None:
            self._cache.clear()
        else:
            self._cache.invalidate(tool_id)
