"""
Gateway context: every long-lived component, owned by one object.

The tool table, caches, queues and counters are built here and handed to the
app through ``app.state.context`` instead of living in module globals, so
tests can run several independent gateways side by side.
"""

from __future__ import annotations

import asyncio

from collections.abc import Coroutine
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from api.middleware.rate_limiter import RateLimitWindow
from api.services.admission import AdmissionController
from api.services.execution_engine import ExecutionEngine, ProcessSlots
from api.services.model_discovery import ModelDiscoveryService
from api.services.shutdown import drain_active_processes
from api.services.streaming import StreamingMultiplexer
from api.services.update_orchestrator import DeploymentProcess, UpdateOrchestrator
from core.command_resolver import CommandResolver
from core.constants import Settings
from core.local_state import LocalToolState
from core.tool_registry import ToolRegistry, build_default_registry
from integrations.gemini_client import GeminiCodeAssistClient
from integrations.gemini_oauth import OAuthClientDiscovery
from utils.client_factory import create_http_client
from utils.logger import logger


@dataclass
class GatewayContext:
    settings: Settings
    resolver: CommandResolver
    local_state: LocalToolState
    http_client: httpx.AsyncClient
    gemini_client: GeminiCodeAssistClient
    registry: ToolRegistry
    slots: ProcessSlots
    engine: ExecutionEngine
    multiplexer: StreamingMultiplexer
    admission: AdmissionController
    discovery: ModelDiscoveryService
    updates: UpdateOrchestrator
    background_tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        home: Path | None = None,
        resolver: CommandResolver | None = None,
        registry: ToolRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        deployment: DeploymentProcess | None = None,
    ) -> GatewayContext:
        """Wire the default component graph; keyword overrides exist for tests."""
        resolver = resolver or CommandResolver()
        local_state = LocalToolState(home=home, gemini_home=settings.gemini_home if home is None else None)
        http_client = create_http_client(
            enable_logging=settings.debug,
            connect_timeout=settings.http_connect_timeout,
            transport=transport,
        )
        gemini_client = GeminiCodeAssistClient(
            settings,
            http_client,
            OAuthClientDiscovery(resolver),
            creds_path=local_state.gemini_creds_path,
        )
        registry = registry or build_default_registry(local_state, gemini_client)
        slots = ProcessSlots(settings.max_concurrent_processes)
        engine = ExecutionEngine(registry, resolver, slots, settings.default_timeout_ms)
        admission = AdmissionController(RateLimitWindow(settings.rate_limit_max_requests, settings.rate_limit_window))

        return cls(
            settings=settings,
            resolver=resolver,
            local_state=local_state,
            http_client=http_client,
            gemini_client=gemini_client,
            registry=registry,
            slots=slots,
            engine=engine,
            multiplexer=StreamingMultiplexer(engine),
            admission=admission,
            discovery=ModelDiscoveryService(
                registry,
                resolver,
                local_state,
                ttl=settings.model_discovery_ttl,
                probe_timeout=settings.tool_check_timeout,
            ),
            updates=UpdateOrchestrator(
                settings,
                http_client,
                resolver,
                admission,
                deployment or DeploymentProcess(settings.deploy_dir),
            ),
        )

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        """Run a fire-and-forget task that is cancelled on close."""
        task = asyncio.create_task(coro, name=name)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def aclose(self) -> None:
        """Close admission, drain live processes, then release clients."""
        self.admission.close()
        await drain_active_processes(
            self.slots,
            timeout=self.settings.shutdown_timeout,
            poll_interval=self.settings.shutdown_poll_interval,
        )
        for task in list(self.background_tasks):
            task.cancel()
        if self.background_tasks:
            await asyncio.gather(*self.background_tasks, return_exceptions=True)

        await self.gemini_client.close()
        await self.http_client.aclose()
        logger.info("Gateway context closed")
