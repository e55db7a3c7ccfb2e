from __future__ import annotations

import asyncio
import signal

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from types import FrameType

import uvicorn

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.context import GatewayContext
from api.middleware.exception_handlers import register_exception_handlers
from api.middleware.request_context import RequestContextMiddleware
from api.routes import router
from core.command_resolver import expand_path
from core.constants import LOCAL_VERSION, get_settings
from utils.logger import configure_uvicorn_logging, logger

#: The gateway only ever listens on loopback
HOST = "127.0.0.1"


async def _log_tool_status(context: GatewayContext) -> None:
    """Probe every tool once and log the outcome."""

    async def probe_one(tool_id: str) -> None:
        tool = context.registry.get(tool_id)
        status = await tool.probe(context.resolver, context.settings.tool_check_timeout)
        icon = "✓" if status.available else "✗"
        logger.info(
            f"   {icon} {tool.id} [{tool.mode.value.upper()}]: "
            f"{'available' if status.available else status.error} (default: {tool.default_model or 'auto'})"
        )

    results = await asyncio.gather(*(probe_one(tool_id) for tool_id in context.registry.ids), return_exceptions=True)
    for tool_id, result in zip(context.registry.ids, results, strict=True):
        if isinstance(result, Exception):
            logger.warning(f"   ✗ {tool_id}: probe raised {result}")


async def _log_available_updates(context: GatewayContext) -> None:
    result = await context.updates.check_for_updates()
    if not result.has_updates:
        return
    logger.info("📦 Updates available:")
    if result.proxy:
        logger.info(f"   Proxy: {result.proxy.current} → {result.proxy.latest}")
    for filename, info in result.addons.items():
        logger.info(f"   {filename}: {info.current} → {info.latest}")


def create_app(context: GatewayContext | None = None) -> FastAPI:
    """Build the gateway app.

    Args:
        context: Pre-built component graph. When omitted, one is built from
            :func:`get_settings` during startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan: startup checks, then drain on shutdown."""
        ctx: GatewayContext = getattr(app.state, "context", None) or GatewayContext.build(get_settings())
        app.state.context = ctx

        logger.info(f"🚀 CLI gateway v{LOCAL_VERSION} running on http://{HOST}:{ctx.settings.port}")
        logger.info(f"   Max concurrent processes: {ctx.settings.max_concurrent_processes}")
        ctx.spawn(_log_tool_status(ctx), name="startup-probe")
        ctx.spawn(_log_available_updates(ctx), name="startup-update-check")

        try:
            yield
        finally:
            logger.info("Initiating graceful shutdown sequence")
            await ctx.aclose()

    app = FastAPI(
        title="CLI Gateway",
        description="""
## CLI Gateway

Loopback HTTP gateway that runs local AI command-line tools (claude, codex,
gemini) and Gemini Code Assist through one request shape.

### Features
- **Generation**: blocking JSON or server-sent event streaming
- **Limits**: process concurrency cap, request rate window, timeouts
- **Model Discovery**: models found in each tool's local state
- **Maintenance**: update check/apply and self-removal
""",
        version=LOCAL_VERSION,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Health", "description": "Gateway and tool availability"},
            {"name": "Generation", "description": "Run a tool with a prompt"},
            {"name": "Models", "description": "Model discovery"},
            {"name": "Maintenance", "description": "Updates and cleanup"},
            {"name": "Compatibility", "description": "OpenAI-style chat completions"},
        ],
    )
    if context is not None:
        app.state.context = context

    # Register global exception handlers for consistent error responses
    register_exception_handlers(app)

    # Request context middleware (adds request ID tracking)
    app.add_middleware(RequestContextMiddleware)

    # Loopback only; the host app calls from varied origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


class GatewayServer(uvicorn.Server):
    """uvicorn server that closes admission as soon as a stop signal arrives."""

    def __init__(self, config: uvicorn.Config, context: GatewayContext) -> None:
        super().__init__(config)
        self.context = context

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        if not self.context.admission.is_closed:
            logger.info(f"[server] {signal.Signals(sig).name} received. Waiting for in-flight requests...")
        self.context.admission.close(signal.Signals(sig).name)
        super().handle_exit(sig, frame)


def run() -> None:
    """Console entry point."""
    settings = get_settings()
    logger.configure(
        debug=settings.debug,
        log_dir=settings.log_dir,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
    )
    configure_uvicorn_logging()

    added = expand_path()
    if added:
        logger.info(f"Added to PATH: {', '.join(added)}")

    context = GatewayContext.build(settings)
    config = uvicorn.Config(
        create_app(context),
        host=HOST,
        port=settings.port,
        log_config=None,
        timeout_graceful_shutdown=int(settings.shutdown_timeout),
    )
    GatewayServer(config, context).run()


if __name__ == "__main__":
    run()
