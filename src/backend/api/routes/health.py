"""
Health, tool listing and metrics endpoints.

``GET /health`` probes every tool concurrently, each bounded by its own
timeout, and reports update information from the cached manifest only.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api.dependencies import Context
from core.constants import LOCAL_VERSION
from core.tool_registry import AnyTool, ProbeResult
from models.schemas.health import HealthResponse, ToolHealth, ToolsResponse, ToolSummary
from utils.logger import logger

router = APIRouter()


async def _bounded_probe(tool: AnyTool, context: Context) -> ProbeResult:
    timeout = context.settings.health_check_timeout
    try:
        return await asyncio.wait_for(
            tool.probe(context.resolver, context.settings.tool_check_timeout),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        return ProbeResult(False, f"{tool.id} check timed out after {timeout:g}s")
    except Exception as e:
        logger.warning(f"[health] {tool.id} probe raised: {e}")
        return ProbeResult(False, str(e) or type(e).__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    response_model_exclude_none=True,
    summary="Health check",
    description="Per-tool availability, gateway version and the cached update status.",
    responses={
        200: {
            "description": "Gateway health",
            "content": {
                "application/json": {
                    "example": {
                        "status": "ok",
                        "version": LOCAL_VERSION,
                        "tools": {"claude": {"available": True, "mode": "spawn"}},
                        "updateAvailable": False,
                        "latestVersion": LOCAL_VERSION,
                        "activeProcesses": 0,
                    }
                }
            },
        }
    },
)
async def health_check(context: Context) -> HealthResponse:
    """Probe all tools without touching the network for update info."""
    tools = list(context.registry)
    probes = await asyncio.gather(*(_bounded_probe(tool, context) for tool in tools))

    cached = context.updates.cached_result()
    latest = cached.proxy.latest if cached and cached.proxy else LOCAL_VERSION

    return HealthResponse(
        version=LOCAL_VERSION,
        tools={
            tool.id: ToolHealth(available=probe.available, error=probe.error, mode=tool.mode.value)
            for tool, probe in zip(tools, probes, strict=True)
        },
        update_available=bool(cached and cached.has_updates),
        latest_version=latest,
        active_processes=context.engine.active_processes,
    )


@router.get(
    "/tools",
    response_model=ToolsResponse,
    summary="List tools",
    description="Static descriptor summary of every registered tool. No availability probe is run.",
)
async def list_tools(context: Context) -> ToolsResponse:
    return ToolsResponse(
        tools=[
            ToolSummary(id=tool.id, name=tool.name, mode=tool.mode.value, default_model=tool.default_model)
            for tool in context.registry
        ]
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Generation, admission and Code Assist counters in Prometheus text format.",
    response_class=Response,
)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
