"""
Model discovery endpoint.
"""

from __future__ import annotations

from fastapi import APIRouter, Query

from api.dependencies import Discovery
from models.schemas.models import AllToolModels, ToolModels

router = APIRouter()


def query_flag(value: str | None) -> bool:
    """Interpret ``1``/``true``/``yes`` query values as set."""
    return (value or "").strip().lower() in {"1", "true", "yes"}


@router.get(
    "/models",
    response_model=ToolModels | AllToolModels,
    summary="Discover models",
    description=(
        "Models found in local tool state for one tool, or for every tool when `tool` is omitted. "
        "Results are cached briefly; `refresh=1` rebuilds them."
    ),
    responses={400: {"description": "Unknown tool"}},
)
async def list_models(
    discovery: Discovery,
    tool: str | None = Query(default=None, description="Tool id"),
    refresh: str | None = Query(default=None, description="1 to bypass the cache"),
) -> ToolModels | AllToolModels:
    force = query_flag(refresh)
    if tool:
        return await discovery.list_models(tool, force=force)
    return await discovery.list_all(force=force)
