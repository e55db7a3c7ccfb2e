"""
Self-maintenance endpoints: update check, update apply and self-removal.
"""

from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Query, Request

from api.dependencies import Context, Updates
from api.routes.models import query_flag
from core.exceptions import InvalidUpdateTargetError
from models.schemas.updates import CleanupResponse, UpdateCheckResult, UpdateRequest, UpdateResponse
from utils.logger import logger

router = APIRouter()


@router.get(
    "/updates",
    response_model=UpdateCheckResult,
    summary="Check for updates",
    description="Compare local versions with the remote manifest. Cached for an hour unless `force=1`.",
)
async def check_updates(
    updates: Updates,
    force: str | None = Query(default=None, description="1 to bypass the cache"),
) -> UpdateCheckResult:
    return await updates.check_for_updates(force=query_flag(force))


@router.post(
    "/update",
    response_model=UpdateResponse,
    response_model_exclude_none=True,
    summary="Apply an update",
    description=(
        "Download the artifacts for `target` (`addons`, `proxy`, `all` or an addon file name). "
        "Updating the gateway itself schedules a restart."
    ),
    responses={
        400: {"description": "Missing, invalid or non-applicable target"},
        500: {"description": "Download or dependency install failed"},
    },
)
async def apply_update(context: Context, body: UpdateRequest | None = None) -> UpdateResponse:
    target = body.target if body else None
    results, needs_restart = await context.updates.apply_update(target)
    if not results:
        raise InvalidUpdateTargetError(f"Unknown target: {target}")

    if needs_restart:
        context.spawn(context.updates.restart_after_delay(), name="update-restart")
    return UpdateResponse(results=results)


@router.post(
    "/cleanup",
    response_model=CleanupResponse,
    response_model_exclude_none=True,
    summary="Remove the gateway deployment",
    description=(
        'Requires `{"target": "proxy", "confirm": "REMOVE_PROXY"}`. With `dryRun: true` nothing is '
        "touched; otherwise admission closes, removal of the deployment directory is scheduled and "
        "the process exits."
    ),
    responses={
        400: {"description": "Wrong target or missing confirmation"},
        409: {"description": "Shutdown already in progress"},
        500: {"description": "Deployment directory failed the safety check"},
    },
)
async def cleanup(request: Request, context: Context) -> CleanupResponse:
    # Body may be sent as text/plain, so parse it by hand
    cleanup_request = context.updates.parse_cleanup_body(await request.body())
    response = context.updates.plan_cleanup(cleanup_request)

    if not response.dry_run:
        logger.warning(f"[cleanup] Self-removal requested for {response.proxy_dir}")
        context.spawn(context.updates.finish_cleanup(Path(response.proxy_dir)), name="cleanup")
    return response
