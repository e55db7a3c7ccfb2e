"""
Generation endpoint.

``POST /generate`` runs one tool invocation. Admission checks run in a fixed
order (shutdown gate, request shape, tool id, model id, rate window,
availability probe) before any process slot or API call is touched. With
``stream`` set the response is a server-sent event stream, otherwise a single
JSON result.
"""

from __future__ import annotations

import asyncio
import contextlib
import json

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from api.context import GatewayContext
from api.dependencies import Context
from api.middleware.request_context import update_request_context
from api.services.streaming import SSE_HEADERS
from core.exceptions import InvalidRequestError, ToolUnavailableError
from core.tool_registry import AnyTool
from models.schemas.gateway import GenerateRequest, GenerateResponse
from utils.logger import logger

router = APIRouter()

#: Seconds between client disconnect checks for blocking requests
DISCONNECT_POLL_INTERVAL = 0.5


async def admit_generation(context: GatewayContext, tool_id: str, model: object) -> tuple[AnyTool, str | None]:
    """Run the admission checks that follow the request-shape check.

    Returns:
        The tool descriptor and the canonical model id (None for the default).

    Raises:
        UnknownToolError, InvalidModelIdError, RateLimitedError,
        ToolUnavailableError
    """
    tool = context.registry.get(tool_id)
    requested_model = context.admission.canonical_model(tool, model)
    update_request_context(tool=tool.id, model=requested_model)

    context.admission.check_rate()

    status = await tool.probe(context.resolver, context.settings.tool_check_timeout)
    if not status.available:
        raise ToolUnavailableError(status.error or f"{tool.id} is not available")
    return tool, requested_model


async def _parse_body(request: Request) -> GenerateRequest:
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else {}
    except ValueError:
        raise InvalidRequestError("Request body must be valid JSON") from None
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    try:
        return GenerateRequest.model_validate(payload)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        raise InvalidRequestError("Invalid request body", details={"errors": errors}) from None


async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("[API] Client disconnected, aborting execution")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


@router.post(
    "/generate",
    response_model=GenerateResponse,
    summary="Run a generation tool",
    description=(
        "Run one tool with a prompt. Set `stream` (body or `?stream=true`) to receive "
        '`data: {"chunk": ...}` events terminated by `data: [DONE]`.'
    ),
    responses={
        400: {"description": "Bad request, unknown tool, invalid model id or tool unavailable"},
        429: {"description": "Rate limited"},
        499: {"description": "Client disconnected"},
        500: {"description": "Tool process failed"},
        502: {"description": "Upstream API error"},
        503: {"description": "Concurrency cap reached or server shutting down"},
        504: {"description": "Timed out"},
    },
)
async def generate(request: Request, context: Context) -> GenerateResponse | StreamingResponse:
    context.admission.ensure_open()

    body = await _parse_body(request)
    if not body.tool or not body.prompt:
        raise InvalidRequestError("Missing tool or prompt")

    tool, requested_model = await admit_generation(context, body.tool, body.model)
    timeout_ms = context.settings.clamp_timeout_ms(body.timeout_ms)
    stream_enabled = body.stream_enabled or request.query_params.get("stream") == "true"

    if stream_enabled:
        logger.info(
            f"[API] Stream request - tool: {tool.id}, mode: {tool.mode.value}, model: {requested_model or 'default'}",
            prompt_length=len(body.prompt),
        )
        sink, cancel = context.multiplexer.start(tool, body.prompt, requested_model, timeout_ms)
        return StreamingResponse(
            context.multiplexer.relay(sink, cancel),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    logger.info(
        f"[API] Generate request - tool: {tool.id}, mode: {tool.mode.value}, model: {requested_model or 'default'}",
        prompt_length=len(body.prompt),
    )
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        result = await context.engine.execute(tool.id, body.prompt, requested_model, timeout_ms, cancel)
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher

    logger.info(f"[API] Completed in {result.elapsed_ms}ms")
    return GenerateResponse(
        result=result.output,
        tool=result.tool,
        mode=result.mode,
        model=result.model,
        elapsed_ms=result.elapsed_ms,
    )
