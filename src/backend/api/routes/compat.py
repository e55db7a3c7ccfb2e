"""
OpenAI-style chat-completions shim.

Translates ``{model: "<tool>[/<model>]", messages: [...]}`` into one blocking
tool execution of the last user message. Errors use the OpenAI error shape
``{"error": {"message", "code"}}`` instead of the gateway's flat one.
"""

from __future__ import annotations

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from api.dependencies import Context
from api.routes.generate import admit_generation
from core.exceptions import GatewayError, InvalidRequestError
from models.error_models import get_status_code
from models.schemas.gateway import (
    ChatChoice,
    ChatChoiceMessage,
    ChatCompletionRequest,
    ChatCompletionResponse,
)
from utils.logger import logger

router = APIRouter()

DEFAULT_CHAT_TOOL = "claude"


def split_model(value: str | None) -> tuple[str, str | None]:
    """``"codex/gpt-5"`` -> ``("codex", "gpt-5")``; empty -> default tool."""
    tool, _, model = (value or "").partition("/")
    return tool.strip() or DEFAULT_CHAT_TOOL, model.strip() or None


def _openai_error(error: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=get_status_code(error.code),
        content={"error": {"message": error.message, "code": error.code.value}},
    )


@router.post(
    "/v1/chat/completions",
    response_model=ChatCompletionResponse,
    summary="Chat completions (compatibility)",
    description="Minimal OpenAI-compatible endpoint. Only the last user message is sent to the tool.",
)
async def chat_completions(body: ChatCompletionRequest, context: Context) -> ChatCompletionResponse | JSONResponse:
    try:
        context.admission.ensure_open()
        tool_id, model = split_model(body.model)
        prompt = body.last_user_prompt()
        if not prompt:
            raise InvalidRequestError("No prompt provided")

        tool, requested_model = await admit_generation(context, tool_id, model)
        result = await context.engine.execute(
            tool.id, prompt, requested_model, context.settings.default_timeout_ms
        )
    except GatewayError as e:
        logger.warning(f"[compat] {e.code.value}: {e.message}")
        return _openai_error(e)

    now = time.time()
    return ChatCompletionResponse(
        id=f"cli-{int(now * 1000)}",
        created=int(now),
        model=tool.id,
        choices=[ChatChoice(message=ChatChoiceMessage(content=result.output))],
    )
