"""
Generation API schemas.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class GenerateRequest(BaseModel):
    """Body of ``POST /generate``.

    ``stream`` may be a bool or the string ``"true"``; ``timeout`` may be a
    number or a numeric string (milliseconds). Anything unparsable falls
    back to the default timeout.
    """

    model_config = ConfigDict(extra="ignore")

    tool: str | None = Field(default=None, description="Tool id")
    model: str | None = Field(default=None, description="Requested model id")
    prompt: str | None = Field(default=None, description="Prompt text")
    timeout: float | str | None = Field(default=None, description="Timeout in milliseconds")
    stream: bool | str | None = Field(default=None, description="Stream server-sent events")

    @property
    def stream_enabled(self) -> bool:
        return self.stream is True or self.stream == "true"

    @property
    def timeout_ms(self) -> float | None:
        try:
            return float(self.timeout) if self.timeout not in (None, "") else None
        except ValueError:
            return None


class GenerateResponse(BaseModel):
    """Result of a non-streaming generation."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": True,
                "result": "Hello!",
                "tool": "claude",
                "mode": "spawn",
                "model": "claude-sonnet-4-5",
                "elapsed_ms": 4210,
            }
        }
    )

    success: Literal[True] = True
    result: str = Field(..., description="Parsed tool output")
    tool: str = Field(..., description="Tool id")
    mode: Literal["spawn", "api"] = Field(..., description="Invocation mode")
    model: str = Field(..., description="Effective model after substitution")
    elapsed_ms: int = Field(..., ge=0, description="Wall time of the execution")


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str = ""
    content: str | list[dict[str, object]] | None = None


class ChatCompletionRequest(BaseModel):
    """Subset of the OpenAI chat-completions request that the shim understands."""

    model_config = ConfigDict(extra="ignore")

    model: str | None = Field(default=None, description="<tool> or <tool>/<model>")
    messages: list[ChatMessage] = Field(default_factory=list)

    def last_user_prompt(self) -> str:
        for message in reversed(self.messages):
            if message.role != "user":
                continue
            if isinstance(message.content, str):
                return message.content
            if isinstance(message.content, list):
                return "".join(
                    str(part.get("text", "")) for part in message.content if part.get("type", "text") == "text"
                )
            return ""
        return ""


class ChatChoiceMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str


class ChatChoice(BaseModel):
    index: int = 0
    message: ChatChoiceMessage
    finish_reason: Literal["stop"] = "stop"


class ChatUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[ChatChoice]
    usage: ChatUsage = Field(default_factory=ChatUsage)
