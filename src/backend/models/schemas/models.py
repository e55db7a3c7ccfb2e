"""
Model discovery API schemas.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ModelInfo(BaseModel):
    """One discovered model id and the local signal that produced it."""

    id: str = Field(..., description="Canonical model id")
    name: str = Field(..., description="Display name")
    source: str = Field(..., description="Provenance tag, e.g. claude-stats or proxy-default")


class ToolModels(BaseModel):
    """Model discovery result for one tool."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "tool": "claude",
                "available": True,
                "error": None,
                "defaultModel": "claude-sonnet-4-5",
                "models": [
                    {"id": "claude-sonnet-4-5", "name": "claude-sonnet-4-5", "source": "proxy-default"},
                    {"id": "opus", "name": "opus", "source": "claude-alias"},
                ],
                "source": "claude-stats",
                "fetched_at": "2025-01-01T00:00:00Z",
            }
        }
    )

    tool: str = Field(..., description="Tool id")
    available: bool = Field(..., description="Result of the availability probe")
    error: str | None = Field(default=None, description="Why the tool is unavailable")
    default_model: str = Field(default="", serialization_alias="defaultModel", description="Default model id")
    models: list[ModelInfo] = Field(default_factory=list, description="Models sorted by id")
    source: str = Field(default="fallback", description="Where the list came from")
    fetched_at: datetime = Field(..., description="When the list was built")


class AllToolModels(BaseModel):
    """Model discovery result for every registered tool."""

    tools: dict[str, ToolModels] = Field(default_factory=dict)
    fetched_at: datetime = Field(...)
