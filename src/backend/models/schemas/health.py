"""
Health and tool listing API schemas.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ToolHealth(BaseModel):
    """Availability of one tool."""

    available: bool = Field(..., description="Executable or credentials found and working")
    error: str | None = Field(default=None, description="Why the tool is unavailable")
    mode: Literal["spawn", "api"] = Field(..., description="Invocation mode")


class HealthResponse(BaseModel):
    """Gateway health with per-tool availability.

    Update information comes from the last cached update check only.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "ok",
                "version": "2.2.5",
                "tools": {
                    "claude": {"available": True, "mode": "spawn"},
                    "gemini": {"available": False, "error": "credentials not found", "mode": "api"},
                },
                "updateAvailable": False,
                "latestVersion": "2.2.5",
                "activeProcesses": 0,
            }
        }
    )

    status: Literal["ok"] = "ok"
    version: str = Field(..., description="Gateway version")
    tools: dict[str, ToolHealth] = Field(default_factory=dict)
    update_available: bool = Field(default=False, serialization_alias="updateAvailable")
    latest_version: str = Field(..., serialization_alias="latestVersion")
    active_processes: int = Field(default=0, ge=0, serialization_alias="activeProcesses")


class ToolSummary(BaseModel):
    id: str
    name: str
    mode: Literal["spawn", "api"]
    default_model: str = Field(default="", serialization_alias="defaultModel")


class ToolsResponse(BaseModel):
    tools: list[ToolSummary] = Field(default_factory=list)
