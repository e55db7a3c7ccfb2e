"""
Self-update and cleanup API schemas.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ProxyUpdateInfo(BaseModel):
    current: str = Field(..., description="Running gateway version")
    latest: str = Field(..., description="Version published in the manifest")
    update_available: bool = Field(default=True, serialization_alias="updateAvailable")


class AddonUpdateInfo(BaseModel):
    current: str = Field(..., description="Version parsed from the installed addon")
    latest: str = Field(..., description="Version published in the manifest")
    id: str | None = Field(default=None, description="Addon id from the manifest")
    update_available: bool = Field(default=True, serialization_alias="updateAvailable")


class UpdateCheckResult(BaseModel):
    """Comparison of local versions against the remote manifest."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "proxy": {"current": "2.2.5", "latest": "2.3.0", "updateAvailable": True},
                "addons": {},
                "hasUpdates": True,
                "checkedAt": "2025-01-01T00:00:00Z",
            }
        }
    )

    proxy: ProxyUpdateInfo | None = Field(default=None, description="Present only when newer")
    addons: dict[str, AddonUpdateInfo] = Field(
        default_factory=dict, description="Installed addons with a newer version"
    )
    has_updates: bool = Field(default=False, serialization_alias="hasUpdates")
    checked_at: datetime = Field(..., serialization_alias="checkedAt")
    error: str | None = Field(default=None, description="Manifest fetch failure")


class UpdateRequest(BaseModel):
    target: str | None = Field(default=None, description="addons, proxy, all, or an addon file name")


class UpdateFileResult(BaseModel):
    file: str
    status: Literal["updated", "ok", "skipped"]
    note: str | None = None


class UpdateResponse(BaseModel):
    success: bool = True
    results: list[UpdateFileResult] = Field(default_factory=list)


class CleanupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    target: object = None
    confirm: object = None
    dry_run: object = Field(default=None, alias="dryRun")


class CleanupResponse(BaseModel):
    success: bool = True
    dry_run: bool | None = Field(default=None, serialization_alias="dryRun")
    target: str = "proxy"
    proxy_dir: str = Field(..., serialization_alias="proxyDir")
    strategy: str
    note: str | None = None
