"""
Standardized error response models for the CLI gateway.

Every failure reaching an HTTP caller is rendered as a single ``error``
string plus a machine-readable ``code``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Application-specific error codes for categorization."""

    # Request errors (1xxx)
    INVALID_REQUEST = "REQ_1001"
    INVALID_MODEL_ID = "REQ_1002"
    RATE_LIMITED = "REQ_1003"
    SHUTTING_DOWN = "REQ_1004"

    # Tool errors (2xxx)
    UNKNOWN_TOOL = "TOOL_2001"
    TOOL_UNAVAILABLE = "TOOL_2002"
    CONCURRENCY_EXCEEDED = "TOOL_2003"
    EXECUTION_TIMEOUT = "TOOL_2004"
    EXECUTION_ABORTED = "TOOL_2005"
    PROCESS_FAILURE = "TOOL_2006"

    # Upstream API errors (3xxx)
    UPSTREAM_API_ERROR = "UPS_3001"
    AUTH_ERROR = "UPS_3002"

    # Maintenance errors (4xxx)
    UPDATE_INVALID_TARGET = "UPD_4001"
    UPDATE_FAILED = "UPD_4002"
    CLEANUP_REJECTED = "UPD_4003"
    CLEANUP_CONFLICT = "UPD_4004"
    CLEANUP_UNSAFE_DIR = "UPD_4005"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "INT_9001"


class ErrorResponse(BaseModel):
    """Error body returned by every non-2xx REST response.

    Example response:
    {
        "error": "Rate limit exceeded. Max 120 requests per minute.",
        "code": "REQ_1003",
        "request_id": "req_a1b2c3d4e5f6a7b8"
    }
    """

    error: str = Field(..., description="Human-readable error message")
    code: ErrorCode | None = Field(default=None, description="Application error code")
    request_id: str | None = Field(default=None, description="Request id for log correlation")
    details: dict[str, Any] | None = Field(default=None, description="Structured context (debug mode only)")

    def to_dict(self, include_details: bool = False) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        data = self.model_dump(mode="json", exclude_none=True, exclude={"details"})
        if include_details and self.details:
            data["details"] = self.details
        return data


# HTTP status code mapping for error codes
ERROR_CODE_TO_STATUS: dict[ErrorCode, int] = {
    # 400 Bad Request
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.INVALID_MODEL_ID: 400,
    ErrorCode.UNKNOWN_TOOL: 400,
    ErrorCode.TOOL_UNAVAILABLE: 400,
    ErrorCode.UPDATE_INVALID_TARGET: 400,
    ErrorCode.CLEANUP_REJECTED: 400,
    # 401 Unauthorized
    ErrorCode.AUTH_ERROR: 401,
    # 409 Conflict
    ErrorCode.CLEANUP_CONFLICT: 409,
    # 429 Too Many Requests
    ErrorCode.RATE_LIMITED: 429,
    # 499 Client Closed Request
    ErrorCode.EXECUTION_ABORTED: 499,
    # 500 Internal Server Error
    ErrorCode.PROCESS_FAILURE: 500,
    ErrorCode.UPDATE_FAILED: 500,
    ErrorCode.CLEANUP_UNSAFE_DIR: 500,
    ErrorCode.INTERNAL_ERROR: 500,
    # 502 Bad Gateway
    ErrorCode.UPSTREAM_API_ERROR: 502,
    # 503 Service Unavailable
    ErrorCode.CONCURRENCY_EXCEEDED: 503,
    ErrorCode.SHUTTING_DOWN: 503,
    # 504 Gateway Timeout
    ErrorCode.EXECUTION_TIMEOUT: 504,
}


def get_status_code(error_code: ErrorCode) -> int:
    """Get HTTP status code for an error code."""
    return ERROR_CODE_TO_STATUS.get(error_code, 500)


__all__ = [
    "ERROR_CODE_TO_STATUS",
    "ErrorCode",
    "ErrorResponse",
    "get_status_code",
]
