"""
Gateway exception hierarchy.

Every failure a caller can observe maps to exactly one subclass of
:class:`GatewayError`, each carrying an :class:`ErrorCode` that decides the
HTTP status. None of them are allowed to crash the server.
"""

from __future__ import annotations

from typing import Any

from models.error_models import ErrorCode


class GatewayError(Exception):
    """Base gateway exception with error code support.

    Example:
        raise GatewayError(
            code=ErrorCode.UNKNOWN_TOOL,
            message="Unknown tool: foo",
            details={"tool": "foo"},
        )
    """

    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.details = details
        self.cause = cause
        super().__init__(message)


class InvalidRequestError(GatewayError):
    default_code = ErrorCode.INVALID_REQUEST


class UnknownToolError(GatewayError):
    """Tool id not present in the registry."""

    default_code = ErrorCode.UNKNOWN_TOOL

    def __init__(self, tool_id: str):
        super().__init__(f"Unknown tool: {tool_id}", details={"tool": tool_id})


class ToolUnavailableError(GatewayError):
    """Probe failed, executable missing, or API credentials absent."""

    default_code = ErrorCode.TOOL_UNAVAILABLE


class ConcurrencyExceededError(GatewayError):
    default_code = ErrorCode.CONCURRENCY_EXCEEDED

    def __init__(self, limit: int):
        super().__init__(
            f"Too many concurrent requests (max {limit}). Please try again later.",
            details={"limit": limit},
        )


class RateLimitedError(GatewayError):
    default_code = ErrorCode.RATE_LIMITED

    def __init__(self, limit: int, window_seconds: float, retry_after: float):
        per = "minute" if window_seconds == 60 else f"{window_seconds:g}s"
        super().__init__(
            f"Rate limit exceeded. Max {limit} requests per {per}.",
            details={"limit": limit, "retry_after": round(retry_after, 3)},
        )
        self.retry_after = retry_after


class InvalidModelIdError(GatewayError):
    default_code = ErrorCode.INVALID_MODEL_ID


class ExecutionTimeoutError(GatewayError):
    default_code = ErrorCode.EXECUTION_TIMEOUT

    def __init__(self, timeout_ms: int):
        super().__init__(f"Timeout after {timeout_ms}ms", details={"timeout_ms": timeout_ms})


class AbortedError(GatewayError):
    """The caller went away before the execution settled."""

    default_code = ErrorCode.EXECUTION_ABORTED

    def __init__(self, message: str = "Request aborted by client"):
        super().__init__(message)


class ProcessFailureError(GatewayError):
    """Nonzero exit or spawn failure; carries captured stderr."""

    default_code = ErrorCode.PROCESS_FAILURE

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
        cause: Exception | None = None,
    ):
        super().__init__(message, details={"exit_code": exit_code}, cause=cause)
        self.exit_code = exit_code
        self.stderr = stderr

    @classmethod
    def from_exit(cls, exit_code: int, stderr: str) -> ProcessFailureError:
        message = stderr.strip() or f"Process exited with code {exit_code}"
        return cls(message, exit_code=exit_code, stderr=stderr)


class UpstreamApiError(GatewayError):
    """Non-success response from a remote API; carries status and body."""

    default_code = ErrorCode.UPSTREAM_API_ERROR

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message, details={"status_code": status_code, "body": body[:2000]})
        self.status_code = status_code
        self.body = body


class AuthError(GatewayError):
    """OAuth refresh failure. ``unrecoverable`` means cached credentials were dropped."""

    default_code = ErrorCode.AUTH_ERROR

    def __init__(self, message: str, oauth_error: str | None = None, unrecoverable: bool = False):
        super().__init__(message, details={"oauth_error": oauth_error})
        self.oauth_error = oauth_error
        self.unrecoverable = unrecoverable


class UpdateError(GatewayError):
    """Download, path or installer failure during self-update."""

    default_code = ErrorCode.UPDATE_FAILED


class InvalidUpdateTargetError(UpdateError):
    default_code = ErrorCode.UPDATE_INVALID_TARGET


class ShuttingDownError(GatewayError):
    default_code = ErrorCode.SHUTTING_DOWN

    def __init__(self, message: str = "Server is shutting down. Please retry."):
        super().__init__(message)


class CleanupRejectedError(GatewayError):
    default_code = ErrorCode.CLEANUP_REJECTED


class CleanupConflictError(GatewayError):
    default_code = ErrorCode.CLEANUP_CONFLICT


class UnsafeCleanupTargetError(GatewayError):
    """The deployment directory does not look like a gateway install."""

    default_code = ErrorCode.CLEANUP_UNSAFE_DIR


__all__ = [
    "AbortedError",
    "AuthError",
    "CleanupConflictError",
    "CleanupRejectedError",
    "ConcurrencyExceededError",
    "ExecutionTimeoutError",
    "GatewayError",
    "InvalidModelIdError",
    "InvalidRequestError",
    "InvalidUpdateTargetError",
    "ProcessFailureError",
    "RateLimitedError",
    "ShuttingDownError",
    "ToolUnavailableError",
    "UnknownToolError",
    "UnsafeCleanupTargetError",
    "UpdateError",
    "UpstreamApiError",
]
