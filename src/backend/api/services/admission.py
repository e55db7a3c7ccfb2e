"""
Admission control for generation requests.

Runs before any tool work: the shutdown gate, the request-rate window and
model id validation. A request rejected here never touches a process slot
or the API client.
"""

from __future__ import annotations

from api.middleware.rate_limiter import RateLimitWindow
from core.exceptions import ShuttingDownError
from core.model_ids import normalize_model_id, validate_model_id
from core.tool_registry import AnyTool
from utils.logger import logger


class AdmissionController:
    """Gatekeeper shared by /generate and the chat-completions shim."""

    def __init__(self, rate_window: RateLimitWindow) -> None:
        self.rate_window = rate_window
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self, reason: str = "shutdown") -> None:
        """Stop admitting new generations; in-flight work is unaffected."""
        if not self._closed:
            self._closed = True
            logger.info(f"Admission closed ({reason})")

    def ensure_open(self) -> None:
        """Raises ShuttingDownError once :meth:`close` has been called."""
        if self._closed:
            raise ShuttingDownError()

    def check_rate(self) -> None:
        self.rate_window.check()

    @staticmethod
    def canonical_model(tool: AnyTool, model: object) -> str | None:
        """Canonicalize and validate a caller-supplied model id.

        Returns:
            The canonical id, or None when the caller did not ask for one.

        Raises:
            InvalidModelIdError: If the canonical id is too long or malformed.
        """
        requested = normalize_model_id(model)
        if not requested:
            return None
        canonical = tool.canonical_model(requested)
        if not canonical:
            return None
        return validate_model_id(canonical)
