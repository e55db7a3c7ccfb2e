"""Model id canonicalization, denylists and validation."""

from __future__ import annotations

import re

from core.constants import (
    CLAUDE_DEFAULT_MODEL,
    GEMINI_DEFAULT_MODEL,
    GEMINI_MODEL_ALIASES,
    MODEL_ID_MAX_LENGTH,
)
from core.exceptions import InvalidModelIdError

MODEL_ID_PATTERN = re.compile(r"[A-Za-z0-9_.\-]+")

# "2.5-flash", "3-pro-preview" and similar shorthand without the family prefix
_GEMINI_BARE_VERSION = re.compile(r"^\d+(\.\d+)?-(flash|pro)(-.+)?$")


def normalize_model_id(value: object) -> str:
    """Trim a model id; non-strings normalize to the empty string."""
    if not isinstance(value, str):
        return ""
    return value.strip()


def canonicalize_gemini_model(model_id: object) -> str:
    """Fold a Gemini model id onto the ``gemini-*`` naming convention.

    >>> canonicalize_gemini_model("models/Gemini_2.5 Pro")
    'gemini-2.5-pro'
    >>> canonicalize_gemini_model("3-flash")
    'gemini-3-flash-preview'
    """
    normalized = normalize_model_id(model_id).lower()
    normalized = normalized.removeprefix("models/")
    normalized = re.sub(r"\s+", "-", normalized.replace("_", "-"))
    if not normalized:
        return ""

    if normalized in GEMINI_MODEL_ALIASES:
        return GEMINI_MODEL_ALIASES[normalized]
    if normalized.startswith("gemini-"):
        return normalized
    if _GEMINI_BARE_VERSION.match(normalized):
        prefixed = f"gemini-{normalized}"
        return GEMINI_MODEL_ALIASES.get(prefixed, prefixed)
    return normalized


def resolve_gemini_model(model_id: object, fallback: str = GEMINI_DEFAULT_MODEL) -> str:
    return canonicalize_gemini_model(model_id) or canonicalize_gemini_model(fallback) or GEMINI_DEFAULT_MODEL


def is_blocked_claude_model(model_id: object) -> bool:
    """The haiku tier is never used, neither as a default nor on request."""
    return "haiku" in normalize_model_id(model_id).lower()


def resolve_claude_model(model_id: object, fallback: str = CLAUDE_DEFAULT_MODEL) -> str:
    normalized = normalize_model_id(model_id)
    if not normalized or is_blocked_claude_model(normalized):
        return normalize_model_id(fallback)
    return normalized


def validate_model_id(model_id: str) -> str:
    """Return ``model_id`` unchanged if it is acceptable.

    Raises:
        InvalidModelIdError: If it is too long or has characters outside [A-Za-z0-9_.-].
    """
    if len(model_id) > MODEL_ID_MAX_LENGTH:
        raise InvalidModelIdError(
            f"Model ID too long (max {MODEL_ID_MAX_LENGTH} chars)",
            details={"length": len(model_id)},
        )
    if not MODEL_ID_PATTERN.fullmatch(model_id):
        raise InvalidModelIdError(
            "Invalid model ID: only alphanumeric, hyphens, underscores, and dots allowed",
        )
    return model_id
