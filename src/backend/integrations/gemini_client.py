"""
Authenticated client for the Gemini Code Assist API.

Owns the OAuth token lifecycle for the ``gemini`` tool:

- credentials are read lazily from the Gemini CLI's ``oauth_creds.json``;
- expired access tokens are refreshed with the refresh-token grant and the
  result is written back atomically (a failed write is logged, the refreshed
  in-memory token is still used);
- an unrecoverable OAuth error discards the whole token state so the next
  call re-derives credentials from disk;
- the Code Assist project id is resolved once and cached with its own TTL.

Every call goes through a single FIFO queue, so the upstream sees at most one
request at a time in arrival order regardless of how many callers are waiting.
"""

from __future__ import annotations

import asyncio
import copy
import re
import time

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx

from core.constants import (
    CODE_ASSIST_ENDPOINT,
    GOOGLE_TOKEN_URL,
    TOKEN_EXPIRY_SKEW_SECONDS,
    UNRECOVERABLE_OAUTH_ERRORS,
    Settings,
)
from core.exceptions import AuthError, ToolUnavailableError, UpstreamApiError
from integrations.gemini_oauth import OAuthClientCredentials, OAuthClientDiscovery
from utils.file_store import read_json_object, write_json_atomic
from utils.logger import logger
from utils.metrics import gemini_retries_total, gemini_token_refresh_total

if TYPE_CHECKING:
    from core.tool_registry import ApiInvocation

T = TypeVar("T")

#: Request fields some model versions reject; removed and retried once when refused
OPTIONAL_REQUEST_FIELDS: tuple[tuple[str, str, re.Pattern[str]], ...] = (
    ("generationConfig", "thinkingConfig", re.compile(r"thinking", re.IGNORECASE)),
)

_RETRY_DELAY = re.compile(r"^\s*([\d.]+)s\s*$")

#: Client metadata sent when resolving the Code Assist project
LOAD_CODE_ASSIST_METADATA: dict[str, str] = {"ideType": "GEMINI_CLI", "pluginType": "GEMINI"}


class TokenStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    AUTHENTICATED = "authenticated"
    REAUTHENTICATING = "reauthenticating"


@dataclass
class TokenState:
    """In-memory OAuth state; only the client that owns it may mutate it."""

    access_token: str
    refresh_token: str
    token_type: str
    expiry_ms: int | None
    client: OAuthClientCredentials | None
    raw: dict[str, Any] = field(default_factory=dict)
    project_id: str | None = None
    project_expires_at: float = 0.0

    def is_expired(self, now_ms: float) -> bool:
        if not self.access_token:
            return True
        if self.expiry_ms is None:
            return False
        return now_ms >= self.expiry_ms - TOKEN_EXPIRY_SKEW_SECONDS * 1000


# ============================================================================
# Request shaping
# ============================================================================


def build_generate_request(prompt: str) -> dict[str, Any]:
    """Single-turn request body with thinking disabled."""
    return {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {"thinkingConfig": {"thinkingBudget": 0}},
    }


def extract_response_text(payload: dict[str, Any]) -> str:
    """Concatenate the non-thought text parts of the first candidate.

    Raises:
        UpstreamApiError: If the response holds no candidate text.
    """
    response = payload.get("response", payload)
    candidates = response.get("candidates") if isinstance(response, dict) else None
    if not candidates:
        feedback = response.get("promptFeedback", {}) if isinstance(response, dict) else {}
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        raise UpstreamApiError(
            f"Gemini returned no candidates{f' (blocked: {reason})' if reason else ''}",
            status_code=200,
        )

    first = candidates[0] if isinstance(candidates, list) else None
    if not isinstance(first, dict):
        raise UpstreamApiError("Gemini returned a malformed candidate", status_code=200)

    content = first.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    texts = [
        p["text"]
        for p in (parts if isinstance(parts, list) else [])
        if isinstance(p, dict) and isinstance(p.get("text"), str) and not p.get("thought")
    ]
    if not texts:
        finish = first.get("finishReason")
        raise UpstreamApiError(f"Gemini returned an empty response (finishReason: {finish})", status_code=200)
    return "".join(texts)


def strip_optional_field(request: dict[str, Any], parent: str, child: str) -> dict[str, Any] | None:
    """Copy of ``request`` without ``request[parent][child]``; None if absent."""
    section = request.get(parent)
    if not isinstance(section, dict) or child not in section:
        return None
    stripped = copy.deepcopy(request)
    del stripped[parent][child]
    if not stripped[parent]:
        del stripped[parent]
    return stripped


def parse_retry_hint(response: httpx.Response) -> float:
    """Server-suggested wait in seconds from Retry-After or RetryInfo; 0 if none."""
    header = response.headers.get("Retry-After")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            pass

    try:
        payload = response.json()
    except ValueError:
        return 0.0
    error = payload.get("error") if isinstance(payload, dict) else None
    details = error.get("details") if isinstance(error, dict) else None
    for detail in details or []:
        if isinstance(detail, dict) and isinstance(detail.get("retryDelay"), str):
            match = _RETRY_DELAY.match(detail["retryDelay"])
            if match:
                return float(match.group(1))
    return 0.0


def upstream_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        message = payload["error"].get("message")
        if message:
            return str(message)
    return response.text[:500] or response.reason_phrase


# ============================================================================
# FIFO dispatch
# ============================================================================


class SerialDispatchQueue(Generic[T]):
    """Runs submitted jobs one at a time, in submission order.

    A caller that stops waiting (timeout, disconnect) cancels its job: if it
    is still queued it is skipped, if it is running it is cancelled.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[tuple[Callable[[], Awaitable[T]], asyncio.Future[T]]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def submit(self, job: Callable[[], Awaitable[T]]) -> T:
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((job, future))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="gemini-dispatch")
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            future.cancel()
            raise

    async def _run(self) -> None:
        while True:
            job, future = await self._queue.get()
            try:
                if future.done():
                    continue
                task = asyncio.ensure_future(job())
                future.add_done_callback(lambda f, t=task: t.cancel() if f.cancelled() else None)
                await asyncio.wait({task})
                if future.done():
                    continue
                if task.cancelled():
                    future.cancel()
                elif (exc := task.exception()) is not None:
                    future.set_exception(exc)
                else:
                    future.set_result(task.result())
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            future.cancel()


# ============================================================================
# Client
# ============================================================================


class GeminiCodeAssistClient:
    """OAuth-backed Code Assist client with serialized dispatch."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        discovery: OAuthClientDiscovery,
        creds_path: Path | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._http = http_client
        self._discovery = discovery
        self._creds_path = creds_path or settings.gemini_home / "oauth_creds.json"
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._queue: SerialDispatchQueue[dict[str, Any]] = SerialDispatchQueue()
        self._state: TokenState | None = None
        self._status = TokenStatus.UNINITIALIZED

    @property
    def status(self) -> TokenStatus:
        return self._status

    @property
    def creds_path(self) -> Path:
        return self._creds_path

    def _now_ms(self) -> float:
        return self._wall_clock() * 1000

    # ------------------------------------------------------------ public API

    async def generate(self, invocation: ApiInvocation) -> dict[str, Any]:
        """Queue one generateContent call and wait for its response payload."""
        return await self._queue.submit(lambda: self._dispatch(invocation))

    async def probe(self) -> str | None:
        """Return None if the tool looks usable, else a human-readable reason."""
        creds = read_json_object(self._creds_path)
        if not creds:
            return f"Gemini OAuth credentials not found at {self._creds_path}. Sign in with the gemini CLI first."
        if not creds.get("access_token") and not creds.get("refresh_token"):
            return f"Gemini OAuth credentials at {self._creds_path} contain no tokens."
        if not creds.get("refresh_token"):
            return None
        if await self._client_credentials(creds) is None:
            return "Gemini OAuth client id/secret could not be resolved; set GATEWAY_GEMINI_OAUTH_CLIENT_ID/SECRET."
        return None

    def invalidate(self) -> None:
        """Drop all token state; the next call re-reads credentials from disk."""
        self._state = None
        self._status = TokenStatus.UNINITIALIZED
        self._discovery.reset()

    async def close(self) -> None:
        await self._queue.close()

    # ------------------------------------------------------- token lifecycle

    async def _client_credentials(self, creds: dict[str, Any]) -> OAuthClientCredentials | None:
        if self._settings.gemini_oauth_client_id and self._settings.gemini_oauth_client_secret:
            return OAuthClientCredentials(
                self._settings.gemini_oauth_client_id,
                self._settings.gemini_oauth_client_secret,
            )
        client_id, client_secret = creds.get("client_id"), creds.get("client_secret")
        if isinstance(client_id, str) and isinstance(client_secret, str) and client_id and client_secret:
            return OAuthClientCredentials(client_id, client_secret)
        return await self._discovery.discover()

    async def _load_state(self) -> TokenState:
        creds = read_json_object(self._creds_path)
        access_token = str(creds.get("access_token") or "")
        refresh_token = str(creds.get("refresh_token") or "")
        if not access_token and not refresh_token:
            raise ToolUnavailableError(
                f"Gemini OAuth credentials not found at {self._creds_path}. Sign in with the gemini CLI first."
            )
        expiry = creds.get("expiry_date")
        return TokenState(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=str(creds.get("token_type") or "Bearer"),
            expiry_ms=int(expiry) if isinstance(expiry, int | float) else None,
            client=await self._client_credentials(creds) if refresh_token else None,
            raw=creds,
        )

    async def _ensure_token(self) -> TokenState:
        if self._state is None:
            self._state = await self._load_state()
            self._status = TokenStatus.AUTHENTICATED
            logger.info("Gemini credentials loaded", creds_path=str(self._creds_path))
        if self._state.is_expired(self._now_ms()):
            await self._refresh(self._state)
        return self._state

    async def _refresh(self, state: TokenState) -> None:
        if not state.refresh_token:
            self.invalidate()
            raise AuthError("Gemini access token expired and no refresh token is available", unrecoverable=True)
        if state.client is None:
            self.invalidate()
            raise AuthError("Gemini OAuth client id/secret could not be resolved", unrecoverable=True)

        self._status = TokenStatus.REAUTHENTICATING
        try:
            response = await self._http.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": state.client.client_id,
                    "client_secret": state.client.client_secret,
                    "refresh_token": state.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as e:
            self._status = TokenStatus.AUTHENTICATED
            gemini_token_refresh_total.labels(status="error").inc()
            raise AuthError(f"Gemini token refresh failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.is_error or not payload.get("access_token"):
            oauth_error = str(payload.get("error") or "") or None
            description = payload.get("error_description") or oauth_error or f"HTTP {response.status_code}"
            if oauth_error in UNRECOVERABLE_OAUTH_ERRORS:
                self.invalidate()
                gemini_token_refresh_total.labels(status="invalidated").inc()
                logger.warning(f"Gemini token refresh rejected ({oauth_error}); credentials dropped")
                raise AuthError(
                    f"Gemini token refresh failed: {description}. Sign in with the gemini CLI again.",
                    oauth_error=oauth_error,
                    unrecoverable=True,
                )
            gemini_token_refresh_total.labels(status="error").inc()
            self._status = TokenStatus.AUTHENTICATED
            raise AuthError(f"Gemini token refresh failed: {description}", oauth_error=oauth_error)

        state.access_token = str(payload["access_token"])
        state.token_type = str(payload.get("token_type") or state.token_type)
        if payload.get("refresh_token"):
            state.refresh_token = str(payload["refresh_token"])
        expires_in = payload.get("expires_in")
        state.expiry_ms = (
            int(self._now_ms() + float(expires_in) * 1000) if isinstance(expires_in, int | float) else None
        )
        self._status = TokenStatus.AUTHENTICATED
        logger.info("Gemini access token refreshed")
        gemini_token_refresh_total.labels(status="success").inc()
        self._persist(state, payload)

    def _persist(self, state: TokenState, payload: dict[str, Any]) -> None:
        updated = dict(state.raw)
        updated["access_token"] = state.access_token
        updated["refresh_token"] = state.refresh_token
        updated["token_type"] = state.token_type
        if state.expiry_ms is not None:
            updated["expiry_date"] = state.expiry_ms
        if payload.get("id_token"):
            updated["id_token"] = payload["id_token"]
        try:
            write_json_atomic(self._creds_path, updated, mode=0o600)
        except OSError as e:
            logger.warning(f"Could not persist refreshed Gemini token: {e}")
            return
        state.raw = updated

    # ---------------------------------------------------------------- calls

    async def _post(self, state: TokenState, method: str, body: dict[str, Any]) -> httpx.Response:
        try:
            return await self._http.post(
                f"{CODE_ASSIST_ENDPOINT}:{method}",
                json=body,
                headers={"Authorization": f"{state.token_type} {state.access_token}"},
            )
        except httpx.HTTPError as e:
            raise UpstreamApiError(f"Gemini API request failed: {e}") from e

    async def _ensure_project(self, state: TokenState) -> str:
        if self._settings.gemini_project_id:
            return self._settings.gemini_project_id
        if state.project_id and self._clock() < state.project_expires_at:
            return state.project_id

        response = await self._post(state, "loadCodeAssist", {"metadata": LOAD_CODE_ASSIST_METADATA})
        if response.is_error:
            raise UpstreamApiError(
                f"Gemini setup failed: {upstream_error_message(response)}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamApiError(
                "Gemini setup returned invalid JSON", status_code=response.status_code, body=response.text
            ) from e
        if not isinstance(payload, dict):
            raise UpstreamApiError(
                "Gemini setup returned invalid JSON", status_code=response.status_code, body=response.text
            )

        project = payload.get("cloudaicompanionProject")
        if isinstance(project, dict):
            project = project.get("id") or project.get("projectId")
        if not isinstance(project, str) or not project.strip():
            raise ToolUnavailableError(
                "No Code Assist project is associated with this account. Run the gemini CLI once to finish setup."
            )

        state.project_id = project.strip()
        state.project_expires_at = self._clock() + self._settings.gemini_project_ttl
        logger.info(f"Gemini Code Assist project resolved: {state.project_id}")
        return state.project_id

    def _backoff_seconds(self, response: httpx.Response, attempt: int) -> float:
        base = self._settings.gemini_backoff_base * (attempt + 1)
        return min(self._settings.gemini_backoff_cap, max(parse_retry_hint(response), base))

    async def _dispatch(self, invocation: ApiInvocation) -> dict[str, Any]:
        state = await self._ensure_token()
        project = await self._ensure_project(state)

        request = invocation.request
        attempt = 0
        stripped: set[str] = set()
        reauthenticated = False

        while True:
            body = {"model": invocation.model, "project": project, "request": request}
            response = await self._post(state, "generateContent", body)

            if response.status_code == 429:
                if attempt >= self._settings.gemini_max_retries:
                    raise UpstreamApiError(
                        f"Gemini API error 429: {upstream_error_message(response)}",
                        status_code=429,
                        body=response.text,
                    )
                delay = self._backoff_seconds(response, attempt)
                attempt += 1
                gemini_retries_total.labels(reason="rate_limited").inc()
                logger.warning(f"Gemini rate limited; retry {attempt} in {delay:.1f}s")
                await self._sleep(delay)
                continue

            if response.status_code == 401 and not reauthenticated:
                reauthenticated = True
                gemini_retries_total.labels(reason="reauthenticate").inc()
                state.expiry_ms = 0
                state = await self._ensure_token()
                continue

            if response.status_code == 400:
                retry_request = self._without_rejected_field(request, response, stripped)
                if retry_request is not None:
                    request = retry_request
                    gemini_retries_total.labels(reason="optional_field").inc()
                    continue

            if response.is_error:
                raise UpstreamApiError(
                    f"Gemini API error {response.status_code}: {upstream_error_message(response)}",
                    status_code=response.status_code,
                    body=response.text,
                )

            try:
                payload = response.json()
            except ValueError as e:
                raise UpstreamApiError("Gemini API returned invalid JSON", status_code=response.status_code) from e
            return payload if isinstance(payload, dict) else {}

    def _without_rejected_field(
        self,
        request: dict[str, Any],
        response: httpx.Response,
        stripped: set[str],
    ) -> dict[str, Any] | None:
        message = response.text
        for parent, child, pattern in OPTIONAL_REQUEST_FIELDS:
            key = f"{parent}.{child}"
            if key in stripped or not pattern.search(message):
                continue
            candidate = strip_optional_field(request, parent, child)
            if candidate is not None:
                stripped.add(key)
                logger.info(f"Gemini rejected optional field {key}; retrying without it")
                return candidate
        return None
