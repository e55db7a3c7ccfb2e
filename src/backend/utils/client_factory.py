"""
HTTP client factory utilities.
Centralizes httpx.AsyncClient creation with consistent timeouts.
"""

from __future__ import annotations

import httpx

from utils.logger import logger

DEFAULT_CONNECT_TIMEOUT = 10.0  # Time to establish connection
DEFAULT_READ_TIMEOUT = 120.0  # Code Assist responses can take a while
DEFAULT_WRITE_TIMEOUT = 30.0  # Time to send request
DEFAULT_POOL_TIMEOUT = 30.0  # Time to acquire connection from pool

#: Header values never written to logs
_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "x-api-key"})


def sanitize_headers(headers: httpx.Headers | dict[str, str]) -> dict[str, str]:
    return {k: "***" if k.lower() in _SENSITIVE_HEADERS else v for k, v in dict(headers).items()}


async def _log_request(request: httpx.Request) -> None:
    logger.debug(f"HTTP Request: {request.method} {request.url}", headers=sanitize_headers(request.headers))


async def _log_response(response: httpx.Response) -> None:
    request = response.request
    logger.debug(f"HTTP Response: {response.status_code} {request.method} {request.url}")


def create_http_client(
    enable_logging: bool = False,
    connect_timeout: float | None = None,
    read_timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared outbound HTTP client.

    Args:
        enable_logging: Log request lines and response statuses at debug level
        connect_timeout: Connect timeout in seconds
        read_timeout: Read timeout in seconds
        transport: Optional transport override (tests use httpx.MockTransport)

    Returns:
        Configured httpx.AsyncClient
    """
    timeout = httpx.Timeout(
        connect=connect_timeout if connect_timeout is not None else DEFAULT_CONNECT_TIMEOUT,
        read=read_timeout if read_timeout is not None else DEFAULT_READ_TIMEOUT,
        write=DEFAULT_WRITE_TIMEOUT,
        pool=DEFAULT_POOL_TIMEOUT,
    )
    event_hooks = {"request": [_log_request], "response": [_log_response]} if enable_logging else None
    return httpx.AsyncClient(
        timeout=timeout,
        transport=transport,
        event_hooks=event_hooks,
        follow_redirects=True,
    )
