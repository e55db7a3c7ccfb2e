import time

import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.middleware.request_context import (
    REQUEST_ID_PREFIX,
    RequestContext,
    RequestContextMiddleware,
    generate_request_id,
    get_request_context,
    get_request_id,
    update_request_context,
)


def test_request_context_dataclass() -> None:
    ctx = RequestContext(request_id="123", path="/generate", method="POST")
    assert ctx.request_id == "123"
    assert ctx.elapsed_ms >= 0
    assert ctx.to_log_context() == {"request_id": "123", "path": "/generate", "method": "POST"}

    time.sleep(0.01)
    assert ctx.elapsed_ms > 0


def test_log_context_includes_tool_and_model() -> None:
    ctx = RequestContext(request_id="1", tool="claude", model="claude-sonnet-4-5")

    log_ctx = ctx.to_log_context()

    assert log_ctx["tool"] == "claude"
    assert log_ctx["model"] == "claude-sonnet-4-5"


def test_generate_request_id() -> None:
    rid1 = generate_request_id()
    rid2 = generate_request_id()
    assert rid1.startswith(REQUEST_ID_PREFIX)
    assert len(rid1) == len(REQUEST_ID_PREFIX) + 16
    assert rid1 != rid2


def test_outside_request() -> None:
    assert get_request_context() is None
    assert get_request_id() is None
    update_request_context(tool="claude")


@pytest.fixture
def app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestContextMiddleware)

    @app.get("/context")
    def get_ctx() -> dict[str, object]:
        update_request_context(tool="codex", model="gpt-5", attempt=2)
        ctx = get_request_context()
        assert ctx is not None
        return {
            "request_id": ctx.request_id,
            "path": ctx.path,
            "method": ctx.method,
            "tool": ctx.tool,
            "model": ctx.model,
            "extra": ctx.extra,
        }

    return app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


def test_middleware_request_id(client: TestClient) -> None:
    response = client.get("/context")
    assert response.status_code == 200
    data = response.json()

    # Check headers
    assert "x-request-id" in response.headers
    assert response.headers["x-request-id"].startswith(REQUEST_ID_PREFIX)

    # Check context matches header
    assert data["request_id"] == response.headers["x-request-id"]


def test_middleware_existing_request_id(client: TestClient) -> None:
    response = client.get("/context", headers={"X-Request-ID": "external_123"})
    assert response.status_code == 200
    assert response.headers["x-request-id"] == "external_123"
    assert response.json()["request_id"] == "external_123"


def test_update_request_context(client: TestClient) -> None:
    data = client.get("/context").json()

    assert (data["path"], data["method"]) == ("/context", "GET")
    assert (data["tool"], data["model"]) == ("codex", "gpt-5")
    assert data["extra"] == {"attempt": 2}
