"""Shared test fixtures for Feishu Agent test suite."""

import json
import logging
from typing import Any

import httpx
import pytest

from feishu_agent.oauth.storage import TokenStore

APP_ID = "test-app-id"
APP_SECRET = "test-app-secret"
BASE_URL = "https://open.feishu.cn"

TENANT_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
REFRESH_PATH = "/open-apis/authen/v1/refresh_access_token"
USER_INFO_PATH = "/open-apis/authen/v1/user_info"
EXCHANGE_PATH = "/open-apis/authen/v1/access_token"

START_TIME = 1_000_000.0


# ============================================================================
# Mock Response Data
# ============================================================================

def tenant_response(token: str = "mock-token", expire: int = 7200) -> dict[str, Any]:
    return {"code": 0, "msg": "ok", "tenant_access_token": token, "expire": expire}


def user_token_response(
    access_token: str = "new-user-token",
    refresh_token: str | None = "new-refresh-token",
    expires_in: int = 7200,
) -> dict[str, Any]:
    data = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in,
        "name": "Test User",
        "en_name": "Test",
        "user_id": "test-user-id",
        "union_id": "test-union-id",
        "open_id": "test-open-id",
    }
    if refresh_token is not None:
        data["refresh_token"] = refresh_token
    return {"code": 0, "msg": "ok", "data": data}


MOCK_USER_INFO = {
    "code": 0,
    "msg": "success",
    "data": {
        "user_id": "test-user-id",
        "union_id": "test-union-id",
        "open_id": "test-open-id",
        "name": "Test User",
    },
}


# ============================================================================
# Helpers
# ============================================================================

class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockPlatform:
    """Canned Feishu endpoints behind an httpx.MockTransport.

    Each path has a queue of responses; the last one repeats. An entry can be
    a dict (200 JSON), an httpx.Response, an exception to raise, or a callable
    (sync or async) taking the request.
    """

    def __init__(self):
        self.routes: dict[str, list[Any]] = {}
        self.calls: list[httpx.Request] = []

    def add(self, path: str, *responses: Any) -> "MockPlatform":
        self.routes.setdefault(path, []).extend(responses)
        return self

    def handler(self, request: httpx.Request):
        self.calls.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"code": 404, "msg": "no route"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        if callable(item):
            return item(request)
        return httpx.Response(200, json=item)

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.calls if r.url.path == path]

    def bodies_to(self, path: str) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.calls_to(path)]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def platform():
    return MockPlatform()


@pytest.fixture
def http_client(platform):
    return platform.client()


@pytest.fixture
def store(tmp_path):
    """TokenStore backed by a temporary file."""
    return TokenStore(tmp_path / "config.json")


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from real FEISHU_* variables and .env files."""
    for name in (
        "FEISHU_APP_ID",
        "FEISHU_APP_SECRET",
        "FEISHU_BASE_URL",
        "FEISHU_USER_ACCESS_TOKEN",
        "FEISHU_REFRESH_TOKEN",
        "FEISHU_EXCHANGE_PATH",
        "FEISHU_LOG_LEVEL",
        "FEISHU_AGENT_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner."""
    from typer.testing import CliRunner
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_package_logger():
    """CLI runs detach the package logger from root; restore it for caplog."""
    yield
    logger = logging.getLogger("feishu_agent")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
