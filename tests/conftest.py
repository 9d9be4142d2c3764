import base64
import inspect
import json
from typing import Callable, Dict, List, Tuple

import httpx
import pytest

from stepdoc_mcp.auth import SessionRefreshManager
from stepdoc_mcp.config import Settings
from stepdoc_mcp.http_client import HttpClient
from stepdoc_mcp.session import MemoryKeyValueStore, TokenStore

BASE_URL = "https://api.stepdoc.test"
LOGIN_URL = "https://stepdoc.test/login.html"


def make_jwt(payload: Dict) -> str:
    def _b64(obj: Dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()

    return f"{_b64({'alg': 'HS256', 'typ': 'JWT'})}.{_b64(payload)}.signature"


def tokens_response(access_token: str = "at2", refresh_token: str = "rt2", **extra) -> httpx.Response:
    data = {"accessToken": access_token, "refreshToken": refresh_token, **extra}
    return httpx.Response(200, json={"success": True, "message": "Tokens refreshed successfully", "data": data})


class FakeStepDocApi:
    """Routes httpx requests to per-endpoint handlers and records every call."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handlers: Dict[Tuple[str, str], Callable] = {
            ("GET", "/api/csrf-token"): lambda _r: httpx.Response(200, json={"csrfToken": "csrf-1"}),
            ("GET", "/api/health"): lambda _r: httpx.Response(200, json={"status": "OK"}),
        }

    def on(self, method: str, path: str, handler: Callable) -> None:
        self.handlers[(method, path)] = handler

    def on_sequence(self, method: str, path: str, responses: List[httpx.Response]) -> None:
        remaining = list(responses)
        self.on(method, path, lambda _r: remaining.pop(0))

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"success": False, "message": "Not found"})
        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result


@pytest.fixture
def api() -> FakeStepDocApi:
    return FakeStepDocApi()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        stepdoc_api_base_url=BASE_URL,
        login_url=LOGIN_URL,
        token_store_path=None,
        refresh_interval_seconds=60,
        ready_timeout_seconds=0.05,
        ready_poll_seconds=0.01,
        mcp_api_keys=[],
        allowed_origins=["*"],
    )


@pytest.fixture
async def http_client(api):
    async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as raw:
        yield HttpClient(BASE_URL, client=raw)


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
async def manager(http_client, kv, test_settings):
    mgr = SessionRefreshManager(http_client, TokenStore(kv), test_settings)
    yield mgr
    await mgr.close()
