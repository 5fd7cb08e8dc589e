"""Shared fixtures for the broker test suite."""

import urllib.parse
from typing import Optional

import pytest
from starlette.requests import Request

from mcp_oauth_broker.config import BrokerConfig
from mcp_oauth_broker.utils.code_store import AuthorizationGrant

BASE_URL = "https://broker.example.com"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeCodeStore:
    """Dict-backed AuthorizationCodeStore with a settable clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.clock = now
        self.grants: dict[str, AuthorizationGrant] = {}

    def now(self) -> float:
        return self.clock

    def put(self, code: str, grant: AuthorizationGrant) -> None:
        if code in self.grants:
            raise ValueError("Authorization code already in use")
        self.grants[code] = grant

    def get(self, code: str) -> Optional[AuthorizationGrant]:
        return self.grants.get(code)

    def delete(self, code: str) -> Optional[AuthorizationGrant]:
        return self.grants.pop(code, None)

    def sweep_expired(self) -> int:
        expired = [c for c, g in self.grants.items() if g.is_expired(self.clock)]
        for code in expired:
            del self.grants[code]
        return len(expired)


@pytest.fixture
def fake_store():
    return FakeCodeStore()


@pytest.fixture
def broker_config():
    return BrokerConfig(
        client_id="test-client-id.apps.googleusercontent.com",
        client_secret="test-client-secret",
        base_url=BASE_URL,
    )


def build_request(
    method: str = "GET",
    path: str = "/",
    query: Optional[dict[str, str]] = None,
    body: bytes = b"",
    headers: Optional[dict[str, str]] = None,
) -> Request:
    """Build a real Starlette request from an ASGI scope."""
    raw_headers = [
        (key.lower().encode("latin-1"), value.encode("latin-1"))
        for key, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "root_path": "",
        "scheme": "http",
        "query_string": urllib.parse.urlencode(query or {}).encode("latin-1"),
        "headers": raw_headers,
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 50000),
    }

    async def receive() -> dict:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


@pytest.fixture
def make_request():
    return build_request
