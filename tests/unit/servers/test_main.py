"""Unit tests for the broker server: bearer middleware, routes and the greeting tool."""

import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from mcp_oauth_broker.servers.main import (
    BearerAuthMiddleware,
    _current_identity,
    format_greeting,
    main_mcp,
)
from mcp_oauth_broker.utils.id_token import Identity

ALICE = Identity(
    subject="1234567890",
    email="alice@example.com",
    email_verified=True,
    name="Alice Example",
)


async def whoami(request: Request) -> JSONResponse:
    identity = getattr(request.state, "identity", None)
    return JSONResponse({"subject": identity.subject if identity else None})


def make_app(validator) -> Starlette:
    return Starlette(
        routes=[
            Route("/mcp", whoami, methods=["GET", "POST", "OPTIONS"]),
            Route("/mcp/sub", whoami, methods=["GET"]),
            Route("/public", whoami, methods=["GET"]),
        ],
        middleware=[Middleware(BearerAuthMiddleware, protected_path="/mcp", validator=validator)],
    )


@pytest.fixture
def no_env():
    with patch.dict(os.environ, {"AUDIT_LOG_ENABLED": "false"}, clear=True):
        yield


class TestBearerAuthMiddleware:
    """Tests for BearerAuthMiddleware."""

    def test_missing_bearer_points_at_resource_metadata(self, no_env):
        validator = AsyncMock()
        client = TestClient(make_app(validator))

        response = client.post("/mcp")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"
        assert response.headers["www-authenticate"] == (
            'Bearer realm="MCP Server", '
            'resource="http://testserver/.well-known/oauth-protected-resource"'
        )
        validator.assert_not_awaited()

    def test_resource_metadata_uses_configured_base_url(self):
        env = {
            "GOOGLE_CLIENT_ID": "id",
            "GOOGLE_CLIENT_SECRET": "secret",
            "BROKER_BASE_URL": "https://broker.example.com/",
            "AUDIT_LOG_ENABLED": "false",
        }
        with patch.dict(os.environ, env, clear=True):
            response = TestClient(make_app(AsyncMock())).get("/mcp")

        assert 'resource="https://broker.example.com/.well-known/oauth-protected-resource"' in (
            response.headers["www-authenticate"]
        )

    def test_empty_bearer_is_missing(self, no_env):
        response = TestClient(make_app(AsyncMock())).get(
            "/mcp", headers={"Authorization": "Bearer   "}
        )
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_invalid_token(self, no_env):
        validator = AsyncMock(return_value=(False, "Token has expired", None))
        response = TestClient(make_app(validator)).get(
            "/mcp", headers={"Authorization": "Bearer a.b.c"}
        )

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == 'Bearer error="invalid_token"'
        assert response.json() == {
            "error": "invalid_token",
            "error_description": "Token has expired",
        }
        validator.assert_awaited_once_with("a.b.c")

    def test_valid_token_passes_identity(self, no_env):
        validator = AsyncMock(return_value=(True, None, ALICE))
        client = TestClient(make_app(validator))

        response = client.get("/mcp", headers={"Authorization": "Bearer a.b.c"})
        subpath = client.get("/mcp/sub", headers={"Authorization": "Bearer a.b.c"})

        assert response.status_code == 200
        assert response.json() == {"subject": "1234567890"}
        assert subpath.json() == {"subject": "1234567890"}

    def test_other_paths_are_not_protected(self, no_env):
        validator = AsyncMock()
        response = TestClient(make_app(validator)).get("/public")

        assert response.status_code == 200
        validator.assert_not_awaited()

    def test_preflight_passes_through(self, no_env):
        response = TestClient(make_app(AsyncMock())).options("/mcp")
        assert response.status_code == 200


class TestServerApp:
    """Tests for the assembled HTTP application."""

    def test_http_app_installs_bearer_middleware(self):
        app = main_mcp.http_app()
        assert any(m.cls is BearerAuthMiddleware for m in app.user_middleware)

    def test_mcp_endpoint_requires_bearer(self, no_env):
        client = TestClient(main_mcp.http_app())
        response = client.post("/mcp/", json={"jsonrpc": "2.0", "id": 1, "method": "ping"})

        assert response.status_code == 401
        assert "www-authenticate" in response.headers

    def test_health_check(self, no_env):
        response = TestClient(main_mcp.http_app()).get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.parametrize(
        "path",
        [
            "/.well-known/oauth-authorization-server",
            "/.well-known/oauth-protected-resource",
            "/.well-known/oauth-protected-resource/mcp",
        ],
    )
    def test_discovery_routes(self, no_env, path):
        response = TestClient(main_mcp.http_app()).get(path)
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_token_preflight(self, no_env):
        response = TestClient(main_mcp.http_app()).options("/token")
        assert response.status_code == 204
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_authorize_without_credentials(self, no_env):
        response = TestClient(main_mcp.http_app()).get(
            "/authorize", params={"client_id": "x"}, follow_redirects=False
        )
        assert response.status_code == 500
        assert response.json()["error"] == "server_error"


class TestGreeting:
    """Tests for the say_hello tool's text."""

    def test_unauthenticated(self):
        text = format_greeting("Bob", "casual", None)
        assert text.startswith("Hello, Bob!")
        assert "not authenticated" in text

    def test_authenticated(self):
        text = format_greeting("Bob", "formal", ALICE)
        assert text.startswith("Good day, Bob.")
        assert "User: Alice Example" in text
        assert "Email: alice@example.com (verified)" in text

    def test_unknown_style_falls_back_to_casual(self):
        assert format_greeting("", "shouty", None).startswith("Hello, World!")

    def test_current_identity_outside_request(self):
        with patch(
            "mcp_oauth_broker.servers.main.get_http_request", side_effect=RuntimeError
        ):
            assert _current_identity() is None

    def test_current_identity_from_request_state(self):
        request = SimpleNamespace(state=SimpleNamespace(identity=ALICE))
        with patch("mcp_oauth_broker.servers.main.get_http_request", return_value=request):
            assert _current_identity() is ALICE
