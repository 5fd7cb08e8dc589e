"""Main FastMCP server setup for the OAuth broker."""

import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Any, Literal, Optional

from fastmcp import Context, FastMCP
from fastmcp.server.dependencies import get_http_request
from pydantic import Field
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from mcp_oauth_broker.config import (
    AUTHORIZATION_SERVER_METADATA_PATH,
    AUTHORIZE_PATH,
    LEGACY_CALLBACK_PATH,
    MCP_PATH,
    PROTECTED_RESOURCE_METADATA_PATH,
    REGISTER_PATH,
    TOKEN_PATH,
    UPSTREAM_CALLBACK_PATH,
    BrokerConfig,
)
from mcp_oauth_broker.utils.audit import (
    AuditAction,
    AuditResult,
    audit,
    get_audit_logger,
)
from mcp_oauth_broker.utils.code_store import get_authorization_code_store
from mcp_oauth_broker.utils.id_token import Identity, validate_id_token
from mcp_oauth_broker.utils.responses import preflight

from .oauth import (
    authorize,
    legacy_callback,
    oauth_metadata,
    protected_resource_metadata,
    register_client,
    token,
    upstream_callback,
)

logger = logging.getLogger("mcp-oauth-broker.server.main")


async def health_check() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@asynccontextmanager
async def main_lifespan(app: FastMCP) -> AsyncIterator[dict]:
    """Lifespan context manager for the broker with audit logging."""
    audit(AuditAction.SERVER_STARTED)
    logger.info("OAuth broker lifespan starting...")
    if BrokerConfig.from_env() is None:
        logger.warning(
            "Upstream OAuth credentials missing; OAuth endpoints will answer server_error"
        )
    try:
        yield {}
    finally:
        removed = get_authorization_code_store().sweep_expired()
        logger.info(f"OAuth broker lifespan shutting down ({removed} expired grants swept)")
        audit(AuditAction.SERVER_STOPPED)
        audit_logger = get_audit_logger()
        if audit_logger:
            audit_logger.close()


class BrokerMCP(FastMCP):
    """FastMCP server whose MCP endpoint requires an upstream ID token."""

    def http_app(
        self,
        path: str | None = None,
        middleware: list[Middleware] | None = None,
        transport: Literal["streamable-http", "sse"] = "streamable-http",
        **kwargs: Any,
    ) -> "Starlette":
        bearer_mw = Middleware(BearerAuthMiddleware, protected_path=path or MCP_PATH)
        final_middleware_list = [bearer_mw]
        if middleware:
            final_middleware_list.extend(middleware)
        return super().http_app(
            path=path,
            middleware=final_middleware_list,
            transport=transport,
            **kwargs,
        )


class BearerAuthMiddleware:
    """ASGI middleware that verifies the bearer token on the MCP endpoint.

    Requests without a bearer get a 401 pointing at the protected resource
    metadata, so that MCP clients can discover the broker. A verified token's
    identity is stored on ``request.state.identity``.
    """

    def __init__(
        self,
        app: Any,
        protected_path: str = MCP_PATH,
        validator: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.app = app
        self.protected_path = protected_path.rstrip("/") or "/"
        self.validate = validator or validate_id_token

    def _is_protected(self, path: str) -> bool:
        path = path.rstrip("/") or "/"
        return path == self.protected_path or path.startswith(self.protected_path + "/")

    async def __call__(self, scope: dict, receive: Callable, send: Callable) -> None:
        if scope["type"] != "http" or not self._is_protected(scope.get("path", "")):
            await self.app(scope, receive, send)
            return

        # CORS preflight never carries credentials
        if scope.get("method") == "OPTIONS":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        client_ip = request.client.host if request.client else None
        auth_header = request.headers.get("authorization", "")

        if not auth_header.startswith("Bearer ") or not auth_header[7:].strip():
            logger.debug("MCP request without bearer token")
            resource_metadata = f"{self._base_url(request)}{PROTECTED_RESOURCE_METADATA_PATH}"
            await self._send_error_response(
                send,
                401,
                {
                    "error": "unauthorized",
                    "error_description": "Bearer token required",
                },
                f'Bearer realm="MCP Server", resource="{resource_metadata}"',
            )
            return

        bearer = auth_header[7:].strip()
        is_valid, error_msg, identity = await self.validate(bearer)
        if not is_valid or identity is None:
            logger.warning(f"Bearer token validation failed: {error_msg}")
            audit(
                AuditAction.AUTHENTICATION_FAILURE,
                AuditResult.FAILURE,
                user_ip=client_ip,
                user_agent=request.headers.get("user-agent"),
                error_code="invalid_token",
            )
            await self._send_error_response(
                send,
                401,
                {
                    "error": "invalid_token",
                    "error_description": error_msg or "Token verification failed",
                },
                'Bearer error="invalid_token"',
            )
            return

        logger.debug(f"Authenticated MCP request for subject {identity.subject}")
        audit(
            AuditAction.AUTHENTICATION_SUCCESS,
            user_id=identity.email or identity.subject,
            user_ip=client_ip,
            user_agent=request.headers.get("user-agent"),
        )

        # Never mutate the caller's scope
        scope_copy = scope.copy()
        scope_copy["state"] = dict(scope.get("state") or {})
        scope_copy["state"]["identity"] = identity
        await self.app(scope_copy, receive, send)

    @staticmethod
    def _base_url(request: Request) -> str:
        config = BrokerConfig.from_env()
        if config is not None:
            return config.resolve_base_url(str(request.base_url))
        return str(request.base_url).rstrip("/")

    async def _send_error_response(
        self,
        send: Callable,
        status_code: int,
        body: dict[str, str],
        www_authenticate: str,
    ) -> None:
        """Send an HTTP error response following ASGI protocol."""
        response_body = json.dumps(body).encode("utf-8")
        try:
            await send(
                {
                    "type": "http.response.start",
                    "status": status_code,
                    "headers": [
                        [b"content-type", b"application/json"],
                        [b"content-length", str(len(response_body)).encode()],
                        [b"www-authenticate", www_authenticate.encode("latin-1")],
                        [b"access-control-allow-origin", b"*"],
                        [b"access-control-expose-headers", b"WWW-Authenticate"],
                    ],
                }
            )
            await send({"type": "http.response.body", "body": response_body})
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            logger.debug(f"Client disconnected during error response: {type(e).__name__}")


GREETINGS = {
    "casual": "Hello, {name}!",
    "formal": "Good day, {name}.",
    "enthusiastic": "Hey there, {name}! Great to see you!",
}


def format_greeting(name: str, style: str, identity: Identity | None) -> str:
    """Build the greeting text, including who the caller is authenticated as."""
    greeting = GREETINGS.get(style, GREETINGS["casual"]).format(name=name or "World")
    if identity is None:
        return f"{greeting}\n\nAuthentication status: not authenticated"

    lines = [greeting, "", "Authentication status: verified"]
    lines.append(f"User: {identity.display_name}")
    if identity.email:
        verified = "verified" if identity.email_verified else "unverified"
        lines.append(f"Email: {identity.email} ({verified})")
    lines.append("Provider: google")
    return "\n".join(lines)


def _current_identity() -> Identity | None:
    try:
        request = get_http_request()
    except RuntimeError:
        return None
    return getattr(request.state, "identity", None)


main_mcp = BrokerMCP(name="MCP OAuth Broker", lifespan=main_lifespan)


@main_mcp.tool(tags={"greeting"})
async def say_hello(
    ctx: Context,
    name: Annotated[
        str, Field(description="The name of the person to greet")
    ] = "World",
    style: Annotated[
        Literal["casual", "formal", "enthusiastic"],
        Field(description="The style of greeting"),
    ] = "casual",
) -> str:
    """Say hello to someone, showing which user the request is authenticated as."""
    identity = _current_identity()
    await ctx.debug(f"say_hello called with style={style}")
    return format_greeting(name, style, identity)


@main_mcp.custom_route("/healthz", methods=["GET"], include_in_schema=False)
async def _health_check_route(request: Request) -> JSONResponse:
    return await health_check()


@main_mcp.custom_route(AUTHORIZE_PATH, methods=["GET", "OPTIONS"], include_in_schema=False)
async def _authorize_route(request: Request) -> Response:
    """OAuth 2.1 authorization endpoint."""
    if request.method == "OPTIONS":
        return await preflight(request)
    return await authorize(request)


@main_mcp.custom_route(UPSTREAM_CALLBACK_PATH, methods=["GET"], include_in_schema=False)
async def _upstream_callback_route(request: Request) -> Response:
    """Upstream provider redirect target."""
    return await upstream_callback(request)


@main_mcp.custom_route(
    LEGACY_CALLBACK_PATH, methods=["GET", "POST", "OPTIONS"], include_in_schema=False
)
async def _legacy_callback_route(request: Request) -> Response:
    if request.method == "OPTIONS":
        return await preflight(request)
    return await legacy_callback(request)


@main_mcp.custom_route(TOKEN_PATH, methods=["POST", "OPTIONS"], include_in_schema=False)
async def _token_route(request: Request) -> Response:
    """OAuth 2.1 token endpoint."""
    if request.method == "OPTIONS":
        return await preflight(request)
    return await token(request)


@main_mcp.custom_route(REGISTER_PATH, methods=["POST", "OPTIONS"], include_in_schema=False)
async def _register_route(request: Request) -> Response:
    """OAuth 2.0 Dynamic Client Registration endpoint (RFC 7591)."""
    if request.method == "OPTIONS":
        return await preflight(request)
    return await register_client(request)


@main_mcp.custom_route(
    AUTHORIZATION_SERVER_METADATA_PATH, methods=["GET", "OPTIONS"], include_in_schema=False
)
async def _oauth_metadata_route(request: Request) -> Response:
    """OAuth 2.0 Authorization Server Metadata endpoint (RFC 8414)."""
    if request.method == "OPTIONS":
        return await preflight(request)
    return await oauth_metadata(request)


@main_mcp.custom_route(
    PROTECTED_RESOURCE_METADATA_PATH, methods=["GET", "OPTIONS"], include_in_schema=False
)
async def _protected_resource_metadata_route(request: Request) -> Response:
    """OAuth 2.0 Protected Resource Metadata endpoint (RFC 9728)."""
    if request.method == "OPTIONS":
        return await preflight(request)
    return await protected_resource_metadata(request)


@main_mcp.custom_route(
    f"{PROTECTED_RESOURCE_METADATA_PATH}{MCP_PATH}",
    methods=["GET", "OPTIONS"],
    include_in_schema=False,
)
async def _protected_resource_metadata_route_mcp(request: Request) -> Response:
    """Path-suffixed variant of the protected resource metadata (RFC 9728 section 3.1)."""
    if request.method == "OPTIONS":
        return await preflight(request)
    return await protected_resource_metadata(request)
