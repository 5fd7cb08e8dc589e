"""OAuth 2.1 response helpers shared by the broker endpoints."""

import logging
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from mcp_oauth_broker.utils.redirects import append_query_params

logger = logging.getLogger("mcp-oauth-broker.utils.responses")

OAUTH_VERSION = "2.1"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}


def add_cors_headers(response: Response, methods: str = "GET, POST, OPTIONS") -> Response:
    """Add permissive CORS headers for browser-based MCP clients."""
    response.headers.update(CORS_HEADERS)
    response.headers["Access-Control-Allow-Methods"] = methods
    return response


def json_response(
    data: dict[str, Any],
    status_code: int = 200,
    methods: str = "GET, POST, OPTIONS",
    cache_control: str = "no-store",
) -> JSONResponse:
    response = JSONResponse(data, status_code=status_code)
    response.headers["Cache-Control"] = cache_control
    response.headers["OAuth-Version"] = OAUTH_VERSION
    return add_cors_headers(response, methods)  # type: ignore[return-value]


def error_response(
    error: str,
    error_description: str | None = None,
    status_code: int = 400,
    **extra: Any,
) -> JSONResponse:
    """Create an OAuth 2.1 JSON error response.

    Args:
        error: OAuth error code
        error_description: Optional human-readable description
        status_code: HTTP status code
        **extra: Additional fields to include in the body

    Returns:
        JSONResponse with error details
    """
    response_data: dict[str, Any] = {"error": error}
    if error_description:
        response_data["error_description"] = error_description
    response_data["oauth_version"] = OAUTH_VERSION
    response_data.update(extra)
    return json_response(response_data, status_code=status_code)


def error_redirect(
    redirect_uri: str,
    error: str,
    error_description: str | None = None,
    state: str | None = None,
) -> RedirectResponse:
    """Redirect an OAuth error back to the client in the query string."""
    params = {"error": error}
    if error_description:
        params["error_description"] = error_description
    if state:
        params["state"] = state
    return RedirectResponse(url=append_query_params(redirect_uri, params), status_code=302)


async def preflight(request: Request) -> Response:
    """Answer a CORS preflight request."""
    return add_cors_headers(Response(status_code=204))


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
