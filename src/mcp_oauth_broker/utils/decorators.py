import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

from starlette.requests import Request
from starlette.responses import Response

from mcp_oauth_broker.utils.responses import error_response

logger = logging.getLogger("mcp-oauth-broker.utils.decorators")


F = TypeVar("F", bound=Callable[..., Awaitable[Response]])


def handle_endpoint_errors(endpoint_name: str) -> Callable[[F], F]:
    """
    Decorator for broker HTTP endpoints that turns unexpected exceptions into
    an OAuth ``server_error`` (500) response.

    Expected failures are answered by the endpoint itself with the specific
    OAuth error code; anything that escapes is logged with its traceback.

    Args:
        endpoint_name: Name of the endpoint for error logging (e.g., "token").
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(request: Request, *args: Any, **kwargs: Any) -> Response:
            try:
                return await func(request, *args, **kwargs)
            except Exception as e:  # noqa: BLE001 - converted to an OAuth error response
                logger.error(
                    f"Unexpected error in {endpoint_name} endpoint: {type(e).__name__}",
                    exc_info=True,
                )
                return error_response(
                    "server_error", f"Internal error in {endpoint_name} endpoint", 500
                )

        return wrapper  # type: ignore

    return decorator
