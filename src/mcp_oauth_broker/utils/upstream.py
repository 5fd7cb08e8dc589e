"""Client for the upstream identity provider's OAuth endpoints."""

import json
import logging
import urllib.parse

import httpx

from mcp_oauth_broker.config import (
    UPSTREAM_AUTHORIZE_URL,
    UPSTREAM_SCOPE,
    UPSTREAM_TOKEN_URL,
    BrokerConfig,
)
from mcp_oauth_broker.utils.code_store import UpstreamTokenSet

logger = logging.getLogger("mcp-oauth-broker.utils.upstream")


class UpstreamExchangeError(Exception):
    """Raised when the upstream token endpoint cannot exchange a code.

    Only the HTTP status and the provider's error code are kept; the response
    body may echo credentials and is never carried further.
    """

    def __init__(
        self, message: str, status_code: int | None = None, error: str | None = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error


class UpstreamClient:
    """Builds upstream authorization URLs and exchanges upstream codes."""

    def __init__(
        self,
        config: BrokerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        authorize_url: str = UPSTREAM_AUTHORIZE_URL,
        token_url: str = UPSTREAM_TOKEN_URL,
    ) -> None:
        self.config = config
        self.authorize_url = authorize_url
        self.token_url = token_url
        self._transport = transport

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        """Build the upstream consent URL.

        Args:
            redirect_uri: The broker's canonical callback
            state: Encoded continuation state

        Returns:
            URL to redirect the user agent to
        """
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": UPSTREAM_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self.authorize_url}?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> UpstreamTokenSet:
        """Exchange an authorization code at the upstream token endpoint.

        Args:
            code: Authorization code to redeem
            redirect_uri: Redirect URI used in the authorization request

        Returns:
            The upstream token set

        Raises:
            UpstreamExchangeError: On HTTP errors, timeouts or invalid responses
        """
        token_payload = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }

        logger.debug(f"Exchanging authorization code upstream (redirect_uri: {redirect_uri})")
        try:
            async with httpx.AsyncClient(
                timeout=self.config.upstream_timeout, transport=self._transport
            ) as client:
                response = await client.post(self.token_url, data=token_payload)
                response.raise_for_status()
                token_data = response.json()
        except httpx.HTTPStatusError as e:
            error_code = None
            try:
                error_code = e.response.json().get("error")
            except (ValueError, json.JSONDecodeError, AttributeError):
                pass
            logger.error(
                f"Upstream token exchange failed: HTTP {e.response.status_code} "
                f"(error={error_code})"
            )
            raise UpstreamExchangeError(
                f"Upstream token endpoint returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
                error=error_code,
            ) from e
        except httpx.TimeoutException as e:
            logger.error(f"Upstream token exchange timed out after {self.config.upstream_timeout}s")
            raise UpstreamExchangeError("Upstream token endpoint timed out") from e
        except httpx.RequestError as e:
            logger.error(f"Upstream token exchange request error: {type(e).__name__}")
            raise UpstreamExchangeError(f"Upstream token endpoint unreachable: {type(e).__name__}") from e
        except json.JSONDecodeError as e:
            logger.error("Upstream token endpoint returned invalid JSON")
            raise UpstreamExchangeError("Invalid JSON from upstream token endpoint") from e

        if not isinstance(token_data, dict):
            raise UpstreamExchangeError("Unexpected token response shape from upstream")

        tokens = UpstreamTokenSet.from_response(token_data)
        logger.info(f"Upstream token exchange successful: {tokens.describe()}")
        return tokens
