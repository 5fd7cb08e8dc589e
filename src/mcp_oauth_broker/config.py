"""Configuration for the OAuth broker, read from environment variables."""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("mcp-oauth-broker.config")

# Google is the single upstream identity provider
UPSTREAM_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
UPSTREAM_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - public endpoint URL, not a password
UPSTREAM_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
UPSTREAM_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
UPSTREAM_ISSUERS = ("accounts.google.com", "https://accounts.google.com")
UPSTREAM_SCOPE = "openid profile email"

DEFAULT_CODE_TTL_SECONDS = 600  # 10 minutes
DEFAULT_CODE_STORE_MAXSIZE = 1000
DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 10
MAX_UPSTREAM_TIMEOUT_SECONDS = 30

# Paths served by the broker
AUTHORIZE_PATH = "/authorize"
UPSTREAM_CALLBACK_PATH = "/callback/upstream"
LEGACY_CALLBACK_PATH = "/oauth/callback"
TOKEN_PATH = "/token"
REGISTER_PATH = "/register"
MCP_PATH = "/mcp"
AUTHORIZATION_SERVER_METADATA_PATH = "/.well-known/oauth-authorization-server"
PROTECTED_RESOURCE_METADATA_PATH = "/.well-known/oauth-protected-resource"


@dataclass
class BrokerConfig:
    """Upstream client credentials and broker settings."""

    client_id: str
    client_secret: str
    base_url: str | None = None  # Public origin; falls back to the request origin
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT_SECONDS
    code_ttl: int = DEFAULT_CODE_TTL_SECONDS
    code_store_maxsize: int = DEFAULT_CODE_STORE_MAXSIZE

    @classmethod
    def from_env(cls) -> Optional["BrokerConfig"]:
        """Create broker configuration from environment variables.

        Returns:
            BrokerConfig if both GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are
            set, None otherwise. Callers must treat None as a server error
            rather than continuing with empty credentials.
        """
        client_id = os.getenv("GOOGLE_CLIENT_ID")
        client_secret = os.getenv("GOOGLE_CLIENT_SECRET")

        if not client_id or not client_secret:
            logger.error(
                "Upstream OAuth credentials are not configured: "
                f"GOOGLE_CLIENT_ID={'SET' if client_id else 'MISSING'}, "
                f"GOOGLE_CLIENT_SECRET={'SET' if client_secret else 'MISSING'}"
            )
            return None

        base_url = os.getenv("BROKER_BASE_URL")
        upstream_timeout = float(
            os.getenv("BROKER_UPSTREAM_TIMEOUT", str(DEFAULT_UPSTREAM_TIMEOUT_SECONDS))
        )
        code_ttl = int(os.getenv("BROKER_CODE_TTL", str(DEFAULT_CODE_TTL_SECONDS)))
        code_store_maxsize = int(
            os.getenv("BROKER_CODE_STORE_MAXSIZE", str(DEFAULT_CODE_STORE_MAXSIZE))
        )

        return cls(
            client_id=client_id,
            client_secret=client_secret,
            base_url=base_url.rstrip("/") if base_url else None,
            upstream_timeout=min(upstream_timeout, MAX_UPSTREAM_TIMEOUT_SECONDS),
            code_ttl=code_ttl,
            code_store_maxsize=code_store_maxsize,
        )

    def resolve_base_url(self, request_base_url: str | None = None) -> str:
        """Return the public base URL, preferring BROKER_BASE_URL."""
        if self.base_url:
            return self.base_url
        if request_base_url:
            return request_base_url.rstrip("/")
        return "http://localhost:8000"

    def __repr__(self) -> str:
        return (
            f"BrokerConfig(client_id={self.client_id!r}, client_secret='***', "
            f"base_url={self.base_url!r}, upstream_timeout={self.upstream_timeout}, "
            f"code_ttl={self.code_ttl})"
        )
