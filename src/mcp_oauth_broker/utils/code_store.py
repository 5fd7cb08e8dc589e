"""Authorization grants and the store that holds them between requests.

A grant is created by the authorization endpoint, receives the upstream token
set in the upstream callback, and is consumed by exactly one successful token
exchange. Grants live in process memory only.
"""

import logging
import os
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from cachetools import TTLCache

from mcp_oauth_broker.config import (
    DEFAULT_CODE_STORE_MAXSIZE,
    DEFAULT_CODE_TTL_SECONDS,
)
from mcp_oauth_broker.utils.logging import describe_token, mask_sensitive

logger = logging.getLogger("mcp-oauth-broker.utils.code_store")

DEFAULT_SCOPE = "openid profile email mcp:read mcp:write"
DEFAULT_EXPIRES_IN = 3600


@dataclass
class UpstreamTokenSet:
    """Tokens returned by the upstream provider's token endpoint."""

    id_token: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str | None = None
    scope: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "UpstreamTokenSet":
        """Build a token set from the provider's JSON response."""
        expires_in = data.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None

        return cls(
            id_token=data.get("id_token"),
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            expires_in=expires_in,
            token_type=data.get("token_type"),
            scope=data.get("scope"),
        )

    def describe(self) -> dict[str, str]:
        """Presence/length summary, safe to log."""
        return {
            "id_token": describe_token(self.id_token),
            "access_token": describe_token(self.access_token),
            "refresh_token": describe_token(self.refresh_token),
        }

    def __repr__(self) -> str:
        summary = ", ".join(f"{k}={v}" for k, v in self.describe().items())
        return f"UpstreamTokenSet({summary}, expires_in={self.expires_in})"


@dataclass
class AuthorizationGrant:
    """A pending or completed authorization, keyed by a single-use code."""

    code: str
    client_id: str
    redirect_uri: str
    scope: str
    created_at: float
    expires_at: float
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    resource: str | None = None
    state: str = ""
    upstream_tokens: UpstreamTokenSet | None = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        client_id: str,
        redirect_uri: str,
        now: float,
        scope: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        resource: str | None = None,
        state: str | None = None,
        lifetime: int = DEFAULT_CODE_TTL_SECONDS,
    ) -> "AuthorizationGrant":
        """Create a grant with a fresh 256-bit code."""
        return cls(
            code=secrets.token_urlsafe(32),
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope or DEFAULT_SCOPE,
            created_at=now,
            expires_at=now + lifetime,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            resource=resource,
            state=state or "",
        )

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def attach_upstream_tokens(self, tokens: UpstreamTokenSet) -> None:
        self.upstream_tokens = tokens


class AuthorizationCodeStore(Protocol):
    """Keyed storage for authorization grants.

    Each method is atomic with respect to the others. ``delete`` returns the
    removed grant so that a caller can use it as a take operation: of several
    concurrent deletes of the same code, only one receives the grant.
    """

    def put(self, code: str, grant: AuthorizationGrant) -> None: ...

    def get(self, code: str) -> Optional[AuthorizationGrant]: ...

    def delete(self, code: str) -> Optional[AuthorizationGrant]: ...

    def sweep_expired(self) -> int: ...

    def now(self) -> float: ...


class InMemoryAuthorizationCodeStore:
    """Process-local grant store with a per-entry TTL.

    Backed by a bounded TTLCache; expired entries disappear on lookup, and
    ``sweep_expired`` can be called to reclaim memory eagerly.
    """

    def __init__(
        self,
        ttl: int = DEFAULT_CODE_TTL_SECONDS,
        maxsize: int = DEFAULT_CODE_STORE_MAXSIZE,
        timer: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self._timer = timer
        self._lock = threading.RLock()
        self._grants: TTLCache[str, AuthorizationGrant] = TTLCache(
            maxsize=maxsize, ttl=ttl, timer=timer
        )

    def now(self) -> float:
        return self._timer()

    def put(self, code: str, grant: AuthorizationGrant) -> None:
        with self._lock:
            if code in self._grants:
                raise ValueError("Authorization code already in use")
            self._grants[code] = grant
        logger.debug(f"Stored authorization grant {mask_sensitive(code)}")

    def get(self, code: str) -> Optional[AuthorizationGrant]:
        with self._lock:
            return self._grants.get(code)

    def delete(self, code: str) -> Optional[AuthorizationGrant]:
        with self._lock:
            grant = self._grants.pop(code, None)
        if grant is not None:
            logger.debug(f"Removed authorization grant {mask_sensitive(code)}")
        return grant

    def sweep_expired(self) -> int:
        with self._lock:
            before = len(self._grants)
            self._grants.expire()
            removed = before - len(self._grants)
        if removed:
            logger.debug(f"Swept {removed} expired authorization grants")
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._grants)


# Global store instance
_store: InMemoryAuthorizationCodeStore | None = None


def get_authorization_code_store() -> InMemoryAuthorizationCodeStore:
    """Get the process-wide authorization code store.

    Returns:
        The InMemoryAuthorizationCodeStore instance
    """
    global _store
    if _store is None:
        ttl = int(os.getenv("BROKER_CODE_TTL", str(DEFAULT_CODE_TTL_SECONDS)))
        maxsize = int(
            os.getenv("BROKER_CODE_STORE_MAXSIZE", str(DEFAULT_CODE_STORE_MAXSIZE))
        )
        _store = InMemoryAuthorizationCodeStore(ttl=ttl, maxsize=maxsize)
        logger.info(f"Authorization code store initialized (ttl={ttl}s, maxsize={maxsize})")
    return _store
