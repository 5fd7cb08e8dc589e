"""Redirect URI rules for the MCP client families the broker serves.

Three client dialects are recognised:
- loopback: CLI proxies and editors listening on 127.0.0.1/localhost
- custom scheme: desktop editors receiving ``vscode://`` style callbacks
- web: the browser-hosted editor's redirect page

Loopback and custom-scheme clients both receive a broker-issued code in the
query string; only the transport differs. The web dialect receives the token
directly because it has no token-exchange step.
"""

import logging
import re
import urllib.parse
from enum import Enum

logger = logging.getLogger("mcp-oauth-broker.utils.redirects")

LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost"})
LOOPBACK_CALLBACK_PATH = "/oauth/callback"
CUSTOM_SCHEMES = frozenset({"vscode", "vscode-insiders"})

# Web redirect host -> custom scheme the redirect page hands off to
WEB_REDIRECT_HOSTS: dict[str, str] = {
    "vscode.dev": "vscode",
    "insiders.vscode.dev": "vscode-insiders",
}
WEB_REDIRECT_AUTHORITY = "ms-vscode.vscode-mcp"
WEB_REDIRECT_PATH = "/oauth-callback"

# Known callback targets accepted verbatim
ALLOWED_REDIRECT_URIS = frozenset(
    {
        "http://127.0.0.1:3334/oauth/callback",
        "http://localhost:3334/oauth/callback",
        "http://127.0.0.1:33418/",
        "http://localhost:33418/",
    }
)

_LOOPBACK_REDIRECT_PATTERN = re.compile(
    r"^http://(127\.0\.0\.1|localhost):\d+(/|/oauth/callback)?$"
)


class ClientDialect(str, Enum):
    """Redirect convention spoken by a client."""

    LOOPBACK = "loopback"
    CUSTOM_SCHEME = "custom_scheme"
    WEB = "web"
    UNSUPPORTED = "unsupported"


def classify_redirect(redirect_uri: str | None) -> ClientDialect:
    """Determine which client dialect a redirect URI belongs to.

    Rules are applied in order and the first match wins. Every input maps to
    exactly one dialect; anything unparseable is UNSUPPORTED.

    Args:
        redirect_uri: The client's redirect target

    Returns:
        The ClientDialect for the URI
    """
    if not redirect_uri or not isinstance(redirect_uri, str):
        return ClientDialect.UNSUPPORTED

    try:
        parsed = urllib.parse.urlsplit(redirect_uri)
        host = (parsed.hostname or "").lower()
        # Accessing .port validates it
        parsed.port
    except ValueError:
        return ClientDialect.UNSUPPORTED

    scheme = parsed.scheme.lower()
    if not scheme:
        return ClientDialect.UNSUPPORTED

    if LOOPBACK_CALLBACK_PATH in parsed.path:
        return ClientDialect.LOOPBACK

    if host in WEB_REDIRECT_HOSTS:
        return ClientDialect.WEB

    if host in LOOPBACK_HOSTS and parsed.path in ("", "/"):
        return ClientDialect.LOOPBACK

    if scheme in CUSTOM_SCHEMES:
        return ClientDialect.CUSTOM_SCHEME

    return ClientDialect.UNSUPPORTED


def is_allowed_redirect_uri(redirect_uri: str | None) -> bool:
    """Check a redirect URI against the authorization endpoint's allow-list.

    Accepts the fixed list of known callbacks, any loopback port with an
    empty, root or /oauth/callback path, and the reserved custom schemes.
    """
    if not redirect_uri:
        return False

    if redirect_uri in ALLOWED_REDIRECT_URIS:
        return True

    if _LOOPBACK_REDIRECT_PATTERN.match(redirect_uri):
        return True

    return any(redirect_uri.startswith(f"{scheme}://") for scheme in CUSTOM_SCHEMES)


def is_loopback_uri(uri: str | None) -> bool:
    """True for http URIs on a loopback host."""
    if not uri:
        return False
    try:
        parsed = urllib.parse.urlsplit(uri)
        host = (parsed.hostname or "").lower()
    except ValueError:
        return False
    return parsed.scheme == "http" and host in LOOPBACK_HOSTS


def is_redirectable(uri: str | None) -> bool:
    """True when a URI is syntactically usable as a redirect target."""
    if not uri:
        return False
    try:
        parsed = urllib.parse.urlsplit(uri)
        parsed.port
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def normalize_redirect_uri(uri: str) -> str:
    """Normalize a redirect URI for comparison at the token endpoint.

    127.0.0.1 and localhost are treated as the same host, a single trailing
    slash is ignored, and the comparison is case-insensitive.
    """
    normalized = uri.replace("127.0.0.1", "localhost", 1)
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized.lower()


def redirect_uris_match(stored: str, presented: str) -> bool:
    return normalize_redirect_uri(stored) == normalize_redirect_uri(presented)


def append_query_params(uri: str, params: dict[str, str]) -> str:
    """Add query parameters to a URI, keeping its existing query.

    Any fragment is dropped: OAuth 2.1 responses are delivered in the query.
    """
    parsed = urllib.parse.urlsplit(uri)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query = [(k, v) for k, v in query if k not in params]
    query.extend(params.items())
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), "")
    )


def strip_query_and_fragment(uri: str) -> str:
    return uri.split("#", 1)[0].split("?", 1)[0]
