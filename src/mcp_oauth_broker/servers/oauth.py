"""OAuth 2.1 broker endpoints.

The broker exposes a single authorization-code + PKCE flow to MCP clients and
drives the upstream provider through one fixed callback. Everything the
callback needs to reach the client again travels in the upstream ``state``.

Handlers take their collaborators as optional keyword arguments so they can be
called directly with a test store, config or upstream client; when omitted
they fall back to the process-wide instances.
"""

import base64
import binascii
import hashlib
import json
import logging
import secrets
import time
import urllib.parse
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from mcp_oauth_broker.config import (
    AUTHORIZATION_SERVER_METADATA_PATH,
    AUTHORIZE_PATH,
    LEGACY_CALLBACK_PATH,
    MCP_PATH,
    REGISTER_PATH,
    TOKEN_PATH,
    UPSTREAM_CALLBACK_PATH,
    UPSTREAM_JWKS_URL,
    UPSTREAM_SCOPE,
    UPSTREAM_USERINFO_URL,
    BrokerConfig,
)
from mcp_oauth_broker.utils.audit import AuditAction, AuditResult, audit
from mcp_oauth_broker.utils.code_store import (
    DEFAULT_EXPIRES_IN,
    AuthorizationCodeStore,
    AuthorizationGrant,
    UpstreamTokenSet,
    get_authorization_code_store,
)
from mcp_oauth_broker.utils.decorators import handle_endpoint_errors
from mcp_oauth_broker.utils.logging import mask_sensitive
from mcp_oauth_broker.utils.redirects import (
    WEB_REDIRECT_AUTHORITY,
    WEB_REDIRECT_HOSTS,
    WEB_REDIRECT_PATH,
    ClientDialect,
    append_query_params,
    classify_redirect,
    is_allowed_redirect_uri,
    is_loopback_uri,
    is_redirectable,
    redirect_uris_match,
    strip_query_and_fragment,
)
from mcp_oauth_broker.utils.responses import (
    client_ip,
    error_redirect,
    error_response,
    json_response,
)
from mcp_oauth_broker.utils.state import (
    ContinuationState,
    decode_state,
    encode_state,
)
from mcp_oauth_broker.utils.upstream import UpstreamClient, UpstreamExchangeError

logger = logging.getLogger("mcp-oauth-broker.server.oauth")

SUPPORTED_SCOPES = ["openid", "profile", "email", "mcp:read", "mcp:write"]


def _get_broker_config() -> BrokerConfig | None:
    """Get the broker's upstream credentials from environment variables.

    Returns:
        BrokerConfig instance or None if not configured
    """
    return BrokerConfig.from_env()


def _missing_config_response() -> JSONResponse:
    return error_response(
        "server_error",
        "OAuth client credentials not configured. "
        "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.",
        500,
    )


def _base_url(request: Request, config: BrokerConfig | None) -> str:
    if config is not None:
        return config.resolve_base_url(str(request.base_url))
    return str(request.base_url).rstrip("/")


def compute_code_challenge(code_verifier: str) -> str:
    """Derive the S256 code challenge for a PKCE code verifier."""
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_code_verifier(code_verifier: str, code_challenge: str) -> bool:
    """Check a PKCE verifier against the stored S256 challenge in constant time."""
    derived = compute_code_challenge(code_verifier)
    return secrets.compare_digest(derived.encode("utf-8"), code_challenge.encode("utf-8"))


@handle_endpoint_errors("authorize")
async def authorize(
    request: Request,
    store: AuthorizationCodeStore | None = None,
    config: BrokerConfig | None = None,
    upstream: UpstreamClient | None = None,
) -> Response:
    """Handle an OAuth 2.1 authorization request.

    GET /authorize?response_type=code&client_id=...&redirect_uri=...&state=...
        &code_challenge=...&code_challenge_method=S256&scope=...&resource=...

    Creates an authorization grant and redirects the user agent to the
    upstream provider's consent screen.

    Returns:
        Redirect to the upstream authorization URL, or an OAuth error
    """
    config = config or _get_broker_config()
    if config is None:
        return _missing_config_response()
    if store is None:
        store = get_authorization_code_store()

    params = request.query_params
    response_type = params.get("response_type")
    client_id = params.get("client_id")
    redirect_uri = params.get("redirect_uri")
    scope = params.get("scope")
    state = params.get("state")
    code_challenge = params.get("code_challenge")
    code_challenge_method = params.get("code_challenge_method")
    resource = params.get("resource")

    def reject(error: str, description: str, **extra: Any) -> Response:
        logger.warning(f"Authorization request rejected: {error} ({description})")
        audit(
            AuditAction.AUTHORIZATION_REJECTED,
            AuditResult.DENIED,
            client_id=client_id,
            user_ip=client_ip(request),
            error_code=error,
        )
        # Only redirect to targets that pass the allow-list
        if redirect_uri and is_allowed_redirect_uri(redirect_uri):
            return error_redirect(redirect_uri, error, description, state)
        return error_response(error, description, 400, **extra)

    if response_type is not None and response_type != "code":
        return reject(
            "unsupported_response_type",
            "Only response_type=code is supported (OAuth 2.1)",
        )

    if not client_id:
        return reject("invalid_request", "client_id is required")

    if not redirect_uri:
        return reject("invalid_request", "redirect_uri is required")

    if code_challenge and code_challenge_method != "S256":
        return reject(
            "invalid_request",
            "code_challenge_method must be S256 (OAuth 2.1)",
        )

    if not is_allowed_redirect_uri(redirect_uri):
        return reject(
            "invalid_request",
            "redirect_uri is not allowed",
            reason="invalid_redirect_uri",
        )

    base_url = _base_url(request, config)

    grant = AuthorizationGrant.create(
        client_id=client_id,
        redirect_uri=redirect_uri,
        now=store.now(),
        scope=scope,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method if code_challenge else None,
        resource=resource,
        state=state,
        lifetime=config.code_ttl,
    )
    store.put(grant.code, grant)

    continuation = ContinuationState(
        broker_code=grant.code,
        client_state=state or "",
        client_redirect_uri=redirect_uri,
        resource=resource or f"{base_url}{MCP_PATH}",
    )

    upstream = upstream or UpstreamClient(config)
    auth_url = upstream.authorization_url(
        redirect_uri=f"{base_url}{UPSTREAM_CALLBACK_PATH}",
        state=encode_state(continuation),
    )

    dialect = classify_redirect(redirect_uri)
    logger.info(
        f"Redirecting to upstream authorization: client_id={client_id}, "
        f"dialect={dialect.value}, pkce={'yes' if code_challenge else 'no'}"
    )
    audit(
        AuditAction.AUTHORIZATION_REQUESTED,
        client_id=client_id,
        client_dialect=dialect.value,
        user_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return RedirectResponse(url=auth_url, status_code=302)


def _no_id_token_redirect(client_redirect_uri: str) -> RedirectResponse:
    error_params = urllib.parse.urlencode(
        {
            "error": "no_id_token",
            "error_description": "The upstream provider did not return an ID token",
        }
    )
    target = strip_query_and_fragment(client_redirect_uri)
    return RedirectResponse(url=f"{target}#{error_params}", status_code=302)


def _web_redirect(
    client_redirect_uri: str, tokens: UpstreamTokenSet, client_state: str
) -> RedirectResponse:
    host = (urllib.parse.urlsplit(client_redirect_uri).hostname or "").lower()
    params = {
        "vscode-scheme": WEB_REDIRECT_HOSTS.get(host, "vscode"),
        "vscode-authority": WEB_REDIRECT_AUTHORITY,
        "vscode-path": WEB_REDIRECT_PATH,
        "access_token": tokens.id_token or "",
        "token_type": "Bearer",
        "expires_in": str(tokens.expires_in or DEFAULT_EXPIRES_IN),
    }
    if client_state:
        params["state"] = client_state
    target = strip_query_and_fragment(client_redirect_uri)
    return RedirectResponse(
        url=f"{target}?{urllib.parse.urlencode(params)}", status_code=302
    )


async def _relay_to_client(
    continuation: ContinuationState,
    upstream_code: str,
    exchange_redirect_uri: str,
    store: AuthorizationCodeStore,
    upstream: UpstreamClient,
) -> Response:
    """Exchange the upstream code and send the client back in its own dialect."""
    client_redirect_uri = continuation.client_redirect_uri
    client_state = continuation.client_state

    dialect = classify_redirect(client_redirect_uri)
    if dialect is ClientDialect.UNSUPPORTED:
        logger.warning("Upstream callback for unsupported redirect_uri")
        audit(
            AuditAction.UPSTREAM_CALLBACK,
            AuditResult.DENIED,
            client_dialect=dialect.value,
            error_code="invalid_client",
        )
        description = "redirect_uri does not belong to a supported MCP client"
        if is_redirectable(client_redirect_uri):
            return error_redirect(client_redirect_uri, "invalid_client", description, client_state)
        return error_response("invalid_client", description, 400)

    grant = store.get(continuation.broker_code)
    if grant is not None and not redirect_uris_match(grant.redirect_uri, client_redirect_uri):
        # State is unsigned; never redirect somewhere the grant was not issued for
        logger.warning("Upstream callback state names a redirect_uri other than the grant's")
        audit(
            AuditAction.UPSTREAM_CALLBACK,
            AuditResult.DENIED,
            client_id=grant.client_id,
            client_dialect=dialect.value,
            error_code="invalid_state",
        )
        return error_response(
            "invalid_state", "redirect_uri does not match the authorization request", 400
        )

    try:
        tokens = await upstream.exchange_code(upstream_code, exchange_redirect_uri)
    except UpstreamExchangeError as e:
        audit(
            AuditAction.UPSTREAM_CALLBACK,
            AuditResult.ERROR,
            client_dialect=dialect.value,
            error_code="token_exchange_failed",
            metadata={"upstream_status": e.status_code, "upstream_error": e.error},
        )
        return error_response(
            "token_exchange_failed",
            "Failed to exchange authorization code with the upstream provider",
            500,
        )

    if grant is not None:
        grant.attach_upstream_tokens(tokens)
    else:
        logger.warning(
            f"Grant {mask_sensitive(continuation.broker_code)} expired before the upstream callback"
        )

    if not tokens.id_token:
        logger.error(f"No ID token received from upstream: {tokens.describe()}")
        audit(
            AuditAction.UPSTREAM_CALLBACK,
            AuditResult.FAILURE,
            client_dialect=dialect.value,
            error_code="no_id_token",
        )
        return _no_id_token_redirect(client_redirect_uri)

    audit(
        AuditAction.UPSTREAM_CALLBACK,
        client_id=grant.client_id if grant else None,
        client_dialect=dialect.value,
    )

    if dialect is ClientDialect.WEB:
        # The token goes straight to the web client; there is no exchange step
        store.delete(continuation.broker_code)
        logger.info("Upstream callback complete, redirecting web client with token")
        return _web_redirect(client_redirect_uri, tokens, client_state)

    redirect_params = {"code": continuation.broker_code}
    if client_state:
        redirect_params["state"] = client_state
    logger.info(f"Upstream callback complete, redirecting {dialect.value} client with code")
    return RedirectResponse(
        url=append_query_params(client_redirect_uri, redirect_params), status_code=302
    )


@handle_endpoint_errors("upstream callback")
async def upstream_callback(
    request: Request,
    store: AuthorizationCodeStore | None = None,
    config: BrokerConfig | None = None,
    upstream: UpstreamClient | None = None,
) -> Response:
    """Handle the upstream provider's redirect back to the broker.

    GET /callback/upstream?code=...&state=...

    Returns:
        Redirect to the client in the shape its dialect expects
    """
    config = config or _get_broker_config()
    if config is None:
        return _missing_config_response()
    if store is None:
        store = get_authorization_code_store()
    upstream = upstream or UpstreamClient(config)

    code = request.query_params.get("code")
    state = request.query_params.get("state")
    error = request.query_params.get("error")

    if error:
        error_description = request.query_params.get("error_description")
        logger.warning(f"Upstream authorization error: {error}")
        audit(AuditAction.UPSTREAM_CALLBACK, AuditResult.FAILURE, error_code=error)
        return error_response(error, error_description or "Upstream authorization failed", 400)

    if not code:
        return error_response("invalid_request", "code is required", 400)

    if not state:
        return error_response("invalid_request", "state is required (OAuth 2.1)", 400)

    continuation = decode_state(state)
    if continuation is None or not continuation.client_redirect_uri or not continuation.broker_code:
        audit(AuditAction.UPSTREAM_CALLBACK, AuditResult.FAILURE, error_code="invalid_state")
        return error_response("invalid_state", "state parameter could not be decoded", 400)

    base_url = _base_url(request, config)
    return await _relay_to_client(
        continuation,
        code,
        f"{base_url}{UPSTREAM_CALLBACK_PATH}",
        store,
        upstream,
    )


def _decode_mcp_state(state: str) -> tuple[str, str] | None:
    """Decode the ``{"mcpState", "originalRedirectUri"}`` shape used by CLI proxies."""
    try:
        data = json.loads(state)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    mcp_state = data.get("mcpState")
    original_redirect_uri = data.get("originalRedirectUri")
    if not isinstance(mcp_state, str) or not isinstance(original_redirect_uri, str):
        return None
    if not is_loopback_uri(original_redirect_uri):
        return None
    return mcp_state, original_redirect_uri


@handle_endpoint_errors("oauth callback")
async def legacy_callback(
    request: Request,
    store: AuthorizationCodeStore | None = None,
    config: BrokerConfig | None = None,
    upstream: UpstreamClient | None = None,
) -> Response:
    """Handle callbacks registered against the older ``/oauth/callback`` URI.

    GET|POST /oauth/callback?code=...&state=...

    Returns:
        Redirect to the client, or a JSON acknowledgement when no state
        was sent
    """
    config = config or _get_broker_config()
    if config is None:
        return _missing_config_response()
    if store is None:
        store = get_authorization_code_store()
    upstream = upstream or UpstreamClient(config)

    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})

    code = params.get("code")
    state = params.get("state")
    error = params.get("error")

    if error:
        logger.warning(f"OAuth callback error: {error}")
        return error_response(error, params.get("error_description") or "Authorization failed", 400)

    if not code:
        return error_response("invalid_request", "code is required", 400)

    if state:
        continuation = decode_state(state)
        if continuation is not None and continuation.broker_code and continuation.client_redirect_uri:
            base_url = _base_url(request, config)
            return await _relay_to_client(
                continuation,
                code,
                f"{base_url}{LEGACY_CALLBACK_PATH}",
                store,
                upstream,
            )

        mcp_state = _decode_mcp_state(state)
        if mcp_state is not None:
            original_state, original_redirect_uri = mcp_state
            logger.info("Forwarding authorization code to CLI proxy loopback listener")
            forward_params = {"code": code}
            if original_state:
                forward_params["state"] = original_state
            return RedirectResponse(
                url=append_query_params(original_redirect_uri, forward_params),
                status_code=302,
            )

        audit(AuditAction.UPSTREAM_CALLBACK, AuditResult.FAILURE, error_code="invalid_state")
        return error_response("invalid_state", "state parameter could not be decoded", 400)

    logger.info("OAuth callback received without a client to forward to")
    return json_response(
        {
            "code": code,
            "state": state,
            "status": "authorization_successful",
            "message": "Authorization code received. Exchange it at the token endpoint.",
        }
    )


async def _parse_token_request(request: Request) -> dict[str, Any] | None:
    # OAuth token requests use application/x-www-form-urlencoded;
    # JSON is accepted for convenience
    content_type = request.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        try:
            body = await request.json()
        except (json.JSONDecodeError, ValueError):
            return None
        if not isinstance(body, dict):
            return None
        return {k: v for k, v in body.items() if isinstance(v, str)}

    form_data = await request.form()
    return {k: v for k, v in form_data.items() if isinstance(v, str)}


def _client_id_from_basic_auth(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Basic "):
        return None
    try:
        decoded = base64.b64decode(auth_header[6:]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        logger.debug(f"Failed to parse Authorization header: {type(e).__name__}")
        return None
    client_id, _, _ = decoded.partition(":")
    return urllib.parse.unquote(client_id) or None


def _deny(error: str, description: str, client_id: str | None, status_code: int = 400) -> JSONResponse:
    logger.warning(f"Token request denied: {error} ({description})")
    audit(AuditAction.TOKEN_DENIED, AuditResult.DENIED, client_id=client_id, error_code=error)
    return error_response(error, description, status_code)


@handle_endpoint_errors("token")
async def token(
    request: Request,
    store: AuthorizationCodeStore | None = None,
    config: BrokerConfig | None = None,
    upstream: UpstreamClient | None = None,
) -> Response:
    """Handle the OAuth 2.1 token exchange.

    POST /token

    Request body (form or JSON):
        {
            "grant_type": "authorization_code",
            "code": "...",
            "redirect_uri": "...",
            "client_id": "...",
            "code_verifier": "..."
        }

    Returns:
        Token response with the upstream ID token as access_token
    """
    config = config or _get_broker_config()
    if config is None:
        return _missing_config_response()
    if store is None:
        store = get_authorization_code_store()

    body = await _parse_token_request(request)
    if body is None:
        return error_response("invalid_request", "Invalid JSON in request body", 400)

    grant_type = body.get("grant_type")
    code = body.get("code")
    redirect_uri = body.get("redirect_uri")
    client_id = body.get("client_id") or _client_id_from_basic_auth(request)
    code_verifier = body.get("code_verifier")

    if grant_type != "authorization_code":
        return _deny(
            "unsupported_grant_type",
            f"grant_type '{grant_type}' is not supported",
            client_id,
        )

    if not code:
        return _deny("invalid_request", "code is required", client_id)

    if not redirect_uri:
        return _deny("invalid_request", "redirect_uri is required", client_id)

    snapshot = store.get(code)
    if snapshot is None:
        return _deny("invalid_grant", "Invalid or expired authorization code", client_id)

    if snapshot.is_expired(store.now()):
        store.delete(code)
        return _deny("invalid_grant", "Authorization code has expired", client_id)

    if not redirect_uris_match(snapshot.redirect_uri, redirect_uri):
        return _deny("invalid_grant", "redirect_uri does not match the authorization request", client_id)

    if snapshot.client_id and client_id and snapshot.client_id != client_id:
        return _deny("invalid_client", "client_id does not match the authorization request", client_id)

    if snapshot.code_challenge:
        if not code_verifier:
            return _deny("invalid_request", "code_verifier is required (PKCE)", client_id)
        if not verify_code_verifier(code_verifier, snapshot.code_challenge):
            return _deny("invalid_grant", "Invalid code_verifier", client_id)

    # Removing the grant is the redemption; of concurrent redeemers only one gets it
    grant = store.delete(code)
    if grant is None:
        return _deny("invalid_grant", "Authorization code has already been used", client_id)

    tokens = grant.upstream_tokens
    if tokens is None:
        logger.info("Grant has no upstream tokens, exchanging code with upstream directly")
        base_url = _base_url(request, config)
        upstream = upstream or UpstreamClient(config)
        try:
            tokens = await upstream.exchange_code(code, f"{base_url}{UPSTREAM_CALLBACK_PATH}")
        except UpstreamExchangeError:
            audit(
                AuditAction.TOKEN_DENIED,
                AuditResult.ERROR,
                client_id=grant.client_id,
                error_code="server_error",
            )
            return error_response(
                "server_error", "Failed to exchange authorization code", 500
            )

    access_token = tokens.id_token or tokens.access_token
    if not access_token:
        logger.error(f"Upstream returned no usable token: {tokens.describe()}")
        return error_response("server_error", "Upstream provider returned no token", 500)

    response_data: dict[str, Any] = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": tokens.expires_in or DEFAULT_EXPIRES_IN,
        "scope": grant.scope or UPSTREAM_SCOPE,
    }
    if tokens.refresh_token:
        response_data["refresh_token"] = tokens.refresh_token
    if tokens.id_token:
        response_data["id_token"] = tokens.id_token

    logger.info(f"Issued tokens for client {grant.client_id}: {tokens.describe()}")
    audit(
        AuditAction.TOKEN_ISSUED,
        client_id=grant.client_id,
        client_dialect=classify_redirect(grant.redirect_uri).value,
        user_ip=client_ip(request),
    )
    return json_response(response_data, methods="POST, OPTIONS")


@handle_endpoint_errors("register")
async def register_client(request: Request, config: BrokerConfig | None = None) -> Response:
    """Handle OAuth 2.0 Dynamic Client Registration (RFC 7591).

    POST /register

    The broker has a single upstream client, so every registration receives
    the same credentials. The client's loopback redirect URIs are echoed back
    so that CLI proxies find the port they listen on.

    Returns:
        Client registration response (201)
    """
    config = config or _get_broker_config()
    if config is None:
        return _missing_config_response()

    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        return error_response("invalid_request", "Invalid client registration request", 400)

    if not isinstance(body, dict):
        return error_response("invalid_request", "Invalid client registration request", 400)

    client_redirect_uris = body.get("redirect_uris") or []
    if not isinstance(client_redirect_uris, list):
        return error_response("invalid_request", "redirect_uris must be a list", 400)

    base_url = _base_url(request, config)
    redirect_uris = [
        f"{base_url}{UPSTREAM_CALLBACK_PATH}",
        f"{base_url}{LEGACY_CALLBACK_PATH}",
    ]
    redirect_uris.extend(
        uri for uri in client_redirect_uris if isinstance(uri, str) and is_loopback_uri(uri)
    )

    client_name = body.get("client_name") or "MCP Client"
    registration: dict[str, Any] = {
        "client_id": config.client_id,
        "client_secret": config.client_secret,
        "client_id_issued_at": int(time.time()),
        "client_secret_expires_at": 0,
        "redirect_uris": redirect_uris,
        "grant_types": ["authorization_code"],
        "response_types": ["code"],
        "token_endpoint_auth_method": "client_secret_post",
        "scope": UPSTREAM_SCOPE,
        "application_type": "native",
        "client_name": client_name,
        "authorization_endpoint": f"{base_url}{AUTHORIZE_PATH}",
        "token_endpoint": f"{base_url}{TOKEN_PATH}",
        "userinfo_endpoint": UPSTREAM_USERINFO_URL,
    }
    if body.get("client_uri"):
        registration["client_uri"] = body["client_uri"]

    logger.info(
        f"Client registration: client_name={client_name}, "
        f"redirect_uris={len(redirect_uris)}"
    )
    audit(
        AuditAction.CLIENT_REGISTERED,
        client_id=config.client_id,
        user_ip=client_ip(request),
        metadata={"client_name": client_name},
    )
    return json_response(registration, status_code=201, methods="POST, OPTIONS")


async def oauth_metadata(request: Request) -> JSONResponse:
    """OAuth 2.0 Authorization Server Metadata endpoint (RFC 8414).

    Args:
        request: The HTTP request.

    Returns:
        JSONResponse with authorization server metadata.
    """
    base_url = _base_url(request, _get_broker_config())

    metadata = {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}{AUTHORIZE_PATH}",
        "token_endpoint": f"{base_url}{TOKEN_PATH}",
        "registration_endpoint": f"{base_url}{REGISTER_PATH}",
        "scopes_supported": SUPPORTED_SCOPES,
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "grant_types_supported": ["authorization_code"],
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": [
            "client_secret_post",
            "client_secret_basic",
            "none",
        ],
        "registration_endpoint_auth_methods_supported": ["none"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": ["RS256"],
        "claims_supported": [
            "sub",
            "email",
            "email_verified",
            "name",
            "picture",
            "aud",
            "iss",
            "iat",
            "exp",
        ],
        "userinfo_endpoint": UPSTREAM_USERINFO_URL,
        "jwks_uri": UPSTREAM_JWKS_URL,
        "oauth_compliance_version": "OAuth 2.1",
    }
    return json_response(metadata, methods="GET, OPTIONS", cache_control="max-age=3600")


async def protected_resource_metadata(request: Request) -> JSONResponse:
    """OAuth 2.0 Protected Resource Metadata endpoint (RFC 9728).

    Tells MCP clients that the MCP endpoint is protected by this broker.
    """
    base_url = _base_url(request, _get_broker_config())

    metadata = {
        "resource": f"{base_url}{MCP_PATH}",
        "authorization_servers": [base_url],
        "authorization_server": f"{base_url}{AUTHORIZATION_SERVER_METADATA_PATH}",
        "authorization_endpoint": f"{base_url}{AUTHORIZE_PATH}",
        "token_endpoint": f"{base_url}{TOKEN_PATH}",
        "registration_endpoint": f"{base_url}{REGISTER_PATH}",
        "scopes_supported": SUPPORTED_SCOPES,
        "bearer_methods_supported": ["header"],
        "resource_name": "MCP OAuth Broker",
    }
    return json_response(metadata, methods="GET, OPTIONS", cache_control="max-age=3600")
