"""Verification of upstream ID tokens presented as bearer tokens.

Clients call the MCP endpoint with the upstream ID token the broker handed
them. The token is a JWT signed by the upstream provider; it is verified
against the provider's published JWKS, with the broker's client id as the
expected audience.
"""

import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import jwt
from cachetools import TTLCache
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from mcp_oauth_broker.config import UPSTREAM_ISSUERS, UPSTREAM_JWKS_URL, BrokerConfig

logger = logging.getLogger("mcp-oauth-broker.utils.id_token")

JWKS_CACHE_TTL_SECONDS = 3600  # Google rotates keys roughly daily
VALIDATION_CACHE_TTL_SECONDS = 300
VALIDATION_CACHE_MAXSIZE = 1000

# Generic error messages to prevent information leakage
ERROR_INVALID_TOKEN = "Invalid token"
ERROR_TOKEN_EXPIRED = "Token has expired"
ERROR_INVALID_ISSUER = "Invalid token issuer"
ERROR_INVALID_AUDIENCE = "Invalid token audience"
ERROR_INVALID_SIGNATURE = "Invalid token signature"
ERROR_TOKEN_VALIDATION_FAILED = "Token validation failed"


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _b64url_to_int(value: str) -> int:
    padded = value + "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), byteorder="big")


@dataclass
class Identity:
    """The authenticated user behind a bearer token."""

    subject: str
    email: Optional[str] = None
    email_verified: bool = False
    name: Optional[str] = None
    picture: Optional[str] = None

    @classmethod
    def from_token_payload(cls, payload: Dict[str, Any]) -> "Identity":
        """Extract identity claims from a verified ID token payload."""
        return cls(
            subject=str(payload.get("sub", "")),
            email=payload.get("email"),
            email_verified=bool(payload.get("email_verified", False)),
            name=payload.get("name"),
            picture=payload.get("picture"),
        )

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.subject


ValidationResult = tuple[bool, Optional[str], Optional[Identity]]


class IdTokenValidator:
    """Validates upstream ID tokens using the provider's JWKS."""

    def __init__(
        self,
        client_id: str,
        jwks_url: str = UPSTREAM_JWKS_URL,
        issuers: tuple[str, ...] = UPSTREAM_ISSUERS,
        http_timeout: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.jwks_url = jwks_url
        self.issuers = issuers
        self.http_timeout = http_timeout
        self._transport = transport
        self.jwks_cache: TTLCache[str, Dict[str, Any]] = TTLCache(
            maxsize=1, ttl=JWKS_CACHE_TTL_SECONDS
        )
        # Keyed by token hash; never holds the raw token
        self.validation_cache: TTLCache[str, ValidationResult] = TTLCache(
            maxsize=VALIDATION_CACHE_MAXSIZE, ttl=VALIDATION_CACHE_TTL_SECONDS
        )

    async def _fetch_jwks(self) -> Dict[str, Any]:
        """Fetch the provider's JWKS, using the cached copy when fresh.

        Raises:
            ValueError: If the JWKS cannot be fetched or is malformed
        """
        if "jwks" in self.jwks_cache:
            return self.jwks_cache["jwks"]

        try:
            logger.debug(f"Fetching JWKS from {self.jwks_url}")
            async with httpx.AsyncClient(
                timeout=self.http_timeout, transport=self._transport
            ) as client:
                response = await client.get(self.jwks_url)
                response.raise_for_status()
                jwks = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Failed to fetch JWKS: HTTP {e.response.status_code}")
            raise ValueError(f"Failed to fetch JWKS: HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Failed to fetch JWKS: {type(e).__name__}")
            raise ValueError(f"Failed to fetch JWKS: {type(e).__name__}") from e
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in JWKS response")
            raise ValueError("Invalid JSON in JWKS response") from e

        if not isinstance(jwks, dict) or "keys" not in jwks:
            raise ValueError("Invalid JWKS structure")

        self.jwks_cache["jwks"] = jwks
        return jwks

    def _get_signing_key(self, jwks: Dict[str, Any], kid: str) -> str:
        """Build a PEM public key for ``kid`` from the JWKS.

        Raises:
            ValueError: If no usable key with that id exists
        """
        for key in jwks.get("keys", []):
            if key.get("kid") != kid:
                continue
            n = key.get("n")
            if not n:
                raise ValueError("Missing modulus in JWKS key")
            try:
                public_key = rsa.RSAPublicNumbers(
                    _b64url_to_int(key.get("e", "AQAB")), _b64url_to_int(n)
                ).public_key()
            except ValueError as e:
                logger.error(f"Failed to construct RSA public key: {e}")
                raise ValueError(f"Invalid RSA key components: {e}") from e
            pem = public_key.public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            return pem.decode("utf-8")

        raise ValueError(f"Unable to find signing key with kid: {kid}")

    def _cache_failure(self, token_hash: str, error_msg: str) -> ValidationResult:
        result: ValidationResult = (False, error_msg, None)
        self.validation_cache[token_hash] = result
        return result

    async def validate_token(self, token: str) -> ValidationResult:
        """Validate an upstream ID token.

        Args:
            token: Bearer token value (without the 'Bearer ' prefix)

        Returns:
            Tuple of (is_valid, error_message, identity)
        """
        if not token or not isinstance(token, str) or token.count(".") != 2:
            return False, ERROR_INVALID_TOKEN, None

        token_hash = _hash_token(token)
        if token_hash in self.validation_cache:
            logger.debug("Using cached validation result")
            return self.validation_cache[token_hash]

        try:
            header = jwt.get_unverified_header(token)
            kid = header.get("kid")
            if not kid:
                return self._cache_failure(token_hash, ERROR_INVALID_TOKEN)

            jwks = await self._fetch_jwks()
            signing_key = self._get_signing_key(jwks, kid)

            payload = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                audience=self.client_id,
                options={"require": ["exp", "iat", "aud", "iss", "sub"]},
            )
            # PyJWT only accepts a single issuer string on older releases
            if payload.get("iss") not in self.issuers:
                raise jwt.InvalidIssuerError("Unexpected issuer")
        except jwt.ExpiredSignatureError:
            return self._cache_failure(token_hash, ERROR_TOKEN_EXPIRED)
        except jwt.InvalidIssuerError:
            logger.warning("ID token has an unexpected issuer")
            return self._cache_failure(token_hash, ERROR_INVALID_ISSUER)
        except jwt.InvalidAudienceError:
            logger.warning("ID token was issued for a different client")
            return self._cache_failure(token_hash, ERROR_INVALID_AUDIENCE)
        except jwt.InvalidSignatureError:
            return self._cache_failure(token_hash, ERROR_INVALID_SIGNATURE)
        except jwt.PyJWTError as e:
            logger.debug(f"Failed to decode token: {type(e).__name__}")
            return self._cache_failure(token_hash, ERROR_INVALID_TOKEN)
        except ValueError as e:
            # JWKS unavailable or key missing; not cached so a retry can recover
            logger.error(f"Token validation failed: {e}")
            return False, ERROR_TOKEN_VALIDATION_FAILED, None

        identity = Identity.from_token_payload(payload)
        logger.debug(f"Validated ID token for subject {identity.subject}")
        result: ValidationResult = (True, None, identity)
        self.validation_cache[token_hash] = result
        return result


# Global validator instance
_id_token_validator: Optional[IdTokenValidator] = None


def get_id_token_validator() -> Optional[IdTokenValidator]:
    """Get the global ID token validator.

    Returns:
        IdTokenValidator if upstream credentials are configured, None otherwise
    """
    global _id_token_validator

    if _id_token_validator is not None:
        return _id_token_validator

    config = BrokerConfig.from_env()
    if config:
        _id_token_validator = IdTokenValidator(
            client_id=config.client_id, http_timeout=config.upstream_timeout
        )
        logger.debug("ID token validator initialized")

    return _id_token_validator


async def validate_id_token(token: str) -> ValidationResult:
    """Validate a bearer ID token with the global validator.

    Returns:
        Tuple of (is_valid, error_message, identity)
    """
    validator = get_id_token_validator()
    if not validator:
        return False, "Upstream OAuth credentials are not configured", None

    return await validator.validate_token(token)
