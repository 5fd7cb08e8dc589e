"""Continuation state carried through the upstream provider's redirect.

The broker cannot keep a per-browser session across the user's detour through
the upstream consent screen, so everything the callback needs is packed into
the ``state`` parameter of the upstream authorization request.

Wire format: compact JSON, base64url encoded without padding. The alphabet is
``[A-Za-z0-9_-]`` so the value survives query-string handling by the provider
and by browsers untouched. One legacy shape (the same JSON object sent without
base64 wrapping) is still accepted on decode.
"""

import base64
import binascii
import json
import logging
import urllib.parse
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger("mcp-oauth-broker.utils.state")

# JSON keys on the wire, shared by the canonical and legacy shapes
_KEY_BROKER_CODE = "authCode"
_KEY_CLIENT_STATE = "originalState"
_KEY_CLIENT_REDIRECT_URI = "originalRedirectUri"
_KEY_RESOURCE = "resource"


class StateDecodeError(ValueError):
    """Raised when a state value cannot be decoded into a ContinuationState."""


@dataclass(frozen=True)
class ContinuationState:
    """Context recovered by the upstream callback."""

    broker_code: str
    client_state: str
    client_redirect_uri: str
    resource: str

    def to_dict(self) -> dict[str, str]:
        return {
            _KEY_BROKER_CODE: self.broker_code,
            _KEY_CLIENT_STATE: self.client_state,
            _KEY_CLIENT_REDIRECT_URI: self.client_redirect_uri,
            _KEY_RESOURCE: self.resource,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ContinuationState":
        """Build a ContinuationState from a decoded JSON object.

        Raises:
            StateDecodeError: If the object is not a mapping or a field has
                the wrong type
        """
        if not isinstance(data, dict):
            raise StateDecodeError("State payload is not a JSON object")

        values = {}
        for key in (_KEY_BROKER_CODE, _KEY_CLIENT_STATE, _KEY_CLIENT_REDIRECT_URI, _KEY_RESOURCE):
            value = data.get(key) or ""
            if not isinstance(value, str):
                raise StateDecodeError(f"State field '{key}' must be a string")
            values[key] = value

        return cls(
            broker_code=values[_KEY_BROKER_CODE],
            client_state=values[_KEY_CLIENT_STATE],
            client_redirect_uri=values[_KEY_CLIENT_REDIRECT_URI],
            resource=values[_KEY_RESOURCE],
        )


def encode_state(state: ContinuationState) -> str:
    """Encode a ContinuationState for the upstream ``state`` parameter."""
    payload = json.dumps(state.to_dict(), separators=(",", ":"), ensure_ascii=False)
    encoded = base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")
    return encoded.rstrip("=")


def decode_canonical_state(value: str) -> ContinuationState:
    """Decode the canonical base64url form.

    Raises:
        StateDecodeError: If the value is not base64url-wrapped JSON
    """
    # A proxy or browser may have percent-escaped the value a second time
    if "%" in value:
        value = urllib.parse.unquote(value)
    value = value.strip()

    padded = value + "=" * (-len(value) % 4)
    try:
        raw = base64.b64decode(padded, altchars=b"-_", validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StateDecodeError(f"Not a base64url JSON state: {e}") from e

    return ContinuationState.from_dict(data)


def decode_legacy_state(value: str) -> ContinuationState:
    """Decode the legacy shape: the same JSON object without base64 wrapping.

    Raises:
        StateDecodeError: If the value is not a JSON object
    """
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise StateDecodeError(f"Not a JSON state: {e}") from e

    return ContinuationState.from_dict(data)


# Decoders in priority order
STATE_DECODERS: tuple[Callable[[str], ContinuationState], ...] = (
    decode_canonical_state,
    decode_legacy_state,
)


def decode_state(value: Optional[str]) -> Optional[ContinuationState]:
    """Decode a state value using each known decoder in turn.

    Args:
        value: Raw ``state`` query parameter from the upstream redirect

    Returns:
        The decoded ContinuationState, or None if no decoder accepts the value
    """
    if not value:
        return None

    for decoder in STATE_DECODERS:
        try:
            state = decoder(value)
        except StateDecodeError as e:
            logger.debug(f"State decoder {decoder.__name__} rejected value: {e}")
            continue
        logger.debug(f"State decoded by {decoder.__name__}")
        return state

    logger.warning(f"Could not decode state parameter (length={len(value)})")
    return None
