"""
Normalizers and validators for OAuth2/OIDC request parameters.

All validators raise a typed OAuth2Error on failure and return None (or the
normalized value) on success.
"""

import re
import time
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import unquote, urlparse

from ..errors import (
    InternalServerError,
    InvalidClaimError,
    InvalidClientError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    UnauthorizedClientError,
)
from . import state as state_codec
from .models import Claims, ResponseTypes


RESPONSE_TYPES = ("code", "id_token", "token")
CODE_CHALLENGE_METHODS = ("plain", "S256")
OPENID_SCOPE = "openid"

_S256_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]{43}$")
_PLAIN_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def parse_things(raw: Optional[str]) -> list[str]:
    """Splits a URL-encoded, space or '+' delimited value into its non-empty tokens."""
    if not raw:
        return []
    things = []
    for part in unquote(raw).split(" "):
        things.extend(t for t in part.split("+") if t)
    return things


def join_things(things: Optional[Iterable[Any]]) -> str:
    return " ".join(str(t) for t in (things or []) if t)


def parse_response_type(raw: Optional[str]) -> ResponseTypes:
    """
    Converts `response_type` (e.g. 'code+id_token') into its canonical tuple of types.
    Order and duplicates in the raw value do not matter.
    """
    error_msg = "Invalid 'response_type'"
    if not raw:
        raise InvalidRequestError(f"{error_msg}. 'response_type' is required.")

    types = parse_things(raw)
    if not types:
        raise InvalidRequestError(f"{error_msg}. No value found in 'response_type'.")

    if any(t not in RESPONSE_TYPES for t in types):
        raise InvalidRequestError(f"{error_msg}. The value '{raw}' is not a supported OIDC 'response_type'.")

    return tuple(t for t in RESPONSE_TYPES if t in types)


def canonical_response_type(raw: Optional[str]) -> Optional[str]:
    """Reorders a raw response_type so equivalent values encode identically. Unknown members are kept last."""
    types = parse_things(raw)
    if not types:
        return raw
    known = [t for t in RESPONSE_TYPES if t in types]
    unknown = sorted(set(t for t in types if t not in RESPONSE_TYPES))
    return "+".join(known + unknown)


def _plural(word: str, items: list[str]) -> str:
    return f"{word}{'s' if len(items) > 1 else ''}"


def verify_scopes(scopes: Optional[Iterable[str]], allowed: Optional[Iterable[str]]) -> None:
    """Every requested scope except 'openid' must be allowed."""
    allowed = set(allowed or [])
    invalid = [s for s in (scopes or []) if s != OPENID_SCOPE and s not in allowed]
    if invalid:
        raise InvalidScopeError(f"Access to {_plural('scope', invalid)} {', '.join(invalid)} is not allowed.")


def verify_audiences(audiences: Optional[Iterable[str]], allowed: Optional[Iterable[str]]) -> None:
    allowed = set(allowed or [])
    invalid = [a for a in (audiences or []) if a not in allowed]
    if invalid:
        raise UnauthorizedClientError(f"Access to {_plural('audience', invalid)} {', '.join(invalid)} is not allowed.")


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def verify_not_expired(claims: Optional[Mapping[str, Any] | Claims], now: Optional[float] = None) -> None:
    """`exp` is in seconds. `now` defaults to the current time in seconds."""
    if isinstance(claims, Claims):
        claims = claims.model_dump()
    exp = _as_number((claims or {}).get("exp"))
    if not exp:
        raise InvalidClaimError("Claim is missing required 'exp' field")

    now_ms = (time.time() if now is None else now) * 1000
    if now_ms > exp * 1000:
        raise InvalidTokenError("Token or code has expired")


def verify_client_linkage(client_id: Any, user_id: Any, user_client_ids: Optional[Iterable[Any]]) -> None:
    user_client_ids = list(user_client_ids or [])
    if not user_client_ids:
        raise InternalServerError(f"Corrupted data. Failed to associate client_ids with user_id {user_id}.")

    if not any(str(cid) == str(client_id) for cid in user_client_ids):
        raise InvalidClientError("Invalid client_id")


def verify_code_challenge(code_challenge: Optional[str], code_challenge_method: Optional[str]) -> None:
    """Both PKCE parameters are optional, but one cannot be specified without the other."""
    error_msg = "Invalid PKCE parameters"
    if not code_challenge and not code_challenge_method:
        return
    if not code_challenge:
        raise InvalidRequestError(f"{error_msg}. 'code_challenge_method' is specified without 'code_challenge'.")
    if not code_challenge_method:
        raise InvalidRequestError(f"{error_msg}. 'code_challenge' is specified without 'code_challenge_method'.")
    if code_challenge_method not in CODE_CHALLENGE_METHODS:
        raise InvalidRequestError(
            f"{error_msg}. 'code_challenge_method' {code_challenge_method} is not supported. "
            f"Valid values are: {', '.join(CODE_CHALLENGE_METHODS)}."
        )

    pattern = _S256_CHALLENGE_RE if code_challenge_method == "S256" else _PLAIN_CHALLENGE_RE
    if not pattern.match(code_challenge):
        raise InvalidRequestError(f"{error_msg}. 'code_challenge' is malformed for method {code_challenge_method}.")


def is_valid_url(value: Any) -> bool:
    if not value or not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def redirect_uri_allowed(redirect_uri: str, redirect_uris: Optional[Iterable[str]]) -> bool:
    """
    Prefix match in either direction. An empty allowlist allows everything.

    This is looser than the exact match RFC 6749 recommends and is kept for
    compatibility with clients registered with a base URL.
    """
    redirect_uris = [u for u in (redirect_uris or []) if u]
    if not redirect_uris:
        return True
    return any(redirect_uri.startswith(uri) or uri.startswith(redirect_uri) for uri in redirect_uris)


def to_oidc_claims(
    *,
    iss: Optional[str],
    client_id: Any,
    user_id: Any,
    audiences: Optional[Iterable[str]] = None,
    scopes: Optional[Iterable[str]] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Claims:
    base = {
        "iss": iss,
        "sub": user_id,
        "aud": join_things(audiences),
        "client_id": client_id,
        "scope": join_things(scopes),
    }
    return Claims(**{**base, **dict(extra or {})})


def encode_state(context: Optional[Mapping[str, Any]] = None) -> str:
    return state_codec.encode(context)


def decode_state(token: Optional[str]) -> dict[str, Any]:
    return state_codec.decode(token)
