"""
Opaque `state` codec.

The request context is serialized to JSON and base64url-encoded without
padding, so the token survives query strings, percent-encoding and providers
that re-encode it. Decoding tolerates the usual damage done in transit:
standard-alphabet base64, stripped padding and `+` turned into spaces by
form decoding.
"""

import base64
import binascii
import json
from typing import Any, Mapping, Optional

from ..errors import InternalServerError, InvalidRequestError


def encode(context: Optional[Mapping[str, Any]] = None) -> str:
    try:
        raw = json.dumps(dict(context or {}), separators=(",", ":"), sort_keys=True)
    except (TypeError, ValueError) as e:
        raise InternalServerError("Failed to encode 'state'. The context must only contain JSON-serializable values.", [e])
    return base64.urlsafe_b64encode(raw.encode("utf-8")).rstrip(b"=").decode("ascii")


def decode(token: Optional[str]) -> dict[str, Any]:
    error_msg = f"Failed to decode 'state' query parameter (value: {token})"
    if not token:
        raise InvalidRequestError(error_msg)

    normalized = token.strip().replace(" ", "+").translate(str.maketrans("+/", "-_")).rstrip("=")
    normalized += "=" * (-len(normalized) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(normalized.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidRequestError(error_msg, [e])

    if not isinstance(data, dict):
        raise InvalidRequestError(f"{error_msg}. The decoded value is not an object.")
    return data
