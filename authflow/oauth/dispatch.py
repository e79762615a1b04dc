"""
Token dispatch policy.

Decides which artifacts a `response_type` asks for, mints them concurrently
through the handler set and assembles the final redirect.

| member     | event                               | precondition         |
|------------|-------------------------------------|----------------------|
| `token`    | generate_openid_access_token        |                      |
| `code`     | generate_openid_authorization_code  |                      |
| `id_token` | generate_openid_id_token            | `openid` in scopes   |
"""

import asyncio
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from ..errors import InternalServerError, InvalidRequestError, catch_errors, wrap_errors
from ..logging_util import get_logger
from .handlers import HandlerSet
from .models import IssuedToken, TokenBundle, TokenRequest
from .params import OPENID_SCOPE, join_things


logger = get_logger(__name__)

ERROR_MSG = "Failed to generate tokens"


async def _empty() -> None:
    return None


async def _issue(handlers: HandlerSet, event: str, payload: dict) -> Optional[IssuedToken]:
    raw = await handlers.exec(event, payload)
    if raw is None:
        return None
    if isinstance(raw, str):
        return IssuedToken(token=raw)
    return IssuedToken.model_validate(raw)


@catch_errors
async def dispatch_tokens(
    handlers: HandlerSet,
    response_types: Iterable[str],
    request: TokenRequest,
) -> TokenBundle:
    response_types = set(response_types)
    scopes = request.scopes or []

    request_code = "code" in response_types
    request_access_token = "token" in response_types
    request_needs_id_token = "id_token" in response_types
    request_id_token = request_needs_id_token and OPENID_SCOPE in scopes

    if request_needs_id_token and not request_id_token:
        raise InvalidRequestError(f"{ERROR_MSG}. response_type 'id_token' is invalid without the 'openid' scope.")

    required = []
    if request_access_token:
        required.append("generate_openid_access_token")
    if request_code:
        required.append("generate_openid_authorization_code")
    if request_id_token:
        required.append("generate_openid_id_token")
    handlers.require(required, ERROR_MSG)

    base = request.model_dump(include={"client_id", "user_id", "audiences", "scopes", "state"})
    code_payload = {**base, **request.model_dump(include={"code_challenge", "code_challenge_method", "redirect_uri", "nonce"})}
    id_token_payload = {**base, "nonce": request.nonce}

    logger.debug(
        f"Dispatching token generation for client_id: {request.client_id} "
        f"(access_token={request_access_token}, code={request_code}, id_token={request_id_token})"
    )
    access_token, code, id_token = await asyncio.gather(
        _issue(handlers, "generate_openid_access_token", base) if request_access_token else _empty(),
        _issue(handlers, "generate_openid_authorization_code", code_payload) if request_code else _empty(),
        _issue(handlers, "generate_openid_id_token", id_token_payload) if request_id_token else _empty(),
        return_exceptions=True,
    )

    failures = [r for r in (access_token, code, id_token) if isinstance(r, BaseException)]
    if failures:
        raise wrap_errors(ERROR_MSG, failures)

    bundle = TokenBundle(
        code=code.token if code else None,
        access_token=access_token.token if access_token else None,
        id_token=id_token.token if id_token else None,
        expires_in=access_token.expires_in if access_token and access_token.token else None,
        token_type="bearer" if access_token and access_token.token else None,
        scope=join_things(scopes),
    )

    if bundle.empty and request_needs_id_token:
        raise InvalidRequestError(f"{ERROR_MSG}. response_type 'id_token' is invalid without the 'openid' scope.")

    return bundle


def build_url_with_params(base_uri: str, params: dict[str, str | None], keep_query: bool = True) -> str:
    """
    Append or merge query parameters into base_uri.
    With keep_query=False the existing query string is dropped first.
    """
    url = urlparse(base_uri)
    query = dict(parse_qsl(url.query)) if keep_query else {}
    query.update({k: v for k, v in params.items() if v is not None})
    new_query = urlencode(query)
    new_url = url._replace(query=new_query)
    return urlunparse(new_url)


def build_redirect_uri(
    redirect_uri: str,
    bundle: Optional[TokenBundle],
    state: Optional[str] = None,
    keep_query: bool = False,
) -> str:
    """Final client redirect carrying only the artifacts that were produced."""
    bundle = bundle or TokenBundle()
    try:
        return build_url_with_params(redirect_uri, {
            "code": bundle.code or None,
            "token": bundle.access_token or None,
            "id_token": bundle.id_token or None,
            "state": state or None,
        }, keep_query=keep_query)
    except Exception as e:
        raise InternalServerError(f"Failed to build redirect URI from {redirect_uri}", [e])
