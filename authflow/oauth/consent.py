"""
Local consent flow.

    REQUESTED -> CODE_ISSUED -> CONSENT_RECEIVED -> LINKED -> TOKENS_ISSUED -> REDIRECTED

`handle_consent_request` covers the first hop: the authorization request is
validated, parked behind an opaque auth request code and the user-agent is
sent to the consent page. The consent page calls back with a consent code
and `handle_consent_response` runs the remaining hops. Both return a Result
whose value is the URL to redirect to. A failure at any hop aborts the flow
and no redirect is produced.
"""

import time
from typing import Any, Mapping, Optional

from ..errors import InternalServerError, InvalidRequestError, InvalidTokenError, catch_errors, wrap_errors
from ..logging_util import TRACE, get_logger
from .dispatch import build_redirect_uri, build_url_with_params, dispatch_tokens
from .handlers import HandlerSet, as_dict
from .models import AuthorizationRequest, ConsentClaims, FlowState, TokenRequest, ValidatedUser
from .validation import validate_authorization_request


logger = get_logger(__name__)


def _transition(client_id: Any, source: FlowState, target: FlowState) -> None:
    logger.debug(f"Authorization flow for client_id {client_id}: {source.value} -> {target.value}")


@catch_errors
async def handle_consent_request(handlers: HandlerSet, request: AuthorizationRequest | Mapping[str, Any]) -> str:
    """
    Validates the authorization request and returns the consent page URL,
    carrying the auth request code as its `code` query parameter.
    """
    error_msg = "Failed to authorize client_id"
    if not isinstance(request, AuthorizationRequest):
        request = AuthorizationRequest.model_validate(dict(request))

    logger.log(TRACE, f"Request to authorize client_id {request.client_id}")

    validation = await validate_authorization_request(handlers, request)
    if not validation.ok:
        raise wrap_errors(error_msg, validation.errors)

    handlers.require("generate_auth_request_code", error_msg)

    claims = request.model_dump()
    try:
        code = await handlers.exec("generate_auth_request_code", {"claims": claims})
    except Exception as e:
        raise wrap_errors(error_msg, e)
    if not code:
        raise InternalServerError(f"{error_msg}. The 'generate_auth_request_code' handler did not return a code.")

    _transition(request.client_id, FlowState.REQUESTED, FlowState.CODE_ISSUED)
    try:
        return build_url_with_params(validation.value.consent_page, {"code": code})
    except Exception as e:
        raise wrap_errors(error_msg, e)


def _consent_claims(raw: Any, error_msg: str, now: Optional[float]) -> ConsentClaims:
    claims = ConsentClaims.model_validate(as_dict(raw))
    for field in ("user_id", "username", "code", "exp"):
        if not getattr(claims, field):
            raise InvalidRequestError(
                f"{error_msg}. Missing required '{field}'. The consentcode failed to retrieve data containing a {field} property."
            )

    try:
        exp = float(claims.exp)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"{error_msg}. Invalid number. The 'exp' property is not a number.")

    current = time.time() if now is None else now
    if current > exp:
        raise InvalidTokenError(f"{error_msg}. consentcode is expired.")
    return claims


@catch_errors
async def handle_consent_response(handlers: HandlerSet, consentcode: Optional[str], *, now: Optional[float] = None) -> str:
    """
    Completes the flow once the consent page calls back with `consentcode`.

    The consent code resolves to `{user_id, username, code, exp}`, where
    `code` is the auth request code minted by `handle_consent_request`. The
    original request is re-validated, the user is linked to the client, the
    link is read back and tokens are dispatched. Returns the client redirect.
    """
    error_msg = "Failed to process response from consent page"
    handlers.require([
        "get_auth_consent_claims",
        "get_auth_request_claims",
        "link_client_to_user",
        "get_end_user",
        "generate_id_token",
        "generate_access_token",
        "generate_authorization_code",
    ], error_msg)

    if not consentcode:
        raise InvalidRequestError(f"{error_msg}. Missing required 'consentcode'.")

    logger.log(TRACE, "Response from consent page received")

    # CODE_ISSUED -> CONSENT_RECEIVED
    try:
        raw_consent = await handlers.exec("get_auth_consent_claims", {"token": consentcode})
    except Exception as e:
        raise wrap_errors(error_msg, e)
    consent = _consent_claims(raw_consent, error_msg, now)

    try:
        raw_request = await handlers.exec("get_auth_request_claims", {"token": consent.code})
    except Exception as e:
        raise wrap_errors(error_msg, e)
    request = AuthorizationRequest.model_validate(as_dict(raw_request))
    _transition(request.client_id, FlowState.CODE_ISSUED, FlowState.CONSENT_RECEIVED)

    validation = await validate_authorization_request(handlers, request)
    if not validation.ok:
        raise wrap_errors(error_msg, validation.errors)
    validated = validation.value

    # CONSENT_RECEIVED -> LINKED
    try:
        await handlers.exec("link_client_to_user", {
            "user_id": consent.user_id,
            "client_id": request.client_id,
            "scopes": validated.scopes,
            "state": request.state,
        })
        raw_user = await handlers.exec("get_end_user", {"username": consent.username})
    except Exception as e:
        raise wrap_errors(error_msg, e)

    if not raw_user:
        raise InvalidRequestError(f"{error_msg}. username not found.")
    user = ValidatedUser.model_validate(as_dict(raw_user))
    if str(user.id) != str(consent.user_id):
        raise InternalServerError(f"{error_msg}. Invalid user. The linked user does not match user_id {consent.user_id}.")
    if not any(str(cid) == str(request.client_id) for cid in user.client_ids):
        raise InternalServerError(f"{error_msg}. Failed to link client_id to user_id.")
    _transition(request.client_id, FlowState.CONSENT_RECEIVED, FlowState.LINKED)

    # LINKED -> TOKENS_ISSUED
    tokens = await dispatch_tokens(handlers, validated.response_types, TokenRequest(
        client_id=request.client_id,
        user_id=consent.user_id,
        audiences=validated.client.audiences,
        scopes=validated.scopes,
        code_challenge=request.code_challenge,
        code_challenge_method=request.code_challenge_method,
        redirect_uri=request.redirect_uri,
        nonce=request.nonce,
    ))
    if not tokens.ok:
        raise wrap_errors(error_msg, tokens.errors)
    _transition(request.client_id, FlowState.LINKED, FlowState.TOKENS_ISSUED)

    # TOKENS_ISSUED -> REDIRECTED
    try:
        redirect = build_redirect_uri(request.redirect_uri, tokens.value, request.state)
    except Exception as e:
        raise wrap_errors(error_msg, e)
    _transition(request.client_id, FlowState.TOKENS_ISSUED, FlowState.REDIRECTED)
    return redirect
