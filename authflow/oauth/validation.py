from typing import Any, Mapping

from ..errors import (
    InternalServerError,
    InvalidClientError,
    InvalidRequestError,
    catch_errors,
    wrap_errors,
)
from ..logging_util import get_logger
from .handlers import HandlerSet
from .models import AuthorizationRequest, Client, ServerConfig, ValidatedRequest
from .params import (
    is_valid_url,
    parse_response_type,
    parse_things,
    redirect_uri_allowed,
    verify_code_challenge,
    verify_scopes,
)


logger = get_logger(__name__)

ERROR_MSG = "Failed to validate the authorize input"


async def get_client(handlers: HandlerSet, client_id: Any, error_msg: str = ERROR_MSG) -> Client:
    try:
        raw = await handlers.exec("get_client", {"client_id": client_id})
    except Exception as e:
        raise wrap_errors(error_msg, e)
    if not raw:
        raise InvalidClientError(f"{error_msg}. client_id not found.")
    client = Client.model_validate(raw)
    if client.client_id is None:
        client.client_id = client_id
    return client


@catch_errors
async def validate_authorization_request(
    handlers: HandlerSet,
    request: AuthorizationRequest | Mapping[str, Any],
    *,
    verify_client_id: bool = True,
    require_consent_page: bool = True,
) -> ValidatedRequest:
    """
    Validates an authorization request end to end and resolves the consent page.

    `verify_client_id=False` skips the client lookup (and therefore the
    redirect allowlist and scope checks) for client-less login/signup flows.
    `require_consent_page=False` is used by the federated flow, whose consent
    page belongs to the provider.
    """
    if not isinstance(request, AuthorizationRequest):
        request = AuthorizationRequest.model_validate(dict(request))

    required = (["get_client"] if verify_client_id else []) + (["get_config"] if require_consent_page else [])
    handlers.require(required, ERROR_MSG)

    if verify_client_id and not request.client_id:
        raise InvalidRequestError(f"{ERROR_MSG}. Missing required 'client_id'.")

    if not request.response_type:
        raise InvalidRequestError(f"{ERROR_MSG}. Missing required 'response_type'.")
    try:
        response_types = parse_response_type(request.response_type)
    except Exception as e:
        raise wrap_errors(ERROR_MSG, e)

    redirect_uri = request.redirect_uri
    if not redirect_uri:
        raise InvalidRequestError(f"{ERROR_MSG}. Missing required 'redirect_uri'.")
    if not is_valid_url(redirect_uri):
        raise InvalidRequestError(f"{ERROR_MSG}. Invalid 'redirect_uri'. {redirect_uri} is not a valid URL.")

    try:
        verify_code_challenge(request.code_challenge, request.code_challenge_method)
    except Exception as e:
        raise wrap_errors(ERROR_MSG, e)

    scopes = parse_things(request.scope)
    client = Client(client_id=request.client_id)
    if verify_client_id:
        client = await get_client(handlers, request.client_id)

        if not redirect_uri_allowed(redirect_uri, client.redirect_uris):
            raise InvalidRequestError(
                f"{ERROR_MSG}. Invalid redirect_uri. URL {redirect_uri} is not included in the client's redirect URIs allowlist."
            )

        try:
            verify_scopes(scopes, client.scopes)
        except Exception as e:
            raise wrap_errors(ERROR_MSG, e)

    consent_page = None
    if require_consent_page:
        try:
            raw_config = await handlers.exec("get_config")
        except Exception as e:
            raise wrap_errors(ERROR_MSG, e)
        config = ServerConfig.model_validate(raw_config or {})

        if not config.consent_page:
            raise InternalServerError(f"{ERROR_MSG}. Missing required 'consentPage' configuration.")
        if not is_valid_url(config.consent_page):
            raise InternalServerError(f"{ERROR_MSG}. Invalid 'consentPage'. {config.consent_page} is not a valid URL.")
        consent_page = config.consent_page

    logger.debug(f"Authorization request validated for client_id: {request.client_id}")
    return ValidatedRequest(
        client=client,
        response_types=response_types,
        scopes=scopes,
        consent_page=consent_page,
    )
