"""
HTTP adapter for the authorization flows.

`build_auth_router` wires a handler set and the configured identity providers
into a FastAPI router:

    GET /{prefix}/authorize                      local consent, first hop
    GET /{prefix}/authorizeconsent               consent page callback
    GET /{prefix}/{strategy}/authorize           redirect to a federated provider
    GET /{prefix}/{strategy}/authorizecallback   federated provider callback

Each route runs one flow and turns its Result into either a 302 redirect or
the OAuth2 error body. Parameters are validated by the flows, not by FastAPI,
so a missing `client_id` is reported as `invalid_request` like any other
flow failure.
"""

from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse

from .config import Settings
from .errors import OAuth2Error, Result, error_response
from .logging_util import get_logger
from .oauth.consent import handle_consent_request, handle_consent_response
from .oauth.fip import ProviderRegistry, handle_fip_request, handle_fip_response
from .oauth.handlers import HandlerSet
from .oauth.models import AuthorizationRequest


logger = get_logger(__name__)


def _respond(result: Result, flow: str):
    if result.ok:
        logger.debug(f"{flow} succeeded, redirecting")
        return RedirectResponse(url=result.value, status_code=302)

    err = result.error
    if err.status_code >= 500:
        logger.error(f"{flow} failed: {' - '.join(err.chain_messages())}")
    else:
        logger.warning(f"{flow} failed with {err.error}: {err.description}")
    return error_response(result.errors, verbose=Settings.VERBOSE_ERRORS)


def build_auth_router(
    handlers: HandlerSet,
    providers: Optional[ProviderRegistry] = None,
    *,
    prefix: Optional[str] = None,
    verify_client_id: bool = True,
) -> APIRouter:
    providers = providers if providers is not None else ProviderRegistry()
    prefix = (Settings.PREFIX if prefix is None else prefix).strip("/")
    base = f"/{prefix}" if prefix else ""

    router = APIRouter(prefix=base)

    @router.get("/authorize")
    async def authorize(
        client_id: str | None = Query(None),
        response_type: str | None = Query(None),
        redirect_uri: str | None = Query(None),
        scope: str | None = Query(None),
        state: str | None = Query(None),
        code_challenge: str | None = Query(None),
        code_challenge_method: str | None = Query(None),
        nonce: str | None = Query(None),
    ):
        """
        Validates the authorization request and sends the user-agent to the
        consent page with an opaque auth request code.
        """
        logger.info(f"Authorization request for client_id: {client_id}")
        result = await handle_consent_request(handlers, AuthorizationRequest(
            client_id=client_id,
            response_type=response_type,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            nonce=nonce,
        ))
        return _respond(result, "Authorization request")

    @router.get("/authorizeconsent")
    async def authorize_consent(consentcode: str | None = Query(None)):
        """Consent page callback. Issues the requested tokens and redirects to the client."""
        result = await handle_consent_response(handlers, consentcode)
        return _respond(result, "Consent response")

    @router.get("/{strategy}/authorize")
    async def fip_authorize(strategy: str, request: Request):
        """Sends the user-agent to the `strategy` identity provider."""
        try:
            provider = providers.get(strategy)
        except OAuth2Error as e:
            return _respond(Result(errors=[e]), f"{strategy} authorization request")

        callback_path = f"{base}/{strategy}/authorizecallback"
        result = await handle_fip_request(
            handlers,
            provider,
            str(request.url),
            dict(request.query_params),
            callback_path,
            verify_client_id=verify_client_id,
        )
        return _respond(result, f"{strategy} authorization request")

    @router.get("/{strategy}/authorizecallback")
    async def fip_authorize_callback(strategy: str, request: Request):
        """Redirect target of the `strategy` identity provider."""
        try:
            provider = providers.get(strategy)
        except OAuth2Error as e:
            return _respond(Result(errors=[e]), f"{strategy} callback")

        result = await handle_fip_response(
            handlers,
            provider,
            dict(request.query_params),
            verify_client_id=verify_client_id,
        )
        return _respond(result, f"{strategy} callback")

    return router
