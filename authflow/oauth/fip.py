"""
Federated identity provider (FIP) consent flow.

The user-agent is sent to an external OIDC authorization server with the
original authorization request packed into `state`. The provider redirects
back to `/{strategy}/authorizecallback`, the provider code is exchanged for a
profile, the profile is resolved to a backend user and the usual token
dispatch runs for the client.

Providers are plain objects constructed once at startup and passed to the
flow through a `ProviderRegistry`.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import urlparse, urlunparse

import httpx
import jwt

from ..errors import (
    InternalServerError,
    InvalidRequestError,
    catch_errors,
    wrap_errors,
)
from ..logging_util import TRACE, get_logger
from .dispatch import build_redirect_uri, build_url_with_params, dispatch_tokens
from .handlers import HandlerSet, as_dict
from .models import AuthorizationRequest, FIPUser, TokenBundle, TokenRequest, ValidatedUser
from .params import (
    OPENID_SCOPE,
    canonical_response_type,
    parse_response_type,
    parse_things,
    redirect_uri_allowed,
    verify_audiences,
    verify_client_linkage,
    verify_scopes,
)
from .state import decode as decode_state, encode as encode_state
from .validation import get_client, validate_authorization_request


logger = get_logger(__name__)

FIP_MODES = ("login", "signup")
CALLBACK_STATE_KEY = "orig_redirectUri"


class FIPProvider(ABC):
    """Adapter for one external identity provider."""

    def __init__(self, name: str, scopes: Optional[Iterable[str]] = None):
        if not name:
            raise InternalServerError("Failed to create identity provider. Missing required 'name'.")
        self.name = name
        self.scopes = list(scopes or [])

    @abstractmethod
    def authorization_url(self, redirect_uri: str, state: str, scopes: Optional[Iterable[str]] = None) -> str:
        """URL of the provider's consent page for this request."""

    @abstractmethod
    async def get_user_profile(self, query: Mapping[str, Any], redirect_uri: str) -> FIPUser:
        """
        Resolves the provider callback into a user profile. `redirect_uri` must be
        the exact callback URL used to obtain the provider code.
        """


class OpenIdProvider(FIPProvider):
    """Generic OpenID Connect provider using the authorization code grant."""

    def __init__(
        self,
        name: str,
        *,
        authorization_endpoint: str,
        token_endpoint: str,
        client_id: str,
        client_secret: Optional[str] = None,
        scopes: Optional[Iterable[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        super().__init__(name, scopes)
        error_msg = f"Failed to create the {name} identity provider"
        if not authorization_endpoint:
            raise InternalServerError(f"{error_msg}. Missing required 'authorization_endpoint'.")
        if not token_endpoint:
            raise InternalServerError(f"{error_msg}. Missing required 'token_endpoint'.")
        if not client_id:
            raise InternalServerError(f"{error_msg}. Missing required 'client_id'.")

        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.client_id = client_id
        self.client_secret = client_secret
        self._transport = transport
        self._timeout = timeout

    def authorization_url(self, redirect_uri: str, state: str, scopes: Optional[Iterable[str]] = None) -> str:
        requested = list(scopes if scopes is not None else self.scopes) + [OPENID_SCOPE]
        scope = " ".join(dict.fromkeys(s for s in requested if s))
        try:
            return build_url_with_params(self.authorization_endpoint, {
                "client_id": self.client_id,
                "response_type": "code",
                "scope": scope,
                "state": state,
                "redirect_uri": redirect_uri,
            })
        except Exception as e:
            raise InternalServerError(f"Failed to redirect to {redirect_uri} (OAuth 2.0 Auth server: {self.name})", [e])

    async def get_user_profile(self, query: Mapping[str, Any], redirect_uri: str) -> FIPUser:
        error_msg = f"Failed to retrieve {self.name} user and tokens when querying {redirect_uri}"
        logger.log(TRACE, f"Exchanging {self.name} authorization code for a user object (incl. tokens)")

        code = (query or {}).get("code")
        if not code:
            raise InvalidRequestError(f"{error_msg}. Missing required 'code' in the {self.name} response.")

        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(
                    self.token_endpoint,
                    data={k: v for k, v in data.items() if v is not None},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            response.raise_for_status()
            token_data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Upstream error: {e.response.text}")
            raise InternalServerError(
                f"{error_msg}. HTTP POST {self.token_endpoint} failed (status: {e.response.status_code}).", [e]
            )
        except (httpx.HTTPError, ValueError) as e:
            raise InternalServerError(f"{error_msg}. HTTP POST {self.token_endpoint} failed.", [e])

        access_token = (token_data or {}).get("access_token")
        id_token = (token_data or {}).get("id_token")
        if not access_token:
            raise InternalServerError(
                f"{error_msg}. HTTP POST {self.token_endpoint} with grant_type 'authorization_code' did not return an 'access_token'."
            )
        if not id_token:
            raise InternalServerError(
                f"{error_msg}. HTTP POST {self.token_endpoint} with grant_type 'authorization_code' did not return an 'id_token'."
            )

        # Profile claims only, the signature is not checked here.
        try:
            profile = jwt.decode(id_token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            raise InternalServerError(
                f"{error_msg}. The id_token returned by the {self.name} {self.token_endpoint} is not a JWT.", [e]
            )

        return FIPUser(**{
            **profile,
            "access_token": access_token,
            "refresh_token": token_data.get("refresh_token"),
            "id": profile.get("sub"),
        })


class ProviderRegistry:

    def __init__(self, providers: Optional[Iterable[FIPProvider]] = None):
        self._providers: dict[str, FIPProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: FIPProvider) -> "ProviderRegistry":
        self._providers[provider.name] = provider
        logger.info(f"Registered identity provider '{provider.name}'")
        return self

    def get(self, name: str) -> FIPProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise InvalidRequestError(f"Identity provider '{name}' is not supported.")
        return provider

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def __iter__(self):
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)


def get_callback_url(request_url: str, callback_path: str) -> str:
    """
    Callback URL on this server for the provider redirect. Plain http is
    upgraded to https unless the host is localhost.
    """
    url = urlparse(request_url)
    scheme = url.scheme
    if scheme == "http" and "localhost" not in (url.hostname or ""):
        scheme = "https"
    path = "/" + callback_path.lstrip("/")
    return urlunparse((scheme, url.netloc, path, "", "", ""))


@catch_errors
async def handle_fip_request(
    handlers: HandlerSet,
    provider: FIPProvider,
    request_url: str,
    query: Mapping[str, Any],
    callback_path: str,
    *,
    verify_client_id: bool = True,
) -> str:
    """
    Validates the authorization request and returns the provider consent page URL.
    The original query and the callback URL travel to the provider inside `state`.
    """
    error_msg = f"Failed to browse to {provider.name} consent page"
    query = {k: v for k, v in dict(query or {}).items() if v is not None}

    redirect_uri = get_callback_url(request_url, callback_path)
    logger.log(
        TRACE,
        f"Request received to browse to {provider.name} for scopes {', '.join(provider.scopes) or OPENID_SCOPE} "
        f"(redirect URI: {redirect_uri})"
    )

    validation = await validate_authorization_request(
        handlers,
        AuthorizationRequest.model_validate(query),
        verify_client_id=verify_client_id,
        require_consent_page=False,
    )
    if not validation.ok:
        raise wrap_errors(error_msg, validation.errors)

    context = {**query, CALLBACK_STATE_KEY: redirect_uri}
    if query.get("response_type"):
        context["response_type"] = canonical_response_type(query["response_type"])
    try:
        state = encode_state(context)
        return provider.authorization_url(redirect_uri, state)
    except Exception as e:
        raise wrap_errors(error_msg, e)


def _missing_query_param(error_msg: str, strategy: str, param: str) -> str:
    return (
        f"{error_msg}. {strategy} did not include the required query parameter '{param}' in its redirect URI. "
        f"It was either not included in the first place, or {strategy} removed it when redirecting back."
    )


def _missing_state_field(error_msg: str, strategy: str, field: str) -> str:
    return f"{error_msg}. The encoded 'state' query parameter in the {strategy} redirect URI is missing the required '{field}' variable."


@catch_errors
async def handle_fip_response(
    handlers: HandlerSet,
    provider: FIPProvider,
    query: Mapping[str, Any],
    *,
    verify_client_id: bool = True,
) -> str:
    """Processes the provider callback and returns the client redirect."""
    strategy = provider.name
    error_msg = f"Failed to process authentication response from {strategy}"
    query = dict(query or {})
    logger.log(TRACE, f"Received response from {strategy}")

    if not query.get("state"):
        raise InvalidRequestError(_missing_query_param(error_msg, strategy, "state"))
    try:
        decoded = decode_state(query["state"])
    except Exception as e:
        raise wrap_errors(error_msg, e)

    for field in ("redirect_uri", "response_type", CALLBACK_STATE_KEY):
        if not decoded.get(field):
            raise InvalidRequestError(_missing_state_field(error_msg, strategy, field))

    mode = decoded.get("mode") or "login"
    if mode not in FIP_MODES or (mode == "signup" and verify_client_id):
        raise InvalidRequestError(f"{error_msg}. The encoded 'state' query parameter in the {strategy} redirect URI has an unsupported mode '{mode}'.")

    try:
        user = await provider.get_user_profile(query, decoded[CALLBACK_STATE_KEY])
    except Exception as e:
        raise wrap_errors(error_msg, e)

    tokens = await process_fip_user(
        handlers,
        user=user,
        strategy=strategy,
        client_id=decoded.get("client_id"),
        response_type=decoded["response_type"],
        scopes=parse_things(decoded.get("scope")),
        state=decoded.get("state"),
        verify_client_id=verify_client_id,
        mode=mode,
        code_challenge=decoded.get("code_challenge"),
        code_challenge_method=decoded.get("code_challenge_method"),
        nonce=decoded.get("nonce"),
        redirect_uri=decoded["redirect_uri"],
    )
    if not tokens.ok:
        raise wrap_errors(error_msg, tokens.errors)

    logger.info(f"{strategy} user successfully authenticated")
    try:
        return build_redirect_uri(decoded["redirect_uri"], tokens.value, decoded.get("state"), keep_query=True)
    except Exception as e:
        raise wrap_errors(error_msg, e)


def _as_user(user: Any, error_msg: str) -> FIPUser:
    if user is None:
        raise InvalidRequestError(f"{error_msg}. Missing required 'user' argument.")
    if isinstance(user, FIPUser):
        return user
    if not isinstance(user, Mapping):
        raise InvalidRequestError(f"{error_msg}. The 'user' argument must be an object.")
    return FIPUser.model_validate(dict(user))


@catch_errors
async def process_fip_user(
    handlers: HandlerSet,
    *,
    user: Any,
    strategy: str,
    client_id: Any = None,
    response_type: Optional[str] = None,
    scopes: Optional[list[str]] = None,
    state: Optional[str] = None,
    verify_client_id: bool = True,
    mode: str = "login",
    audiences: Optional[list[str]] = None,
    code_challenge: Optional[str] = None,
    code_challenge_method: Optional[str] = None,
    nonce: Optional[str] = None,
    redirect_uri: Optional[str] = None,
) -> TokenBundle:
    """
    Resolves a federated profile to a backend user and issues the tokens
    requested by `response_type`.

    In `login` mode the user must already exist (`get_fip_user`). In `signup`
    mode a missing user is created with `create_fip_user` and the bundle
    reports `user_already_exists`. Signup is not available to client-bound
    (`verify_client_id`) flows.
    """
    error_msg = f"Failed to process {strategy} user"
    if mode not in FIP_MODES:
        raise InternalServerError(f"{error_msg}. '{mode}' is an unsupported mode. Valid values are: {', '.join(FIP_MODES)}.")
    signup = mode == "signup"
    if signup and verify_client_id:
        raise InternalServerError(f"{error_msg}. OpenID is not designed to create accounts (i.e., signup mode).")

    handlers.require(
        (["get_client"] if verify_client_id else []) + ["get_fip_user"] + (["create_fip_user"] if signup else []),
        error_msg,
    )

    if verify_client_id and not client_id:
        raise InvalidRequestError(f"{error_msg}. Missing required 'client_id' argument.")
    profile = _as_user(user, error_msg)
    if not profile.id:
        raise InvalidRequestError(f"{error_msg}. Missing required 'id' property in the 'user' object.")
    if not strategy:
        raise InvalidRequestError(f"{error_msg}. Missing required 'strategy' argument.")
    if not response_type:
        raise InvalidRequestError(f"{error_msg}. Missing required 'response_type' argument.")
    try:
        response_types = parse_response_type(response_type)
    except Exception as e:
        raise wrap_errors(error_msg, e)

    scopes = list(scopes or [])
    token_audiences = list(audiences or [])
    if verify_client_id:
        client = await get_client(handlers, client_id, error_msg)
        if redirect_uri and not redirect_uri_allowed(redirect_uri, client.redirect_uris):
            raise InvalidRequestError(
                f"{error_msg}. Invalid redirect_uri. URL {redirect_uri} is not included in the client's redirect URIs allowlist."
            )
        try:
            verify_scopes(scopes, client.scopes)
            if audiences:
                verify_audiences(audiences, client.audiences)
        except Exception as e:
            raise wrap_errors(error_msg, e)
        if not audiences:
            token_audiences = client.audiences

    payload = profile.model_dump()
    try:
        existing = await handlers.exec("get_fip_user", {"client_id": client_id, "strategy": strategy, "user": payload, "state": state})
    except Exception as e:
        raise wrap_errors(error_msg, e)

    user_already_exists = None
    canonical = existing
    if signup:
        user_already_exists = bool(existing)
        if not existing:
            try:
                canonical = await handlers.exec("create_fip_user", {"strategy": strategy, "user": payload, "state": state})
            except Exception as e:
                raise wrap_errors(error_msg, e)
            if not canonical or not ValidatedUser.model_validate(as_dict(canonical)).id:
                raise InternalServerError(f"{error_msg}. The 'create_fip_user' failed to return the new user ID.")
    elif not existing:
        raise InternalServerError(f"{error_msg}. {strategy} user ID {profile.id} not found.")

    backend_user = ValidatedUser.model_validate(as_dict(canonical))
    if verify_client_id:
        try:
            verify_client_linkage(client_id, backend_user.id, backend_user.client_ids)
        except Exception as e:
            raise wrap_errors(error_msg, e)

    tokens = await dispatch_tokens(handlers, response_types, TokenRequest(
        client_id=client_id,
        user_id=backend_user.id,
        audiences=token_audiences,
        scopes=scopes,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        redirect_uri=redirect_uri,
        nonce=nonce,
    ))
    if not tokens.ok:
        raise wrap_errors(error_msg, tokens.errors)

    bundle = tokens.value
    bundle.user_already_exists = user_already_exists
    return bundle
