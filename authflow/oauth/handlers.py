"""
Pluggable handler set.

The orchestrator never stores clients, users or tokens itself. It calls the
named events below and the embedding application registers the functions
behind them:

    handlers = HandlerSet()
    handlers.on("get_client", get_client)
    handlers.on("generate_access_token", sign_token)

A handler is `(previous_result, payload, context) -> value`, sync or async.
Registering twice on the same event chains the handlers; each one receives
the previous non-None result. `context` is the dict shared by the whole set.

The `generate_openid_*` events used by the token dispatch are derived on
demand from `get_config` and the plain `generate_*` events unless the
application registers them itself.
"""

import inspect
import time
from typing import Any, Awaitable, Callable, Optional

from ..errors import InternalServerError, InvalidRequestError, wrap_errors
from ..logging_util import get_logger
from .models import ServerConfig, TokenRequest
from .params import to_oidc_claims, verify_client_linkage


logger = get_logger(__name__)

type Handler = Callable[[Any, Any, dict], Any | Awaitable[Any]]

OPENID_EVENTS = {
    "generate_openid_access_token": "generate_access_token",
    "generate_openid_authorization_code": "generate_authorization_code",
    "generate_openid_id_token": "generate_id_token",
}


def as_dict(value: Any) -> dict:
    """Normalizes a handler result (None, mapping or pydantic model) to a dict."""
    if value is None:
        return {}
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return dict(value)


class EventHandler:

    def __init__(self, name: str, handler: Optional[Handler] = None, get_context: Optional[Callable[[], dict]] = None):
        self.name = name
        self.handlers: list[Handler] = [handler] if handler else []
        self._get_context = get_context or dict

    def add_handler(self, handler: Handler) -> None:
        self.handlers.append(handler)

    async def exec(self, payload: Any = None) -> Any:
        result = None
        context = self._get_context()
        for h in self.handlers:
            intermediate = h(result, payload, context)
            if inspect.isawaitable(intermediate):
                intermediate = await intermediate
            if intermediate is not None:
                result = intermediate
        return result


class HandlerSet:

    def __init__(self, context: Optional[dict] = None):
        self._events: dict[str, EventHandler] = {}
        self.context: dict = context if context is not None else {}

    def on(self, event: str, handler: Handler) -> "HandlerSet":
        if not event:
            raise InternalServerError("Failed to register event handler. Missing required 'event'.")
        if not callable(handler):
            raise InternalServerError(f"Failed to register event handler. The '{event}' handler must be callable.")

        if event in self._events:
            self._events[event].add_handler(handler)
        else:
            self._events[event] = EventHandler(event, handler, lambda: self.context)
        logger.debug(f"Registered handler for event '{event}'")
        return self

    def get(self, event: str) -> Optional[EventHandler]:
        handler = self._events.get(event)
        if handler is None and event in OPENID_EVENTS and OPENID_EVENTS[event] in self._events:
            handler = EventHandler(event, self._derived(event), lambda: self.context)
            self._events[event] = handler
        return handler

    def __contains__(self, event: str) -> bool:
        return self.get(event) is not None

    def require(self, events, error_msg: str) -> None:
        """Fails fast, before any side effect, when a required handler is missing."""
        for event in [events] if isinstance(events, str) else events:
            if event not in self:
                raise InternalServerError(f"{error_msg}. Missing '{event}' handler.")

    async def exec(self, event: str, payload: Any = None) -> Any:
        handler = self.get(event)
        if handler is None:
            raise InternalServerError(f"Failed to execute '{event}'. Missing '{event}' handler.")
        return await handler.exec(payload)

    def _derived(self, event: str) -> Handler:
        if event == "generate_openid_id_token":
            return self._generate_id_token
        if event == "generate_openid_authorization_code":
            return self._generate_authorization_code
        return self._generate_access_token

    async def _basic_claims(self, token_type: str) -> tuple[dict, int]:
        """iss/iat/exp for a token type, read from `get_config`."""
        error_msg = f"Failed to get {token_type} expiry time"
        self.require("get_config", error_msg)
        try:
            raw = await self.exec("get_config")
        except Exception as e:
            raise wrap_errors(error_msg, e)

        if not raw:
            raise InternalServerError(f"{error_msg}. Missing strategy configuration object.")
        config = ServerConfig.model_validate(raw)
        if not config.iss:
            raise InternalServerError(f"{error_msg}. Strategy configuration is missing the required OIDC 'iss' property.")

        expiry = getattr(config.expiry, token_type, None)
        if not expiry:
            raise InternalServerError(f"{error_msg}. Strategy configuration is missing the required 'expiry.{token_type}' expiry time.")

        now = int(time.time())
        return {"iss": config.iss, "iat": now, "exp": now + int(expiry)}, int(expiry)

    async def _mint(self, token_type: str, underlying: str, claims: dict, state: Optional[str], error_msg: str) -> dict:
        try:
            token = await self.exec(underlying, {"type": token_type, "claims": claims, "state": state})
        except Exception as e:
            raise wrap_errors(error_msg, e)
        if isinstance(token, dict):
            token = token.get("token")
        return token

    async def _generate_access_token(self, previous, payload, context) -> dict:
        error_msg = "Failed to generate access_token"
        request = TokenRequest.model_validate(payload)
        basic, expires_in = await self._basic_claims("access_token")
        claims = to_oidc_claims(
            iss=basic["iss"],
            client_id=request.client_id,
            user_id=request.user_id,
            audiences=request.audiences,
            scopes=request.scopes,
            extra=basic,
        )
        token = await self._mint("access_token", "generate_access_token", claims.model_dump(), request.state, error_msg)
        return {"token": token, "expires_in": expires_in}

    async def _generate_authorization_code(self, previous, payload, context) -> dict:
        error_msg = "Failed to generate authorization code"
        request = TokenRequest.model_validate(payload)
        basic, expires_in = await self._basic_claims("code")
        extra = {
            **basic,
            "code_challenge": request.code_challenge,
            "code_challenge_method": request.code_challenge_method,
            "redirect_uri": request.redirect_uri,
            "nonce": request.nonce,
        }
        claims = to_oidc_claims(
            iss=basic["iss"],
            client_id=request.client_id,
            user_id=request.user_id,
            audiences=request.audiences,
            scopes=request.scopes,
            extra={k: v for k, v in extra.items() if v is not None},
        )
        token = await self._mint("code", "generate_authorization_code", claims.model_dump(), request.state, error_msg)
        return {"token": token, "expires_in": expires_in}

    async def _generate_id_token(self, previous, payload, context) -> dict:
        error_msg = "Failed to generate id_token"
        request = TokenRequest.model_validate(payload)
        basic, expires_in = await self._basic_claims("id_token")

        if not request.client_id:
            raise InvalidRequestError(f"{error_msg}. Missing required 'client_id'.")
        if not request.user_id:
            raise InvalidRequestError(f"{error_msg}. Missing required 'user_id'.")

        identity_claims = {}
        if "get_identity_claims" in self:
            try:
                identity = await self.exec("get_identity_claims", {
                    "client_id": request.client_id,
                    "user_id": request.user_id,
                    "scopes": request.scopes,
                    "state": request.state,
                }) or {}
            except Exception as e:
                raise wrap_errors(error_msg, e)
            try:
                verify_client_linkage(request.client_id, request.user_id, identity.get("client_ids"))
            except Exception as e:
                raise wrap_errors(error_msg, e)
            identity_claims = identity.get("claims") or {}

        extra = {**identity_claims, **basic}
        if request.nonce:
            extra["nonce"] = request.nonce
        claims = to_oidc_claims(
            iss=basic["iss"],
            client_id=request.client_id,
            user_id=request.user_id,
            audiences=request.audiences,
            scopes=request.scopes,
            extra=extra,
        )
        token = await self._mint("id_token", "generate_id_token", claims.model_dump(), request.state, error_msg)
        return {"token": token, "expires_in": expires_in}
