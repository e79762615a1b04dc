"""
Pending authorization requests.

Between `/authorize` and the consent callback the original request is
parked server side under an opaque, single-use auth request code. The store
provides the `generate_auth_request_code` / `get_auth_request_claims`
handler pair for that.
"""

import secrets
from datetime import UTC, datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from ..config import Settings
from ..errors import InvalidGrantError, InvalidRequestError
from ..logging_util import get_logger
from ..persistence import PersistenceFactory, PersistenceProvider
from .handlers import HandlerSet
from .models import AuthorizationRequest


logger = get_logger(__name__)


class PendingAuthRequest(BaseModel):
    created_at: datetime
    expires_at: datetime
    request: AuthorizationRequest


class AuthRequestStore:

    def __init__(self, store: Optional[PersistenceProvider[PendingAuthRequest]] = None, ttl_in_sec: Optional[int] = None):
        self.store = store or PersistenceFactory.create(PendingAuthRequest, scope="auth_requests")
        self.ttl_in_sec = ttl_in_sec or Settings.AUTH_REQUEST_TTL

    def generate_auth_request_code(self, previous, payload, context) -> str:
        claims = (payload or {}).get("claims")
        if not claims:
            raise InvalidRequestError("Failed to generate auth request code. Missing required 'claims'.")

        now = datetime.now(UTC)
        code = secrets.token_urlsafe(32)
        self.store.set(code, PendingAuthRequest(
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_in_sec),
            request=AuthorizationRequest.model_validate(claims),
        ), ttl_in_sec=self.ttl_in_sec)
        logger.debug(f"Stored pending authorization request for client_id: {claims.get('client_id')}")
        return code

    def get_auth_request_claims(self, previous, payload, context) -> dict:
        code = (payload or {}).get("token")
        if not code:
            raise InvalidRequestError("Failed to get auth request claims. Missing required 'token'.")

        pending = self.store.pop(code)
        if pending is None or pending.expires_at <= datetime.now(UTC):
            logger.warning("Auth request code is invalid, expired or already used")
            raise InvalidGrantError("Failed to get auth request claims. The auth request code is invalid or expired.")
        return pending.request.model_dump()

    def install(self, handlers: HandlerSet) -> HandlerSet:
        return (
            handlers
            .on("generate_auth_request_code", self.generate_auth_request_code)
            .on("get_auth_request_claims", self.get_auth_request_claims)
        )
