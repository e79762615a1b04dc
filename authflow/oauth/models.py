from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


ResponseTypes = tuple[str, ...]


class FlowState(str, Enum):
    REQUESTED = "REQUESTED"
    CODE_ISSUED = "CODE_ISSUED"
    CONSENT_RECEIVED = "CONSENT_RECEIVED"
    LINKED = "LINKED"
    TOKENS_ISSUED = "TOKENS_ISSUED"
    REDIRECTED = "REDIRECTED"


class AuthorizationRequest(BaseModel):
    """Inbound /authorize parameters, kept raw until validated."""
    client_id: Optional[str] = None
    response_type: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None


class Client(BaseModel):
    """Read-only view of a registered client returned by `get_client`."""
    client_id: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)
    audiences: list[str] = Field(default_factory=list)
    redirect_uris: list[str] = Field(default_factory=list)
    auth_methods: list[str] = Field(default_factory=list)


class TokenExpiry(BaseModel):
    code: Optional[int] = None
    access_token: Optional[int] = None
    id_token: Optional[int] = None
    refresh_token: Optional[int] = None


class ServerConfig(BaseModel):
    """Value returned by the `get_config` handler."""
    consent_page: Optional[str] = Field(default=None, validation_alias=AliasChoices("consent_page", "consentPage"))
    iss: Optional[str] = None
    expiry: TokenExpiry = Field(default_factory=TokenExpiry)


class ValidatedRequest(BaseModel):
    client: Client
    response_types: ResponseTypes
    scopes: list[str]
    consent_page: Optional[str] = None


class ConsentClaims(BaseModel):
    """Claims behind a consent code, as returned by `get_auth_consent_claims`."""
    user_id: Optional[Any] = None
    username: Optional[str] = None
    code: Optional[str] = None
    exp: Optional[Any] = None


class FIPUser(BaseModel):
    """Profile returned by a federated provider adapter. Provider attributes are kept as extras."""
    model_config = ConfigDict(extra="allow")

    id: Optional[Any] = None


class ValidatedUser(BaseModel):
    """Backend user resolved from a FIP or local identity."""
    model_config = ConfigDict(extra="allow")

    id: Optional[Any] = None
    client_ids: list[Any] = Field(default_factory=list)


class IssuedToken(BaseModel):
    """Result of one `generate_openid_*` call."""
    token: Optional[str] = None
    expires_in: Optional[int] = None


class TokenBundle(BaseModel):
    code: Optional[str] = None
    access_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    user_already_exists: Optional[bool] = None

    @property
    def empty(self) -> bool:
        return not (self.code or self.access_token or self.id_token)


class Claims(BaseModel):
    model_config = ConfigDict(extra="allow")

    iss: Optional[str] = None
    sub: Optional[Any] = None
    aud: str = ""
    client_id: Optional[Any] = None
    scope: str = ""
    exp: Optional[int] = None
    iat: Optional[int] = None


class TokenRequest(BaseModel):
    """Everything the dispatch policy needs to mint artifacts for one user."""
    client_id: Optional[Any] = None
    user_id: Any
    audiences: list[str] = Field(default_factory=list)
    scopes: list[str] = Field(default_factory=list)
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    redirect_uri: Optional[str] = None
    nonce: Optional[str] = None
