import time

import pytest

from authflow.oauth.handlers import HandlerSet
from authflow.oauth.request_store import AuthRequestStore, PendingAuthRequest
from authflow.persistence import InMemoryProvider


CONSENT_PAGE = "https://consent.example.com/consent"
ISSUER = "https://issuer.example.com"


class FakeBackend:
    """
    In-memory stand-in for the application side of the handler set:
    registered clients, end users, consent codes and token minting.
    Every minting call is recorded in `minted` as (type, claims, state).
    """

    def __init__(self):
        self.config = {
            "consent_page": CONSENT_PAGE,
            "iss": ISSUER,
            "expiry": {"code": 30, "access_token": 3600, "id_token": 3600},
        }
        self.clients = {
            "c1": {
                "client_id": "c1",
                "scopes": ["profile", "email"],
                "audiences": ["https://api.example.com"],
                "redirect_uris": ["https://app/"],
            },
        }
        self.users = {
            "42": {"id": 42, "username": "alice", "client_ids": []},
        }
        self.fip_users = {
            ("openid", "fip-sub-1"): "42",
        }
        self.consent_codes = {}
        self.links = []
        self.minted = []
        self.request_store = AuthRequestStore(store=InMemoryProvider(PendingAuthRequest), ttl_in_sec=600)

    def issue_consent(self, auth_request_code, user_id=42, username="alice", exp=None, **overrides):
        consentcode = f"consent-{len(self.consent_codes) + 1}"
        claims = {
            "user_id": user_id,
            "username": username,
            "code": auth_request_code,
            "exp": exp if exp is not None else int(time.time()) + 60,
        }
        claims.update(overrides)
        self.consent_codes[consentcode] = {k: v for k, v in claims.items() if v is not None}
        return consentcode

    def minted_types(self):
        return [t for t, _, _ in self.minted]

    # handlers

    def get_config(self, previous, payload, context):
        return self.config

    def get_client(self, previous, payload, context):
        return self.clients.get(payload["client_id"])

    def get_auth_consent_claims(self, previous, payload, context):
        return self.consent_codes.get(payload["token"])

    def link_client_to_user(self, previous, payload, context):
        self.links.append(payload)
        user = self.users[str(payload["user_id"])]
        if payload["client_id"] not in user["client_ids"]:
            user["client_ids"].append(payload["client_id"])

    def get_end_user(self, previous, payload, context):
        return next((u for u in self.users.values() if u["username"] == payload["username"]), None)

    async def get_fip_user(self, previous, payload, context):
        user_id = self.fip_users.get((payload["strategy"], payload["user"]["id"]))
        return self.users.get(user_id) if user_id else None

    async def create_fip_user(self, previous, payload, context):
        user_id = str(100 + len(self.users))
        self.users[user_id] = {"id": user_id, "username": payload["user"].get("email"), "client_ids": []}
        self.fip_users[(payload["strategy"], payload["user"]["id"])] = user_id
        return self.users[user_id]

    def _mint(self, prefix):
        async def mint(previous, payload, context):
            self.minted.append((payload["type"], payload["claims"], payload["state"]))
            return f"{prefix}-{payload['claims']['sub']}"
        return mint

    def install(self, handlers: HandlerSet) -> HandlerSet:
        handlers.on("get_config", self.get_config)
        handlers.on("get_client", self.get_client)
        handlers.on("get_auth_consent_claims", self.get_auth_consent_claims)
        handlers.on("link_client_to_user", self.link_client_to_user)
        handlers.on("get_end_user", self.get_end_user)
        handlers.on("get_fip_user", self.get_fip_user)
        handlers.on("create_fip_user", self.create_fip_user)
        handlers.on("generate_access_token", self._mint("at"))
        handlers.on("generate_authorization_code", self._mint("code"))
        handlers.on("generate_id_token", self._mint("idt"))
        self.request_store.install(handlers)
        return handlers


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def handlers(backend):
    return backend.install(HandlerSet())
