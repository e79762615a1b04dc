import asyncio

import pytest

from authflow.errors import InvalidScopeError
from authflow.oauth.dispatch import build_redirect_uri, build_url_with_params, dispatch_tokens
from authflow.oauth.handlers import HandlerSet
from authflow.oauth.models import TokenBundle, TokenRequest


def make_request(scopes, **overrides):
    return TokenRequest(client_id="c1", user_id=42, audiences=["https://api.example.com"], scopes=scopes, **overrides)


class TestDispatchTokens:

    async def test_id_token_without_openid_is_rejected(self, handlers, backend):
        result = await dispatch_tokens(handlers, {"id_token"}, make_request(["profile"]))
        assert result.error.error == "invalid_request"
        assert "openid" in result.error.description
        assert backend.minted == []

    async def test_id_token_with_openid_only_mints_id_token(self, handlers, backend):
        result = await dispatch_tokens(handlers, {"id_token"}, make_request(["openid"]))
        assert result.ok
        assert backend.minted_types() == ["id_token"]
        assert result.value.id_token == "idt-42"
        assert result.value.code is None
        assert result.value.access_token is None

    async def test_code_and_id_token_without_openid_is_rejected(self, handlers, backend):
        result = await dispatch_tokens(handlers, ("code", "id_token"), make_request(["profile"]))
        assert result.error.error == "invalid_request"
        assert backend.minted == []

    async def test_all_artifacts(self, handlers, backend):
        result = await dispatch_tokens(handlers, ("code", "id_token", "token"), make_request(["openid", "profile"]))
        bundle = result.value
        assert sorted(backend.minted_types()) == ["access_token", "code", "id_token"]
        assert bundle.code == "code-42"
        assert bundle.access_token == "at-42"
        assert bundle.id_token == "idt-42"
        assert bundle.token_type == "bearer"
        assert bundle.expires_in == 3600
        assert bundle.scope == "openid profile"

    async def test_claims_passed_to_minting_handlers(self, handlers, backend):
        await dispatch_tokens(handlers, ("code",), make_request(
            ["profile"],
            code_challenge="E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
            code_challenge_method="S256",
            redirect_uri="https://app/cb",
        ))
        token_type, claims, _ = backend.minted[0]
        assert token_type == "code"
        assert claims["iss"] == "https://issuer.example.com"
        assert claims["sub"] == 42
        assert claims["client_id"] == "c1"
        assert claims["aud"] == "https://api.example.com"
        assert claims["code_challenge_method"] == "S256"
        assert claims["redirect_uri"] == "https://app/cb"
        assert claims["exp"] - claims["iat"] == 30

    async def test_nonce_reaches_id_token(self, handlers, backend):
        await dispatch_tokens(handlers, ("id_token",), make_request(["openid"], nonce="n-123"))
        _, claims, _ = backend.minted[0]
        assert claims["nonce"] == "n-123"

    async def test_issuance_runs_concurrently(self, backend):
        started = []
        release = asyncio.Event()

        def slow(name):
            async def mint(previous, payload, context):
                started.append(name)
                if len(started) == 3:
                    release.set()
                await asyncio.wait_for(release.wait(), timeout=1)
                return name
            return mint

        handlers = HandlerSet().on("get_config", backend.get_config)
        handlers.on("generate_access_token", slow("at"))
        handlers.on("generate_authorization_code", slow("code"))
        handlers.on("generate_id_token", slow("idt"))

        result = await dispatch_tokens(handlers, ("code", "id_token", "token"), make_request(["openid"]))
        assert result.ok
        assert sorted(started) == ["at", "code", "idt"]

    async def test_single_failure_aborts_the_whole_dispatch(self, handlers, backend):
        def refuse(previous, payload, context):
            raise InvalidScopeError("Refused")

        handlers.on("generate_id_token", refuse)
        result = await dispatch_tokens(handlers, ("code", "id_token", "token"), make_request(["openid"]))
        assert not result.ok
        assert result.value is None
        assert result.error.error == "invalid_scope"
        assert result.error.message == "Failed to generate tokens"

    async def test_unexpected_failure_is_a_server_error(self, handlers):
        def broken(previous, payload, context):
            raise RuntimeError("db down")

        handlers.on("generate_access_token", broken)
        result = await dispatch_tokens(handlers, ("token",), make_request([]))
        assert result.error.status_code == 500
        assert "db down" in result.error.chain_messages()

    async def test_missing_minting_handler(self, backend):
        handlers = HandlerSet().on("get_config", backend.get_config)
        result = await dispatch_tokens(handlers, ("token",), make_request([]))
        assert result.error.status_code == 500
        assert "generate_openid_access_token" in result.error.description

    async def test_missing_expiry_configuration(self, handlers, backend):
        backend.config["expiry"] = {"code": 30}
        result = await dispatch_tokens(handlers, ("token",), make_request([]))
        assert result.error.status_code == 500
        assert "expiry.access_token" in result.error.description


class TestBuildRedirectUri:

    def test_only_produced_artifacts_are_added(self):
        uri = build_redirect_uri("https://app/cb", TokenBundle(code="abc"))
        assert uri == "https://app/cb?code=abc"

    def test_all_keys(self):
        uri = build_redirect_uri("https://app/cb", TokenBundle(code="c", access_token="t", id_token="i"), "xyz")
        assert uri == "https://app/cb?code=c&token=t&id_token=i&state=xyz"

    def test_existing_query_is_replaced_by_default(self):
        assert build_redirect_uri("https://app/cb?old=1", TokenBundle(code="c")) == "https://app/cb?code=c"

    def test_existing_query_can_be_kept(self):
        uri = build_redirect_uri("https://app/cb?old=1", TokenBundle(code="c"), keep_query=True)
        assert uri == "https://app/cb?old=1&code=c"

    def test_url_with_params_merges(self):
        assert build_url_with_params("https://x/p?a=1", {"b": "2", "c": None}) == "https://x/p?a=1&b=2"
