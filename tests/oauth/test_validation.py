import pytest

from authflow.oauth.handlers import HandlerSet
from authflow.oauth.validation import validate_authorization_request


def make_request(**overrides):
    request = {
        "client_id": "c1",
        "response_type": "code",
        "redirect_uri": "https://app/cb",
        "scope": "profile",
    }
    request.update(overrides)
    return request


class TestValidateAuthorizationRequest:

    async def test_valid_request(self, handlers):
        result = await validate_authorization_request(handlers, make_request(scope="openid profile"))
        assert result.ok
        assert result.value.client.client_id == "c1"
        assert result.value.response_types == ("code",)
        assert result.value.scopes == ["openid", "profile"]
        assert result.value.consent_page == "https://consent.example.com/consent"

    async def test_openid_not_required_at_request_time(self, handlers):
        result = await validate_authorization_request(handlers, make_request(response_type="code+id_token"))
        assert result.ok
        assert result.value.response_types == ("code", "id_token")

    @pytest.mark.parametrize("field", ["client_id", "response_type", "redirect_uri"])
    async def test_missing_required_field(self, handlers, field):
        result = await validate_authorization_request(handlers, make_request(**{field: None}))
        assert not result.ok
        assert result.error.error == "invalid_request"
        assert field in result.error.description

    async def test_malformed_response_type(self, handlers):
        result = await validate_authorization_request(handlers, make_request(response_type="code+banana"))
        assert result.error.error == "invalid_request"
        assert "code+banana" in result.error.description

    async def test_malformed_redirect_uri(self, handlers):
        result = await validate_authorization_request(handlers, make_request(redirect_uri="not a url"))
        assert result.error.error == "invalid_request"

    async def test_half_pkce_pair(self, handlers):
        result = await validate_authorization_request(handlers, make_request(code_challenge_method="S256"))
        assert result.error.error == "invalid_request"

    async def test_unknown_client(self, handlers):
        result = await validate_authorization_request(handlers, make_request(client_id="nope"))
        assert result.error.error == "invalid_client"
        assert result.error.status_code == 401

    async def test_redirect_not_allowlisted(self, handlers):
        result = await validate_authorization_request(handlers, make_request(redirect_uri="https://evil/cb"))
        assert result.error.error == "invalid_request"
        assert "allowlist" in result.error.description

    async def test_scope_not_allowed(self, handlers):
        result = await validate_authorization_request(handlers, make_request(scope="profile admin"))
        assert result.error.error == "invalid_scope"

    async def test_missing_consent_page_is_server_error(self, handlers, backend):
        backend.config["consent_page"] = None
        result = await validate_authorization_request(handlers, make_request())
        assert result.error.error == "internal_server_error"
        assert result.error.status_code == 500

    async def test_malformed_consent_page_is_server_error(self, handlers, backend):
        backend.config["consent_page"] = "consent"
        result = await validate_authorization_request(handlers, make_request())
        assert result.error.status_code == 500

    async def test_consent_page_not_needed_for_federated_flow(self, handlers, backend):
        backend.config["consent_page"] = None
        result = await validate_authorization_request(handlers, make_request(), require_consent_page=False)
        assert result.ok
        assert result.value.consent_page is None

    async def test_client_checks_skipped_without_client_verification(self, handlers):
        result = await validate_authorization_request(
            handlers,
            make_request(client_id=None, redirect_uri="https://anywhere/cb", scope="anything"),
            verify_client_id=False,
        )
        assert result.ok

    async def test_missing_handler_fails_before_lookup(self):
        calls = []
        handlers = HandlerSet().on("get_config", lambda prev, payload, ctx: calls.append("get_config"))
        result = await validate_authorization_request(handlers, make_request())
        assert result.error.status_code == 500
        assert "get_client" in result.error.description
        assert calls == []

    async def test_errors_keep_the_chain(self, handlers):
        result = await validate_authorization_request(handlers, make_request(response_type="banana"))
        messages = result.error.chain_messages()
        assert messages[0].startswith("Failed to validate the authorize input")
        assert len(messages) == 2
