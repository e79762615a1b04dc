from urllib.parse import quote, unquote

import pytest

from authflow.errors import InternalServerError, InvalidRequestError
from authflow.oauth.params import decode_state, encode_state


class TestStateCodec:

    @pytest.mark.parametrize("context", [
        {},
        {"client_id": "c1", "response_type": "code+id_token", "scope": "openid profile"},
        {"redirect_uri": "https://app/cb?x=1&y=2", "nested": {"a": [1, 2, None], "b": True}},
        {"unicode": "héllo wörld ✓", "number": 12.5},
    ])
    def test_round_trip(self, context):
        assert decode_state(encode_state(context)) == context

    def test_round_trip_survives_percent_encoding(self):
        context = {"orig_redirectUri": "https://auth.example.com/oauth2/v1/openid/authorizecallback", "state": "s p+a/c=e"}
        token = encode_state(context)
        assert decode_state(unquote(quote(token, safe=""))) == context

    def test_encoded_state_is_url_safe(self):
        token = encode_state({"data": "?>?>?>~~~" * 10})
        assert quote(token, safe="") == token

    def test_decode_accepts_standard_alphabet_and_padding(self):
        token = encode_state({"k": "?>?>"})
        standard = token.replace("-", "+").replace("_", "/")
        standard += "=" * (-len(standard) % 4)
        assert decode_state(standard) == {"k": "?>?>"}

    def test_decode_accepts_plus_turned_into_space(self):
        token = encode_state({"k": "~~~>>>"}).replace("-", "+")
        assert decode_state(token.replace("+", " ")) == {"k": "~~~>>>"}

    def test_none_context_encodes_empty_object(self):
        assert decode_state(encode_state(None)) == {}

    @pytest.mark.parametrize("token", ["not base64 at all!!", "e30x", "bm90IGpzb24"])
    def test_garbage_is_a_client_error(self, token):
        with pytest.raises(InvalidRequestError) as exc:
            decode_state(token)
        assert "state" in exc.value.message
        assert exc.value.status_code == 400

    def test_missing_token_is_a_client_error(self):
        with pytest.raises(InvalidRequestError):
            decode_state(None)

    def test_non_object_payload_is_rejected(self):
        # base64url of '[1,2]'
        with pytest.raises(InvalidRequestError):
            decode_state("WzEsMl0")

    def test_unserializable_context_is_a_server_error(self):
        with pytest.raises(InternalServerError):
            encode_state({"when": object()})
