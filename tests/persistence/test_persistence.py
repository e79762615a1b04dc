from unittest.mock import patch

import fakeredis
import pytest
from pydantic import BaseModel

from authflow.errors import InvalidGrantError, InvalidRequestError
from authflow.oauth.request_store import AuthRequestStore, PendingAuthRequest
from authflow.persistence import InMemoryProvider, PersistenceFactory, RedisProvider


class Item(BaseModel):
    name: str
    count: int = 0


class TestInMemoryProvider:

    def make_store(self):
        return InMemoryProvider(Item)

    def test_set_and_get(self):
        store = self.make_store()
        store.set("a", Item(name="a", count=1))
        assert store.get("a") == Item(name="a", count=1)

    def test_missing_key(self):
        assert self.make_store().get("nope") is None

    def test_pop_removes(self):
        store = self.make_store()
        store.set("a", Item(name="a"))
        assert store.pop("a") == Item(name="a")
        assert store.get("a") is None
        assert store.pop("a") is None

    def test_expired_entry_is_not_returned(self):
        store = self.make_store()
        with patch("authflow.persistence.time") as mock_time:
            mock_time.time.return_value = 1000.0
            store.set("a", Item(name="a"), ttl_in_sec=10)
            assert store.get("a") is not None

            mock_time.time.return_value = 1011.0
            assert store.get("a") is None

    def test_cleanup_expired(self):
        store = self.make_store()
        with patch("authflow.persistence.time") as mock_time:
            mock_time.time.return_value = 1000.0
            store.set("short", Item(name="short"), ttl_in_sec=5)
            store.set("long", Item(name="long"), ttl_in_sec=100)
            store.set("forever", Item(name="forever"))

            mock_time.time.return_value = 1010.0
            assert store.cleanup_expired() == 1
            assert store.get("long") is not None
            assert store.get("forever") is not None

    def test_reset_without_ttl_survives_cleanup(self):
        store = self.make_store()
        with patch("authflow.persistence.time") as mock_time:
            mock_time.time.return_value = 1000.0
            store.set("a", Item(name="a"), ttl_in_sec=5)
            store.set("a", Item(name="a", count=2))

            mock_time.time.return_value = 1010.0
            assert store.cleanup_expired() == 0
            assert store.get("a").count == 2


class TestRedisProvider:

    def make_store(self):
        """
        Return a (redis_client, store) pair backed by an isolated FakeRedis
        instance, so tests never share state.
        """
        r = fakeredis.FakeRedis(decode_responses=True)
        return r, RedisProvider(Item, prefix="items", client=r)

    def test_keys_are_prefixed(self):
        r, store = self.make_store()
        store.set("a", Item(name="a"))
        assert r.get("items:a") == Item(name="a").model_dump_json()

    def test_set_and_get(self):
        _, store = self.make_store()
        store.set("a", Item(name="a", count=3))
        assert store.get("a").count == 3

    def test_ttl_is_applied(self):
        r, store = self.make_store()
        store.set("a", Item(name="a"), ttl_in_sec=30)
        assert 0 < r.ttl("items:a") <= 30

    def test_pop_is_single_use(self):
        _, store = self.make_store()
        store.set("a", Item(name="a"))
        assert store.pop("a") == Item(name="a")
        assert store.pop("a") is None

    def test_delete(self):
        _, store = self.make_store()
        store.set("a", Item(name="a"))
        store.delete("a")
        assert store.get("a") is None


class TestPersistenceFactory:

    def test_memory_by_default(self):
        with patch("authflow.persistence.Settings.STORAGE_BACKEND", "memory"):
            assert isinstance(PersistenceFactory.create(Item, scope="items"), InMemoryProvider)

    def test_redis_backend(self):
        with patch("authflow.persistence.Settings.STORAGE_BACKEND", "redis"):
            store = PersistenceFactory.create(Item, scope="items")
        assert isinstance(store, RedisProvider)
        assert store.prefix == "items"


class TestAuthRequestStore:

    @pytest.fixture(params=["memory", "redis"])
    def request_store(self, request):
        if request.param == "memory":
            store = InMemoryProvider(PendingAuthRequest)
        else:
            store = RedisProvider(PendingAuthRequest, prefix="auth_requests", client=fakeredis.FakeRedis(decode_responses=True))
        return AuthRequestStore(store=store, ttl_in_sec=60)

    def test_code_round_trip(self, request_store):
        code = request_store.generate_auth_request_code(None, {"claims": {"client_id": "c1", "nonce": "n"}}, {})
        claims = request_store.get_auth_request_claims(None, {"token": code}, {})
        assert claims["client_id"] == "c1"
        assert claims["nonce"] == "n"

    def test_codes_are_unique(self, request_store):
        payload = {"claims": {"client_id": "c1"}}
        codes = {request_store.generate_auth_request_code(None, payload, {}) for _ in range(20)}
        assert len(codes) == 20

    def test_code_is_single_use(self, request_store):
        code = request_store.generate_auth_request_code(None, {"claims": {"client_id": "c1"}}, {})
        request_store.get_auth_request_claims(None, {"token": code}, {})
        with pytest.raises(InvalidGrantError):
            request_store.get_auth_request_claims(None, {"token": code}, {})

    def test_unknown_code(self, request_store):
        with pytest.raises(InvalidGrantError):
            request_store.get_auth_request_claims(None, {"token": "nope"}, {})

    def test_missing_claims(self, request_store):
        with pytest.raises(InvalidRequestError):
            request_store.generate_auth_request_code(None, {}, {})
