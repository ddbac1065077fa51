"""
Tests for the in-memory backend, key layout and record decoding.
"""
import orjson
import pytest

from redenv.exceptions import InvalidConfig, InvalidFormat, ProjectNotFound
from redenv.storage import MemoryStore, env_key, meta_key, validate_name
from redenv.vault.models import (
    ProjectMetadata,
    SecretVersion,
    decode_history,
    decode_tokens,
    encode_history,
)


class TestKeyLayout:

    def test_names(self):
        assert meta_key("shop") == "meta@shop"
        assert env_key("production", "shop") == "production:shop"

    @pytest.mark.parametrize("name", ["a:b", "a@b", ""])
    def test_validate_name(self, name):
        with pytest.raises(InvalidConfig):
            validate_name(name)


class NoExpiryStore(MemoryStore):
    """Backend that cannot expire fields."""

    async def hexpire(self, key, seconds, *fields):
        raise ConnectionError("HEXPIRE not supported")


class TestMemoryStore:

    async def test_hash_operations(self, store):
        assert await store.hset("h", {"a": "1", "b": "2"}) == 2
        assert await store.hset("h", {"a": "3"}) == 0
        assert await store.hget("h", "a") == "3"
        assert await store.hgetall("h") == {"a": "3", "b": "2"}
        assert await store.hexists("h", "b")
        assert await store.hdel("h", "b", "zz") == 1
        assert not await store.hexists("h", "b")
        assert await store.hget("missing", "a") is None
        assert await store.hgetall("missing") == {}

    async def test_empty_hash_disappears(self, store):
        await store.hset("h", {"a": "1"})
        await store.hdel("h", "a")
        assert not await store.exists("h")

    async def test_field_expiry(self, store, clock):
        await store.hset("h", {"a": "1", "b": "2"})
        await store.hexpire("h", 10, "a")
        clock.advance(9)
        assert await store.hget("h", "a") == "1"
        clock.advance(1)
        assert await store.hgetall("h") == {"b": "2"}

    async def test_overwrite_clears_field_ttl(self, store, clock):
        await store.hset("h", {"a": "1"})
        await store.hexpire("h", 10, "a")
        await store.hset("h", {"a": "2"})
        clock.advance(20)
        assert await store.hget("h", "a") == "2"

    async def test_hset_with_expiry(self, store, clock):
        await store.hset_with_expiry("h", {"a": "1"}, 10)
        assert await store.hget("h", "a") == "1"
        clock.advance(10)
        assert not await store.hexists("h", "a")

    async def test_hset_with_expiry_removes_fields_on_failure(self, clock):
        store = NoExpiryStore(clock=clock)
        await store.hset("h", {"keep": "1"})
        with pytest.raises(ConnectionError):
            await store.hset_with_expiry("h", {"a": "1", "b": "2"}, 10)
        assert await store.hgetall("h") == {"keep": "1"}

    async def test_scan(self, store):
        for key in ("meta@a", "meta@b", "dev:a", "prod:a", "dev:b"):
            await store.hset(key, {"x": "1"})
        assert sorted(await store.scan_all("meta@*")) == ["meta@a", "meta@b"]
        assert sorted(await store.scan_all("*:a")) == ["dev:a", "prod:a"]

    async def test_delete(self, store):
        await store.hset("a", {"x": "1"})
        await store.hset("b", {"x": "1"})
        assert await store.delete("a", "b", "c") == 2
        assert not await store.exists("a")


class TestRecords:

    def test_history_round_trip_uses_wire_names(self):
        history = [SecretVersion(version=1, ciphertext="aa.bb", author="me")]
        raw = orjson.loads(encode_history(history))
        assert raw[0]["value"] == "aa.bb"
        assert raw[0]["user"] == "me"
        assert decode_history(encode_history(history)) == history

    def test_decode_absent_history(self):
        assert decode_history(None) == []

    @pytest.mark.parametrize("raw", ["{", '{"a": 1}', '[{"version": 0}]'])
    def test_decode_corrupted_history(self, raw):
        with pytest.raises(InvalidFormat):
            decode_history(raw, "FOO")

    def test_decode_tokens(self):
        raw = orjson.dumps({
            "stk_1": {
                "encryptedPEK": "aa.bb",
                "salt": "00ff",
                "name": "ci",
                "description": "",
                "createdAt": "2025-01-01T00:00:00.000Z",
            }
        })
        tokens = decode_tokens(raw)
        assert tokens["stk_1"].name == "ci"
        assert decode_tokens(None) == {}
        with pytest.raises(InvalidFormat):
            decode_tokens('{"stk_1": {"name": "ci"}}')

    def test_metadata_missing(self):
        with pytest.raises(ProjectNotFound):
            ProjectMetadata.from_hash("P", {})
        with pytest.raises(ProjectNotFound):
            ProjectMetadata.from_hash("P", {"salt": "00"})

    def test_metadata_defaults(self):
        metadata = ProjectMetadata.from_hash(
            "P", {"encryptedPEK": "aa.bb", "salt": "00"}
        )
        assert metadata.history_limit == 10
        assert metadata.service_tokens == {}
        assert metadata.find_token("stk_1") is None

    def test_metadata_skips_corrupted_ephemeral_token(self):
        metadata = ProjectMetadata.from_hash("P", {
            "encryptedPEK": "aa.bb",
            "salt": "00",
            "ephemeral:etk_broken": "{not json",
        })
        assert metadata.ephemeral_tokens == {}
        assert metadata.encrypted_pek == "aa.bb"

    def test_metadata_invalid_limit(self):
        with pytest.raises(InvalidFormat):
            ProjectMetadata.from_hash(
                "P", {"encryptedPEK": "aa.bb", "salt": "00", "historyLimit": "lots"}
            )


def test_store_is_abstract_store():
    from redenv.storage import AbstractStore
    assert isinstance(MemoryStore(), AbstractStore)
