"""
Tests for service tokens, ephemeral tokens and the vault session.
"""
import asyncio

import orjson
import pytest

from redenv.exceptions import (
    DecryptionFailed,
    InvalidConfig,
    InvalidToken,
    MissingKey,
    RedenvError,
)
from redenv.storage import MemoryStore, meta_key
from redenv.vault.crypto import decrypt
from redenv.vault.keys import register_project, unlock_with_password, unlock_with_token
from redenv.vault.secrets import read_history, write_secret
from redenv.vault.session import VaultSession, default_author, run_session
from redenv.vault.tokens import (
    TokenCleanupRegistry,
    issue_ephemeral_token,
    issue_service_token,
    list_tokens,
    revoke,
)

from .conftest import AUTHOR, PASSWORD, PROJECT


class TestServiceTokens:

    async def test_issue(self, store, pek):
        token = await issue_service_token(store, PROJECT, pek, "vercel", "production deploys")
        assert token.public_id.startswith("stk_")
        assert token.secret.startswith("redenv_sk_")
        raw = orjson.loads(await store.hget(meta_key(PROJECT), "serviceTokens"))
        record = raw[token.public_id]
        assert set(record) == {"encryptedPEK", "salt", "name", "description", "createdAt"}
        assert record["name"] == "vercel"
        # the secret itself is never stored
        assert token.secret not in orjson.dumps(raw).decode()
        assert token.secret not in repr(token)

    async def test_each_token_has_its_own_copy(self, store, pek):
        first = await issue_service_token(store, PROJECT, pek, "one")
        second = await issue_service_token(store, PROJECT, pek, "two")
        tokens = await list_tokens(store, PROJECT)
        assert set(tokens) == {first.public_id, second.public_id}
        assert tokens[first.public_id].salt != tokens[second.public_id].salt
        assert tokens[first.public_id].encrypted_pek != tokens[second.public_id].encrypted_pek

    async def test_empty_name(self, store, pek):
        with pytest.raises(InvalidConfig):
            await issue_service_token(store, PROJECT, pek, "")

    async def test_unknown_token_id(self, store, pek):
        with pytest.raises(InvalidToken):
            await unlock_with_token(store, PROJECT, "stk_nope", "redenv_sk_nope")

    async def test_wrong_secret(self, store, pek):
        token = await issue_service_token(store, PROJECT, pek, "ci")
        with pytest.raises(DecryptionFailed):
            await unlock_with_token(store, PROJECT, token.public_id, "redenv_sk_wrong")

    async def test_token_and_password_yield_same_key(self, store, pek):
        await write_secret(store, PROJECT, "development", "FOO", "bar", pek, AUTHOR)
        token = await issue_service_token(store, PROJECT, pek, "ci")
        via_token = await unlock_with_token(store, PROJECT, token.public_id, token.secret)
        via_password = await unlock_with_password(store, PROJECT, PASSWORD)
        assert via_token == via_password == pek
        history = await read_history(store, PROJECT, "development", "FOO")
        assert decrypt(history[0].ciphertext, via_token) == "bar"
        assert decrypt(history[0].ciphertext, via_password) == "bar"

    async def test_revoke(self, store, pek):
        token = await issue_service_token(store, PROJECT, pek, "ci")
        other = await issue_service_token(store, PROJECT, pek, "other")
        assert await revoke(store, PROJECT, token.public_id) == [token.public_id]
        with pytest.raises((InvalidToken, DecryptionFailed)):
            await unlock_with_token(store, PROJECT, token.public_id, token.secret)
        # other credentials are unaffected
        assert await unlock_with_password(store, PROJECT, PASSWORD) == pek
        assert await unlock_with_token(store, PROJECT, other.public_id, other.secret) == pek

    async def test_revoke_unknown_changes_nothing(self, store, pek):
        token = await issue_service_token(store, PROJECT, pek, "ci")
        with pytest.raises(InvalidToken):
            await revoke(store, PROJECT, token.public_id, "stk_missing")
        assert token.public_id in await list_tokens(store, PROJECT)


class NoExpiryStore(MemoryStore):

    async def hexpire(self, key, seconds, *fields):
        raise ConnectionError("HEXPIRE not supported")


class TestEphemeralTokens:

    async def test_issue_and_unlock(self, store, pek):
        token = await issue_ephemeral_token(store, PROJECT, pek, 60)
        assert token.public_id.startswith("etk_")
        assert await store.hexists(meta_key(PROJECT), f"ephemeral:{token.public_id}")
        assert await unlock_with_token(store, PROJECT, token.public_id, token.secret) == pek
        assert token.public_id in await list_tokens(store, PROJECT)

    async def test_store_expires_token(self, store, clock, pek):
        token = await issue_ephemeral_token(store, PROJECT, pek, 60)
        clock.advance(61)
        with pytest.raises(InvalidToken):
            await unlock_with_token(store, PROJECT, token.public_id, token.secret)
        # the rest of the metadata is untouched
        assert await unlock_with_password(store, PROJECT, PASSWORD) == pek

    async def test_invalid_ttl(self, store, pek):
        with pytest.raises(InvalidConfig):
            await issue_ephemeral_token(store, PROJECT, pek, 0)

    async def test_failed_expiry_leaves_no_token(self, clock):
        store = NoExpiryStore(clock=clock)
        pek = await register_project(store, PROJECT, PASSWORD)
        with pytest.raises(ConnectionError):
            await issue_ephemeral_token(store, PROJECT, pek, 60)
        fields = await store.hgetall(meta_key(PROJECT))
        assert not [name for name in fields if name.startswith("ephemeral:")]
        assert await list_tokens(store, PROJECT) == {}

    async def test_corrupted_token_does_not_block_unlock(self, store, pek):
        token = await issue_ephemeral_token(store, PROJECT, pek, 60)
        await store.hset(meta_key(PROJECT), {"ephemeral:etk_broken": "{not json"})
        assert await unlock_with_password(store, PROJECT, PASSWORD) == pek
        assert await unlock_with_token(store, PROJECT, token.public_id, token.secret) == pek
        assert set(await list_tokens(store, PROJECT)) == {token.public_id}

    async def test_revoke_ephemeral(self, store, pek):
        token = await issue_ephemeral_token(store, PROJECT, pek, 60)
        await revoke(store, PROJECT, token.public_id)
        assert not await store.hexists(meta_key(PROJECT), f"ephemeral:{token.public_id}")

    async def test_registry_drain(self, store, pek):
        registry = TokenCleanupRegistry()
        first = await issue_ephemeral_token(store, PROJECT, pek, 60, registry=registry)
        second = await issue_ephemeral_token(store, PROJECT, pek, 60, registry=registry)
        assert registry.pending == [(PROJECT, first.public_id), (PROJECT, second.public_id)]
        assert await registry.drain() == 2
        assert len(registry) == 0
        assert await list_tokens(store, PROJECT) == {}

    async def test_registry_swallows_errors(self, store, clock, pek):
        registry = TokenCleanupRegistry()
        expired = await issue_ephemeral_token(store, PROJECT, pek, 10, registry=registry)
        alive = await issue_ephemeral_token(store, PROJECT, pek, 100, registry=registry)
        clock.advance(11)
        # the expired one can no longer be revoked, the next is still attempted
        assert await registry.drain() == 1
        tokens = await list_tokens(store, PROJECT)
        assert expired.public_id not in tokens
        assert alive.public_id not in tokens


class TestVaultSession:

    async def test_unlock_caches_key(self, store, pek):
        session = VaultSession(store, author=AUTHOR)
        assert not session.is_unlocked(PROJECT)
        assert await session.unlock(PROJECT, PASSWORD) == pek
        assert session.key_for(PROJECT) == pek
        # cached: the password is not checked again
        assert await session.unlock(PROJECT, "anything") == pek
        await session.close()

    async def test_key_for_locked_project(self, store, pek):
        session = VaultSession(store)
        with pytest.raises(MissingKey):
            session.key_for(PROJECT)

    async def test_close_revokes_ephemeral_tokens(self, store, pek):
        async with VaultSession(store, author=AUTHOR) as session:
            await session.unlock(PROJECT, PASSWORD)
            token = await session.issue_ephemeral_token(PROJECT, 300)
            assert await unlock_with_token(store, PROJECT, token.public_id, token.secret) == pek
        assert session.closed
        assert not session.is_unlocked(PROJECT)
        with pytest.raises(InvalidToken):
            await unlock_with_token(store, PROJECT, token.public_id, token.secret)

    async def test_closed_session_rejects_use(self, store, pek):
        session = VaultSession(store)
        await session.close()
        with pytest.raises(RedenvError):
            await session.unlock(PROJECT, PASSWORD)

    async def test_change_password_forgets_key(self, store, pek):
        session = VaultSession(store)
        await session.unlock(PROJECT, PASSWORD)
        await session.change_password(PROJECT, PASSWORD, "new-password!")
        assert not session.is_unlocked(PROJECT)
        assert await session.unlock(PROJECT, "new-password!") == pek

    def test_default_author(self):
        assert default_author()


class TestRunSession:

    async def test_returns_and_cleans_up(self, store, pek):
        issued = []

        async def main(session):
            await session.unlock(PROJECT, PASSWORD)
            issued.append(await session.issue_ephemeral_token(PROJECT, 300))
            return "done"

        assert await run_session(main, store, author=AUTHOR) == "done"
        with pytest.raises(InvalidToken):
            await unlock_with_token(store, PROJECT, issued[0].public_id, issued[0].secret)

    async def test_cancellation_still_cleans_up(self, store, pek):
        ready = asyncio.Event()
        issued = []

        async def main(session):
            await session.unlock(PROJECT, PASSWORD)
            issued.append(await session.issue_ephemeral_token(PROJECT, 300))
            ready.set()
            await asyncio.Event().wait()

        runner = asyncio.create_task(run_session(main, store))
        await ready.wait()
        runner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await runner
        assert await list_tokens(store, PROJECT) == {}


async def test_scenario_revoked_token_keeps_password_path(store, pek):
    """Issue, use and revoke a token; the master password keeps working."""
    await write_secret(store, PROJECT, "development", "FOO", "bar", pek, AUTHOR)
    token = await issue_service_token(store, PROJECT, pek, "T")
    assert await unlock_with_token(store, PROJECT, token.public_id, token.secret) == pek
    await revoke(store, PROJECT, token.public_id)
    with pytest.raises(InvalidToken):
        await unlock_with_token(store, PROJECT, token.public_id, token.secret)
    unlocked = await unlock_with_password(store, PROJECT, PASSWORD)
    history = await read_history(store, PROJECT, "development", "FOO")
    assert decrypt(history[0].ciphertext, unlocked) == "bar"
