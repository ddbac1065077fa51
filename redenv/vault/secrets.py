"""
Versioned Secret Store: read-modify-write over per-environment histories.

Each ``{environment}:{project}`` hash maps a secret name to a JSON list of
versions, newest first. A write reads the list, prepends a new version
encrypted with the PEK, trims it to the project history limit and stores
the whole list back.

Concurrency:
    The store has no compare-and-swap primitive. Before overwriting, the
    head version is read again and the write is retried when another writer
    moved it; a writer landing between that re-check and the overwrite can
    still be lost.

Security Note:
    Never log plaintext or ciphertext values. Only log key names.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import NamedTuple, Optional

from ..conf import DEFAULT_HISTORY_LIMIT, WRITE_RETRIES
from ..exceptions import (
    InvalidConfig,
    InvalidFormat,
    ProjectNotFound,
    RedenvError,
    RollbackError,
    SecretExists,
    SecretNotFound,
    WriteConflict,
)
from ..storage import AbstractStore, env_key, meta_key, validate_name
from .crypto import decrypt, encrypt
from .models import SecretVersion, decode_history, encode_history

logger = logging.getLogger("redenv.vault")


class DecryptedVersion(NamedTuple):
    version: int
    author: str
    created_at: datetime
    value: Optional[str]  # None when the version could not be decrypted


@dataclass
class EnvironmentDiff:
    only_in_source: dict[str, str] = field(default_factory=dict)
    only_in_target: dict[str, str] = field(default_factory=dict)
    changed: dict[str, tuple[str, str]] = field(default_factory=dict)
    unchanged: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.only_in_source or self.only_in_target or self.changed)


def _history_limit(project: str, metadata: dict[str, str]) -> int:
    if not metadata:
        raise ProjectNotFound(
            f'Could not retrieve metadata for project "{project}". '
            "The project may not exist.",
            context={"project": project}
        )
    raw = metadata.get("historyLimit")
    if raw in (None, ""):
        return DEFAULT_HISTORY_LIMIT
    try:
        return int(raw)
    except ValueError as err:
        raise InvalidFormat(
            f'Invalid history limit for project "{project}"'
        ) from err


def _head(history: list[SecretVersion]) -> int:
    return history[0].version if history else 0


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def write_secret(
    store: AbstractStore,
    project: str,
    environment: str,
    key: str,
    plaintext: str,
    pek: bytes,
    author: str,
    retries: int = WRITE_RETRIES,
) -> SecretVersion:
    """Append a new version of ``key`` (upsert).

    Args:
        store: Backing store.
        project: Project name.
        environment: Environment name.
        key: Secret name.
        plaintext: New secret value.
        pek: Unwrapped Project Encryption Key.
        author: Audit identity recorded on the version.
        retries: Re-reads allowed when a concurrent writer moves the head.

    Returns:
        The version record that was stored.

    Raises:
        ProjectNotFound: Project metadata does not exist.
        WriteConflict: The head kept moving after ``retries`` attempts.
    """
    hash_key = env_key(environment, project)
    for attempt in range(retries + 1):
        metadata, raw_history = await asyncio.gather(
            store.hgetall(meta_key(project)),
            store.hget(hash_key, key),
        )
        limit = _history_limit(project, metadata)
        history = decode_history(raw_history, key)
        head = _head(history)

        entry = SecretVersion(
            version=head + 1,
            ciphertext=encrypt(plaintext, pek),
            author=author,
        )
        updated = [entry, *history]
        if limit > 0:
            updated = updated[:limit]

        current = decode_history(await store.hget(hash_key, key), key)
        if _head(current) != head:
            logger.warning(
                "Concurrent write detected on %s/%s key=%s (attempt %d)",
                project, environment, key, attempt + 1,
            )
            continue

        await store.hset(hash_key, {key: encode_history(updated)})
        logger.debug(
            "Vault write: project=%s env=%s key=%s version=%d",
            project, environment, key, entry.version,
        )
        return entry
    raise WriteConflict(
        f"Secret '{key}' was modified concurrently, giving up after {retries + 1} attempts",
        context={"project": project, "environment": environment, "key": key}
    )


async def add_secret(
    store: AbstractStore,
    project: str,
    environment: str,
    key: str,
    plaintext: str,
    pek: bytes,
    author: str,
) -> SecretVersion:
    """Create a new secret; fails if ``key`` already exists."""
    validate_name(environment, "environment")
    if await store.hexists(env_key(environment, project), key):
        raise SecretExists(
            f"Key '{key}' already exists. Use edit to update it.",
            context={"key": key}
        )
    return await write_secret(store, project, environment, key, plaintext, pek, author)


async def edit_secret(
    store: AbstractStore,
    project: str,
    environment: str,
    key: str,
    plaintext: str,
    pek: bytes,
    author: str,
) -> SecretVersion:
    """Update an existing secret; fails if ``key`` does not exist."""
    if not await store.hexists(env_key(environment, project), key):
        raise SecretNotFound(
            f"Key '{key}' does not exist. Use add to create it.",
            context={"key": key}
        )
    return await write_secret(store, project, environment, key, plaintext, pek, author)


async def write_many(
    store: AbstractStore,
    project: str,
    environment: str,
    values: dict[str, str],
    pek: bytes,
    author: str,
) -> list[SecretVersion]:
    """Write several secrets; each key is an independent read-modify-write."""
    return list(await asyncio.gather(*(
        write_secret(store, project, environment, key, value, pek, author)
        for key, value in values.items()
    )))


async def remove_secrets(
    store: AbstractStore,
    project: str,
    environment: str,
    *keys: str,
) -> int:
    """Delete secrets (with their whole history) from an environment."""
    removed = await store.hdel(env_key(environment, project), *keys)
    logger.info(
        "Removed %d secret(s) from %s/%s", removed, project, environment,
    )
    return removed


async def set_history_limit(store: AbstractStore, project: str, limit: int) -> None:
    """Change how many versions are kept per secret (0 = unlimited).

    Existing histories are trimmed on their next write.
    """
    if limit < 0:
        raise InvalidConfig("History limit cannot be negative")
    if not await store.exists(meta_key(project)):
        raise ProjectNotFound(
            f'Project "{project}" not found.', context={"project": project}
        )
    await store.hset(meta_key(project), {"historyLimit": str(limit)})


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def read_history(
    store: AbstractStore,
    project: str,
    environment: str,
    key: str,
) -> list[SecretVersion]:
    """Return the stored versions of ``key``, newest first.

    Raises:
        SecretNotFound: If the secret has no history.
    """
    history = decode_history(await store.hget(env_key(environment, project), key), key)
    if not history:
        raise SecretNotFound(
            f"No secret named '{key}' found in {environment}.",
            context={"project": project, "environment": environment, "key": key}
        )
    return history


async def read_latest(
    store: AbstractStore,
    project: str,
    environment: str,
    key: str,
    pek: bytes,
) -> str:
    """Decrypt the head version of ``key``.

    Decryption errors propagate: a wrong PEK is never reported as a missing value.
    """
    history = await read_history(store, project, environment, key)
    return decrypt(history[0].ciphertext, pek)


def decrypt_versions(history: list[SecretVersion], pek: bytes) -> list[DecryptedVersion]:
    """Decrypt every version, isolating failures per version."""
    result = []
    for entry in history:
        try:
            value = decrypt(entry.ciphertext, pek)
        except RedenvError as err:
            logger.warning("Could not decrypt version %d: %s", entry.version, err.code)
            value = None
        result.append(
            DecryptedVersion(entry.version, entry.author, entry.created_at, value)
        )
    return result


def _decrypt_head(key: str, raw: str, pek: bytes) -> Optional[tuple[str, str]]:
    try:
        history = decode_history(raw, key)
        if not history:
            return None
        return key, decrypt(history[0].ciphertext, pek)
    except RedenvError as err:
        logger.error("Failed to decrypt secret %s: %s", key, err.code)
        return None


async def fetch_and_decrypt(
    store: AbstractStore,
    project: str,
    environment: str,
    pek: bytes,
) -> dict[str, str]:
    """Decrypt the latest value of every secret in an environment.

    A secret that cannot be decoded or decrypted is logged and left out,
    it never aborts the whole fetch.
    """
    raw = await store.hgetall(env_key(environment, project))
    if not raw:
        logger.info("No secrets found for %s/%s", project, environment)
        return {}
    # one worker per key, a slow or failing key never holds up the others
    results = await asyncio.gather(*(
        asyncio.to_thread(_decrypt_head, key, history, pek)
        for key, history in raw.items()
    ))
    secrets = dict(item for item in results if item is not None)
    logger.debug(
        "Loaded %d/%d secret(s) from %s/%s",
        len(secrets), len(raw), project, environment,
    )
    return secrets


async def rollback(
    store: AbstractStore,
    project: str,
    environment: str,
    key: str,
    target_version: int,
    pek: bytes,
    author: str,
) -> SecretVersion:
    """Write the plaintext of ``target_version`` as a new head version.

    Intervening versions are kept; nothing is rewound or deleted.

    Raises:
        RollbackError: ``target_version`` is already the head.
        SecretNotFound: The secret or the version does not exist.
    """
    history = await read_history(store, project, environment, key)
    if target_version == history[0].version:
        raise RollbackError(
            "Cannot roll back to the current latest version.",
            context={"key": key, "version": target_version}
        )
    target = next((v for v in history if v.version == target_version), None)
    if target is None:
        raise SecretNotFound(
            f"Version \"{target_version}\" not found for key \"{key}\".",
            context={"key": key, "version": target_version}
        )
    plaintext = decrypt(target.ciphertext, pek)
    entry = await write_secret(store, project, environment, key, plaintext, pek, author)
    logger.info(
        "Rolled back %s in %s/%s to v%d as v%d",
        key, project, environment, target_version, entry.version,
    )
    return entry


# ---------------------------------------------------------------------------
# Projects and environments
# ---------------------------------------------------------------------------

async def list_projects(store: AbstractStore) -> list[str]:
    keys = await store.scan_all(meta_key("*"))
    return sorted({key.split("@", 1)[1] for key in keys})


async def list_environments(store: AbstractStore, project: str) -> list[str]:
    keys = await store.scan_all(env_key("*", project))
    return sorted({key.split(":", 1)[0] for key in keys})


async def drop_environment(store: AbstractStore, project: str, *environments: str) -> int:
    """Delete environments and every secret they hold."""
    removed = await store.delete(*(env_key(env, project) for env in environments))
    logger.info("Dropped %d environment(s) from %s", removed, project)
    return removed


async def drop_project(store: AbstractStore, project: str) -> int:
    """Delete a project's metadata (all credentials) and all environments."""
    if not await store.exists(meta_key(project)):
        raise ProjectNotFound(
            f'Project "{project}" not found.', context={"project": project}
        )
    environments = await list_environments(store, project)
    removed = await store.delete(
        meta_key(project), *(env_key(env, project) for env in environments)
    )
    logger.info("Dropped project %s (%d key(s))", project, removed)
    return removed


async def diff_environments(
    store: AbstractStore,
    project: str,
    source: str,
    target: str,
    pek: bytes,
) -> EnvironmentDiff:
    """Compare the latest values of two environments."""
    left, right = await asyncio.gather(
        fetch_and_decrypt(store, project, source, pek),
        fetch_and_decrypt(store, project, target, pek),
    )
    diff = EnvironmentDiff()
    for key, value in left.items():
        if key not in right:
            diff.only_in_source[key] = value
        elif right[key] != value:
            diff.changed[key] = (value, right[key])
        else:
            diff.unchanged.append(key)
    for key, value in right.items():
        if key not in left:
            diff.only_in_target[key] = value
    return diff


async def promote(
    store: AbstractStore,
    project: str,
    source: str,
    target: str,
    pek: bytes,
    author: str,
    keys: Optional[list[str]] = None,
) -> list[str]:
    """Copy latest values from ``source`` into ``target`` as new versions.

    Only keys that are missing or different in ``target`` are written.

    Returns:
        Names of the promoted keys.
    """
    validate_name(target, "environment")
    diff = await diff_environments(store, project, source, target, pek)
    candidates = dict(diff.only_in_source)
    candidates.update({key: pair[0] for key, pair in diff.changed.items()})
    if keys is not None:
        candidates = {k: v for k, v in candidates.items() if k in keys}
    if not candidates:
        return []
    await write_many(store, project, target, candidates, pek, author)
    logger.info(
        "Promoted %d secret(s) from %s to %s in %s",
        len(candidates), source, target, project,
    )
    return sorted(candidates)
