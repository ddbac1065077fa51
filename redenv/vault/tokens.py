"""
Vault Access Tokens: service and ephemeral credentials.

A token is a (public id, secret) pair. Issuing one wraps the PEK under a
key derived from the secret and a fresh salt; only the wrapped copy is
stored, the secret is handed back once and never persisted. Revoking a
token deletes its wrapped copy, so the secret can no longer unwrap the PEK.

Ephemeral tokens live in their own ``ephemeral:{id}`` field of the project
metadata with a store-level field expiry; a ``TokenCleanupRegistry`` revokes
them earlier on graceful shutdown.

Security Note:
    Never log token secrets. Public ids are safe to log.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta

from ..conf import (
    EPHEMERAL_PREFIX,
    EPHEMERAL_TOKEN_PREFIX,
    SECRET_TOKEN_PREFIX,
    SERVICE_TOKEN_PREFIX,
)
from ..exceptions import InvalidConfig, InvalidToken
from ..storage import AbstractStore, meta_key
from .crypto import random_string
from .keys import load_metadata, wrap_with_secret
from .models import EphemeralToken, ServiceToken, encode_tokens, utcnow

logger = logging.getLogger("redenv.vault")

PUBLIC_ID_LENGTH = 16
SECRET_LENGTH = 32


@dataclass(frozen=True)
class IssuedToken:
    """What the caller gets back exactly once."""

    project: str
    public_id: str
    secret: str
    record: ServiceToken

    def __repr__(self) -> str:
        return f"<IssuedToken project={self.project} public_id={self.public_id}>"


def _new_credentials(prefix: str) -> tuple[str, str]:
    return (
        f"{prefix}{random_string(PUBLIC_ID_LENGTH)}",
        f"{SECRET_TOKEN_PREFIX}{random_string(SECRET_LENGTH)}",
    )


async def issue_service_token(
    store: AbstractStore,
    project: str,
    pek: bytes,
    name: str,
    description: str = "",
) -> IssuedToken:
    """Create a long-lived token holding its own wrapped copy of the PEK.

    Args:
        store: Backing store.
        project: Project the token grants access to.
        pek: Unwrapped Project Encryption Key.
        name: Human readable name (e.g. "Vercel Production").
        description: Optional description.

    Returns:
        IssuedToken with the public id and the one-time secret.
    """
    if not name:
        raise InvalidConfig("Token name cannot be empty.")
    metadata = await load_metadata(store, project)
    public_id, secret = _new_credentials(SERVICE_TOKEN_PREFIX)
    encrypted_pek, salt = await wrap_with_secret(pek, secret)
    record = ServiceToken(
        encrypted_pek=encrypted_pek,
        salt=salt,
        name=name,
        description=description,
    )
    tokens = dict(metadata.service_tokens)
    tokens[public_id] = record
    await store.hset(meta_key(project), {"serviceTokens": encode_tokens(tokens)})
    logger.info("Issued service token %s for project %s", public_id, project)
    return IssuedToken(project, public_id, secret, record)


async def issue_ephemeral_token(
    store: AbstractStore,
    project: str,
    pek: bytes,
    ttl_seconds: int,
    registry: "TokenCleanupRegistry | None" = None,
    name: str = "ephemeral",
    description: str = "",
) -> IssuedToken:
    """Create a token that the store itself expires after ``ttl_seconds``."""
    if ttl_seconds <= 0:
        raise InvalidConfig("Ephemeral token TTL must be a positive number of seconds")
    await load_metadata(store, project)
    public_id, secret = _new_credentials(EPHEMERAL_TOKEN_PREFIX)
    encrypted_pek, salt = await wrap_with_secret(pek, secret)
    record = EphemeralToken(
        encrypted_pek=encrypted_pek,
        salt=salt,
        name=name,
        description=description,
        expires_at=utcnow() + timedelta(seconds=ttl_seconds),
    )
    field = f"{EPHEMERAL_PREFIX}{public_id}"
    await store.hset_with_expiry(
        meta_key(project), {field: record.model_dump_json(by_alias=True)}, ttl_seconds,
    )
    if registry is not None:
        registry.register(store, project, public_id)
    logger.info(
        "Issued ephemeral token %s for project %s (ttl=%ds)",
        public_id, project, ttl_seconds,
    )
    return IssuedToken(project, public_id, secret, record)


async def list_tokens(store: AbstractStore, project: str) -> dict[str, ServiceToken]:
    """Return every live token of a project, service and ephemeral."""
    metadata = await load_metadata(store, project)
    tokens: dict[str, ServiceToken] = dict(metadata.service_tokens)
    tokens.update(metadata.ephemeral_tokens)
    return tokens


async def revoke(store: AbstractStore, project: str, *public_ids: str) -> list[str]:
    """Delete tokens and their wrapped PEK copies.

    Raises:
        InvalidToken: If any id is unknown; nothing is revoked in that case.
    """
    metadata = await load_metadata(store, project)
    unknown = [tid for tid in public_ids if metadata.find_token(tid) is None]
    if unknown:
        raise InvalidToken(
            f"Unknown token id(s): {', '.join(unknown)}",
            context={"project": project, "token_ids": unknown}
        )
    tokens = dict(metadata.service_tokens)
    ephemeral_fields = []
    for token_id in public_ids:
        if token_id in tokens:
            del tokens[token_id]
        else:
            ephemeral_fields.append(f"{EPHEMERAL_PREFIX}{token_id}")
    if len(tokens) != len(metadata.service_tokens):
        await store.hset(meta_key(project), {"serviceTokens": encode_tokens(tokens)})
    if ephemeral_fields:
        await store.hdel(meta_key(project), *ephemeral_fields)
    logger.info("Revoked %d token(s) for project %s", len(public_ids), project)
    return list(public_ids)


class TokenCleanupRegistry:
    """Ephemeral tokens to revoke when the process shuts down.

    Draining is sequential and best-effort: a failure is logged and the
    next token is attempted. The store-side field TTL reclaims anything
    left behind.
    """

    def __init__(self) -> None:
        self._pending: list[tuple[AbstractStore, str, str]] = []

    def __len__(self) -> int:
        return len(self._pending)

    def register(self, store: AbstractStore, project: str, token_id: str) -> None:
        self._pending.append((store, project, token_id))

    def discard(self, token_id: str) -> None:
        self._pending = [p for p in self._pending if p[2] != token_id]

    @property
    def pending(self) -> list[tuple[str, str]]:
        return [(project, token_id) for _, project, token_id in self._pending]

    async def drain(self) -> int:
        """Revoke all pending tokens; returns how many were revoked."""
        revoked = 0
        while self._pending:
            store, project, token_id = self._pending.pop(0)
            try:
                await revoke(store, project, token_id)
                revoked += 1
            except Exception as err:  # pylint: disable=W0718
                logger.warning(
                    "Cleanup of ephemeral token %s (%s) failed: %s",
                    token_id, project, err,
                )
        return revoked
