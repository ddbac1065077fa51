"""Redenv Vault: zero-knowledge secret storage.

Security Note (Threat Model):
    The backing store only ever sees wrapped keys and ciphertext. Unwrapped
    Project Encryption Keys and plaintext exist in process memory while a
    ``VaultSession`` or client is open; a memory dump of the process could
    expose them. This is an accepted limitation.
"""

from .cache import CacheState, SWRCache
from .config import ClientConfig
from .keys import (
    change_password,
    generate_pek,
    register_project,
    unlock_with_password,
    unlock_with_token,
    unwrap,
    verify_password,
    wrap,
)
from .secrets import (
    add_secret,
    edit_secret,
    fetch_and_decrypt,
    read_history,
    read_latest,
    rollback,
    write_secret,
)
from .session import VaultSession, run_session
from .tokens import (
    IssuedToken,
    TokenCleanupRegistry,
    issue_ephemeral_token,
    issue_service_token,
    list_tokens,
    revoke,
)

__all__ = [
    "CacheState",
    "ClientConfig",
    "IssuedToken",
    "SWRCache",
    "TokenCleanupRegistry",
    "VaultSession",
    "add_secret",
    "change_password",
    "edit_secret",
    "fetch_and_decrypt",
    "generate_pek",
    "issue_ephemeral_token",
    "issue_service_token",
    "list_tokens",
    "read_history",
    "read_latest",
    "register_project",
    "revoke",
    "rollback",
    "run_session",
    "unlock_with_password",
    "unlock_with_token",
    "unwrap",
    "verify_password",
    "wrap",
    "write_secret",
]
