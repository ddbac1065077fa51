"""
Vault Key Hierarchy: envelope encryption of the Project Encryption Key.

Every project has one random 256-bit PEK. It is never stored in the clear:
the ``meta@{project}`` hash holds a copy wrapped under a key derived from
the master password, and every service or ephemeral token holds its own,
independently wrapped, copy.

    wrapping_key = PBKDF2(secret, salt)
    wrapped_pek  = AEAD(hex(pek), wrapping_key)

Security Note:
    Never log key material. Only log project names and token ids.
"""
import logging

from ..conf import DEFAULT_HISTORY_LIMIT
from ..exceptions import InvalidConfig, InvalidFormat, InvalidToken
from ..storage import AbstractStore, meta_key, validate_name
from .crypto import (
    KEY_LENGTH,
    decrypt,
    derive_key_async,
    encrypt,
    generate_salt,
    random_bytes,
)
from .models import ProjectMetadata, isoformat, utcnow

logger = logging.getLogger("redenv.vault")

MIN_PASSWORD_LENGTH = 8
KDF_NAME = "pbkdf2-sha256"
ALGORITHM_NAME = "aes-256-gcm"


def generate_pek() -> bytes:
    """Generate a new random Project Encryption Key."""
    return random_bytes(KEY_LENGTH)


def export_pek(pek: bytes) -> str:
    return pek.hex()


def import_pek(raw: str) -> bytes:
    """Re-import a hex-exported PEK.

    Raises:
        InvalidFormat: If the value is not a hex encoded 32-byte key.
    """
    try:
        pek = bytes.fromhex(raw)
    except ValueError as err:
        raise InvalidFormat("Project key is not valid hex") from err
    if len(pek) != KEY_LENGTH:
        raise InvalidFormat(
            f"Project key must be {KEY_LENGTH} bytes, got {len(pek)}"
        )
    return pek


def wrap(pek: bytes, wrapping_key: bytes) -> str:
    """Encrypt the PEK under a wrapping key."""
    return encrypt(export_pek(pek), wrapping_key)


def unwrap(wrapped: str, wrapping_key: bytes) -> bytes:
    """Decrypt a wrapped PEK; ``DecryptionFailed`` propagates untouched."""
    return import_pek(decrypt(wrapped, wrapping_key))


async def wrap_with_secret(pek: bytes, secret: str) -> tuple[str, str]:
    """Wrap the PEK under a key derived from ``secret`` and a fresh salt.

    Returns:
        Tuple of (wrapped_pek, salt_hex).
    """
    salt = generate_salt()
    wrapping_key = await derive_key_async(secret, salt)
    return wrap(pek, wrapping_key), salt.hex()


async def unwrap_with_secret(wrapped: str, secret: str, salt_hex: str) -> bytes:
    try:
        salt = bytes.fromhex(salt_hex)
    except ValueError as err:
        raise InvalidFormat("Salt is not valid hex") from err
    wrapping_key = await derive_key_async(secret, salt)
    return unwrap(wrapped, wrapping_key)


def _check_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidConfig(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
        )


async def load_metadata(store: AbstractStore, project: str) -> ProjectMetadata:
    """Fetch and decode the ``meta@{project}`` hash."""
    data = await store.hgetall(meta_key(project))
    return ProjectMetadata.from_hash(project, data)


async def register_project(
    store: AbstractStore,
    project: str,
    password: str,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
) -> bytes:
    """Create a project: new PEK, salt and password-wrapped copy.

    Args:
        store: Backing store.
        project: Project name (no ':' or '@').
        password: Master password.
        history_limit: Versions kept per secret, 0 for unlimited.

    Returns:
        The freshly generated PEK.

    Raises:
        InvalidConfig: Invalid name, weak password, or project already exists.
    """
    validate_name(project)
    _check_password(password)
    if history_limit < 0:
        raise InvalidConfig("History limit cannot be negative")
    if await store.exists(meta_key(project)):
        raise InvalidConfig(
            f'Project "{project}" is already registered.',
            context={"project": project}
        )
    pek = generate_pek()
    encrypted_pek, salt = await wrap_with_secret(pek, password)
    await store.hset(meta_key(project), {
        "encryptedPEK": encrypted_pek,
        "salt": salt,
        "historyLimit": str(history_limit),
        "kdf": KDF_NAME,
        "algorithm": ALGORITHM_NAME,
        "createdAt": isoformat(utcnow()),
    })
    logger.info("Registered project %s", project)
    return pek


async def unlock_with_password(store: AbstractStore, project: str, password: str) -> bytes:
    """Unwrap the project's PEK with the master password.

    Raises:
        ProjectNotFound: Missing metadata.
        DecryptionFailed: Wrong password.
    """
    metadata = await load_metadata(store, project)
    pek = await unwrap_with_secret(metadata.encrypted_pek, password, metadata.salt)
    logger.debug("Unlocked project %s with master password", project)
    return pek


async def unlock_with_token(
    store: AbstractStore,
    project: str,
    token_id: str,
    token_secret: str,
) -> bytes:
    """Unwrap the project's PEK with a service or ephemeral token.

    Raises:
        InvalidToken: Unknown (or revoked, or expired) token id.
        DecryptionFailed: Wrong token secret.
    """
    metadata = await load_metadata(store, project)
    token = metadata.find_token(token_id)
    if token is None:
        raise InvalidToken(
            "Invalid Redenv Token ID.",
            context={"project": project, "token_id": token_id}
        )
    pek = await unwrap_with_secret(token.encrypted_pek, token_secret, token.salt)
    logger.debug("Unlocked project %s with token %s", project, token_id)
    return pek


async def verify_password(store: AbstractStore, project: str, password: str) -> None:
    """Raise ``DecryptionFailed`` unless ``password`` unlocks the project."""
    await unlock_with_password(store, project, password)


async def change_password(
    store: AbstractStore,
    project: str,
    old_password: str,
    new_password: str,
) -> None:
    """Re-wrap the same PEK under a new master password and a fresh salt.

    Token-wrapped copies are left untouched and keep working.
    """
    _check_password(new_password)
    pek = await unlock_with_password(store, project, old_password)
    encrypted_pek, salt = await wrap_with_secret(pek, new_password)
    await store.hset(meta_key(project), {
        "encryptedPEK": encrypted_pek,
        "salt": salt,
    })
    logger.info("Changed master password for project %s", project)
