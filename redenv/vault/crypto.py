"""
Vault Crypto Core: AEAD codec, key derivation and random material.

Wire format for every encrypted value stored by redenv:
    {hex(nonce)}.{hex(ciphertext + GCM tag)}

- AEAD: AES-256-GCM with a random 96-bit nonce drawn on every call.
- KDF: PBKDF2-HMAC-SHA256 with a fixed iteration count.

Security Note:
    Never log plaintext, ciphertext or derived keys.
    The iteration count is a module constant on purpose: it is not exposed
    through any configuration so it cannot be downgraded by callers.
"""
import os
import re
import asyncio
import secrets
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import DecryptionFailed, InvalidFormat

logger = logging.getLogger("redenv.vault")

NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256
SALT_LENGTH = 16
PBKDF2_ITERATIONS = 310000  # OWASP recommendation for PBKDF2-HMAC-SHA256

WIRE_SEPARATOR = "."

_HEX_PATTERN = re.compile(r"[0-9a-fA-F]+")


# ---------------------------------------------------------------------------
# Random material
# ---------------------------------------------------------------------------

def random_bytes(length: int = 16) -> bytes:
    """Return ``length`` cryptographically secure random bytes."""
    return os.urandom(length)


def generate_salt() -> bytes:
    """Generate a new random PBKDF2 salt."""
    return random_bytes(SALT_LENGTH)


def random_string(length: int) -> str:
    """Return a URL-safe random string of exactly ``length`` characters."""
    return secrets.token_urlsafe(length)[:length]


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(secret: str, salt: bytes) -> bytes:
    """Derive a 32-byte wrapping key from a password or token secret.

    Args:
        secret: Master password or service token secret.
        salt: Random salt stored next to the wrapped key.

    Returns:
        32-byte derived key, identical for identical (secret, salt).
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


async def derive_key_async(secret: str, salt: bytes) -> bytes:
    """Run :func:`derive_key` in a worker thread, keeping the loop responsive."""
    return await asyncio.to_thread(derive_key, secret, salt)


# ---------------------------------------------------------------------------
# AEAD codec
# ---------------------------------------------------------------------------

def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt a text value under ``key``.

    Args:
        plaintext: Text to encrypt.
        key: 32-byte AES key.

    Returns:
        Wire string ``hex(nonce).hex(ciphertext)``.
    """
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return f"{nonce.hex()}{WIRE_SEPARATOR}{ct.hex()}"


def split_wire(value: str) -> tuple[bytes, bytes]:
    """Split and hex-decode a wire string into (nonce, ciphertext).

    Raises:
        InvalidFormat: If the value is empty or not two non-empty hex fields.
    """
    if not value:
        raise InvalidFormat("Encrypted string cannot be empty.")
    parts = value.split(WIRE_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidFormat("Invalid encrypted string format.")
    if not all(_HEX_PATTERN.fullmatch(part) for part in parts):
        raise InvalidFormat("Invalid encrypted string format: fields must be hex.")
    try:
        return bytes.fromhex(parts[0]), bytes.fromhex(parts[1])
    except ValueError as err:
        raise InvalidFormat(f"Invalid encrypted string format: {err}") from err


def decrypt(value: str, key: bytes) -> str:
    """Decrypt a wire string produced by :func:`encrypt`.

    Args:
        value: Wire string ``hex(nonce).hex(ciphertext)``.
        key: 32-byte AES key.

    Returns:
        Decrypted text.

    Raises:
        InvalidFormat: Malformed wire string.
        DecryptionFailed: Wrong key, corrupted or tampered data.
    """
    nonce, ct = split_wire(value)
    try:
        data = AESGCM(key).decrypt(nonce, ct, None)
    except InvalidTag as err:
        raise DecryptionFailed(
            "Decryption failed. This likely means an incorrect password "
            "was used or the data is corrupted."
        ) from err
    except ValueError as err:
        # nonce length outside what AES-GCM accepts
        raise InvalidFormat(f"Invalid encrypted string format: {err}") from err
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise DecryptionFailed("Decrypted payload is not valid UTF-8 text.") from err
