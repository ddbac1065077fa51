"""Redenv exception hierarchy.

Every error raised by the vault carries a stable ``code`` so that callers
(CLI, shell, plugins) can branch on the condition instead of the message.
Cryptographic failures are always raised, never converted to empty values:
``InvalidFormat`` means the input was malformed, ``DecryptionFailed`` means
the credential was wrong or the data was tampered with.
"""
from typing import Any, Optional


class RedenvError(Exception):
    """Base error for every failure surfaced by redenv."""

    code: str = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[dict[str, Any]] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} code={self.code} message={self.message!r}>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "context": self.context,
        }


class InvalidFormat(RedenvError):
    """Wire string is empty or not ``hex(nonce).hex(ciphertext)``."""
    code = "INVALID_KEY_FORMAT"


class DecryptionFailed(RedenvError):
    """Authentication failed: wrong key, corrupted or tampered ciphertext."""
    code = "DECRYPTION_FAILED"


class NotFound(RedenvError):
    code = "NOT_FOUND"


class ProjectNotFound(NotFound):
    code = "PROJECT_NOT_FOUND"


class SecretNotFound(NotFound):
    code = "SECRET_NOT_FOUND"


class InvalidToken(RedenvError):
    """The token public id is not present in the project's token map."""
    code = "INVALID_TOKEN_ID"


class MissingConfig(RedenvError):
    code = "MISSING_CONFIG"


class InvalidConfig(RedenvError):
    code = "INVALID_CONFIG"


class RollbackError(RedenvError):
    code = "INVALID_SECRET_VALUE"


class WriteConflict(RedenvError):
    """Concurrent writers kept moving the head version of a secret."""
    code = "WRITE_CONFLICT"


class SecretExists(RedenvError):
    code = "SECRET_EXISTS"


class MissingKey(RedenvError):
    """The project has not been unlocked in this session."""
    code = "MISSING_KEY"
