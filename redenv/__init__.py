"""Redenv.

Zero-knowledge secret management on top of an untrusted Redis-compatible store.
"""
from .version import __version__
from .exceptions import (
    DecryptionFailed,
    InvalidFormat,
    InvalidToken,
    MissingConfig,
    NotFound,
    RedenvError,
)
from .client import Redenv, populate_env
from .storage import MemoryStore, RedisStore

__all__ = (
    "__version__",
    "DecryptionFailed",
    "InvalidFormat",
    "InvalidToken",
    "MemoryStore",
    "MissingConfig",
    "NotFound",
    "RedenvError",
    "Redenv",
    "RedisStore",
    "populate_env",
)
