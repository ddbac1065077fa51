"""Storage backends for the redenv vault."""
from .base import AbstractStore, env_key, meta_key, validate_name
from .memory import MemoryStore
from .redis import RedisStore

__all__ = [
    "AbstractStore",
    "MemoryStore",
    "RedisStore",
    "env_key",
    "meta_key",
    "validate_name",
]
