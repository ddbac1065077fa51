"""Backing store contract and key layout.

Any hash-capable key-value store works as long as it can get/set/delete
hash fields, expire individual fields and scan key names by pattern.
Values are always text: callers serialize before ``hset``.
"""
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from typing import Optional

from ..conf import ENV_SEPARATOR, META_PREFIX
from ..exceptions import InvalidConfig

_FORBIDDEN = (ENV_SEPARATOR, "@")


def validate_name(name: str, kind: str = "project") -> str:
    """Reject names that would collide with the key delimiters."""
    if not name:
        raise InvalidConfig(f"The {kind} name cannot be empty")
    for char in _FORBIDDEN:
        if char in name:
            raise InvalidConfig(
                f"The {kind} name cannot contain '{char}'",
                context={kind: name}
            )
    return name


def meta_key(project: str) -> str:
    return f"{META_PREFIX}{project}"


def env_key(environment: str, project: str) -> str:
    return f"{environment}{ENV_SEPARATOR}{project}"


class AbstractStore(ABC):
    """Async hash-map store used by the vault."""

    @abstractmethod
    async def hget(self, key: str, field: str) -> Optional[str]:
        ...

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        ...

    @abstractmethod
    async def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        ...

    @abstractmethod
    async def hdel(self, key: str, *fields: str) -> int:
        ...

    @abstractmethod
    async def hexists(self, key: str, field: str) -> bool:
        ...

    @abstractmethod
    async def hexpire(self, key: str, seconds: int, *fields: str) -> None:
        """Expire individual hash fields after ``seconds``."""
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def scan_iter(self, match: str, count: int = 100) -> AsyncIterator[str]:
        """Iterate key names matching a glob pattern until the cursor is exhausted."""
        ...

    async def hset_with_expiry(self, key: str, mapping: Mapping[str, str], seconds: int) -> None:
        """Write fields that must never outlive ``seconds``.

        If the expiry cannot be applied the fields are removed again before
        the error propagates.
        """
        await self.hset(key, mapping)
        try:
            await self.hexpire(key, seconds, *mapping)
        except Exception:
            await self.hdel(key, *mapping)
            raise

    async def scan_all(self, match: str, count: int = 100) -> list[str]:
        return [key async for key in self.scan_iter(match, count)]

    async def close(self) -> None:
        return None
