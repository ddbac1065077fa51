"""In-process store with the same semantics as the Redis backend.

Useful for tests and local development; field expiry is honoured lazily
on every read.
"""
import time
import fnmatch
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Optional

from .base import AbstractStore


class MemoryStore(AbstractStore):

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: dict[str, dict[str, str]] = {}
        self._expiry: dict[tuple[str, str], float] = {}
        self._clock = clock

    def _purge(self, key: str) -> Optional[dict[str, str]]:
        bucket = self._data.get(key)
        if bucket is None:
            return None
        now = self._clock()
        for field in list(bucket):
            deadline = self._expiry.get((key, field))
            if deadline is not None and deadline <= now:
                del bucket[field]
                del self._expiry[(key, field)]
        if not bucket:
            del self._data[key]
            return None
        return bucket

    async def hget(self, key: str, field: str) -> Optional[str]:
        bucket = self._purge(key)
        return bucket.get(field) if bucket else None

    async def hgetall(self, key: str) -> dict[str, str]:
        bucket = self._purge(key)
        return dict(bucket) if bucket else {}

    async def hset(self, key: str, mapping: Mapping[str, str]) -> int:
        bucket = self._purge(key)
        if bucket is None:
            bucket = self._data[key] = {}
        added = 0
        for field, value in mapping.items():
            if field not in bucket:
                added += 1
            # overwriting a field clears its TTL, as Redis does
            self._expiry.pop((key, field), None)
            bucket[field] = str(value)
        return added

    async def hdel(self, key: str, *fields: str) -> int:
        bucket = self._purge(key)
        if not bucket:
            return 0
        removed = 0
        for field in fields:
            if field in bucket:
                del bucket[field]
                self._expiry.pop((key, field), None)
                removed += 1
        if not bucket:
            del self._data[key]
        return removed

    async def hexists(self, key: str, field: str) -> bool:
        bucket = self._purge(key)
        return bool(bucket) and field in bucket

    async def hexpire(self, key: str, seconds: int, *fields: str) -> None:
        bucket = self._purge(key)
        if not bucket:
            return
        deadline = self._clock() + seconds
        for field in fields:
            if field in bucket:
                self._expiry[(key, field)] = deadline

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._purge(key) is not None:
                removed += 1
            self._data.pop(key, None)
            for entry in [e for e in self._expiry if e[0] == key]:
                del self._expiry[entry]
        return removed

    async def exists(self, key: str) -> bool:
        return self._purge(key) is not None

    async def scan_iter(self, match: str, count: int = 100) -> AsyncIterator[str]:
        for key in list(self._data):
            if self._purge(key) is not None and fnmatch.fnmatchcase(key, match):
                yield key
