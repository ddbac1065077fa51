"""
Stale-while-revalidate cache used by the runtime client.

Per key the entry moves through::

    EMPTY -> FRESH (age < ttl)
          -> STALE (ttl <= age < ttl + swr)    served, refreshed in background
          -> EXPIRED (age >= ttl + swr)         refetched synchronously

At most one background refresh runs per key; a refresh replaces the entry
and resets its age. ``invalidate`` drops the entry and cancels a refresh
still in flight so that an older value cannot repopulate it.
"""
import time
import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from ..conf import CACHE_MAX_ENTRIES

logger = logging.getLogger("redenv.vault")

T = TypeVar("T")


class CacheState(str, Enum):
    EMPTY = "empty"
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


@dataclass
class CacheEntry(Generic[T]):
    key: Hashable
    value: T
    fetched_at: float


class SWRCache:
    """Async LRU cache with stale-while-revalidate semantics.

    Args:
        ttl: Seconds an entry is served without any I/O.
        swr: Extra seconds a stale entry is served while refreshing.
        max_entries: LRU bound.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        ttl: float,
        swr: float,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl < 0 or swr < 0:
            raise ValueError("ttl and swr must be non-negative")
        self.ttl = ttl
        self.swr = swr
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[Hashable, CacheEntry] = OrderedDict()
        self._refreshing: dict[Hashable, asyncio.Task] = {}
        # bumped by invalidate; a fetch started before the bump is discarded
        self._generation: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def entry(self, key: Hashable) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def state(self, key: Hashable) -> CacheState:
        entry = self._entries.get(key)
        if entry is None:
            return CacheState.EMPTY
        age = self._clock() - entry.fetched_at
        if age < self.ttl:
            return CacheState.FRESH
        if age < self.ttl + self.swr:
            return CacheState.STALE
        return CacheState.EXPIRED

    def is_refreshing(self, key: Hashable) -> bool:
        task = self._refreshing.get(key)
        return task is not None and not task.done()

    def _put(self, key: Hashable, value: Any) -> None:
        self._entries[key] = CacheEntry(key, value, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache evicted %s", evicted)

    async def _refresh(self, key: Hashable, fetch: Callable[[], Awaitable[Any]]) -> None:
        generation = self._generation.get(key, 0)
        try:
            value = await fetch()
        except asyncio.CancelledError:
            raise
        except Exception as err:  # pylint: disable=W0718
            # keep serving the stale value, next stale read retries
            logger.warning("Background refresh of %s failed: %s", key, err)
            return
        if self._generation.get(key, 0) != generation:
            return
        self._put(key, value)
        logger.debug("Background refresh of %s completed", key)

    def _schedule_refresh(self, key: Hashable, fetch: Callable[[], Awaitable[Any]]) -> None:
        if self.is_refreshing(key):
            return
        task = asyncio.create_task(self._refresh(key, fetch))
        self._refreshing[key] = task

        def _done(t: asyncio.Task) -> None:
            if self._refreshing.get(key) is t:
                del self._refreshing[key]

        task.add_done_callback(_done)

    async def get(self, key: Hashable, fetch: Callable[[], Awaitable[T]]) -> T:
        """Return the value for ``key``, calling ``fetch`` when needed."""
        state = self.state(key)
        if state is CacheState.FRESH:
            self._entries.move_to_end(key)
            return self._entries[key].value
        if state is CacheState.STALE:
            logger.debug("Cache stale for %s, serving while revalidating", key)
            self._schedule_refresh(key, fetch)
            self._entries.move_to_end(key)
            return self._entries[key].value
        logger.debug("Cache %s for %s, fetching from source", state.value, key)
        generation = self._generation.get(key, 0)
        value = await fetch()
        if self._generation.get(key, 0) == generation:
            self._put(key, value)
        else:
            logger.debug("Cache %s invalidated during fetch, not storing", key)
        return value

    def invalidate(self, key: Hashable) -> None:
        self._generation[key] = self._generation.get(key, 0) + 1
        self._entries.pop(key, None)
        task = self._refreshing.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    def clear(self) -> None:
        for key in list(self._entries):
            self.invalidate(key)
        for key in list(self._refreshing):
            self.invalidate(key)

    async def join(self) -> None:
        """Wait for every in-flight background refresh."""
        tasks = [t for t in self._refreshing.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._refreshing.values())
        self._refreshing.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
