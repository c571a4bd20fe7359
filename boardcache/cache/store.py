"""
Key/value cache storage with per-entry TTL and byte accounting.

`CacheStore` is the interface the rest of the cache core talks to. Two
implementations exist: `InMemoryCacheStore` below (process-local, used by
tests and single-process deployments) and `RedisCacheStore` in
`boardcache.cache.redis_store`.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, NamedTuple, Protocol

from cachetools import TLRUCache

from boardcache.cache.policy import Priority
from boardcache.core.exceptions import EvictionExhausted


@dataclass(frozen=True)
class CacheEntry:
    """One cached value. Replaced wholesale on every write, never patched."""

    key: str
    value: bytes
    priority: Priority
    created_at: float
    ttl_seconds: int | None  # None means no expiry
    size_bytes: int

    @property
    def expires_at(self) -> float:
        if self.ttl_seconds is None:
            return math.inf
        return self.created_at + self.ttl_seconds


class EntryInfo(NamedTuple):
    """Metadata of a live entry, as seen by eviction."""

    key: str
    priority: Priority
    created_at: float
    expires_at: float
    last_access: float
    size_bytes: int

    @property
    def pinned(self) -> bool:
        return self.expires_at == math.inf


def entry_size(key: str, value: bytes) -> int:
    return len(key.encode("utf-8")) + len(value)


def validate_write(key: str, ttl: int | None):
    if not isinstance(key, str) or not key:
        raise ValueError("cache key must be a non-empty string")
    if ttl is not None and ttl <= 0:
        raise ValueError(f"ttl must be positive or None (infinite), got {ttl}")


class CacheStore(Protocol):
    """Backend operations needed by CacheStrategy and MemoryGuard.

    Every method raises CacheUnavailable when the backend cannot be reached.
    """

    async def set(
        self,
        key: str,
        value: bytes,
        ttl: int | None,
        priority: Priority = Priority.MEDIUM,
    ) -> None: ...

    async def get(self, key: str) -> bytes | None: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def size_of(self, key: str) -> int: ...

    async def used_bytes(self) -> int: ...

    async def key_count(self) -> int: ...

    async def entries(self) -> list[EntryInfo]: ...

    async def evict(self, keys: list[str]) -> int: ...

    async def flush(self) -> None: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


def _time_to_use(key: str, entry: CacheEntry, now: float) -> float:
    return entry.expires_at


class InMemoryCacheStore:
    """
    Process-local CacheStore on top of cachetools.TLRUCache.

    The TLRU cache expires each entry at its own `created_at + ttl` and keeps
    `currsize` equal to the sum of entry sizes, which makes it the usage
    counter. `max_bytes` is the absolute hard cap: a single entry larger than
    it is refused. Writers are serialized by one lock so the key space and the
    usage counter always change together.
    """

    def __init__(
        self,
        max_bytes: float = math.inf,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._entries = TLRUCache(
            maxsize=max_bytes,
            ttu=_time_to_use,
            timer=clock,
            getsizeof=lambda entry: entry.size_bytes,
        )
        self._last_access: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> CacheEntry | None:
        try:
            return self._entries[key]
        except KeyError:
            return None

    def _remove(self, key: str) -> CacheEntry | None:
        self._last_access.pop(key, None)
        try:
            return self._entries.pop(key, None)
        except KeyError:
            # expired between the membership test and the read
            return None

    async def set(
        self,
        key: str,
        value: bytes,
        ttl: int | None,
        priority: Priority = Priority.MEDIUM,
    ) -> None:
        validate_write(key, ttl)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=bytes(value),
            priority=priority,
            created_at=now,
            ttl_seconds=ttl,
            size_bytes=entry_size(key, value),
        )
        async with self._lock:
            try:
                self._entries[key] = entry
            except ValueError as e:
                raise EvictionExhausted(
                    f"Entry {key} ({entry.size_bytes} bytes) exceeds the cache hard cap"
                ) from e
            self._last_access[key] = now

    async def get(self, key: str) -> bytes | None:
        entry = self._live(key)
        if entry is None:
            return None
        self._last_access[key] = self._clock()
        return entry.value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._remove(key)

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def size_of(self, key: str) -> int:
        entry = self._live(key)
        return entry.size_bytes if entry else 0

    async def used_bytes(self) -> int:
        self._expire()
        return int(self._entries.currsize)

    async def key_count(self) -> int:
        self._expire()
        return len(self._entries)

    async def entries(self) -> list[EntryInfo]:
        self._expire()
        infos = []
        for key in list(self._entries.keys()):
            entry = self._live(key)
            if entry is None:
                continue
            infos.append(
                EntryInfo(
                    key=key,
                    priority=entry.priority,
                    created_at=entry.created_at,
                    expires_at=entry.expires_at,
                    last_access=self._last_access.get(key, entry.created_at),
                    size_bytes=entry.size_bytes,
                )
            )
        return infos

    async def evict(self, keys: list[str]) -> int:
        freed = 0
        async with self._lock:
            for key in keys:
                entry = self._remove(key)
                if entry is not None:
                    freed += entry.size_bytes
        return freed

    async def flush(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._last_access.clear()

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _expire(self):
        for key, _ in self._entries.expire() or ():
            self._last_access.pop(key, None)
