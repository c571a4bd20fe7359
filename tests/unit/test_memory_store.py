"""InMemoryCacheStore: TTL expiry on a virtual clock, byte accounting, write validation."""

import pytest

from boardcache.cache.policy import Priority
from boardcache.cache.store import InMemoryCacheStore, entry_size
from boardcache.core.exceptions import EvictionExhausted


async def test_entry_expires_after_ttl(memory_store, clock) -> None:
    """A 300s entry is served at 299s and gone (with its bytes) at 301s."""
    await memory_store.set("high:board:p1:t1", b"payload", ttl=300)
    clock.advance(299)
    assert await memory_store.get("high:board:p1:t1") == b"payload"

    clock.advance(2)
    assert await memory_store.get("high:board:p1:t1") is None
    assert await memory_store.exists("high:board:p1:t1") is False
    assert await memory_store.used_bytes() == 0
    assert await memory_store.key_count() == 0


async def test_entry_without_ttl_never_expires(memory_store, clock) -> None:
    await memory_store.set("high:user:u1", b"pinned", ttl=None)
    clock.advance(10 * 365 * 24 * 3600)
    assert await memory_store.get("high:user:u1") == b"pinned"
    [info] = await memory_store.entries()
    assert info.pinned


@pytest.mark.parametrize("ttl", [0, -1])
async def test_non_positive_ttl_is_rejected(memory_store, ttl) -> None:
    with pytest.raises(ValueError):
        await memory_store.set("medium:project:1", b"x", ttl=ttl)
    assert await memory_store.key_count() == 0


async def test_empty_key_is_rejected(memory_store) -> None:
    with pytest.raises(ValueError):
        await memory_store.set("", b"x", ttl=60)


async def test_used_bytes_tracks_sets_replacements_and_deletes(memory_store) -> None:
    """Usage equals the sum of live entry sizes after every change."""
    await memory_store.set("medium:project:1", b"a" * 100, ttl=60)
    await memory_store.set("medium:project:2", b"b" * 50, ttl=60)
    expected = entry_size("medium:project:1", b"a" * 100) + entry_size(
        "medium:project:2", b"b" * 50
    )
    assert await memory_store.used_bytes() == expected

    # replaced wholesale: the old size no longer counts
    await memory_store.set("medium:project:1", b"c" * 10, ttl=60)
    assert await memory_store.size_of("medium:project:1") == entry_size(
        "medium:project:1", b"c" * 10
    )
    assert await memory_store.used_bytes() == entry_size(
        "medium:project:1", b"c" * 10
    ) + entry_size("medium:project:2", b"b" * 50)

    await memory_store.delete("medium:project:2")
    assert await memory_store.used_bytes() == entry_size("medium:project:1", b"c" * 10)
    assert await memory_store.size_of("medium:project:2") == 0


async def test_entries_report_priority_and_access(memory_store, clock) -> None:
    await memory_store.set("low:analytics:a", b"1", ttl=60, priority=Priority.LOW)
    clock.advance(5)
    await memory_store.get("low:analytics:a")

    [info] = await memory_store.entries()
    assert info.priority is Priority.LOW
    assert info.expires_at == info.created_at + 60
    assert info.last_access == info.created_at + 5


async def test_evict_returns_freed_bytes(memory_store) -> None:
    await memory_store.set("medium:project:1", b"x" * 20, ttl=60)
    await memory_store.set("medium:project:2", b"y" * 30, ttl=60)
    freed = await memory_store.evict(["medium:project:1", "medium:project:missing"])
    assert freed == entry_size("medium:project:1", b"x" * 20)
    assert await memory_store.exists("medium:project:2")


async def test_flush_drops_everything(memory_store) -> None:
    await memory_store.set("medium:project:1", b"x", ttl=60)
    await memory_store.set("high:user:1", b"y", ttl=None)
    await memory_store.flush()
    assert await memory_store.key_count() == 0
    assert await memory_store.used_bytes() == 0


async def test_entry_larger_than_hard_cap_is_refused(clock) -> None:
    store = InMemoryCacheStore(max_bytes=64, clock=clock)
    with pytest.raises(EvictionExhausted):
        await store.set("medium:project:big", b"z" * 100, ttl=60)
    assert await store.used_bytes() == 0
