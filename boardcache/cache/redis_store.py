import functools
import logging
import math
import time
from typing import Callable

from redis.asyncio import Redis, RedisError

from boardcache.cache.policy import Priority
from boardcache.cache.store import EntryInfo, entry_size, validate_write
from boardcache.core.exceptions import CacheUnavailable

logger = logging.getLogger(__name__)

# Scan and removal must be one atomic step: a `set` landing in between would
# otherwise lose its fresh value. KEYS: size, created, expires, access.
# ARGV: now, namespace.
PRUNE_EXPIRED = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[1])
for _, key in ipairs(expired) do
    redis.call('DEL', ARGV[2] .. key)
    redis.call('HDEL', KEYS[1], key)
    redis.call('ZREM', KEYS[2], key)
    redis.call('ZREM', KEYS[3], key)
    redis.call('ZREM', KEYS[4], key)
end
return #expired
"""


def _translate_errors(fn):
    """Turn any RedisError raised by a store method into CacheUnavailable."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except RedisError as e:
            logger.debug(f"Redis {fn.__name__} failed: {e}")
            raise CacheUnavailable(f"Redis {fn.__name__} failed: {e}") from e

    return wrapper


class RedisCacheStore:
    """
    CacheStore backed by Redis.

    Values live under `{namespace}{key}` with a native Redis TTL. Byte
    accounting lives beside them in three structures that are always written
    in the same MULTI/EXEC transaction as the value:

    - `{namespace}__meta__:size`     hash   key -> size in bytes
    - `{namespace}__meta__:created`  zset   key -> creation time
    - `{namespace}__meta__:expires`  zset   key -> expiry time (inf if pinned)
    - `{namespace}__meta__:access`   zset   key -> last read time

    Redis expires values on its own; metadata of expired keys is pruned
    before any usage figure is computed.
    """

    def __init__(
        self,
        redis: Redis,
        namespace: str = "boardcache:",
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.namespace = namespace
        self._clock = clock
        meta = f"{namespace}__meta__:"
        self._sizes = f"{meta}size"
        self._created = f"{meta}created"
        self._expires = f"{meta}expires"
        self._access = f"{meta}access"
        self._prune_script = redis.register_script(PRUNE_EXPIRED)

    @classmethod
    def from_url(cls, dsn: str, namespace: str = "boardcache:", pool_size: int = 5):
        redis = Redis.from_url(
            dsn,
            decode_responses=False,
            max_connections=pool_size,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )
        return cls(redis, namespace=namespace)

    def _data_key(self, key: str) -> str:
        """Build namespaced cache key."""
        return f"{self.namespace}{key}"

    @_translate_errors
    async def set(
        self,
        key: str,
        value: bytes,
        ttl: int | None,
        priority: Priority = Priority.MEDIUM,
    ) -> None:
        validate_write(key, ttl)
        now = self._clock()
        expires = math.inf if ttl is None else now + ttl
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._data_key(key), value, ex=ttl)
            pipe.hset(self._sizes, key, entry_size(key, value))
            pipe.zadd(self._created, {key: now})
            pipe.zadd(self._expires, {key: expires})
            pipe.zadd(self._access, {key: now})
            await pipe.execute()
        logger.debug(f"Stored {key} ttl={ttl}")

    @_translate_errors
    async def get(self, key: str) -> bytes | None:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.get(self._data_key(key))
            pipe.zadd(self._access, {key: self._clock()}, xx=True)
            raw, _ = await pipe.execute()
        return raw

    @_translate_errors
    async def delete(self, key: str) -> None:
        await self._remove([key])

    @_translate_errors
    async def exists(self, key: str) -> bool:
        return bool(await self.redis.exists(self._data_key(key)))

    @_translate_errors
    async def size_of(self, key: str) -> int:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.exists(self._data_key(key))
            pipe.hget(self._sizes, key)
            present, size = await pipe.execute()
        return int(size) if present and size is not None else 0

    @_translate_errors
    async def used_bytes(self) -> int:
        await self._prune_expired()
        return sum(int(size) for size in await self.redis.hvals(self._sizes))

    @_translate_errors
    async def key_count(self) -> int:
        await self._prune_expired()
        return int(await self.redis.hlen(self._sizes))

    @_translate_errors
    async def entries(self) -> list[EntryInfo]:
        await self._prune_expired()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hgetall(self._sizes)
            pipe.zrange(self._created, 0, -1, withscores=True)
            pipe.zrange(self._expires, 0, -1, withscores=True)
            pipe.zrange(self._access, 0, -1, withscores=True)
            sizes, created, expires, access = await pipe.execute()

        created = {member.decode(): score for member, score in created}
        expires = {member.decode(): score for member, score in expires}
        access = {member.decode(): score for member, score in access}
        infos = []
        for raw_key, size in sizes.items():
            key = raw_key.decode()
            created_at = created.get(key, 0.0)
            infos.append(
                EntryInfo(
                    key=key,
                    priority=Priority.from_key(key),
                    created_at=created_at,
                    expires_at=expires.get(key, math.inf),
                    last_access=access.get(key, created_at),
                    size_bytes=int(size),
                )
            )
        return infos

    @_translate_errors
    async def evict(self, keys: list[str]) -> int:
        if not keys:
            return 0
        sizes = await self.redis.hmget(self._sizes, keys)
        await self._remove(keys)
        return sum(int(size) for size in sizes if size is not None)

    @_translate_errors
    async def flush(self) -> None:
        cursor = 0
        deleted_count = 0
        while True:
            cursor, keys = await self.redis.scan(
                cursor, match=f"{self.namespace}*", count=100
            )
            if keys:
                await self.redis.delete(*keys)
                deleted_count += len(keys)
            if cursor == 0:
                break
        logger.info(f"Flushed {deleted_count} Redis keys under {self.namespace}")

    @_translate_errors
    async def ping(self) -> None:
        await self.redis.ping()

    @_translate_errors
    async def server_memory(self) -> dict:
        """Server-wide memory figures from INFO, for the stats endpoint."""
        info = await self.redis.info("memory")
        used = info["used_memory"]
        maxm = info.get("maxmemory", 0)
        result = {
            "used_mb": used / (1024 * 1024),
            "policy": info.get("maxmemory_policy", "noeviction"),
        }
        if maxm:
            result["max_mb"] = maxm / (1024 * 1024)
            result["ratio"] = used / maxm
        return result

    async def close(self):
        """Graceful shutdown of cache connections."""
        try:
            await self.redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis: {e}")

    async def _remove(self, keys: list[str]):
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(*[self._data_key(key) for key in keys])
            pipe.hdel(self._sizes, *keys)
            pipe.zrem(self._created, *keys)
            pipe.zrem(self._expires, *keys)
            pipe.zrem(self._access, *keys)
            await pipe.execute()

    async def _prune_expired(self):
        pruned = await self._prune_script(
            keys=[self._sizes, self._created, self._expires, self._access],
            args=[repr(self._clock()), self.namespace],
        )
        if pruned:
            logger.debug(f"Pruned metadata of {pruned} expired keys")
