"""
Redis implementation of the gateway's key-value store.
"""

import asyncio
import re
from typing import Iterable, List, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from shared.store import KeyValueStore


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(text: str) -> str:
    """Escape Redis MATCH pattern metacharacters so ``text`` matches literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class RedisStore(KeyValueStore):
    """KeyValueStore backed by Redis with a bounded timeout on every call."""

    supports_prefix_scan = True

    def __init__(self, redis_url: str, timeout_seconds: float = 0.5,
                 client: Optional[redis.Redis] = None, scan_batch_size: int = 200):
        self.redis_url = redis_url
        self.timeout_seconds = timeout_seconds
        self.scan_batch_size = scan_batch_size
        self.logger = get_logger("gateway.store.redis")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.timeout_seconds,
                socket_timeout=self.timeout_seconds,
                health_check_interval=30
            )
        return self._redis

    async def _run(self, operation: str, factory):
        """Run one store call under the timeout, mapping failures to StoreUnavailableError."""
        try:
            client = await self._get_redis()
            return await asyncio.wait_for(factory(client), timeout=self.timeout_seconds)
        except (RedisError, asyncio.TimeoutError, OSError) as e:
            self.logger.warning("Store call failed", operation=operation, error=str(e) or type(e).__name__)
            raise StoreUnavailableError(operation, e) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", lambda client: client.get(key))

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        await self._run("set", lambda client: client.set(key, value, px=ttl_ms))

    async def set_if_absent(self, key: str, value: str, ttl_ms: Optional[int] = None) -> bool:
        result = await self._run("set_if_absent", lambda client: client.set(key, value, px=ttl_ms, nx=True))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", lambda client: client.delete(*keys)))

    async def incr_with_expiry(self, key: str, ttl_ms: int) -> int:
        """INCR and PEXPIRE in one MULTI/EXEC so a counter never outlives its window."""

        async def _incr(client: redis.Redis):
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.pexpire(key, ttl_ms)
                count, _ = await pipe.execute()
            return count

        return int(await self._run("incr_with_expiry", _incr))

    async def scan_prefix(self, prefix: str) -> List[str]:
        async def _scan(client: redis.Redis):
            pattern = f"{escape_glob(prefix)}*"
            return [key async for key in client.scan_iter(match=pattern, count=self.scan_batch_size)]

        return await self._run("scan_prefix", _scan)

    async def add_members(self, set_key: str, members: Iterable[str]) -> None:
        values = list(members)
        if values:
            await self._run("add_members", lambda client: client.sadd(set_key, *values))

    async def remove_members(self, set_key: str, members: Iterable[str]) -> None:
        values = list(members)
        if values:
            await self._run("remove_members", lambda client: client.srem(set_key, *values))

    async def members(self, set_key: str) -> Set[str]:
        return set(await self._run("members", lambda client: client.smembers(set_key)))

    async def ping(self) -> bool:
        return bool(await self._run("ping", lambda client: client.ping()))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis store closed")
