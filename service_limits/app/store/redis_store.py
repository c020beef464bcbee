"""
Redis-backed counter store.
"""

from typing import Any, Optional, Sequence, Set

import redis.asyncio as redis
from redis.exceptions import NoScriptError, RedisError

from shared.errors import ScriptNotLoadedError, StoreError
from .base import CounterStore
from .local_cache import LocalCache


class RedisCounterStore(CounterStore):
    """Counter store on a shared Redis (or Redis Cluster compatible) server.

    Every Redis failure surfaces as StoreError so callers can decide to
    fail open; an unknown script hash surfaces as ScriptNotLoadedError.
    """

    backend_name = "redis"

    def __init__(self, redis_url: str, socket_timeout: float = 2.0,
                 client: Optional[redis.Redis] = None,
                 local_cache: Optional[LocalCache] = None):
        super().__init__(local_cache)
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30
            )
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        try:
            client = await self._get_redis()
            return await client.get(key)
        except RedisError as e:
            raise StoreError("GET failed", details={"key": key, "error": str(e)}) from e

    async def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.set(key, value, px=ttl_ms))
        except RedisError as e:
            raise StoreError("SET failed", details={"key": key, "error": str(e)}) from e

    async def _fetch_set_members(self, key: str) -> Set[str]:
        try:
            client = await self._get_redis()
            return set(await client.smembers(key))
        except RedisError as e:
            raise StoreError("SMEMBERS failed", details={"key": key, "error": str(e)}) from e

    async def _add_set_members(self, key: str, members: Sequence[str]) -> int:
        try:
            client = await self._get_redis()
            return int(await client.sadd(key, *members))
        except RedisError as e:
            raise StoreError("SADD failed", details={"key": key, "error": str(e)}) from e

    async def _remove_set_members(self, key: str, members: Sequence[str]) -> int:
        try:
            client = await self._get_redis()
            return int(await client.srem(key, *members))
        except RedisError as e:
            raise StoreError("SREM failed", details={"key": key, "error": str(e)}) from e

    async def script_load(self, source: str) -> str:
        try:
            client = await self._get_redis()
            return await client.script_load(source)
        except RedisError as e:
            raise StoreError("SCRIPT LOAD failed", details={"error": str(e)}) from e

    async def eval_sha(self, sha: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        try:
            client = await self._get_redis()
            return await client.evalsha(sha, len(keys), *keys, *[str(arg) for arg in args])
        except NoScriptError as e:
            raise ScriptNotLoadedError(sha) from e
        except RedisError as e:
            raise StoreError("EVALSHA failed", details={"sha": sha, "error": str(e)}) from e

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except RedisError as e:
            self.logger.error("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis connection closed")
