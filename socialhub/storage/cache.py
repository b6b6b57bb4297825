"""Key-value cache with TTL and atomic get-and-delete, backed by Redis."""

from __future__ import annotations

from typing import Optional, Protocol

from redis import Redis

from socialhub.storage.redis_client import get_client as get_redis_client


PULL_SCRIPT = """
local value = redis.call("get", KEYS[1])
if value then
  redis.call("del", KEYS[1])
end
return value
"""


class CacheUnavailableError(RuntimeError):
    """Raised when the backing store cannot be reached."""


class KeyValueCache(Protocol):
    def put(self, key: str, value: str, *, ttl_seconds: int, only_if_absent: bool = False) -> bool:
        ...

    def get(self, key: str) -> Optional[str]:
        ...

    def pull(self, key: str) -> Optional[str]:
        ...

    def forget(self, key: str) -> None:
        ...


class RedisKeyValueCache:
    """KeyValueCache over Redis; `pull` reads and deletes in one Lua call."""

    def __init__(self, redis_client: Redis) -> None:
        self._redis = redis_client

    def put(self, key: str, value: str, *, ttl_seconds: int, only_if_absent: bool = False) -> bool:
        try:
            stored = self._redis.set(key, value, nx=only_if_absent, ex=max(1, int(ttl_seconds)))
        except Exception as exc:
            raise CacheUnavailableError(f"Failed to write cache key {key}") from exc
        return bool(stored)

    def get(self, key: str) -> Optional[str]:
        try:
            value = self._redis.get(key)
        except Exception as exc:
            raise CacheUnavailableError(f"Failed to read cache key {key}") from exc
        return None if value is None else str(value)

    def pull(self, key: str) -> Optional[str]:
        try:
            value = self._redis.eval(PULL_SCRIPT, 1, key)
        except Exception as exc:
            raise CacheUnavailableError(f"Failed to pull cache key {key}") from exc
        if not value:
            return None
        return str(value)

    def forget(self, key: str) -> None:
        try:
            self._redis.delete(key)
        except Exception as exc:
            raise CacheUnavailableError(f"Failed to delete cache key {key}") from exc


def get_key_value_cache() -> RedisKeyValueCache:
    return RedisKeyValueCache(get_redis_client())
