"""Redis lease guaranteeing at most one publication pass per post."""

from __future__ import annotations

from dataclasses import dataclass
import uuid

from redis import Redis


LOCK_KEY_TEMPLATE = "socialhub:posts:{post_id}:publish_lock"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


def post_lock_key(post_id: str) -> str:
    return LOCK_KEY_TEMPLATE.format(post_id=post_id)


@dataclass(frozen=True)
class PostLockHandle:
    manager: "PostLockManager"
    post_id: str
    token: str

    def release(self) -> bool:
        return self.manager.release(self.post_id, self.token)


class PostLockManager:
    """SET NX EX lease per post; release only succeeds for the holder's token."""

    def __init__(self, redis_client: Redis, *, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def acquire(self, post_id: str) -> PostLockHandle | None:
        token = str(uuid.uuid4())
        if not self._redis.set(post_lock_key(post_id), token, nx=True, ex=self._ttl_seconds):
            return None
        return PostLockHandle(manager=self, post_id=post_id, token=token)

    def release(self, post_id: str, token: str) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, post_lock_key(post_id), token)
        return int(released or 0) == 1
