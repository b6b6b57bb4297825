"""Redis list job queue used to hand off verified webhook payloads."""

from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Dict, List

from redis import Redis

from socialhub.core.config import get_settings
from socialhub.storage.redis_client import get_client as get_redis_client


class JobQueueError(RuntimeError):
    """Raised when a job cannot be enqueued or read."""


def _json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


class RedisJobQueue:
    """FIFO queue: producers RPUSH, consumers LPOP."""

    def __init__(self, redis_client: Redis, *, name: str) -> None:
        if not name.strip():
            raise ValueError("queue name must not be empty")
        self._redis = redis_client
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def enqueue(self, job_type: str, payload: Dict[str, Any]) -> None:
        envelope = {
            "job_type": job_type,
            "payload": payload,
            "enqueued_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self._redis.rpush(self._name, _json(envelope))
        except Exception as exc:
            raise JobQueueError(f"Failed to enqueue {job_type}") from exc

    def pop_batch(self, limit: int) -> List[Dict[str, Any]]:
        jobs: List[Dict[str, Any]] = []
        for _ in range(max(0, limit)):
            try:
                raw = self._redis.lpop(self._name)
            except Exception as exc:
                raise JobQueueError(f"Failed to read from queue {self._name}") from exc
            if raw is None:
                break
            try:
                envelope = json.loads(raw)
            except ValueError:
                continue
            if isinstance(envelope, dict):
                jobs.append(envelope)
        return jobs


def get_webhook_queue() -> RedisJobQueue:
    return RedisJobQueue(get_redis_client(), name=get_settings().webhook_queue_name)
