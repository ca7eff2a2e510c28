"""
Ephemeral job status store.

The cache mirrors {status, progress, message, updated_at} per job with a bounded
TTL. It is never authoritative: a missing key means "ask the job table".
"""
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis

from archgen.core.config import settings
from archgen.models import JobStatus

logger = logging.getLogger(__name__)


@dataclass
class CachedStatus:
    status: JobStatus
    progress: int
    message: str
    updated_at: float

    def to_fields(self) -> dict[str, str]:
        return {
            "status": self.status.value,
            "progress": str(self.progress),
            "message": self.message,
            "updatedAt": str(int(self.updated_at * 1000)),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, Any]) -> "CachedStatus | None":
        decoded = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in fields.items()
        }
        if not decoded.get("status"):
            return None
        return cls(
            status=JobStatus(decoded["status"]),
            progress=int(decoded.get("progress") or 0),
            message=decoded.get("message") or "",
            updated_at=int(decoded.get("updatedAt") or 0) / 1000,
        )


class StatusCache(ABC):
    def __init__(self, ttl_seconds: int | None = None):
        self.ttl_seconds = ttl_seconds or settings.STATUS_TTL_SECONDS

    @staticmethod
    def key(job_id: uuid.UUID | str) -> str:
        return f"job:{job_id}"

    @abstractmethod
    async def set(self, job_id: uuid.UUID | str, fields: dict[str, str], ttl: int) -> None:
        pass

    @abstractmethod
    async def get(self, job_id: uuid.UUID | str) -> dict[str, str] | None:
        pass

    @abstractmethod
    async def expire(self, job_id: uuid.UUID | str) -> None:
        """Drop the entry immediately."""
        pass

    async def set_status(
        self,
        job_id: uuid.UUID | str,
        status: JobStatus,
        progress: int,
        message: str = "",
    ) -> None:
        record = CachedStatus(status=status, progress=progress, message=message, updated_at=time.time())
        await self.set(job_id, record.to_fields(), self.ttl_seconds)

    async def get_status(self, job_id: uuid.UUID | str) -> CachedStatus | None:
        fields = await self.get(job_id)
        if not fields:
            return None
        return CachedStatus.from_fields(fields)

    async def close(self) -> None:
        return None


class RedisStatusCache(StatusCache):
    """Redis hash per job; HSET then EXPIRE, HGETALL on read."""

    def __init__(self, redis_url: str | None = None, ttl_seconds: int | None = None, client=None):
        super().__init__(ttl_seconds)
        self.redis_url = redis_url or settings.REDIS_URL
        self._client = client

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._client = redis.from_url(self.redis_url)
        await self._client.ping()
        logger.info("Status cache connected to Redis at %s", self.redis_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def set(self, job_id: uuid.UUID | str, fields: dict[str, str], ttl: int) -> None:
        key = self.key(job_id)
        await self._client.hset(key, mapping=fields)
        await self._client.expire(key, ttl)

    async def get(self, job_id: uuid.UUID | str) -> dict[str, str] | None:
        data = await self._client.hgetall(self.key(job_id))
        return data or None

    async def expire(self, job_id: uuid.UUID | str) -> None:
        await self._client.delete(self.key(job_id))


class InMemoryStatusCache(StatusCache):
    """
    Process-local cache with an injectable clock so tests can age entries.

    Expired keys are dropped when read, and writes sweep out every expired key
    at most once per `sweep_interval` seconds.
    """

    def __init__(
        self,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[dict[str, str], float]] = {}
        self.sweep_interval = sweep_interval
        self._last_sweep = clock()

    @property
    def size(self) -> int:
        """Number of stored keys, expired or not."""
        return len(self._entries)

    async def set(self, job_id: uuid.UUID | str, fields: dict[str, str], ttl: int) -> None:
        self._sweep_expired()
        key = self.key(job_id)
        current = self._live_fields(key) or {}
        # HSET semantics: merge fields, refresh the deadline.
        self._entries[key] = ({**current, **fields}, self._clock() + ttl)

    async def get(self, job_id: uuid.UUID | str) -> dict[str, str] | None:
        fields = self._live_fields(self.key(job_id))
        return dict(fields) if fields else None

    async def expire(self, job_id: uuid.UUID | str) -> None:
        self._entries.pop(self.key(job_id), None)

    def _sweep_expired(self) -> None:
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        expired = [key for key, (_, deadline) in self._entries.items() if now >= deadline]
        for key in expired:
            del self._entries[key]

    def _live_fields(self, key: str) -> dict[str, str] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        fields, deadline = entry
        if self._clock() >= deadline:
            del self._entries[key]
            return None
        return fields
