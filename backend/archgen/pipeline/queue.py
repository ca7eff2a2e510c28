"""
Durable work queues with retry/backoff.

A queue entry carries {job_id, kind, payload}; the job row itself lives in the
database. Delivery is at-least-once: an entry whose handler raises is retried
with the queue's backoff until its attempts run out, then it is moved to the
dead-letter list. Completed and dead-lettered entries are pruned past a
retention bound; job rows are never pruned here.

Example:
    queue = RedisJobQueue("design-generation", RetryPolicy(3, "exponential", 1.0))
    await queue.connect()
    await queue.push(queue.make_entry(job_id, JobKind.GENERATE_DESIGN, payload))
    await queue.consume(handler, concurrency=5, stop_event=stop)
"""
import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

import redis.asyncio as redis

from archgen.core.config import settings
from archgen.models import JobKind

logger = logging.getLogger(__name__)

EntryHandler = Callable[["QueueEntry"], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    backoff: Literal["exponential", "fixed"]
    delay: float

    def delay_for(self, attempts_made: int) -> float:
        """Seconds to wait before the next try, after `attempts_made` failed tries."""
        if self.backoff == "exponential":
            return self.delay * (2 ** max(attempts_made - 1, 0))
        return self.delay


DESIGN_RETRY_POLICY = RetryPolicy(
    attempts=settings.DESIGN_QUEUE_ATTEMPTS,
    backoff="exponential",
    delay=settings.DESIGN_QUEUE_BACKOFF_SECONDS,
)
DIAGRAM_RETRY_POLICY = RetryPolicy(
    attempts=settings.DIAGRAM_QUEUE_ATTEMPTS,
    backoff="fixed",
    delay=settings.DIAGRAM_QUEUE_BACKOFF_SECONDS,
)


@dataclass
class QueueEntry:
    job_id: str
    kind: JobKind
    payload: dict[str, Any]
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts_made: int = 0
    max_attempts: int = 1
    last_error: str | None = None
    enqueued_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        data = asdict(self)
        data["kind"] = self.kind.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "QueueEntry":
        data = json.loads(raw)
        data["kind"] = JobKind(data["kind"])
        return cls(**data)


class JobQueue(ABC):
    def __init__(
        self,
        name: str,
        retry_policy: RetryPolicy,
        remove_on_complete: int | None = None,
        remove_on_fail: int | None = None,
    ):
        self.name = name
        self.retry_policy = retry_policy
        self.remove_on_complete = (
            settings.QUEUE_REMOVE_ON_COMPLETE if remove_on_complete is None else remove_on_complete
        )
        self.remove_on_fail = settings.QUEUE_REMOVE_ON_FAIL if remove_on_fail is None else remove_on_fail

    def make_entry(self, job_id: uuid.UUID | str, kind: JobKind, payload: dict[str, Any]) -> QueueEntry:
        return QueueEntry(
            job_id=str(job_id),
            kind=kind,
            payload=payload,
            max_attempts=self.retry_policy.attempts,
        )

    @abstractmethod
    async def push(self, entry: QueueEntry) -> None:
        pass

    @abstractmethod
    async def reserve(self, timeout: float = 1.0) -> QueueEntry | None:
        """Take the next ready entry, waiting up to `timeout` seconds."""
        pass

    @abstractmethod
    async def ack(self, entry: QueueEntry) -> None:
        pass

    @abstractmethod
    async def _schedule_retry(self, entry: QueueEntry, delay: float) -> None:
        pass

    @abstractmethod
    async def _dead_letter(self, entry: QueueEntry) -> None:
        pass

    async def recover_stalled(self) -> int:
        """Return entries whose lease expired to the wait list. Returns how many moved."""
        return 0

    async def close(self) -> None:
        return None

    async def nack(self, entry: QueueEntry, error: str) -> bool:
        """Record a failed attempt. Returns True when the entry will be retried."""
        entry.attempts_made += 1
        entry.last_error = error
        if entry.attempts_made < entry.max_attempts:
            delay = self.retry_policy.delay_for(entry.attempts_made)
            await self._schedule_retry(entry, delay)
            logger.warning(
                "Queue %s: job %s attempt %s/%s failed (%s); retrying in %.2fs",
                self.name,
                entry.job_id,
                entry.attempts_made,
                entry.max_attempts,
                error,
                delay,
            )
            return True

        await self._dead_letter(entry)
        logger.error(
            "Queue %s: job %s failed after %s attempts; moved to dead letter: %s",
            self.name,
            entry.job_id,
            entry.attempts_made,
            error,
        )
        return False

    async def consume(
        self,
        handler: EntryHandler,
        concurrency: int,
        stop_event: asyncio.Event,
        poll_timeout: float = 1.0,
    ) -> None:
        """Run `handler` for every entry until `stop_event` is set, at most `concurrency` at a time."""
        slots = asyncio.Semaphore(concurrency)
        running: set[asyncio.Task] = set()
        logger.info("Queue %s: consuming with concurrency %s", self.name, concurrency)

        while not stop_event.is_set():
            await slots.acquire()
            try:
                entry = await self.reserve(timeout=poll_timeout)
            except Exception as exc:
                slots.release()
                logger.error("Queue %s: reserve failed: %s", self.name, exc)
                await asyncio.sleep(poll_timeout)
                continue
            if entry is None:
                slots.release()
                continue

            task = asyncio.create_task(self._execute(handler, entry, slots))
            running.add(task)
            task.add_done_callback(running.discard)

        if running:
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("Queue %s: consumer stopped", self.name)

    async def _execute(self, handler: EntryHandler, entry: QueueEntry, slots: asyncio.Semaphore) -> None:
        try:
            try:
                await handler(entry)
            except Exception as exc:
                await self.nack(entry, str(exc) or type(exc).__name__)
            else:
                await self.ack(entry)
        finally:
            slots.release()


class InMemoryJobQueue(JobQueue):
    """Single-process queue with the same retry and retention semantics as RedisJobQueue."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._ready: asyncio.Queue[QueueEntry] = asyncio.Queue()
        self._active: dict[str, QueueEntry] = {}
        self._delayed: dict[str, asyncio.TimerHandle] = {}
        self.completed: deque[QueueEntry] = deque(maxlen=self.remove_on_complete or None)
        self.failed: deque[QueueEntry] = deque(maxlen=self.remove_on_fail or None)

    async def push(self, entry: QueueEntry) -> None:
        self._ready.put_nowait(entry)

    async def reserve(self, timeout: float = 1.0) -> QueueEntry | None:
        try:
            entry = await asyncio.wait_for(self._ready.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        self._active[entry.entry_id] = entry
        return entry

    async def ack(self, entry: QueueEntry) -> None:
        self._active.pop(entry.entry_id, None)
        self.completed.append(entry)

    async def _schedule_retry(self, entry: QueueEntry, delay: float) -> None:
        self._active.pop(entry.entry_id, None)
        loop = asyncio.get_running_loop()
        self._delayed[entry.entry_id] = loop.call_later(delay, self._promote, entry)

    async def _dead_letter(self, entry: QueueEntry) -> None:
        self._active.pop(entry.entry_id, None)
        self.failed.append(entry)

    def _promote(self, entry: QueueEntry) -> None:
        self._delayed.pop(entry.entry_id, None)
        self._ready.put_nowait(entry)

    @property
    def waiting(self) -> int:
        return self._ready.qsize()

    @property
    def delayed(self) -> int:
        return len(self._delayed)

    @property
    def active(self) -> int:
        return len(self._active)

    def is_idle(self) -> bool:
        return not (self._ready.qsize() or self._delayed or self._active)

    async def close(self) -> None:
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()


class RedisJobQueue(JobQueue):
    """
    Redis-backed queue.

    Layout per queue: a wait list, an active list, a delayed sorted set scored by
    due time, completed/failed lists trimmed to the retention bound, one string
    key per entry and one lease key per active entry. An active entry whose lease
    has expired is treated as stalled and goes back to the wait list.

    The move to the active list and the lease write are two round trips, so an
    active entry without a lease may simply be mid-reservation. Recovery notes
    when it first saw each leaseless entry (the `unleased` hash) and only
    requeues entries that stayed leaseless for `stall_grace` seconds.
    """

    def __init__(
        self,
        name: str,
        retry_policy: RetryPolicy,
        remove_on_complete: int | None = None,
        remove_on_fail: int | None = None,
        *,
        redis_url: str | None = None,
        prefix: str = "archgen",
        visibility_timeout: int | None = None,
        stall_grace: float | None = None,
        client=None,
    ):
        super().__init__(name, retry_policy, remove_on_complete, remove_on_fail)
        self.redis_url = redis_url or settings.REDIS_URL
        self.prefix = prefix
        self.visibility_timeout = visibility_timeout or settings.QUEUE_VISIBILITY_TIMEOUT_SECONDS
        self.stall_grace = settings.QUEUE_STALL_GRACE_SECONDS if stall_grace is None else stall_grace
        self._client = client

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        await self._client.ping()
        logger.info("Queue %s connected to Redis at %s", self.name, self.redis_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:queue:{self.name}:{suffix}"

    def _entry_key(self, entry_id: str) -> str:
        return self._key(f"entry:{entry_id}")

    def _lease_key(self, entry_id: str) -> str:
        return self._key(f"lease:{entry_id}")

    async def push(self, entry: QueueEntry) -> None:
        await self._client.set(self._entry_key(entry.entry_id), entry.to_json())
        await self._client.lpush(self._key("wait"), entry.entry_id)
        logger.debug("Queue %s: entry %s pushed for job %s", self.name, entry.entry_id, entry.job_id)

    async def reserve(self, timeout: float = 1.0) -> QueueEntry | None:
        await self._promote_due()
        entry_id = await self._client.blmove(
            self._key("wait"), self._key("active"), timeout, src="RIGHT", dest="LEFT"
        )
        if entry_id is None:
            return None

        raw = await self._client.get(self._entry_key(entry_id))
        if raw is None:
            # Pruned while waiting; nothing left to run.
            await self._client.lrem(self._key("active"), 1, entry_id)
            return None
        await self._client.set(self._lease_key(entry_id), "1", ex=self.visibility_timeout)
        return QueueEntry.from_json(raw)

    async def ack(self, entry: QueueEntry) -> None:
        await self._release(entry)
        await self._client.lpush(self._key("completed"), entry.entry_id)
        await self._trim(self._key("completed"), self.remove_on_complete)

    async def _schedule_retry(self, entry: QueueEntry, delay: float) -> None:
        await self._client.set(self._entry_key(entry.entry_id), entry.to_json())
        await self._client.zadd(self._key("delayed"), {entry.entry_id: time.time() + delay})
        await self._release(entry)

    async def _dead_letter(self, entry: QueueEntry) -> None:
        await self._client.set(self._entry_key(entry.entry_id), entry.to_json())
        await self._release(entry)
        await self._client.lpush(self._key("failed"), entry.entry_id)
        await self._trim(self._key("failed"), self.remove_on_fail)

    async def _release(self, entry: QueueEntry) -> None:
        await self._client.lrem(self._key("active"), 1, entry.entry_id)
        await self._client.delete(self._lease_key(entry.entry_id))
        await self._client.hdel(self._key("unleased"), entry.entry_id)

    async def _trim(self, list_key: str, keep: int) -> None:
        expired = await self._client.lrange(list_key, keep, -1)
        if not expired:
            return
        await self._client.delete(*(self._entry_key(entry_id) for entry_id in expired))
        await self._client.ltrim(list_key, 0, keep - 1)

    async def _promote_due(self) -> None:
        due = await self._client.zrangebyscore(self._key("delayed"), 0, time.time())
        for entry_id in due:
            # Only the consumer that removes the member promotes it.
            if await self._client.zrem(self._key("delayed"), entry_id):
                await self._client.lpush(self._key("wait"), entry_id)

    async def recover_stalled(self) -> int:
        now = time.time()
        unleased = self._key("unleased")
        recovered = 0
        for entry_id in await self._client.lrange(self._key("active"), 0, -1):
            if await self._client.exists(self._lease_key(entry_id)):
                continue
            await self._client.hsetnx(unleased, entry_id, now)
            first_seen = float(await self._client.hget(unleased, entry_id) or now)
            if now - first_seen < self.stall_grace:
                continue
            await self._client.hdel(unleased, entry_id)
            if await self._client.lrem(self._key("active"), 1, entry_id):
                # RPUSH puts it at the consuming end of the wait list.
                await self._client.rpush(self._key("wait"), entry_id)
                recovered += 1
                logger.warning("Queue %s: stalled entry %s returned to wait list", self.name, entry_id)
        return recovered

    async def dead_letters(self, limit: int = 100) -> list[QueueEntry]:
        entries = []
        for entry_id in await self._client.lrange(self._key("failed"), 0, limit - 1):
            raw = await self._client.get(self._entry_key(entry_id))
            if raw is not None:
                entries.append(QueueEntry.from_json(raw))
        return entries

    async def lengths(self) -> dict[str, int]:
        return {
            "wait": await self._client.llen(self._key("wait")),
            "active": await self._client.llen(self._key("active")),
            "delayed": await self._client.zcard(self._key("delayed")),
            "completed": await self._client.llen(self._key("completed")),
            "failed": await self._client.llen(self._key("failed")),
        }
