import asyncio
import logging
import uuid
import weakref
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy import Engine

from archgen.agent.producer import DesignProducer, ResilientDesignProducer
from archgen.agent.renderer import DiagramRenderer, MermaidRenderer
from archgen.core.config import settings
from archgen.core.db import SessionFactory, engine, run_in_session, session_factory_for
from archgen.models import JobKind
from archgen.pipeline.queue import (
    DESIGN_RETRY_POLICY,
    DIAGRAM_RETRY_POLICY,
    InMemoryJobQueue,
    JobQueue,
    RedisJobQueue,
)
from archgen.pipeline.status_cache import InMemoryStatusCache, RedisStatusCache, StatusCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PipelineContext:
    """Everything the core operations and job handlers need, injected in one place."""

    session_factory: SessionFactory
    cache: StatusCache
    design_queue: JobQueue
    diagram_queue: JobQueue
    producer: DesignProducer
    renderer: DiagramRenderer
    _request_locks: weakref.WeakValueDictionary = field(
        default_factory=weakref.WeakValueDictionary, repr=False
    )

    def queue_for(self, kind: JobKind) -> JobQueue:
        if kind == JobKind.GENERATE_DESIGN:
            return self.design_queue
        return self.diagram_queue

    async def run_db(self, fn: Callable[..., T], /, **kwargs: Any) -> T:
        """Run a store call off the event loop; `fn` receives `session=` plus `kwargs`."""
        return await run_in_session(self.session_factory, fn, **kwargs)

    def request_lock(self, design_request_id: uuid.UUID | str) -> asyncio.Lock:
        """Lock serializing version allocation for one design request inside this process."""
        key = str(design_request_id)
        lock = self._request_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._request_locks[key] = lock
        return lock

    async def close(self) -> None:
        await self.design_queue.close()
        await self.diagram_queue.close()
        await self.cache.close()


async def build_context(
    db_engine: Engine | None = None,
    *,
    producer: DesignProducer | None = None,
    renderer: DiagramRenderer | None = None,
) -> PipelineContext:
    """Wire the pipeline from settings: Redis when REDIS_URL is set, in-process otherwise."""
    session_factory = session_factory_for(db_engine or engine)

    if settings.REDIS_URL:
        cache = RedisStatusCache(settings.REDIS_URL)
        design_queue = RedisJobQueue(settings.DESIGN_QUEUE_NAME, DESIGN_RETRY_POLICY, redis_url=settings.REDIS_URL)
        diagram_queue = RedisJobQueue(
            settings.DIAGRAM_QUEUE_NAME, DIAGRAM_RETRY_POLICY, redis_url=settings.REDIS_URL
        )
        await cache.connect()
        await design_queue.connect()
        await diagram_queue.connect()
    else:
        logger.info("REDIS_URL not set; using in-process queues and status cache")
        cache = InMemoryStatusCache()
        design_queue = InMemoryJobQueue(settings.DESIGN_QUEUE_NAME, DESIGN_RETRY_POLICY)
        diagram_queue = InMemoryJobQueue(settings.DIAGRAM_QUEUE_NAME, DIAGRAM_RETRY_POLICY)

    return PipelineContext(
        session_factory=session_factory,
        cache=cache,
        design_queue=design_queue,
        diagram_queue=diagram_queue,
        producer=producer or ResilientDesignProducer(),
        renderer=renderer or MermaidRenderer(),
    )
