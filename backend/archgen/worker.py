"""
Worker process consuming the design-generation and diagram-rendering queues.

Run standalone with `python -m archgen.worker` (requires REDIS_URL so the API
and the worker share queues), or in-process from the API when Redis is absent.
"""
import asyncio
import logging
import signal
from functools import partial

from archgen.core.config import settings
from archgen.core.db import engine, init_db
from archgen.pipeline.context import PipelineContext, build_context
from archgen.pipeline.handlers import process_design_job, process_diagram_job

logger = logging.getLogger(__name__)


class JobWorker:
    """
    Runs one consumer per queue with its own concurrency cap, plus a loop that
    returns stalled entries to their queue.

    Example:
        worker = JobWorker(ctx)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        ctx: PipelineContext,
        *,
        design_concurrency: int | None = None,
        diagram_concurrency: int | None = None,
        poll_timeout: float = 1.0,
        recovery_interval: float = 30.0,
    ):
        self.ctx = ctx
        self.design_concurrency = design_concurrency or settings.DESIGN_WORKER_CONCURRENCY
        self.diagram_concurrency = diagram_concurrency or settings.DIAGRAM_WORKER_CONCURRENCY
        self.poll_timeout = poll_timeout
        self.recovery_interval = recovery_interval
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._shutdown_event.clear()
        self._tasks = [
            asyncio.create_task(
                self.ctx.design_queue.consume(
                    partial(process_design_job, self.ctx),
                    self.design_concurrency,
                    self._shutdown_event,
                    poll_timeout=self.poll_timeout,
                )
            ),
            asyncio.create_task(
                self.ctx.diagram_queue.consume(
                    partial(process_diagram_job, self.ctx),
                    self.diagram_concurrency,
                    self._shutdown_event,
                    poll_timeout=self.poll_timeout,
                )
            ),
            asyncio.create_task(self._recovery_loop()),
        ]
        logger.info(
            "Job worker started (design concurrency %s, diagram concurrency %s)",
            self.design_concurrency,
            self.diagram_concurrency,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop taking new entries and wait for running handlers to finish."""
        if not self._tasks:
            return
        logger.info("Stopping job worker...")
        self._shutdown_event.set()

        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %s worker tasks that did not stop within %ss", len(pending), timeout)

        self._tasks = []
        logger.info("Job worker stopped")

    async def _recovery_loop(self) -> None:
        while not self._shutdown_event.is_set():
            for queue in (self.ctx.design_queue, self.ctx.diagram_queue):
                try:
                    await queue.recover_stalled()
                except Exception as exc:
                    logger.warning("Stalled-entry recovery failed for queue %s: %s", queue.name, exc)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.recovery_interval)
            except asyncio.TimeoutError:
                pass


async def run_worker() -> None:
    init_db(engine)
    ctx = await build_context()
    worker = JobWorker(ctx)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await worker.start()
    try:
        await stop.wait()
    finally:
        await worker.stop()
        await ctx.close()


def main() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if settings.REDIS_URL is None:
        logger.warning("REDIS_URL is not set; this worker only sees jobs enqueued in its own process")
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
