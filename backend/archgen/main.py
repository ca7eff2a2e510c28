import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI

from archgen.api.main import api_router
from archgen.core.config import settings
from archgen.core.db import engine, init_db
from archgen.pipeline.context import PipelineContext, build_context
from archgen.worker import JobWorker

logger = logging.getLogger(__name__)


async def _default_context() -> PipelineContext:
    init_db(engine)
    return await build_context(engine)


def create_app(
    *,
    context_factory: Callable[[], Awaitable[PipelineContext]] | None = None,
    run_worker: bool | None = None,
) -> FastAPI:
    """
    Build the API app. Without REDIS_URL the job worker runs inside the API
    process so the in-memory queue has a consumer.
    """
    if run_worker is None:
        run_worker = settings.run_worker_in_process

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = await (context_factory or _default_context)()
        app.state.pipeline = ctx
        worker = JobWorker(ctx) if run_worker else None
        if worker is not None:
            await worker.start()
            logger.info("Running job worker in the API process")
        try:
            yield
        finally:
            if worker is not None:
                await worker.stop()
            await ctx.close()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix=settings.API_V1_STR)
    return app


app = create_app()
