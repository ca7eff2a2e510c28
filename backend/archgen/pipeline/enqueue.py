import logging
import uuid
from typing import Any

from archgen import crud
from archgen.models import Job, JobKind, JobStatus
from archgen.pipeline.context import PipelineContext

logger = logging.getLogger(__name__)

QUEUED_MESSAGES = {
    JobKind.GENERATE_DESIGN: "Job queued",
    JobKind.RENDER_DIAGRAM: "Diagram rendering queued",
}


async def _seed_status_safely(ctx: PipelineContext, job_id: uuid.UUID, kind: JobKind) -> None:
    try:
        await ctx.cache.set_status(job_id, JobStatus.PENDING, 0, QUEUED_MESSAGES[kind])
    except Exception as exc:
        logger.warning("Failed to seed status cache for job %s: %s", job_id, exc)


async def enqueue_job(
    ctx: PipelineContext,
    kind: JobKind,
    design_request_id: uuid.UUID,
    payload: dict[str, Any],
) -> uuid.UUID:
    """
    Record a PENDING job and hand it to the queue for its kind.

    The job row is committed before anything is pushed, so a failed write leaves
    no queue entry behind. A push that fails after the commit leaves a PENDING
    job with no entry; `reconcile_stale_jobs` re-pushes those.
    """
    payload = {**payload, "design_request_id": str(design_request_id)}
    job = await ctx.run_db(crud.create_job, kind=kind, design_request_id=design_request_id, payload=payload)
    job_id = job.id

    # Seeded before the push so a fast worker's PROCESSING update is never overwritten.
    await _seed_status_safely(ctx, job_id, kind)

    queue = ctx.queue_for(kind)
    await queue.push(queue.make_entry(job_id, kind, payload))
    logger.info("Enqueued %s job %s for design request %s", kind.value, job_id, design_request_id)
    return job_id


async def requeue_job(ctx: PipelineContext, job: Job) -> None:
    """Push a fresh queue entry for an existing PENDING job from its stored payload."""
    await ctx.run_db(crud.update_job, job_id=job.id)
    queue = ctx.queue_for(job.kind)
    await _seed_status_safely(ctx, job.id, job.kind)
    await queue.push(queue.make_entry(job.id, job.kind, dict(job.payload)))
    logger.info("Re-enqueued %s job %s", job.kind.value, job.id)


async def enqueue_design_generation(
    ctx: PipelineContext, design_request_id: uuid.UUID, payload: dict[str, Any]
) -> uuid.UUID:
    return await enqueue_job(ctx, JobKind.GENERATE_DESIGN, design_request_id, payload)


async def enqueue_diagram_rendering(
    ctx: PipelineContext, design_request_id: uuid.UUID, diagram_source: str
) -> uuid.UUID:
    return await enqueue_job(
        ctx, JobKind.RENDER_DIAGRAM, design_request_id, {"diagram_source": diagram_source}
    )
