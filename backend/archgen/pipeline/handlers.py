"""
Queue handlers for the two job kinds.

Each handler drives one job through PROCESSING to COMPLETED, writing every
progress step to the job table first and the status cache second. Any failure
is recorded as FAILED in both stores and re-raised so the queue can retry.

Handlers are safe to run again for the same job, including two deliveries that
overlap: a job owns at most one version of each kind, so versions written by
another execution (found by job id under the request lock) are reused instead
of allocated again. Store calls run off the event loop through `ctx.run_db`.
"""
import logging
import uuid

from archgen import crud
from archgen.agent.artifacts import DesignInput
from archgen.models import DesignVersion, DiagramVersion, JobKind, JobStatus
from archgen.pipeline.context import PipelineContext
from archgen.pipeline.queue import QueueEntry

logger = logging.getLogger(__name__)

COMPLETED_MESSAGES = {
    JobKind.GENERATE_DESIGN: "Design generated successfully!",
    JobKind.RENDER_DIAGRAM: "Diagram rendered!",
}


async def _record_progress(
    ctx: PipelineContext,
    job_id: uuid.UUID,
    progress: int,
    message: str,
    *,
    started: bool = False,
) -> None:
    if started:
        await ctx.run_db(crud.mark_job_started, job_id=job_id, progress=progress)
    else:
        await ctx.run_db(crud.update_job_progress, job_id=job_id, progress=progress)
    await ctx.cache.set_status(job_id, JobStatus.PROCESSING, progress, message)


async def _mark_completed(ctx: PipelineContext, job_id: uuid.UUID, message: str) -> None:
    await ctx.run_db(crud.mark_job_completed, job_id=job_id)
    await ctx.cache.set_status(job_id, JobStatus.COMPLETED, 100, message)


async def _mark_failed_safely(ctx: PipelineContext, job_id: uuid.UUID, error: str) -> None:
    try:
        await ctx.run_db(crud.mark_job_failed, job_id=job_id, error=error)
    except Exception as exc:
        logger.warning("Failed to record job %s as FAILED in the job table: %s", job_id, exc)
    try:
        await ctx.cache.set_status(job_id, JobStatus.FAILED, 0, error)
    except Exception as exc:
        logger.warning("Failed to record job %s as FAILED in the status cache: %s", job_id, exc)


async def _load_runnable_job(ctx: PipelineContext, job_id: uuid.UUID) -> uuid.UUID | None:
    """Return the job's design request id, or None when there is nothing left to do."""
    job = await ctx.run_db(crud.get_job, job_id=job_id)
    if job is None:
        logger.error("Job %s has a queue entry but no job record; dropping it", job_id)
        return None
    if job.status == JobStatus.COMPLETED:
        logger.info("Job %s already completed; skipping redelivered entry", job_id)
        return None
    return job.design_request_id


async def _save_design_version(
    ctx: PipelineContext, design_request_id: uuid.UUID, job_id: uuid.UUID, design_data: dict, diagram_source: str
) -> DesignVersion:
    async with ctx.request_lock(design_request_id):
        return await ctx.run_db(
            crud.create_design_version_next,
            design_request_id=design_request_id,
            design_data=design_data,
            diagram_source=diagram_source,
            job_id=job_id,
        )


async def _render_and_save_diagram(
    ctx: PipelineContext,
    design_request_id: uuid.UUID,
    job_id: uuid.UUID,
    diagram_source: str,
    design_version_id: uuid.UUID | None = None,
) -> DiagramVersion:
    existing = await ctx.run_db(crud.get_diagram_version_for_job, job_id=job_id)
    if existing is not None:
        logger.info("Job %s already saved diagram version %s", job_id, existing.version)
        return existing

    result = await ctx.renderer.render(diagram_source)
    if result.error:
        logger.info("Job %s stores diagram source without SVG: %s", job_id, result.error)

    async with ctx.request_lock(design_request_id):
        return await ctx.run_db(
            crud.create_diagram_version_next,
            design_request_id=design_request_id,
            mermaid_source=result.source,
            svg_content=result.svg,
            design_version_id=design_version_id,
            job_id=job_id,
        )


async def process_design_job(ctx: PipelineContext, entry: QueueEntry) -> None:
    job_id = uuid.UUID(entry.job_id)
    design_request_id = await _load_runnable_job(ctx, job_id)
    if design_request_id is None:
        return

    input_data = DesignInput.model_validate(entry.payload)
    refining = input_data.is_refinement
    logger.info(
        "Starting design %s job %s (attempt %s/%s)",
        "refinement" if refining else "generation",
        job_id,
        entry.attempts_made + 1,
        entry.max_attempts,
    )

    try:
        await _record_progress(
            ctx,
            job_id,
            10,
            "Starting design refinement..." if refining else "Starting design generation...",
            started=True,
        )
        await _record_progress(
            ctx, job_id, 30, "Analyzing refinement request..." if refining else "Analyzing requirements..."
        )

        design_version = await ctx.run_db(crud.get_design_version_for_job, job_id=job_id)

        if design_version is None:
            await _record_progress(
                ctx, job_id, 50, "Refining architecture..." if refining else "Generating architecture..."
            )
            generated = await ctx.producer.produce(input_data)

            await _record_progress(ctx, job_id, 70, "Saving design version...")
            design_version = await _save_design_version(
                ctx,
                design_request_id,
                job_id,
                generated.design.model_dump(mode="json"),
                generated.mermaid_diagram,
            )
            logger.info("Job %s saved design version %s", job_id, design_version.version)
        else:
            logger.info("Job %s resuming after design version %s", job_id, design_version.version)

        await _record_progress(ctx, job_id, 85, "Rendering diagram...")
        diagram_version = await _render_and_save_diagram(
            ctx,
            design_request_id,
            job_id,
            design_version.diagram_source or "",
            design_version_id=design_version.id,
        )

        await _mark_completed(ctx, job_id, COMPLETED_MESSAGES[JobKind.GENERATE_DESIGN])
        logger.info(
            "Design job %s completed: design v%s, diagram v%s",
            job_id,
            design_version.version,
            diagram_version.version,
        )
    except Exception as exc:
        logger.error("Design job %s failed: %s", job_id, exc)
        await _mark_failed_safely(ctx, job_id, str(exc) or type(exc).__name__)
        raise


async def process_diagram_job(ctx: PipelineContext, entry: QueueEntry) -> None:
    job_id = uuid.UUID(entry.job_id)
    design_request_id = await _load_runnable_job(ctx, job_id)
    if design_request_id is None:
        return

    try:
        await _record_progress(ctx, job_id, 50, "Rendering diagram...", started=True)
        diagram_version = await _render_and_save_diagram(
            ctx, design_request_id, job_id, entry.payload.get("diagram_source") or ""
        )
        await _mark_completed(ctx, job_id, COMPLETED_MESSAGES[JobKind.RENDER_DIAGRAM])
        logger.info("Diagram job %s completed: diagram v%s", job_id, diagram_version.version)
    except Exception as exc:
        logger.error("Diagram job %s failed: %s", job_id, exc)
        await _mark_failed_safely(ctx, job_id, str(exc) or type(exc).__name__)
        raise
