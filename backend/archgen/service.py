"""
Core operations of the design pipeline.

The HTTP routes and the worker only go through these functions. Job-creating
operations validate first and raise before anything is written; status reads
prefer the cache and fall back to the job table. Async operations run their
store calls off the event loop through `ctx.run_db`.
"""
import logging
import uuid
from collections.abc import Iterable
from datetime import timedelta
from typing import Any

from pydantic import AnyHttpUrl, TypeAdapter, ValidationError
from sqlmodel import Session

from archgen import crud
from archgen.agent.artifacts import DesignInput, DesignOutput
from archgen.core.config import settings
from archgen.exceptions import (
    DesignRequestNotFoundError,
    DesignRequestValidationError,
    JobNotFoundError,
    NoPriorVersionError,
    VersionNotFoundError,
)
from archgen.models import (
    DesignConstraints,
    DesignRequest,
    DesignRequestCreate,
    DesignRequestDetail,
    DesignRequestsPublic,
    DesignRequestSummary,
    DesignVersion,
    DetailLevel,
    DiagramVersion,
    InputKind,
    Job,
    JobPublic,
    JobStatus,
    JobStatusRead,
    ScaleProfile,
    get_datetime_utc,
)
from archgen.pipeline.context import PipelineContext
from archgen.pipeline.enqueue import enqueue_design_generation, enqueue_diagram_rendering, requeue_job
from archgen.pipeline.handlers import COMPLETED_MESSAGES
from archgen.pipeline.status_cache import CachedStatus

logger = logging.getLogger(__name__)

MISSING_CONTENT_MESSAGES = {
    InputKind.PROMPT: "Prompt text is required when input type is PROMPT",
    InputKind.REPO_URL: "Repository URL is required when input type is REPO_URL",
}
UNEXPECTED_CONTENT_MESSAGES = {
    InputKind.PROMPT: "Repository URL must be empty when input type is PROMPT",
    InputKind.REPO_URL: "Prompt text must be empty when input type is REPO_URL",
}
MAX_PAGE_SIZE = 100

_repo_url_adapter = TypeAdapter(AnyHttpUrl)


def _require_content(input_kind: InputKind, content: str | None) -> str:
    if not content or not content.strip():
        raise DesignRequestValidationError(MISSING_CONTENT_MESSAGES[input_kind])
    content = content.strip()
    if input_kind == InputKind.REPO_URL:
        try:
            _repo_url_adapter.validate_python(content)
        except ValidationError as exc:
            raise DesignRequestValidationError("Repository URL must be a valid http(s) URL") from exc
    return content


def _require_design_request(session: Session, design_request_id: uuid.UUID) -> DesignRequest:
    design_request = crud.get_design_request(session=session, design_request_id=design_request_id)
    if design_request is None:
        raise DesignRequestNotFoundError(f"Design request {design_request_id} not found")
    return design_request


async def _read_cached_status(ctx: PipelineContext, job_id: uuid.UUID) -> CachedStatus | None:
    try:
        return await ctx.cache.get_status(job_id)
    except Exception as exc:
        logger.warning("Status cache read failed for job %s; using job table: %s", job_id, exc)
        return None


def _public_job(job: Job) -> JobPublic:
    return JobPublic.model_validate(job, update={"message": job.error})


async def _with_live_status(ctx: PipelineContext, job: JobPublic) -> JobPublic:
    cached = await _read_cached_status(ctx, job.id)
    if cached is None:
        return job
    return job.model_copy(update={"status": cached.status, "progress": cached.progress, "message": cached.message})


# Design requests

def create_design_request(session: Session, request_in: DesignRequestCreate) -> DesignRequest:
    if not request_in.title or not request_in.title.strip():
        raise DesignRequestValidationError("Title is required")
    if request_in.input_kind == InputKind.PROMPT:
        content, other, other_field = request_in.prompt_text, request_in.repo_url, "repo_url"
    else:
        content, other, other_field = request_in.repo_url, request_in.prompt_text, "prompt_text"
    content = _require_content(request_in.input_kind, content)
    if other and other.strip():
        raise DesignRequestValidationError(UNEXPECTED_CONTENT_MESSAGES[request_in.input_kind])

    content_field = "prompt_text" if request_in.input_kind == InputKind.PROMPT else "repo_url"
    request_in = request_in.model_copy(update={content_field: content, other_field: None})
    design_request = crud.create_design_request(session=session, request_in=request_in)
    logger.info("Created design request %s (%s)", design_request.id, design_request.input_kind.value)
    return design_request


async def submit_design_request(
    ctx: PipelineContext, request_in: DesignRequestCreate
) -> tuple[DesignRequest, uuid.UUID]:
    """Create the request and its first generation job."""
    design_request = await ctx.run_db(create_design_request, request_in=request_in)
    job_id = await create_design_job(
        ctx,
        design_request.id,
        design_request.input_kind,
        design_request.content,
        request_in.constraints,
        design_request.scale_profile,
        design_request.detail_level,
        request_in.enhancements,
    )
    return design_request, job_id


async def get_design_request(ctx: PipelineContext, design_request_id: uuid.UUID) -> DesignRequestDetail:
    """The request with its latest design version, diagram version and job."""

    def _load(session: Session) -> DesignRequestDetail:
        design_request = _require_design_request(session, design_request_id)
        design_version = crud.get_design_version(session=session, design_request_id=design_request_id)
        diagram_version = crud.get_diagram_version(session=session, design_request_id=design_request_id)
        job = crud.get_latest_job(session=session, design_request_id=design_request_id)
        return DesignRequestDetail.model_validate(
            design_request,
            update={
                "latest_design_version": design_version.model_dump() if design_version else None,
                "latest_diagram_version": diagram_version.model_dump() if diagram_version else None,
                "latest_job": _public_job(job) if job else None,
            },
        )

    detail = await ctx.run_db(_load)
    if detail.latest_job is not None:
        detail.latest_job = await _with_live_status(ctx, detail.latest_job)
    return detail


async def list_design_requests(
    ctx: PipelineContext, project_id: uuid.UUID, skip: int = 0, limit: int = 20
) -> DesignRequestsPublic:
    """A project's requests, newest first, each with its version count and latest job."""
    if skip < 0:
        raise DesignRequestValidationError("skip must not be negative")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise DesignRequestValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    def _load(session: Session) -> DesignRequestsPublic:
        design_requests, count = crud.list_design_requests(
            session=session, project_id=project_id, skip=skip, limit=limit
        )
        summaries = []
        for design_request in design_requests:
            job = crud.get_latest_job(session=session, design_request_id=design_request.id)
            summaries.append(
                DesignRequestSummary.model_validate(
                    design_request,
                    update={
                        "design_version_count": crud.count_design_versions(
                            session=session, design_request_id=design_request.id
                        ),
                        "latest_job": _public_job(job) if job else None,
                    },
                )
            )
        return DesignRequestsPublic(data=summaries, count=count)

    page = await ctx.run_db(_load)
    for summary in page.data:
        if summary.latest_job is not None:
            summary.latest_job = await _with_live_status(ctx, summary.latest_job)
    return page


# Job-creating operations

async def create_design_job(
    ctx: PipelineContext,
    design_request_id: uuid.UUID,
    input_kind: InputKind,
    content: str | None,
    constraints: DesignConstraints | dict[str, Any] | None = None,
    scale_profile: ScaleProfile = ScaleProfile.PROTOTYPE,
    detail_level: DetailLevel = DetailLevel.STANDARD,
    enhancements: Iterable[str] = (),
) -> uuid.UUID:
    content = _require_content(input_kind, content)
    await ctx.run_db(_require_design_request, design_request_id=design_request_id)

    input_data = DesignInput(
        input_kind=input_kind,
        prompt_text=content if input_kind == InputKind.PROMPT else None,
        repo_url=content if input_kind == InputKind.REPO_URL else None,
        constraints=DesignConstraints.model_validate(constraints or {}),
        scale_profile=scale_profile,
        detail_level=detail_level,
        enhancements=list(enhancements),
    )
    return await enqueue_design_generation(ctx, design_request_id, input_data.model_dump(mode="json"))


async def create_refinement_job(
    ctx: PipelineContext,
    design_request_id: uuid.UUID,
    refinement_instruction: str,
    detail_level: DetailLevel | None = None,
    enhancements: Iterable[str] = (),
) -> uuid.UUID:
    """Queue a refinement of the latest design version. Raises NoPriorVersionError when there is none."""
    if not refinement_instruction or not refinement_instruction.strip():
        raise DesignRequestValidationError("Refinement instruction is required")

    def _build_input(session: Session) -> DesignInput:
        design_request = _require_design_request(session, design_request_id)
        latest = crud.get_design_version(session=session, design_request_id=design_request_id)
        if latest is None:
            raise NoPriorVersionError()
        logger.info("Refining design request %s from version %s", design_request_id, latest.version)
        return DesignInput(
            input_kind=design_request.input_kind,
            prompt_text=design_request.prompt_text,
            repo_url=design_request.repo_url,
            constraints=DesignConstraints.model_validate(design_request.constraints or {}),
            scale_profile=design_request.scale_profile,
            detail_level=detail_level or design_request.detail_level,
            enhancements=list(enhancements),
            refinement_instruction=refinement_instruction.strip(),
            prior_design=DesignOutput.model_validate(latest.design_data),
        )

    input_data = await ctx.run_db(_build_input)
    return await enqueue_design_generation(ctx, design_request_id, input_data.model_dump(mode="json"))


async def create_render_job(ctx: PipelineContext, design_request_id: uuid.UUID, diagram_source: str) -> uuid.UUID:
    if not diagram_source or not diagram_source.strip():
        raise DesignRequestValidationError("Diagram source is required")
    await ctx.run_db(_require_design_request, design_request_id=design_request_id)
    return await enqueue_diagram_rendering(ctx, design_request_id, diagram_source)


# Job status

async def get_job_status(ctx: PipelineContext, job_id: uuid.UUID) -> JobStatusRead:
    cached = await _read_cached_status(ctx, job_id)
    if cached is not None:
        return JobStatusRead(
            job_id=job_id,
            status=cached.status,
            progress=cached.progress,
            message=cached.message,
            source="cache",
        )

    job = await ctx.run_db(crud.get_job, job_id=job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    status_read = JobStatusRead(
        job_id=job.id,
        kind=job.kind,
        status=job.status,
        progress=job.progress,
        message=job.error,
        source="store",
    )

    if status_read.status.is_terminal:
        # Terminal states no longer change, so the cache can safely be refilled.
        if status_read.status == JobStatus.COMPLETED:
            message = COMPLETED_MESSAGES[status_read.kind]
        else:
            message = status_read.message or ""
        try:
            await ctx.cache.set_status(job_id, status_read.status, status_read.progress, message)
        except Exception as exc:
            logger.warning("Failed to repair status cache for job %s: %s", job_id, exc)
    return status_read


async def list_jobs(ctx: PipelineContext, design_request_id: uuid.UUID) -> list[JobPublic]:
    """Jobs for a request, newest first, with live progress from the cache where present."""

    def _load(session: Session) -> list[JobPublic]:
        _require_design_request(session, design_request_id)
        return [_public_job(job) for job in crud.list_jobs(session=session, design_request_id=design_request_id)]

    return [await _with_live_status(ctx, job) for job in await ctx.run_db(_load)]


# Versions

def list_design_versions(session: Session, design_request_id: uuid.UUID) -> list[DesignVersion]:
    _require_design_request(session, design_request_id)
    return crud.list_design_versions(session=session, design_request_id=design_request_id)


def get_design_version(
    session: Session, design_request_id: uuid.UUID, version: int | None = None
) -> DesignVersion:
    _require_design_request(session, design_request_id)
    design_version = crud.get_design_version(
        session=session, design_request_id=design_request_id, version=version
    )
    if design_version is None:
        raise VersionNotFoundError("Design version not found")
    return design_version


def list_diagram_versions(session: Session, design_request_id: uuid.UUID) -> list[DiagramVersion]:
    _require_design_request(session, design_request_id)
    return crud.list_diagram_versions(session=session, design_request_id=design_request_id)


def get_diagram_version(
    session: Session, design_request_id: uuid.UUID, version: int | None = None
) -> DiagramVersion:
    _require_design_request(session, design_request_id)
    diagram_version = crud.get_diagram_version(
        session=session, design_request_id=design_request_id, version=version
    )
    if diagram_version is None:
        raise VersionNotFoundError("Diagram version not found")
    return diagram_version


# Operations

async def reconcile_stale_jobs(ctx: PipelineContext, older_than: timedelta | None = None) -> list[uuid.UUID]:
    """
    Re-push queue entries for PENDING jobs that no worker has picked up.

    Covers a push that failed after the job row was committed. A job whose
    entry is merely waiting behind a long backlog gets a second entry; the
    handler skips it once the job has completed.
    """
    if older_than is None:
        older_than = timedelta(seconds=settings.STALE_PENDING_JOB_SECONDS)
    cutoff = get_datetime_utc() - older_than

    stale = await ctx.run_db(crud.list_stale_pending_jobs, untouched_since=cutoff)

    requeued = []
    for job in stale:
        await requeue_job(ctx, job)
        requeued.append(job.id)
    if requeued:
        logger.warning("Re-enqueued %s stale pending jobs", len(requeued))
    return requeued
