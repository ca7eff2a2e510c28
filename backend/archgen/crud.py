import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, func, select

from archgen.core.config import settings
from archgen.exceptions import VersionConflictError
from archgen.models import (
    DesignRequest,
    DesignRequestCreate,
    DesignVersion,
    DiagramVersion,
    Job,
    JobKind,
    JobStatus,
    get_datetime_utc,
)

logger = logging.getLogger(__name__)

VersionedRow = TypeVar("VersionedRow", DesignVersion, DiagramVersion)


def create_design_request(*, session: Session, request_in: DesignRequestCreate) -> DesignRequest:
    data = request_in.model_dump(exclude={"constraints", "enhancements"})
    db_request = DesignRequest.model_validate(data, update={"constraints": request_in.constraints.model_dump()})
    session.add(db_request)
    session.commit()
    session.refresh(db_request)
    return db_request


def get_design_request(*, session: Session, design_request_id: uuid.UUID) -> DesignRequest | None:
    return session.get(DesignRequest, design_request_id)


def list_design_requests(
    *, session: Session, project_id: uuid.UUID, skip: int = 0, limit: int = 20
) -> tuple[list[DesignRequest], int]:
    """A page of a project's requests, newest first, and the project's total request count."""
    count_statement = select(func.count()).select_from(DesignRequest).where(DesignRequest.project_id == project_id)
    count = session.exec(count_statement).one()
    statement = (
        select(DesignRequest)
        .where(DesignRequest.project_id == project_id)
        .order_by(col(DesignRequest.created_at).desc())
        .offset(skip)
        .limit(limit)
    )
    return list(session.exec(statement).all()), count


# Jobs

def create_job(
    *, session: Session, kind: JobKind, design_request_id: uuid.UUID, payload: dict[str, Any]
) -> Job:
    db_job = Job(kind=kind, design_request_id=design_request_id, payload=payload)
    session.add(db_job)
    session.commit()
    session.refresh(db_job)
    return db_job


def get_job(*, session: Session, job_id: uuid.UUID) -> Job | None:
    return session.get(Job, job_id)


def update_job(*, session: Session, job_id: uuid.UUID, **changes: Any) -> Job | None:
    db_job = session.get(Job, job_id)
    if db_job:
        db_job.sqlmodel_update(changes, update={"updated_at": get_datetime_utc()})
        session.add(db_job)
        session.commit()
        session.refresh(db_job)
    return db_job


def mark_job_started(*, session: Session, job_id: uuid.UUID, progress: int) -> Job | None:
    """Move a job to PROCESSING for a new execution attempt."""
    db_job = session.get(Job, job_id)
    if db_job:
        now = get_datetime_utc()
        db_job.status = JobStatus.PROCESSING
        db_job.progress = progress
        db_job.error = None
        db_job.attempts += 1
        db_job.started_at = db_job.started_at or now
        db_job.updated_at = now
        session.add(db_job)
        session.commit()
        session.refresh(db_job)
    return db_job


def update_job_progress(*, session: Session, job_id: uuid.UUID, progress: int) -> Job | None:
    return update_job(session=session, job_id=job_id, status=JobStatus.PROCESSING, progress=progress)


def mark_job_completed(*, session: Session, job_id: uuid.UUID) -> Job | None:
    return update_job(
        session=session,
        job_id=job_id,
        status=JobStatus.COMPLETED,
        progress=100,
        error=None,
        completed_at=get_datetime_utc(),
    )


def mark_job_failed(*, session: Session, job_id: uuid.UUID, error: str) -> Job | None:
    return update_job(session=session, job_id=job_id, status=JobStatus.FAILED, progress=0, error=error)


def list_jobs(*, session: Session, design_request_id: uuid.UUID) -> list[Job]:
    statement = (
        select(Job)
        .where(Job.design_request_id == design_request_id)
        .order_by(col(Job.created_at).desc())
    )
    return list(session.exec(statement).all())


def get_latest_job(*, session: Session, design_request_id: uuid.UUID) -> Job | None:
    statement = (
        select(Job)
        .where(Job.design_request_id == design_request_id)
        .order_by(col(Job.created_at).desc())
    )
    return session.exec(statement).first()


def list_stale_pending_jobs(*, session: Session, untouched_since: datetime) -> list[Job]:
    """PENDING jobs no worker ever started and nothing has touched since the cutoff."""
    statement = (
        select(Job)
        .where(Job.status == JobStatus.PENDING)
        .where(col(Job.started_at).is_(None))
        .where(col(Job.updated_at) < untouched_since)
        .order_by(col(Job.created_at))
    )
    return list(session.exec(statement).all())


# Versions

def get_max_version(*, session: Session, model: type[SQLModel], design_request_id: uuid.UUID) -> int:
    statement = select(func.max(model.version)).where(model.design_request_id == design_request_id)
    return session.exec(statement).one() or 0


def count_design_versions(*, session: Session, design_request_id: uuid.UUID) -> int:
    statement = (
        select(func.count()).select_from(DesignVersion).where(DesignVersion.design_request_id == design_request_id)
    )
    return session.exec(statement).one()


def _next_version(session: Session, model: type[SQLModel], design_request_id: uuid.UUID) -> int:
    return get_max_version(session=session, model=model, design_request_id=design_request_id) + 1


def _insert_next_version(
    session: Session,
    model: type[VersionedRow],
    design_request_id: uuid.UUID,
    build: Callable[[int], VersionedRow],
    max_attempts: int | None,
    job_id: uuid.UUID | None = None,
) -> VersionedRow:
    attempts = max_attempts or settings.VERSION_ALLOCATION_MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        if job_id is not None:
            # A job owns at most one row; a concurrent or earlier execution may have written it.
            existing = session.exec(select(model).where(model.job_id == job_id)).first()
            if existing is not None:
                logger.info("%s %s already saved for job %s", model.__name__, existing.version, job_id)
                return existing
        version = _next_version(session, model, design_request_id)
        db_row = build(version)
        session.add(db_row)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            logger.warning(
                "%s %s for request %s already taken (attempt %s/%s): %s",
                model.__name__,
                version,
                design_request_id,
                attempt,
                attempts,
                exc.orig,
            )
            continue
        session.refresh(db_row)
        return db_row

    raise VersionConflictError(
        f"Could not allocate a {model.__name__} number for request {design_request_id} "
        f"after {attempts} attempts"
    )


def create_design_version_next(
    *,
    session: Session,
    design_request_id: uuid.UUID,
    design_data: dict[str, Any],
    diagram_source: str | None = None,
    job_id: uuid.UUID | None = None,
    max_attempts: int | None = None,
) -> DesignVersion:
    """
    Insert a DesignVersion numbered max + 1, retrying on a concurrent collision.

    With a `job_id` this is idempotent: the job's existing version is returned
    instead of allocating another one.
    """
    return _insert_next_version(
        session,
        DesignVersion,
        design_request_id,
        lambda version: DesignVersion(
            design_request_id=design_request_id,
            version=version,
            design_data=design_data,
            diagram_source=diagram_source,
            job_id=job_id,
        ),
        max_attempts,
        job_id,
    )


def create_diagram_version_next(
    *,
    session: Session,
    design_request_id: uuid.UUID,
    mermaid_source: str,
    svg_content: str | None = None,
    design_version_id: uuid.UUID | None = None,
    job_id: uuid.UUID | None = None,
    max_attempts: int | None = None,
) -> DiagramVersion:
    return _insert_next_version(
        session,
        DiagramVersion,
        design_request_id,
        lambda version: DiagramVersion(
            design_request_id=design_request_id,
            version=version,
            mermaid_source=mermaid_source,
            svg_content=svg_content,
            design_version_id=design_version_id,
            job_id=job_id,
        ),
        max_attempts,
        job_id,
    )


def get_design_version_for_job(*, session: Session, job_id: uuid.UUID) -> DesignVersion | None:
    return session.exec(select(DesignVersion).where(DesignVersion.job_id == job_id)).first()


def get_diagram_version_for_job(*, session: Session, job_id: uuid.UUID) -> DiagramVersion | None:
    return session.exec(select(DiagramVersion).where(DiagramVersion.job_id == job_id)).first()


def list_design_versions(*, session: Session, design_request_id: uuid.UUID) -> list[DesignVersion]:
    statement = (
        select(DesignVersion)
        .where(DesignVersion.design_request_id == design_request_id)
        .order_by(col(DesignVersion.version).desc())
    )
    return list(session.exec(statement).all())


def get_design_version(
    *, session: Session, design_request_id: uuid.UUID, version: int | None = None
) -> DesignVersion | None:
    """A specific version, or the latest one when `version` is None."""
    statement = select(DesignVersion).where(DesignVersion.design_request_id == design_request_id)
    if version is None:
        statement = statement.order_by(col(DesignVersion.version).desc())
    else:
        statement = statement.where(DesignVersion.version == version)
    return session.exec(statement).first()


def list_diagram_versions(*, session: Session, design_request_id: uuid.UUID) -> list[DiagramVersion]:
    statement = (
        select(DiagramVersion)
        .where(DiagramVersion.design_request_id == design_request_id)
        .order_by(col(DiagramVersion.version).desc())
    )
    return list(session.exec(statement).all())


def get_diagram_version(
    *, session: Session, design_request_id: uuid.UUID, version: int | None = None
) -> DiagramVersion | None:
    statement = select(DiagramVersion).where(DiagramVersion.design_request_id == design_request_id)
    if version is None:
        statement = statement.order_by(col(DiagramVersion.version).desc())
    else:
        statement = statement.where(DiagramVersion.version == version)
    return session.exec(statement).first()
