import uuid
from typing import Any

from fastapi import APIRouter, HTTPException

from archgen import service
from archgen.api.deps import PipelineDep, SessionDep
from archgen.exceptions import DesignRequestValidationError
from archgen.models import (
    DesignRequestCreate,
    DesignRequestCreated,
    DesignRequestDetail,
    DesignRequestPublic,
    DesignRequestsPublic,
    DesignVersionPublic,
    DiagramVersionPublic,
    JobCreated,
    JobPublic,
    RefinementCreate,
    RenderCreate,
)

router = APIRouter()


@router.post("/", response_model=DesignRequestCreated, status_code=202)
async def create_design(*, pipeline: PipelineDep, request_in: DesignRequestCreate) -> Any:
    try:
        design_request, job_id = await service.submit_design_request(pipeline, request_in)
    except DesignRequestValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return DesignRequestCreated(design_request=DesignRequestPublic.model_validate(design_request), job_id=job_id)


@router.get("/", response_model=DesignRequestsPublic)
async def read_designs(pipeline: PipelineDep, project_id: uuid.UUID, skip: int = 0, limit: int = 20) -> Any:
    try:
        return await service.list_design_requests(pipeline, project_id, skip=skip, limit=limit)
    except DesignRequestValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/{id}", response_model=DesignRequestDetail)
async def read_design(pipeline: PipelineDep, id: uuid.UUID) -> Any:
    """The request with its latest design, diagram and job."""
    try:
        return await service.get_design_request(pipeline, id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/{id}/refine", response_model=JobCreated, status_code=202)
async def refine_design(*, pipeline: PipelineDep, id: uuid.UUID, refinement_in: RefinementCreate) -> Any:
    try:
        job_id = await service.create_refinement_job(
            pipeline,
            id,
            refinement_in.refinement_instruction,
            detail_level=refinement_in.detail_level,
            enhancements=refinement_in.enhancements,
        )
    except DesignRequestValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return JobCreated(job_id=job_id)


@router.post("/{id}/render", response_model=JobCreated, status_code=202)
async def render_diagram(*, pipeline: PipelineDep, id: uuid.UUID, render_in: RenderCreate) -> Any:
    try:
        job_id = await service.create_render_job(pipeline, id, render_in.diagram_source)
    except DesignRequestValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return JobCreated(job_id=job_id)


@router.get("/{id}/versions", response_model=list[DesignVersionPublic])
def read_design_versions(session: SessionDep, id: uuid.UUID) -> Any:
    try:
        return service.list_design_versions(session, id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("/{id}/version", response_model=DesignVersionPublic)
def read_design_version(session: SessionDep, id: uuid.UUID, version: int | None = None) -> Any:
    """Latest design version, or the one given by `?version=`."""
    try:
        return service.get_design_version(session, id, version)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("/{id}/diagrams", response_model=list[DiagramVersionPublic])
def read_diagram_versions(session: SessionDep, id: uuid.UUID) -> Any:
    try:
        return service.list_diagram_versions(session, id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("/{id}/diagram", response_model=DiagramVersionPublic)
def read_diagram_version(session: SessionDep, id: uuid.UUID, version: int | None = None) -> Any:
    try:
        return service.get_diagram_version(session, id, version)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("/{id}/jobs", response_model=list[JobPublic])
async def read_design_jobs(pipeline: PipelineDep, id: uuid.UUID) -> Any:
    try:
        return await service.list_jobs(pipeline, id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
