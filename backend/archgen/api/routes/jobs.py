import uuid
from typing import Any

from fastapi import APIRouter, HTTPException

from archgen import service
from archgen.api.deps import PipelineDep
from archgen.exceptions import JobNotFoundError
from archgen.models import JobStatusRead

router = APIRouter()


@router.get("/{id}", response_model=JobStatusRead)
async def read_job_status(pipeline: PipelineDep, id: uuid.UUID) -> Any:
    try:
        return await service.get_job_status(pipeline, id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
