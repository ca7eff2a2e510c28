from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, Request
from sqlmodel import Session

from archgen.pipeline.context import PipelineContext


def get_pipeline(request: Request) -> PipelineContext:
    return request.app.state.pipeline


def get_db(pipeline: Annotated[PipelineContext, Depends(get_pipeline)]) -> Generator[Session, None, None]:
    with pipeline.session_factory() as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]
PipelineDep = Annotated[PipelineContext, Depends(get_pipeline)]
