from fastapi import APIRouter

from archgen.api.routes import designs, jobs, utils

api_router = APIRouter()
api_router.include_router(utils.router, tags=["utils"])
api_router.include_router(designs.router, prefix="/designs", tags=["designs"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
