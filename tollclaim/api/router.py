from fastapi import APIRouter

from tollclaim.api.routes import health, ingestions, jobs, review

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(ingestions.router, prefix="/ingestions", tags=["ingestion"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(review.router, prefix="/review", tags=["review"])
