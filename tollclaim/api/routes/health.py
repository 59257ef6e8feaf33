from fastapi import APIRouter, Depends, HTTPException, status

from tollclaim.services.repository import get_job_store
from tollclaim.services.store import JobStoreUnavailableError

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(store=Depends(get_job_store)) -> dict[str, str]:
    """Ready once the job store answers a trivial query."""
    try:
        await store.list_jobs(limit=1)
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"status": "ready"}
