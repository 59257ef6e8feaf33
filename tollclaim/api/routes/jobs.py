from fastapi import APIRouter, Depends, HTTPException, Query, status

from tollclaim.schemas.jobs import JobEventOut, JobOut, JobStatus, JobSummaryOut
from tollclaim.services.repository import get_job_store
from tollclaim.services.store import JobNotFoundError, JobStoreUnavailableError

router = APIRouter()


@router.get("", response_model=list[JobOut])
async def list_jobs(
    job_status: JobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    store=Depends(get_job_store),
) -> list[JobOut]:
    try:
        jobs = await store.list_jobs(status=job_status, limit=limit, offset=offset)
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [JobOut.model_validate(job) for job in jobs]


@router.get("/summary", response_model=JobSummaryOut)
async def summarize_jobs(store=Depends(get_job_store)) -> JobSummaryOut:
    try:
        summary = await store.summarize()
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobSummaryOut(**summary)


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, store=Depends(get_job_store)) -> JobOut:
    try:
        job = await store.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobOut.model_validate(job)


@router.get("/{job_id}/events", response_model=list[JobEventOut])
async def list_job_events(
    job_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store=Depends(get_job_store),
) -> list[JobEventOut]:
    try:
        await store.get_job(job_id)
        events = await store.list_events(entity_type="job", entity_id=job_id, limit=limit, offset=offset)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [JobEventOut.model_validate(event) for event in events]
