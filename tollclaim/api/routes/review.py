from fastapi import APIRouter, Depends, HTTPException, Query, status

from tollclaim.schemas.jobs import JobEventOut
from tollclaim.services.repository import get_job_store
from tollclaim.services.store import JobStoreUnavailableError

router = APIRouter()


@router.get("", response_model=list[JobEventOut])
async def list_review_entries(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store=Depends(get_job_store),
) -> list[JobEventOut]:
    """Low and no-confidence matches held back for manual review."""
    try:
        events = await store.list_events(event_type="match_review", limit=limit, offset=offset)
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [JobEventOut.model_validate(event) for event in events]
