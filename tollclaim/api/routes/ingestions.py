from fastapi import APIRouter, Depends, HTTPException, status

from tollclaim.core.config import Settings, get_settings
from tollclaim.jobs.lifecycle import JobLifecycle
from tollclaim.jobs.retry import RetryPolicy
from tollclaim.schemas.ingestions import IngestionReportOut, IngestionRequest
from tollclaim.services.ingestion import IngestionService
from tollclaim.services.matching import MatchSettings
from tollclaim.services.normalizer import NormalizationError, Normalizer
from tollclaim.services.repository import get_job_store
from tollclaim.services.store import JobStoreUnavailableError

router = APIRouter()


def get_ingestion_service(
    settings: Settings = Depends(get_settings),
    store=Depends(get_job_store),
) -> IngestionService:
    return IngestionService(
        JobLifecycle(store, RetryPolicy.from_settings(settings)),
        normalizer=Normalizer(settings.source_timezone),
        match_settings=MatchSettings.from_settings(settings),
    )


@router.post("", response_model=IngestionReportOut, status_code=status.HTTP_202_ACCEPTED)
async def create_ingestion(
    payload: IngestionRequest,
    service: IngestionService = Depends(get_ingestion_service),
) -> IngestionReportOut:
    try:
        report = await service.ingest(payload.trips, payload.tolls)
    except NormalizationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except JobStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return IngestionReportOut(**report.to_dict())
