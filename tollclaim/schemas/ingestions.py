from typing import Any

from pydantic import BaseModel, Field


class IngestionRequest(BaseModel):
    trips: list[Any] = Field(default_factory=list)
    tolls: list[Any] = Field(default_factory=list)


class RejectionOut(BaseModel):
    index: int
    reason: str
    record_id: str | None = None


class IngestionReportOut(BaseModel):
    trips_accepted: int
    tolls_accepted: int
    trip_rejections: list[RejectionOut]
    toll_rejections: list[RejectionOut]
    confidence_counts: dict[str, int]
    jobs_created: list[str]
    jobs_existing: list[str]
    review_toll_ids: list[str]
    submitted_amount: str
