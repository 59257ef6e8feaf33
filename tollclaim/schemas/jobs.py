from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


@dataclass(slots=True, frozen=True)
class JobError:
    kind: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


@dataclass(slots=True, frozen=True)
class SubmissionJob:
    job_id: str
    trip_id: str
    toll_id: str
    vehicle_id: str
    amount: Decimal
    confidence: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    attempts: int = 0
    proof_reference: str | None = None
    last_attempt_at: datetime | None = None
    next_eligible_at: datetime | None = None
    confirmation_id: str | None = None
    last_error: JobError | None = None

    def eligible_at(self) -> datetime:
        return self.next_eligible_at or self.created_at


@dataclass(slots=True, frozen=True)
class JobEvent:
    entity_type: str
    entity_id: str
    event_type: str
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


class JobErrorOut(BaseModel):
    kind: str
    message: str

    model_config = {"from_attributes": True}


class JobOut(BaseModel):
    job_id: str
    trip_id: str
    toll_id: str
    vehicle_id: str
    amount: Decimal
    confidence: str
    status: JobStatus
    attempts: int
    proof_reference: str | None = None
    last_attempt_at: datetime | None = None
    next_eligible_at: datetime | None = None
    confirmation_id: str | None = None
    last_error: JobErrorOut | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class JobEventOut(BaseModel):
    entity_type: str
    entity_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = {"from_attributes": True}


class JobSummaryOut(BaseModel):
    total_jobs: int
    counts_by_status: dict[str, int]
    recovered_amount: Decimal
    average_attempts: float
