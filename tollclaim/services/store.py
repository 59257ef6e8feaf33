from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol

from tollclaim.schemas.jobs import JobEvent, JobStatus, SubmissionJob


class JobStoreError(Exception):
    """Base job store error."""


class JobStoreUnavailableError(JobStoreError):
    """Raised when the backing store is unavailable or not configured."""


class JobNotFoundError(JobStoreError):
    """Raised when the requested job does not exist."""


class JobConflictError(JobStoreError):
    """Raised when a compare-and-swap loses against a concurrent writer."""


class JobStore(Protocol):
    async def create_if_absent(
        self, job: SubmissionJob, *, events: Sequence[JobEvent] = ()
    ) -> tuple[SubmissionJob, bool]: ...

    async def get_job(self, job_id: str) -> SubmissionJob: ...

    async def list_jobs(
        self, *, status: JobStatus | None = None, limit: int = 20, offset: int = 0
    ) -> list[SubmissionJob]: ...

    async def list_actionable(self, *, now: datetime, limit: int) -> list[SubmissionJob]: ...

    async def list_stale_in_flight(
        self, *, now: datetime, stale_after: timedelta, limit: int
    ) -> list[SubmissionJob]: ...

    async def compare_and_swap(
        self, expected: SubmissionJob, updated: SubmissionJob, *, events: Sequence[JobEvent] = ()
    ) -> SubmissionJob: ...

    async def record_event(self, event: JobEvent) -> None: ...

    async def list_events(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[JobEvent]: ...

    async def summarize(self) -> dict[str, Any]: ...

    async def close(self) -> None: ...


class InMemoryJobStore:
    """Single-process store used for local runs and tests.

    Every operation runs under one asyncio lock, so a compare-and-swap is
    atomic with respect to all other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, SubmissionJob] = {}
        self.events: list[JobEvent] = []
        self._lock = asyncio.Lock()

    async def create_if_absent(
        self, job: SubmissionJob, *, events: Sequence[JobEvent] = ()
    ) -> tuple[SubmissionJob, bool]:
        async with self._lock:
            existing = self.jobs.get(job.job_id)
            if existing is not None:
                return existing, False
            self.jobs[job.job_id] = job
            self.events.extend(events)
            return job, True

    async def get_job(self, job_id: str) -> SubmissionJob:
        async with self._lock:
            job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError("job not found")
        return job

    async def list_jobs(
        self, *, status: JobStatus | None = None, limit: int = 20, offset: int = 0
    ) -> list[SubmissionJob]:
        async with self._lock:
            rows = list(self.jobs.values())
        if status is not None:
            rows = [row for row in rows if row.status is status]
        rows.sort(key=lambda row: (row.created_at, row.job_id), reverse=True)
        return rows[offset : offset + limit]

    async def list_actionable(self, *, now: datetime, limit: int) -> list[SubmissionJob]:
        async with self._lock:
            rows = [
                row
                for row in self.jobs.values()
                if row.status is JobStatus.PENDING and row.eligible_at() <= now
            ]
        rows.sort(key=lambda row: (row.eligible_at(), row.created_at, row.job_id))
        return rows[:limit]

    async def list_stale_in_flight(
        self, *, now: datetime, stale_after: timedelta, limit: int
    ) -> list[SubmissionJob]:
        cutoff = now - stale_after
        async with self._lock:
            rows = [
                row
                for row in self.jobs.values()
                if row.status is JobStatus.IN_FLIGHT and (row.last_attempt_at or row.updated_at) <= cutoff
            ]
        rows.sort(key=lambda row: (row.last_attempt_at or row.updated_at, row.job_id))
        return rows[:limit]

    async def compare_and_swap(
        self, expected: SubmissionJob, updated: SubmissionJob, *, events: Sequence[JobEvent] = ()
    ) -> SubmissionJob:
        if expected.job_id != updated.job_id:
            raise ValueError("compare_and_swap requires the same job_id")
        async with self._lock:
            current = self.jobs.get(expected.job_id)
            if current is None:
                raise JobNotFoundError("job not found")
            if current.status.terminal or current.status is not expected.status or current.updated_at != expected.updated_at:
                raise JobConflictError(f"job {expected.job_id} changed concurrently")
            self.jobs[updated.job_id] = updated
            self.events.extend(events)
            return updated

    async def record_event(self, event: JobEvent) -> None:
        async with self._lock:
            self.events.append(event)

    async def list_events(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[JobEvent]:
        async with self._lock:
            rows = list(self.events)
        if entity_type is not None:
            rows = [row for row in rows if row.entity_type == entity_type]
        if entity_id is not None:
            rows = [row for row in rows if row.entity_id == entity_id]
        if event_type is not None:
            rows = [row for row in rows if row.event_type == event_type]
        return rows[offset : offset + limit]

    async def summarize(self) -> dict[str, Any]:
        async with self._lock:
            rows = list(self.jobs.values())
        counts = {status.value: 0 for status in JobStatus}
        recovered = Decimal("0.00")
        for row in rows:
            counts[row.status.value] += 1
            if row.status is JobStatus.COMPLETED:
                recovered += row.amount
        average_attempts = sum(row.attempts for row in rows) / len(rows) if rows else 0.0
        return {
            "total_jobs": len(rows),
            "counts_by_status": counts,
            "recovered_amount": recovered,
            "average_attempts": round(average_attempts, 3),
        }

    async def close(self) -> None:
        return None
