from __future__ import annotations

from datetime import datetime, timedelta, timezone

from tollclaim.schemas.jobs import JobStatus, SubmissionJob


def in_flight_expired(job: SubmissionJob, stale_after: timedelta, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    started = job.last_attempt_at or job.updated_at
    return started + stale_after <= now


def should_reclaim(job: SubmissionJob, stale_after: timedelta, now: datetime | None = None) -> bool:
    return job.status is JobStatus.IN_FLIGHT and in_flight_expired(job, stale_after, now=now)
