"""Pure transitions of a submission job.

Every function takes the current job and returns the next one; nothing here
touches storage. ``JobLifecycle`` applies the results with compare-and-swap.

    pending --claim--> in_flight --succeed--> completed
                            |
                            +--fail--> pending (retry scheduled) | failed
"""

from __future__ import annotations

import dataclasses
import hashlib
from datetime import datetime, timedelta

from tollclaim.jobs.retry import ErrorKind, RetryPolicy
from tollclaim.schemas.jobs import JobError, JobStatus, SubmissionJob
from tollclaim.schemas.records import MatchCandidate, TollRecord

_TICK = timedelta(microseconds=1)


class InvalidTransitionError(Exception):
    """Raised when a transition is not allowed from the job's current status."""

    def __init__(self, job: SubmissionJob, transition: str) -> None:
        super().__init__(f"cannot {transition} job {job.job_id} in status {job.status.value}")
        self.job = job
        self.transition = transition


def job_id_for_toll(toll_id: str) -> str:
    return hashlib.sha256(f"toll:{toll_id}".encode("utf-8")).hexdigest()


def create_job(candidate: MatchCandidate, toll: TollRecord, *, now: datetime) -> SubmissionJob:
    if not candidate.submittable or candidate.trip_id is None:
        raise ValueError(f"candidate for toll {candidate.toll_id} is not submittable ({candidate.confidence})")
    if candidate.toll_id != toll.toll_id:
        raise ValueError("candidate and toll record disagree on toll_id")
    return SubmissionJob(
        job_id=job_id_for_toll(toll.toll_id),
        trip_id=candidate.trip_id,
        toll_id=toll.toll_id,
        vehicle_id=toll.vehicle_id,
        amount=toll.amount,
        confidence=candidate.confidence,
        proof_reference=toll.proof_reference,
        status=JobStatus.PENDING,
        attempts=0,
        created_at=now,
        updated_at=now,
    )


def is_claimable(job: SubmissionJob, now: datetime) -> bool:
    return job.status is JobStatus.PENDING and (job.next_eligible_at is None or job.next_eligible_at <= now)


def claim(job: SubmissionJob, *, now: datetime) -> SubmissionJob:
    if job.status is not JobStatus.PENDING:
        raise InvalidTransitionError(job, "claim")
    if not is_claimable(job, now):
        raise InvalidTransitionError(job, "claim before next_eligible_at")
    return dataclasses.replace(
        job,
        status=JobStatus.IN_FLIGHT,
        last_attempt_at=now,
        updated_at=_next_updated_at(job, now),
    )


def succeed(job: SubmissionJob, confirmation_id: str, *, now: datetime) -> SubmissionJob:
    if job.status is not JobStatus.IN_FLIGHT:
        raise InvalidTransitionError(job, "succeed")
    return dataclasses.replace(
        job,
        status=JobStatus.COMPLETED,
        confirmation_id=confirmation_id,
        last_error=None,
        next_eligible_at=None,
        updated_at=_next_updated_at(job, now),
    )


def fail(job: SubmissionJob, error: JobError, *, now: datetime, policy: RetryPolicy) -> SubmissionJob:
    if job.status is not JobStatus.IN_FLIGHT:
        raise InvalidTransitionError(job, "fail")
    attempts = job.attempts + 1
    delay = policy.next_delay(attempts, error.kind)
    if delay is None:
        return dataclasses.replace(
            job,
            status=JobStatus.FAILED,
            attempts=attempts,
            last_error=error,
            next_eligible_at=None,
            updated_at=_next_updated_at(job, now),
        )
    return dataclasses.replace(
        job,
        status=JobStatus.PENDING,
        attempts=attempts,
        last_error=error,
        next_eligible_at=now + delay,
        updated_at=_next_updated_at(job, now),
    )


def reclaim_stale(job: SubmissionJob, *, now: datetime, policy: RetryPolicy) -> SubmissionJob:
    started = job.last_attempt_at or job.updated_at
    error = JobError(
        kind=ErrorKind.STALE_IN_FLIGHT.value,
        message=f"in flight since {started.isoformat()} without a result",
    )
    return fail(job, error, now=now, policy=policy)


def _next_updated_at(job: SubmissionJob, now: datetime) -> datetime:
    return max(now, job.updated_at + _TICK)
