from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone

from tollclaim.jobs import state_machine
from tollclaim.jobs.retry import RetryPolicy
from tollclaim.schemas.jobs import JobError, JobEvent, JobStatus, SubmissionJob
from tollclaim.schemas.records import MatchCandidate, TollRecord
from tollclaim.services.store import JobConflictError, JobStore

logger = logging.getLogger(__name__)

DispositionHook = Callable[[SubmissionJob, JobEvent], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobLifecycle:
    """Applies state machine transitions to stored jobs through compare-and-swap.

    Transition methods take the snapshot the caller read and return the stored
    result, or ``None`` when another writer changed the job first.
    """

    def __init__(
        self,
        store: JobStore,
        policy: RetryPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
        disposition_hooks: Sequence[DispositionHook] = (),
    ) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock
        self.disposition_hooks = list(disposition_hooks)

    async def create(self, candidate: MatchCandidate, toll: TollRecord) -> tuple[SubmissionJob, bool]:
        now = self.clock()
        job = state_machine.create_job(candidate, toll, now=now)
        event = _event(
            job,
            "created",
            now,
            {
                "trip_id": job.trip_id,
                "toll_id": job.toll_id,
                "amount": str(job.amount),
                "confidence": job.confidence,
                "match_reasons": candidate.reasons,
                "toll_raw_payload": toll.raw_payload,
            },
        )
        stored, created = await self.store.create_if_absent(job, events=[event])
        if created:
            logger.info("job created id=%s toll_id=%s trip_id=%s", stored.job_id, stored.toll_id, stored.trip_id)
        return stored, created

    async def claim(self, job: SubmissionJob) -> SubmissionJob | None:
        now = self.clock()
        if job.status is JobStatus.PENDING and not state_machine.is_claimable(job, now):
            return None
        claimed = state_machine.claim(job, now=now)
        event = _event(claimed, "claimed", now, {"attempt": claimed.attempts + 1})
        return await self._swap(job, claimed, [event])

    async def succeed(self, job: SubmissionJob, confirmation_id: str) -> SubmissionJob | None:
        now = self.clock()
        completed = state_machine.succeed(job, confirmation_id, now=now)
        event = _event(
            completed,
            "completed",
            now,
            {
                "confirmation_id": confirmation_id,
                "trip_id": completed.trip_id,
                "toll_id": completed.toll_id,
                "amount": str(completed.amount),
                "attempts": completed.attempts,
            },
        )
        stored = await self._swap(job, completed, [event])
        if stored is not None:
            logger.info("job completed id=%s confirmation_id=%s", stored.job_id, confirmation_id)
            await self._notify(stored, event)
        return stored

    async def fail(self, job: SubmissionJob, error: JobError) -> SubmissionJob | None:
        now = self.clock()
        updated = state_machine.fail(job, error, now=now, policy=self.policy)
        return await self._record_failure(job, updated, now, extra_events=[])

    async def reclaim_stale(self, job: SubmissionJob) -> SubmissionJob | None:
        now = self.clock()
        updated = state_machine.reclaim_stale(job, now=now, policy=self.policy)
        reclaimed = _event(updated, "reclaimed", now, {"last_attempt_at": _iso(job.last_attempt_at)})
        return await self._record_failure(job, updated, now, extra_events=[reclaimed])

    async def _record_failure(
        self,
        job: SubmissionJob,
        updated: SubmissionJob,
        now: datetime,
        *,
        extra_events: list[JobEvent],
    ) -> SubmissionJob | None:
        error = updated.last_error
        error_payload = error.to_dict() if error is not None else None
        if updated.status is JobStatus.FAILED:
            event = _event(updated, "failed", now, {"attempts": updated.attempts, "error": error_payload})
        else:
            event = _event(
                updated,
                "retry_scheduled",
                now,
                {
                    "attempts": updated.attempts,
                    "max_attempts": self.policy.max_attempts,
                    "next_eligible_at": _iso(updated.next_eligible_at),
                    "error": error_payload,
                },
            )

        stored = await self._swap(job, updated, [*extra_events, event])
        if stored is None:
            return None
        if stored.status is JobStatus.FAILED:
            logger.warning(
                "job failed id=%s attempts=%s error=%s",
                stored.job_id,
                stored.attempts,
                error_payload,
            )
            await self._notify(stored, event)
        else:
            logger.info(
                "job retry scheduled id=%s attempts=%s next_eligible_at=%s",
                stored.job_id,
                stored.attempts,
                _iso(stored.next_eligible_at),
            )
        return stored

    async def _swap(
        self, expected: SubmissionJob, updated: SubmissionJob, events: list[JobEvent]
    ) -> SubmissionJob | None:
        try:
            return await self.store.compare_and_swap(expected, updated, events=events)
        except JobConflictError:
            logger.debug("lost compare-and-swap for job id=%s", expected.job_id)
            return None

    async def _notify(self, job: SubmissionJob, event: JobEvent) -> None:
        for hook in self.disposition_hooks:
            try:
                await hook(job, event)
            except Exception:
                logger.exception("disposition hook failed for job id=%s", job.job_id)


def _event(job: SubmissionJob, event_type: str, now: datetime, payload: dict) -> JobEvent:
    return JobEvent(entity_type="job", entity_id=job.job_id, event_type=event_type, created_at=now, payload=payload)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
