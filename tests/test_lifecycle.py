from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tollclaim.jobs.lifecycle import JobLifecycle
from tollclaim.jobs.retry import RetryPolicy
from tollclaim.jobs.state_machine import InvalidTransitionError
from tollclaim.schemas.jobs import JobError, JobEvent, JobStatus, SubmissionJob
from tollclaim.schemas.records import MatchCandidate, TollRecord
from tollclaim.services.store import InMemoryJobStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _toll() -> TollRecord:
    return TollRecord(
        toll_id="X1",
        vehicle_id="V1",
        charge_time=NOW - timedelta(hours=3),
        amount=Decimal("4.50"),
        raw_payload={"toll_id": "X1", "amount": "4.50"},
    )


def _candidate(trip_id: str = "T1") -> MatchCandidate:
    return MatchCandidate(toll_id="X1", trip_id=trip_id, confidence="high", reasons={"rule": "single_containment"})


def _lifecycle(store: InMemoryJobStore, clock: FakeClock, hooks=()) -> JobLifecycle:
    policy = RetryPolicy(base_seconds=60, max_seconds=3600, max_attempts=2, jitter_ratio=0)
    return JobLifecycle(store, policy, clock=clock, disposition_hooks=hooks)


def test_create_records_event_and_is_idempotent() -> None:
    async def scenario() -> None:
        store = InMemoryJobStore()
        lifecycle = _lifecycle(store, FakeClock(NOW))

        job, created = await lifecycle.create(_candidate(), _toll())
        again, created_again = await lifecycle.create(_candidate("T2"), _toll())

        assert created is True
        assert created_again is False
        assert again.trip_id == "T1"
        events = await store.list_events(entity_id=job.job_id)
        assert [event.event_type for event in events] == ["created"]
        assert events[0].payload["match_reasons"] == {"rule": "single_containment"}
        assert events[0].payload["toll_raw_payload"] == {"toll_id": "X1", "amount": "4.50"}

    asyncio.run(scenario())


def test_claim_waits_for_next_eligible_at() -> None:
    async def scenario() -> None:
        store = InMemoryJobStore()
        clock = FakeClock(NOW)
        lifecycle = _lifecycle(store, clock)
        job, _ = await lifecycle.create(_candidate(), _toll())
        claimed = await lifecycle.claim(job)
        assert claimed is not None
        retried = await lifecycle.fail(claimed, JobError(kind="rate_limited", message="HTTP 429"))
        assert retried is not None

        assert await lifecycle.claim(retried) is None
        clock.advance(seconds=60)
        reclaimed = await lifecycle.claim(retried)

        assert reclaimed is not None
        assert reclaimed.status is JobStatus.IN_FLIGHT
        events = await store.list_events(entity_id=job.job_id)
        assert [event.event_type for event in events] == ["created", "claimed", "retry_scheduled", "claimed"]
        assert events[2].payload["next_eligible_at"] == (NOW + timedelta(seconds=60)).isoformat()
        assert events[3].payload == {"attempt": 2}

    asyncio.run(scenario())


def test_terminal_disposition_notifies_hooks() -> None:
    seen: list[tuple[str, str]] = []

    async def hook(job: SubmissionJob, event: JobEvent) -> None:
        seen.append((job.status.value, event.event_type))

    async def scenario() -> None:
        store = InMemoryJobStore()
        clock = FakeClock(NOW)
        lifecycle = _lifecycle(store, clock, hooks=[hook])
        job, _ = await lifecycle.create(_candidate(), _toll())

        claimed = await lifecycle.claim(job)
        retried = await lifecycle.fail(claimed, JobError(kind="server_error", message="HTTP 502"))
        clock.advance(minutes=5)
        claimed_again = await lifecycle.claim(retried)
        failed = await lifecycle.fail(claimed_again, JobError(kind="server_error", message="HTTP 502"))

        assert failed is not None
        assert failed.status is JobStatus.FAILED
        assert failed.attempts == 2
        with pytest.raises(InvalidTransitionError):
            await lifecycle.claim(failed)

    asyncio.run(scenario())
    assert seen == [("failed", "failed")]


def test_hook_errors_do_not_undo_the_transition() -> None:
    async def broken_hook(job: SubmissionJob, event: JobEvent) -> None:
        raise RuntimeError("notifier down")

    async def scenario() -> SubmissionJob | None:
        store = InMemoryJobStore()
        lifecycle = _lifecycle(store, FakeClock(NOW), hooks=[broken_hook])
        job, _ = await lifecycle.create(_candidate(), _toll())
        claimed = await lifecycle.claim(job)
        return await lifecycle.succeed(claimed, "C1")

    completed = asyncio.run(scenario())

    assert completed is not None
    assert completed.status is JobStatus.COMPLETED


def test_stale_snapshot_loses_and_returns_none() -> None:
    async def scenario() -> None:
        store = InMemoryJobStore()
        lifecycle = _lifecycle(store, FakeClock(NOW))
        job, _ = await lifecycle.create(_candidate(), _toll())
        claimed = await lifecycle.claim(job)
        await lifecycle.succeed(claimed, "C1")

        assert await lifecycle.fail(claimed, JobError(kind="timeout", message="late")) is None
        assert (await store.get_job(job.job_id)).confirmation_id == "C1"

    asyncio.run(scenario())


def test_reclaim_stale_records_reclaimed_event() -> None:
    async def scenario() -> None:
        store = InMemoryJobStore()
        clock = FakeClock(NOW)
        lifecycle = _lifecycle(store, clock)
        job, _ = await lifecycle.create(_candidate(), _toll())
        claimed = await lifecycle.claim(job)
        clock.advance(minutes=10)

        reclaimed = await lifecycle.reclaim_stale(claimed)

        assert reclaimed is not None
        assert reclaimed.status is JobStatus.PENDING
        assert reclaimed.last_error is not None and reclaimed.last_error.kind == "stale_in_flight"
        events = await store.list_events(entity_id=job.job_id)
        assert [event.event_type for event in events][-2:] == ["reclaimed", "retry_scheduled"]

    asyncio.run(scenario())
