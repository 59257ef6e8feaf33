from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tollclaim.core.config import Settings
from tollclaim.jobs.lifecycle import JobLifecycle
from tollclaim.jobs.retry import RetryPolicy
from tollclaim.jobs.scheduler import SchedulerSettings, SubmissionScheduler
from tollclaim.schemas.jobs import JobEvent, JobStatus, SubmissionJob
from tollclaim.schemas.records import MatchCandidate, TollRecord
from tollclaim.services.claim_filer import ClaimOutcome, ClaimRequest, PermanentClaimError, TransientClaimError
from tollclaim.services.ingestion import IngestionService
from tollclaim.services.normalizer import Normalizer
from tollclaim.services.store import InMemoryJobStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedFiler:
    """Replays queued outcomes; an Exception entry is raised instead of returned."""

    def __init__(self, *outcomes: object, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes)
        self.delay = delay
        self.requests: list[ClaimRequest] = []

    async def file(self, request: ClaimRequest) -> ClaimOutcome:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        assert isinstance(outcome, ClaimOutcome)
        return outcome


def _scheduler(
    filer: ScriptedFiler,
    *,
    store: InMemoryJobStore | None = None,
    clock: FakeClock | None = None,
    hooks=(),
    **overrides: object,
) -> SubmissionScheduler:
    store = store or InMemoryJobStore()
    lifecycle = JobLifecycle(
        store,
        RetryPolicy(base_seconds=60, max_seconds=3600, max_attempts=5, jitter_ratio=0),
        clock=clock or FakeClock(NOW),
        disposition_hooks=hooks,
    )
    settings = SchedulerSettings(
        worker_count=2,
        poll_interval_seconds=0.01,
        max_idle_backoff_seconds=0.05,
        max_backoff_seconds=0.05,
        claim_timeout_seconds=1.0,
        stale_in_flight=timedelta(minutes=5),
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return SubmissionScheduler(store, lifecycle, filer, settings)


async def _seed(scheduler: SubmissionScheduler, toll_id: str = "X1") -> SubmissionJob:
    toll = TollRecord(toll_id=toll_id, vehicle_id="V1", charge_time=NOW - timedelta(hours=2), amount=Decimal("4.50"))
    candidate = MatchCandidate(toll_id=toll_id, trip_id="T1", confidence="high")
    job, _ = await scheduler.lifecycle.create(candidate, toll)
    return job


def test_successful_filing_completes_job() -> None:
    filer = ScriptedFiler(ClaimOutcome(accepted=True, confirmation_id="C1"))

    async def scenario() -> SubmissionJob:
        scheduler = _scheduler(filer)
        job = await _seed(scheduler)
        assert await scheduler.run_once() == 1
        assert await scheduler.run_once() == 0
        return await scheduler.store.get_job(job.job_id)

    stored = asyncio.run(scenario())

    assert stored.status is JobStatus.COMPLETED
    assert stored.confirmation_id == "C1"
    assert stored.attempts == 0
    assert len(filer.requests) == 1


def test_repeated_transient_failures_exhaust_attempts() -> None:
    filer = ScriptedFiler(TransientClaimError("server_error", "HTTP 503"))
    clock = FakeClock(NOW)

    async def scenario() -> SubmissionJob:
        scheduler = _scheduler(filer, clock=clock)
        job = await _seed(scheduler)
        for _ in range(7):
            await scheduler.run_once()
            clock.advance(hours=2)
        return await scheduler.store.get_job(job.job_id)

    stored = asyncio.run(scenario())

    assert stored.status is JobStatus.FAILED
    assert stored.attempts == 5
    assert stored.last_error is not None and stored.last_error.kind == "server_error"
    assert len(filer.requests) == 5


def test_permanent_failure_is_not_retried() -> None:
    dispositions: list[str] = []
    filer = ScriptedFiler(PermanentClaimError("duplicate_claim", "HTTP 409: already filed"))
    clock = FakeClock(NOW)

    async def hook(job: SubmissionJob, event: JobEvent) -> None:
        dispositions.append(event.event_type)

    async def scenario() -> SubmissionJob:
        scheduler = _scheduler(filer, clock=clock, hooks=[hook])
        job = await _seed(scheduler)
        await scheduler.run_once()
        clock.advance(hours=2)
        await scheduler.run_once()
        return await scheduler.store.get_job(job.job_id)

    stored = asyncio.run(scenario())

    assert stored.status is JobStatus.FAILED
    assert stored.attempts == 1
    assert len(filer.requests) == 1
    assert dispositions == ["failed"]


def test_slow_filer_times_out_and_retries_later() -> None:
    filer = ScriptedFiler(ClaimOutcome(accepted=True, confirmation_id="late"), delay=1.0)

    async def scenario() -> SubmissionJob:
        scheduler = _scheduler(filer, claim_timeout_seconds=0.05)
        job = await _seed(scheduler)
        await scheduler.run_once()
        return await scheduler.store.get_job(job.job_id)

    stored = asyncio.run(scenario())

    assert stored.status is JobStatus.PENDING
    assert stored.attempts == 1
    assert stored.last_error is not None and stored.last_error.kind == "timeout"
    assert stored.next_eligible_at == NOW + timedelta(seconds=60)


def test_unexpected_filer_exception_is_ambiguous() -> None:
    filer = ScriptedFiler(RuntimeError("boom"))

    async def scenario() -> SubmissionJob:
        scheduler = _scheduler(filer)
        job = await _seed(scheduler)
        await scheduler.run_once()
        return await scheduler.store.get_job(job.job_id)

    stored = asyncio.run(scenario())

    assert stored.status is JobStatus.PENDING
    assert stored.last_error is not None
    assert stored.last_error.kind == "ambiguous"
    assert "RuntimeError" in stored.last_error.message


def test_reaper_reclaims_stale_in_flight_jobs() -> None:
    filer = ScriptedFiler(ClaimOutcome(accepted=True, confirmation_id="C1"))
    clock = FakeClock(NOW)

    async def scenario() -> SubmissionJob:
        scheduler = _scheduler(filer, clock=clock)
        job = await _seed(scheduler)
        assert await scheduler.lifecycle.claim(job) is not None

        clock.advance(minutes=4)
        assert await scheduler.reap_stale() == 0
        clock.advance(minutes=2)
        assert await scheduler.reap_stale() == 1
        return await scheduler.store.get_job(job.job_id)

    stored = asyncio.run(scenario())

    assert stored.status is JobStatus.PENDING
    assert stored.attempts == 1
    assert stored.last_error is not None and stored.last_error.kind == "stale_in_flight"


def test_competing_schedulers_file_each_job_once() -> None:
    filer = ScriptedFiler(ClaimOutcome(accepted=True, confirmation_id="C1"), delay=0.01)

    async def scenario() -> InMemoryJobStore:
        store = InMemoryJobStore()
        schedulers = [_scheduler(filer, store=store) for _ in range(4)]
        for index in range(3):
            await _seed(schedulers[0], toll_id=f"X{index}")
        await asyncio.gather(*(scheduler.run_once() for scheduler in schedulers))
        return store

    store = asyncio.run(scenario())

    assert sorted(request.toll_id for request in filer.requests) == ["X0", "X1", "X2"]
    assert all(job.status is JobStatus.COMPLETED for job in store.jobs.values())


def test_stop_drains_in_flight_job_before_exit() -> None:
    holder: dict[str, SubmissionScheduler] = {}

    class StoppingFiler(ScriptedFiler):
        async def file(self, request: ClaimRequest) -> ClaimOutcome:
            holder["scheduler"].stop()
            return await super().file(request)

    filer = StoppingFiler(ClaimOutcome(accepted=True, confirmation_id="C1"), delay=0.05)

    async def scenario() -> SubmissionJob:
        scheduler = _scheduler(filer)
        holder["scheduler"] = scheduler
        job = await _seed(scheduler)
        await asyncio.wait_for(scheduler.run(), timeout=5)
        return await scheduler.store.get_job(job.job_id)

    stored = asyncio.run(scenario())

    assert stored.status is JobStatus.COMPLETED
    assert stored.confirmation_id == "C1"


def test_idle_workers_exit_promptly_on_stop() -> None:
    filer = ScriptedFiler(ClaimOutcome(accepted=True, confirmation_id="C1"))

    async def scenario() -> None:
        scheduler = _scheduler(filer, max_idle_backoff_seconds=10.0, poll_interval_seconds=10.0)
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1)
        assert scheduler.stopping

    asyncio.run(scenario())
    assert filer.requests == []


def test_end_to_end_ingestion_to_completed_claim() -> None:
    filer = ScriptedFiler(ClaimOutcome(accepted=True, confirmation_id="C1"))

    async def scenario() -> tuple[SubmissionJob, list[str]]:
        scheduler = _scheduler(filer)
        ingestion = IngestionService(scheduler.lifecycle, normalizer=Normalizer("UTC"))
        report = await ingestion.ingest(
            [{"trip_id": "T1", "vehicle_id": "V1", "start_time": "2024-03-01T09:00:00Z", "end_time": "2024-03-01T10:00:00Z"}],
            [{"toll_id": "X1", "vehicle_id": "V1", "charge_time": "2024-03-01T09:45:00Z", "amount": "4.50"}],
        )
        job_id = report.jobs_created[0]
        pending = await scheduler.store.get_job(job_id)
        assert pending.status is JobStatus.PENDING
        assert pending.trip_id == "T1"
        await scheduler.run_once()
        events = await scheduler.store.list_events(entity_id=job_id)
        return await scheduler.store.get_job(job_id), [event.event_type for event in events]

    completed, event_types = asyncio.run(scenario())

    assert completed.status is JobStatus.COMPLETED
    assert completed.confirmation_id == "C1"
    assert completed.amount == Decimal("4.50")
    assert event_types == ["created", "claimed", "completed"]
    assert filer.requests == [ClaimRequest(trip_id="T1", toll_id="X1", amount=Decimal("4.50"))]


def test_scheduler_settings_from_settings() -> None:
    settings = Settings(worker_count=0, poll_interval_seconds=2.0, max_idle_backoff_seconds=1.0, stale_in_flight_seconds=60)

    resolved = SchedulerSettings.from_settings(settings)

    assert resolved.worker_count == 1
    assert resolved.max_idle_backoff_seconds == 2.0
    assert resolved.stale_in_flight == timedelta(seconds=60)


def test_stale_threshold_is_raised_above_claim_timeout() -> None:
    settings = Settings(stale_in_flight_seconds=1, claim_timeout_seconds=30)

    resolved = SchedulerSettings.from_settings(settings)

    assert resolved.stale_in_flight == timedelta(seconds=35)


def test_reaper_never_reclaims_a_job_still_being_filed() -> None:
    in_flight: dict[str, int] = {"active": 0, "peak": 0}
    holder: dict[str, SubmissionScheduler] = {}

    class TrackingFiler(ScriptedFiler):
        async def file(self, request: ClaimRequest) -> ClaimOutcome:
            in_flight["active"] += 1
            in_flight["peak"] = max(in_flight["peak"], in_flight["active"])
            try:
                return await super().file(request)
            finally:
                in_flight["active"] -= 1
                holder["scheduler"].stop()

    filer = TrackingFiler(ClaimOutcome(accepted=True, confirmation_id="C1"), delay=0.3)
    settings = SchedulerSettings(
        worker_count=2,
        poll_interval_seconds=0.01,
        max_idle_backoff_seconds=0.02,
        max_backoff_seconds=0.05,
        claim_timeout_seconds=1.0,
        stale_in_flight=timedelta(seconds=0.1),
        reaper_interval_seconds=0.0,
    )

    async def scenario() -> SubmissionJob:
        store = InMemoryJobStore()
        lifecycle = JobLifecycle(store, RetryPolicy(jitter_ratio=0))
        scheduler = SubmissionScheduler(store, lifecycle, filer, settings)
        holder["scheduler"] = scheduler
        job = await _seed(scheduler)
        await asyncio.wait_for(scheduler.run(), timeout=5)
        return await store.get_job(job.job_id)

    stored = asyncio.run(scenario())

    assert settings.stale_in_flight == timedelta(seconds=6)
    assert in_flight["peak"] == 1
    assert len(filer.requests) == 1
    assert stored.status is JobStatus.COMPLETED
