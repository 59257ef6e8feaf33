from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import timedelta

from opentelemetry import trace

from tollclaim.core.config import Settings
from tollclaim.jobs.executor import execute_job
from tollclaim.jobs.lease_reaper import should_reclaim
from tollclaim.jobs.lifecycle import JobLifecycle
from tollclaim.jobs.retry import ErrorKind
from tollclaim.schemas.jobs import JobError, SubmissionJob
from tollclaim.services.claim_filer import ClaimFiler, ClaimFilerError
from tollclaim.services.store import JobStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# An in-flight job is only stale once its filing call must have timed out.
STALE_MARGIN_SECONDS = 5.0


@dataclass(slots=True)
class SchedulerSettings:
    worker_count: int = 4
    poll_batch_size: int = 10
    poll_interval_seconds: float = 1.0
    max_idle_backoff_seconds: float = 5.0
    max_backoff_seconds: float = 15.0
    claim_timeout_seconds: float = 30.0
    stale_in_flight: timedelta = timedelta(minutes=5)
    reaper_interval_seconds: float = 30.0
    reaper_batch_size: int = 100

    def __post_init__(self) -> None:
        floor = timedelta(seconds=self.claim_timeout_seconds + STALE_MARGIN_SECONDS)
        if self.stale_in_flight < floor:
            logger.warning(
                "stale_in_flight=%ss is not above claim_timeout=%ss; raising it to %ss",
                self.stale_in_flight.total_seconds(),
                self.claim_timeout_seconds,
                floor.total_seconds(),
            )
            self.stale_in_flight = floor

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerSettings:
        return cls(
            worker_count=max(1, settings.worker_count),
            poll_batch_size=max(1, settings.poll_batch_size),
            poll_interval_seconds=max(0.0, settings.poll_interval_seconds),
            max_idle_backoff_seconds=max(settings.poll_interval_seconds, settings.max_idle_backoff_seconds),
            max_backoff_seconds=max(settings.poll_interval_seconds, settings.max_backoff_seconds),
            claim_timeout_seconds=settings.claim_timeout_seconds,
            stale_in_flight=timedelta(seconds=settings.stale_in_flight_seconds),
            reaper_interval_seconds=settings.reaper_interval_seconds,
            reaper_batch_size=max(1, settings.reaper_batch_size),
        )


class SubmissionScheduler:
    """Bounded pool of asyncio workers driving pending jobs through the claim filer.

    Workers coordinate only through compare-and-swap on the store: a worker
    that loses a claim simply moves on to the next job.
    """

    def __init__(
        self,
        store: JobStore,
        lifecycle: JobLifecycle,
        filer: ClaimFiler,
        settings: SchedulerSettings | None = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.filer = filer
        self.settings = settings or SchedulerSettings()
        self._stopping = asyncio.Event()
        self._last_reap_at = float("-inf")

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Ask workers to exit once the job each one holds is resolved."""
        if not self._stopping.is_set():
            logger.info("scheduler drain requested")
        self._stopping.set()

    async def run(self) -> None:
        workers = [
            asyncio.create_task(self._worker_loop(index), name=f"submission-worker-{index}")
            for index in range(self.settings.worker_count)
        ]
        logger.info("scheduler started workers=%s", len(workers))
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
            logger.info("scheduler stopped")

    async def run_once(self) -> int:
        """One poll cycle: fetch actionable jobs and process those this worker wins."""
        now = self.lifecycle.clock()
        jobs = await self.store.list_actionable(now=now, limit=self.settings.poll_batch_size)
        processed = 0
        for job in jobs:
            if self.stopping:
                break
            if await self.process_job(job) is not None:
                processed += 1
        return processed

    async def process_job(self, job: SubmissionJob) -> SubmissionJob | None:
        claimed = await self.lifecycle.claim(job)
        if claimed is None:
            return None

        with tracer.start_as_current_span("scheduler.process_job") as span:
            span.set_attribute("job.id", claimed.job_id)
            span.set_attribute("job.attempt", claimed.attempts + 1)
            try:
                outcome = await execute_job(
                    claimed,
                    self.filer,
                    timeout_seconds=self.settings.claim_timeout_seconds,
                )
            except ClaimFilerError as exc:
                span.set_attribute("job.error_kind", exc.kind)
                result = await self.lifecycle.fail(claimed, JobError(kind=exc.kind, message=exc.message))
            except Exception as exc:
                logger.exception("claim filing raised unexpectedly for id=%s", claimed.job_id)
                result = await self.lifecycle.fail(
                    claimed,
                    JobError(kind=ErrorKind.AMBIGUOUS.value, message=f"{type(exc).__name__}: {exc}"),
                )
            else:
                result = await self.lifecycle.succeed(claimed, outcome.confirmation_id)

            if result is None:
                logger.warning("job id=%s changed while in flight; result discarded", claimed.job_id)
            else:
                span.set_attribute("job.status", result.status.value)
            return result

    async def reap_stale(self) -> int:
        now = self.lifecycle.clock()
        stale = await self.store.list_stale_in_flight(
            now=now,
            stale_after=self.settings.stale_in_flight,
            limit=self.settings.reaper_batch_size,
        )
        reclaimed = 0
        for job in stale:
            if not should_reclaim(job, self.settings.stale_in_flight, now=now):
                continue
            if await self.lifecycle.reclaim_stale(job) is not None:
                reclaimed += 1
        if reclaimed:
            logger.info("reclaimed stale in-flight jobs: %s", reclaimed)
        return reclaimed

    async def _worker_loop(self, index: int) -> None:
        poll_interval = self.settings.poll_interval_seconds
        idle = poll_interval
        backoff = poll_interval

        while not self.stopping:
            try:
                with tracer.start_as_current_span("scheduler.poll_cycle") as span:
                    span.set_attribute("worker.index", index)
                    await self._maybe_reap()
                    processed = await self.run_once()
                backoff = poll_interval
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(max(backoff, 0.1) * (2.0 + jitter), self.settings.max_backoff_seconds)
                logger.exception("worker=%s poll failed: %s; retry in %.1fs", index, exc, sleep_for)
                await self._pause(sleep_for)
                backoff = sleep_for
                continue

            if processed:
                idle = poll_interval
                continue
            await self._pause(idle)
            idle = min(max(idle, 0.1) * 2, self.settings.max_idle_backoff_seconds)

    async def _maybe_reap(self) -> None:
        now = time.monotonic()
        if now - self._last_reap_at < self.settings.reaper_interval_seconds:
            return
        self._last_reap_at = now
        await self.reap_stale()

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
