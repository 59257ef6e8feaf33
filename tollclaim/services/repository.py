from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from tollclaim.core.config import get_settings
from tollclaim.schemas.jobs import JobError, JobEvent, JobStatus, SubmissionJob
from tollclaim.services.store import (
    InMemoryJobStore,
    JobConflictError,
    JobNotFoundError,
    JobStore,
    JobStoreUnavailableError,
)

logger = logging.getLogger(__name__)

_JOB_COLUMNS = """
  job_id,
  trip_id,
  toll_id,
  vehicle_id,
  amount,
  confidence,
  proof_reference,
  status,
  attempts,
  last_attempt_at,
  next_eligible_at,
  confirmation_id,
  last_error,
  created_at,
  updated_at
"""


class PostgresJobStore:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_if_absent(
        self, job: SubmissionJob, *, events: Sequence[JobEvent] = ()
    ) -> tuple[SubmissionJob, bool]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        insert into submission_jobs ({_JOB_COLUMNS})
                        values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb, $14, $15)
                        on conflict (job_id) do nothing
                        returning {_JOB_COLUMNS}
                        """,
                        *self._job_values(job),
                    )
                    if row is None:
                        existing = await conn.fetchrow(
                            f"select {_JOB_COLUMNS} from submission_jobs where job_id = $1",
                            job.job_id,
                        )
                        if existing is None:
                            raise JobConflictError(f"toll {job.toll_id} already has a job under another key")
                        return self._job_row_to_model(existing), False

                    await self._insert_events(conn, events)
                    return self._job_row_to_model(row), True
        except asyncpg.UniqueViolationError as exc:
            raise JobConflictError(str(exc)) from exc

    async def get_job(self, job_id: str) -> SubmissionJob:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_JOB_COLUMNS} from submission_jobs where job_id = $1", job_id)
        if row is None:
            raise JobNotFoundError("job not found")
        return self._job_row_to_model(row)

    async def list_jobs(
        self, *, status: JobStatus | None = None, limit: int = 20, offset: int = 0
    ) -> list[SubmissionJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from submission_jobs
            where ($1::text is null or status = $1::text)
            order by created_at desc, job_id desc
            limit $2 offset $3
            """,
            status.value if status is not None else None,
            max(1, min(limit, 500)),
            max(0, offset),
        )
        return [self._job_row_to_model(row) for row in rows]

    async def list_actionable(self, *, now: datetime, limit: int) -> list[SubmissionJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from submission_jobs
            where status = 'pending' and coalesce(next_eligible_at, created_at) <= $1
            order by coalesce(next_eligible_at, created_at) asc, created_at asc, job_id asc
            limit $2
            """,
            now,
            max(1, limit),
        )
        return [self._job_row_to_model(row) for row in rows]

    async def list_stale_in_flight(
        self, *, now: datetime, stale_after: timedelta, limit: int
    ) -> list[SubmissionJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from submission_jobs
            where status = 'in_flight' and coalesce(last_attempt_at, updated_at) <= $1
            order by coalesce(last_attempt_at, updated_at) asc, job_id asc
            limit $2
            """,
            now - stale_after,
            max(1, min(limit, 1000)),
        )
        return [self._job_row_to_model(row) for row in rows]

    async def compare_and_swap(
        self, expected: SubmissionJob, updated: SubmissionJob, *, events: Sequence[JobEvent] = ()
    ) -> SubmissionJob:
        if expected.job_id != updated.job_id:
            raise ValueError("compare_and_swap requires the same job_id")
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update submission_jobs
                    set
                      status = $4,
                      attempts = $5,
                      last_attempt_at = $6,
                      next_eligible_at = $7,
                      confirmation_id = $8,
                      last_error = $9::jsonb,
                      updated_at = $10
                    where job_id = $1
                      and status = $2
                      and updated_at = $3
                      and status not in ('completed', 'failed')
                    returning {_JOB_COLUMNS}
                    """,
                    expected.job_id,
                    expected.status.value,
                    expected.updated_at,
                    updated.status.value,
                    updated.attempts,
                    updated.last_attempt_at,
                    updated.next_eligible_at,
                    updated.confirmation_id,
                    self._error_json(updated.last_error),
                    updated.updated_at,
                )
                if row is None:
                    exists = await conn.fetchval("select 1 from submission_jobs where job_id = $1", expected.job_id)
                    if not exists:
                        raise JobNotFoundError("job not found")
                    raise JobConflictError(f"job {expected.job_id} changed concurrently")

                await self._insert_events(conn, events)
                return self._job_row_to_model(row)

    async def record_event(self, event: JobEvent) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._insert_events(conn, [event])

    async def list_events(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[JobEvent]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select entity_type, entity_id, event_type, payload, created_at
            from job_events
            where ($1::text is null or entity_type = $1::text)
              and ($2::text is null or entity_id = $2::text)
              and ($3::text is null or event_type = $3::text)
            order by id asc
            limit $4 offset $5
            """,
            entity_type,
            entity_id,
            event_type,
            max(1, min(limit, 1000)),
            max(0, offset),
        )
        return [
            JobEvent(
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                event_type=row["event_type"],
                payload=self._coerce_json_dict(row["payload"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def summarize(self) -> dict[str, Any]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              status,
              count(*) as total,
              coalesce(sum(amount), 0) as amount,
              coalesce(sum(attempts), 0) as attempts
            from submission_jobs
            group by status
            """
        )
        counts = {status.value: 0 for status in JobStatus}
        recovered = Decimal("0.00")
        total_attempts = 0
        for row in rows:
            counts[row["status"]] = int(row["total"])
            total_attempts += int(row["attempts"])
            if row["status"] == JobStatus.COMPLETED.value:
                recovered = Decimal(row["amount"])
        total = sum(counts.values())
        return {
            "total_jobs": total,
            "counts_by_status": counts,
            "recovered_amount": recovered,
            "average_attempts": round(total_attempts / total, 3) if total else 0.0,
        }

    async def _insert_events(self, conn: asyncpg.Connection, events: Sequence[JobEvent]) -> None:
        for event in events:
            await conn.execute(
                """
                insert into job_events (entity_type, entity_id, event_type, payload, created_at)
                values ($1, $2, $3, $4::jsonb, $5)
                """,
                event.entity_type,
                event.entity_id,
                event.event_type,
                json.dumps(event.payload, default=str),
                event.created_at,
            )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise JobStoreUnavailableError("TC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise JobStoreUnavailableError("database unavailable") from exc

    def _job_values(self, job: SubmissionJob) -> tuple[Any, ...]:
        return (
            job.job_id,
            job.trip_id,
            job.toll_id,
            job.vehicle_id,
            job.amount,
            job.confidence,
            job.proof_reference,
            job.status.value,
            job.attempts,
            job.last_attempt_at,
            job.next_eligible_at,
            job.confirmation_id,
            self._error_json(job.last_error),
            job.created_at,
            job.updated_at,
        )

    @staticmethod
    def _error_json(error: JobError | None) -> str | None:
        return json.dumps(error.to_dict()) if error is not None else None

    def _job_row_to_model(self, row: asyncpg.Record) -> SubmissionJob:
        error_payload = self._coerce_json_dict(row["last_error"])
        last_error = (
            JobError(kind=str(error_payload.get("kind", "unknown")), message=str(error_payload.get("message", "")))
            if error_payload
            else None
        )
        return SubmissionJob(
            job_id=row["job_id"],
            trip_id=row["trip_id"],
            toll_id=row["toll_id"],
            vehicle_id=row["vehicle_id"],
            amount=Decimal(row["amount"]),
            confidence=row["confidence"],
            proof_reference=row["proof_reference"],
            status=JobStatus(row["status"]),
            attempts=int(row["attempts"]),
            last_attempt_at=row["last_attempt_at"],
            next_eligible_at=row["next_eligible_at"],
            confirmation_id=row["confirmation_id"],
            last_error=last_error,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_job_store() -> JobStore:
    settings = get_settings()
    if not settings.database_url:
        logger.warning("TC_DATABASE_URL not set; using the in-memory job store (single process only)")
        return InMemoryJobStore()
    return PostgresJobStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
