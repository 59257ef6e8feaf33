from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from tollclaim.jobs.lifecycle import JobLifecycle
from tollclaim.schemas.jobs import JobEvent
from tollclaim.schemas.records import MatchCandidate, TollRecord, TripRecord
from tollclaim.services.matching import MatchSettings, match
from tollclaim.services.normalizer import Normalizer, Rejection

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IngestionReport:
    trips_accepted: int = 0
    tolls_accepted: int = 0
    trip_rejections: list[Rejection] = field(default_factory=list)
    toll_rejections: list[Rejection] = field(default_factory=list)
    confidence_counts: dict[str, int] = field(default_factory=dict)
    jobs_created: list[str] = field(default_factory=list)
    jobs_existing: list[str] = field(default_factory=list)
    review_toll_ids: list[str] = field(default_factory=list)
    submitted_amount: Decimal = Decimal("0.00")

    def to_dict(self) -> dict[str, Any]:
        return {
            "trips_accepted": self.trips_accepted,
            "tolls_accepted": self.tolls_accepted,
            "trip_rejections": [row.to_dict() for row in self.trip_rejections],
            "toll_rejections": [row.to_dict() for row in self.toll_rejections],
            "confidence_counts": dict(self.confidence_counts),
            "jobs_created": list(self.jobs_created),
            "jobs_existing": list(self.jobs_existing),
            "review_toll_ids": list(self.review_toll_ids),
            "submitted_amount": str(self.submitted_amount),
        }


class IngestionService:
    """One ingestion cycle: normalize, match, then create jobs or review entries."""

    def __init__(
        self,
        lifecycle: JobLifecycle,
        *,
        normalizer: Normalizer | None = None,
        match_settings: MatchSettings | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.normalizer = normalizer or Normalizer()
        self.match_settings = match_settings or MatchSettings()

    async def ingest(self, raw_trips: Any, raw_tolls: Any) -> IngestionReport:
        trips, trip_rejections = self.normalizer.normalize_trips(raw_trips)
        tolls, toll_rejections = self.normalizer.normalize_tolls(raw_tolls)
        report = await self.ingest_records(trips, tolls)
        report.trip_rejections = trip_rejections
        report.toll_rejections = toll_rejections
        return report

    async def ingest_records(self, trips: list[TripRecord], tolls: list[TollRecord]) -> IngestionReport:
        candidates = match(tolls, trips, settings=self.match_settings)
        report = IngestionReport(
            trips_accepted=len(trips),
            tolls_accepted=len(tolls),
            confidence_counts=dict(Counter(candidate.confidence for candidate in candidates)),
        )

        tolls_by_id = {toll.toll_id: toll for toll in tolls}
        for candidate in candidates:
            toll = tolls_by_id[candidate.toll_id]
            if candidate.submittable:
                await self._submit(candidate, toll, report)
            else:
                await self._route_to_review(candidate, toll)
                report.review_toll_ids.append(toll.toll_id)

        logger.info(
            "ingestion finished trips=%s tolls=%s created=%s existing=%s review=%s",
            report.trips_accepted,
            report.tolls_accepted,
            len(report.jobs_created),
            len(report.jobs_existing),
            len(report.review_toll_ids),
        )
        return report

    async def _submit(self, candidate: MatchCandidate, toll: TollRecord, report: IngestionReport) -> None:
        job, created = await self.lifecycle.create(candidate, toll)
        if created:
            report.jobs_created.append(job.job_id)
            report.submitted_amount += job.amount
            return
        report.jobs_existing.append(job.job_id)
        if job.trip_id != candidate.trip_id:
            logger.info(
                "job id=%s keeps trip_id=%s; re-match suggested trip_id=%s",
                job.job_id,
                job.trip_id,
                candidate.trip_id,
            )

    async def _route_to_review(self, candidate: MatchCandidate, toll: TollRecord) -> None:
        event = JobEvent(
            entity_type="toll",
            entity_id=toll.toll_id,
            event_type="match_review",
            created_at=self.lifecycle.clock(),
            payload={
                "confidence": candidate.confidence,
                "trip_id": candidate.trip_id,
                "vehicle_id": toll.vehicle_id,
                "charge_time": toll.charge_time.isoformat(),
                "amount": str(toll.amount),
                "reasons": candidate.reasons,
                "toll_raw_payload": toll.raw_payload,
            },
        )
        await self.lifecycle.store.record_event(event)
        logger.info(
            "toll routed to manual review toll_id=%s confidence=%s rule=%s",
            toll.toll_id,
            candidate.confidence,
            candidate.reasons.get("rule"),
        )
