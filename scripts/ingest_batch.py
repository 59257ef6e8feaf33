#!/usr/bin/env python3
"""Run one ingestion cycle over trip and toll export files and print the report as JSON."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from tollclaim.core.config import get_settings
from tollclaim.core.telemetry import configure_logging
from tollclaim.jobs.lifecycle import JobLifecycle
from tollclaim.jobs.retry import RetryPolicy
from tollclaim.services.ingestion import IngestionService
from tollclaim.services.matching import MatchSettings
from tollclaim.services.normalizer import Normalizer
from tollclaim.services.repository import get_job_store


def _load_json(path: Path) -> Any:
    with path.open(encoding="utf-8") as handle:
        return json.load(handle)


async def run_ingestion(trips_path: Path, tolls_path: Path, *, source_timezone: str | None = None) -> dict[str, Any]:
    settings = get_settings()
    store = get_job_store()
    service = IngestionService(
        JobLifecycle(store, RetryPolicy.from_settings(settings)),
        normalizer=Normalizer(source_timezone or settings.source_timezone),
        match_settings=MatchSettings.from_settings(settings),
    )
    try:
        report = await service.ingest(_load_json(trips_path), _load_json(tolls_path))
    finally:
        await store.close()
        get_job_store.cache_clear()
    return report.to_dict()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Normalize and match one batch of trips and tolls, creating submission jobs.",
    )
    parser.add_argument("--trips", required=True, type=Path, help="Path to the trip export JSON")
    parser.add_argument("--tolls", required=True, type=Path, help="Path to the toll export JSON")
    parser.add_argument(
        "--source-timezone",
        default=None,
        help="Timezone for timestamps without an offset (defaults to TC_SOURCE_TIMEZONE)",
    )
    args = parser.parse_args()

    configure_logging()
    report = asyncio.run(run_ingestion(args.trips, args.tolls, source_timezone=args.source_timezone))
    print(json.dumps(report, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
