from __future__ import annotations

import asyncio
import logging
import signal

import httpx

from tollclaim.core.config import get_settings
from tollclaim.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_telemetry
from tollclaim.jobs.lifecycle import JobLifecycle
from tollclaim.jobs.retry import RetryPolicy
from tollclaim.jobs.scheduler import SchedulerSettings, SubmissionScheduler
from tollclaim.services.claim_filer import HttpClaimFiler
from tollclaim.services.repository import get_job_store

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    store = get_job_store()
    lifecycle = JobLifecycle(store, RetryPolicy.from_settings(settings))

    try:
        async with httpx.AsyncClient(timeout=settings.claim_timeout_seconds) as client:
            filer = HttpClaimFiler(
                settings.claim_filer_url,
                settings.claim_filer_api_key,
                timeout_seconds=settings.claim_timeout_seconds,
                client=client,
            )
            scheduler = SubmissionScheduler(store, lifecycle, filer, SchedulerSettings.from_settings(settings))
            _install_signal_handlers(scheduler)
            await scheduler.run()
    finally:
        shutdown_telemetry(telemetry_runtime)
        await store.close()
        get_job_store.cache_clear()


def _install_signal_handlers(scheduler: SubmissionScheduler) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, scheduler.stop)
        except NotImplementedError:
            logger.warning("signal handlers unavailable on this platform; stop with Ctrl+C")
            return


if __name__ == "__main__":
    asyncio.run(run_worker())
