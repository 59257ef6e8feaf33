from __future__ import annotations

import asyncio

from tollclaim.jobs.retry import ErrorKind
from tollclaim.schemas.jobs import SubmissionJob
from tollclaim.services.claim_filer import ClaimFiler, ClaimOutcome, ClaimRequest, TransientClaimError


def claim_request_for(job: SubmissionJob) -> ClaimRequest:
    return ClaimRequest(
        trip_id=job.trip_id,
        toll_id=job.toll_id,
        amount=job.amount,
        proof_reference=job.proof_reference,
    )


async def execute_job(
    job: SubmissionJob,
    filer: ClaimFiler,
    *,
    timeout_seconds: float | None = None,
) -> ClaimOutcome:
    """File the claim for ``job`` under a hard timeout.

    Raises ``ClaimFilerError``; a timeout surfaces as a transient ``timeout``.
    """
    limit = timeout_seconds if timeout_seconds is not None else 30.0
    try:
        return await asyncio.wait_for(filer.file(claim_request_for(job)), timeout=limit)
    except asyncio.TimeoutError as exc:
        raise TransientClaimError(
            ErrorKind.TIMEOUT.value,
            f"claim filing exceeded {limit:.1f}s",
        ) from exc
