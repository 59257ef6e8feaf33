from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx

from tollclaim.jobs.retry import ErrorKind, is_permanent


@dataclass(slots=True, frozen=True)
class ClaimRequest:
    trip_id: str
    toll_id: str
    amount: Decimal
    proof_reference: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "toll_id": self.toll_id,
            "amount": str(self.amount),
            "proof_reference": self.proof_reference,
        }


@dataclass(slots=True, frozen=True)
class ClaimOutcome:
    accepted: bool
    confirmation_id: str


class ClaimFilerError(Exception):
    """A claim filing attempt that did not produce a confirmation."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def permanent(self) -> bool:
        return is_permanent(self.kind)


class TransientClaimError(ClaimFilerError):
    """Retryable: timeouts, throttling, upstream failures, ambiguous outcomes."""


class PermanentClaimError(ClaimFilerError):
    """The host rejected the claim content; retrying cannot help."""


class ClaimFiler(Protocol):
    async def file(self, request: ClaimRequest) -> ClaimOutcome: ...


class HttpClaimFiler:
    """Files claims against the claim filer service over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key} if api_key else {}
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def file(self, request: ClaimRequest) -> ClaimOutcome:
        if self._client is not None:
            return await self._post(self._client, request)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._post(client, request)

    async def _post(self, client: httpx.AsyncClient, request: ClaimRequest) -> ClaimOutcome:
        try:
            response = await client.post(f"{self.base_url}/claims", json=request.to_json(), headers=self.headers)
        except httpx.TimeoutException as exc:
            raise TransientClaimError(ErrorKind.TIMEOUT.value, f"claim filer timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientClaimError(ErrorKind.AMBIGUOUS.value, f"claim filer unreachable: {exc}") from exc
        return parse_claim_response(response)


def parse_claim_response(response: httpx.Response) -> ClaimOutcome:
    status_code = response.status_code
    detail = _error_detail(response)

    if status_code in (400, 422):
        raise PermanentClaimError(ErrorKind.VALIDATION_REJECTED.value, detail)
    if status_code == 409:
        raise PermanentClaimError(ErrorKind.DUPLICATE_CLAIM.value, detail)
    if status_code == 408:
        raise TransientClaimError(ErrorKind.TIMEOUT.value, detail)
    if status_code == 429:
        raise TransientClaimError(ErrorKind.RATE_LIMITED.value, detail)
    if status_code >= 500:
        raise TransientClaimError(ErrorKind.SERVER_ERROR.value, detail)
    if not 200 <= status_code < 300:
        raise PermanentClaimError(ErrorKind.PERMANENT.value, detail)

    try:
        payload = response.json()
    except ValueError as exc:
        raise TransientClaimError(ErrorKind.AMBIGUOUS.value, "claim filer returned a non-JSON body") from exc
    if not isinstance(payload, dict):
        raise TransientClaimError(ErrorKind.AMBIGUOUS.value, "claim filer returned an unexpected body")

    if payload.get("accepted") is False:
        reason = payload.get("reason") or payload.get("message") or "claim rejected"
        raise PermanentClaimError(ErrorKind.AMOUNT_REJECTED.value, str(reason))

    confirmation_id = payload.get("confirmation_id") or payload.get("confirmationId")
    if payload.get("accepted") is not True or not isinstance(confirmation_id, str) or not confirmation_id.strip():
        raise TransientClaimError(ErrorKind.AMBIGUOUS.value, "claim filer response carried no confirmation id")
    return ClaimOutcome(accepted=True, confirmation_id=confirmation_id.strip())


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return f"HTTP {response.status_code}: {text[:200]}" if text else f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        message = payload.get("detail") or payload.get("message") or payload.get("reason")
        if message:
            return f"HTTP {response.status_code}: {message}"
    return f"HTTP {response.status_code}"
