from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from tollclaim.core.config import Settings


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    AMBIGUOUS = "ambiguous"
    STALE_IN_FLIGHT = "stale_in_flight"
    TRANSIENT = "transient"
    VALIDATION_REJECTED = "validation_rejected"
    DUPLICATE_CLAIM = "duplicate_claim"
    AMOUNT_REJECTED = "amount_rejected"
    PERMANENT = "permanent"


PERMANENT_KINDS = frozenset(
    {
        ErrorKind.VALIDATION_REJECTED.value,
        ErrorKind.DUPLICATE_CLAIM.value,
        ErrorKind.AMOUNT_REJECTED.value,
        ErrorKind.PERMANENT.value,
    }
)
MIN_DELAY = timedelta(seconds=1)


def is_permanent(kind: str) -> bool:
    return kind in PERMANENT_KINDS


@dataclass(slots=True)
class RetryPolicy:
    base_seconds: float = 60.0
    max_seconds: float = 3600.0
    max_attempts: int = 5
    jitter_ratio: float = 0.2
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            base_seconds=settings.job_retry_base_seconds,
            max_seconds=settings.job_retry_max_seconds,
            max_attempts=max(1, settings.job_max_attempts),
            jitter_ratio=min(max(settings.job_retry_jitter_ratio, 0.0), 1.0),
        )

    def next_delay(self, attempts: int, kind: str) -> timedelta | None:
        """Delay before the next attempt, or None when the job must stop.

        ``attempts`` counts failed attempts including the one just recorded.
        """
        if is_permanent(kind):
            return None
        if attempts >= self.max_attempts:
            return None

        multiplier = max(0, attempts - 1)
        delay = min(max(0.0, self.base_seconds) * (2**multiplier), max(0.0, self.max_seconds))
        if self.jitter_ratio > 0:
            delay *= self.rng.uniform(1.0 - self.jitter_ratio, 1.0 + self.jitter_ratio)
        return max(timedelta(seconds=delay), MIN_DELAY)
