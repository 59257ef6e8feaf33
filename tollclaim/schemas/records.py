from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

Confidence = Literal["high", "medium", "low", "none"]
SUBMITTABLE_CONFIDENCE: frozenset[str] = frozenset({"high", "medium"})


@dataclass(slots=True, frozen=True)
class GeoPoint:
    lat: float
    lon: float


@dataclass(slots=True, frozen=True)
class Location:
    """A gantry/plaza or pickup spot: coordinates, a textual area, or both."""

    point: GeoPoint | None = None
    area: str | None = None


@dataclass(slots=True, frozen=True)
class TripRecord:
    trip_id: str
    vehicle_id: str
    host_id: str | None
    start_time: datetime
    end_time: datetime
    pickup_location: Location | None = None
    return_location: Location | None = None

    @property
    def midpoint(self) -> datetime:
        return self.start_time + (self.end_time - self.start_time) / 2


@dataclass(slots=True, frozen=True)
class TollRecord:
    toll_id: str
    vehicle_id: str
    charge_time: datetime
    amount: Decimal
    location: Location | None = None
    proof_reference: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(slots=True, frozen=True)
class MatchCandidate:
    toll_id: str
    trip_id: str | None
    confidence: Confidence
    reasons: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def submittable(self) -> bool:
        return self.confidence in SUBMITTABLE_CONFIDENCE
