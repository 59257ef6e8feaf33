from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from tollclaim.core.config import Settings
from tollclaim.schemas.records import Confidence, GeoPoint, MatchCandidate, TollRecord, TripRecord

EARTH_RADIUS_METERS = 6_371_008.8


@dataclass(slots=True, frozen=True)
class MatchSettings:
    grace_window: timedelta = timedelta(minutes=15)
    low_window: timedelta = timedelta(hours=24)
    proximity_meters: float = 1000.0

    @classmethod
    def from_settings(cls, settings: Settings) -> MatchSettings:
        return cls(
            grace_window=timedelta(minutes=max(0.0, settings.match_grace_minutes)),
            low_window=timedelta(hours=max(0.0, settings.match_low_window_hours)),
            proximity_meters=max(0.0, settings.match_proximity_meters),
        )


def match(
    tolls: Iterable[TollRecord],
    trips: Iterable[TripRecord],
    *,
    settings: MatchSettings | None = None,
) -> list[MatchCandidate]:
    """Pair every toll with its most plausible trip, in input toll order."""
    resolved = settings or MatchSettings()
    trips_by_vehicle: dict[str, list[TripRecord]] = {}
    for trip in sorted(trips, key=lambda row: row.trip_id):
        trips_by_vehicle.setdefault(trip.vehicle_id, []).append(trip)
    return [match_toll(toll, trips_by_vehicle.get(toll.vehicle_id, []), settings=resolved) for toll in tolls]


def match_toll(
    toll: TollRecord,
    vehicle_trips: Sequence[TripRecord],
    *,
    settings: MatchSettings,
) -> MatchCandidate:
    charge_time = toll.charge_time
    if not vehicle_trips:
        return _candidate(toll, None, "none", rule="no_trips_for_vehicle", charge_time=charge_time)

    containing = [trip for trip in vehicle_trips if trip.start_time <= charge_time <= trip.end_time]
    if len(containing) == 1:
        return _candidate(toll, containing[0], "high", rule="single_containment", charge_time=charge_time)

    if containing:
        candidate_ids = [trip.trip_id for trip in containing]
        distances = _proximity_distances(toll, containing)
        if distances is not None:
            within = [trip_id for trip_id, meters in distances.items() if meters <= settings.proximity_meters]
            if len(within) == 1:
                nearest = next(trip for trip in containing if trip.trip_id == within[0])
                return _candidate(
                    toll,
                    nearest,
                    "high",
                    rule="proximity_resolved",
                    charge_time=charge_time,
                    candidate_trip_ids=candidate_ids,
                    distance_meters=distances[nearest.trip_id],
                    distances_meters=distances,
                )
        chosen = min(containing, key=lambda trip: (_midpoint_delta(trip, charge_time), trip.trip_id))
        return _candidate(
            toll,
            chosen,
            "medium",
            rule="overlap_midpoint",
            charge_time=charge_time,
            candidate_trip_ids=candidate_ids,
            distances_meters=distances,
        )

    graced = [trip for trip in vehicle_trips if boundary_gap(trip, charge_time) <= settings.grace_window]
    if graced:
        return _candidate(toll, _closest(graced, charge_time), "medium", rule="grace_window", charge_time=charge_time)

    nearby = [trip for trip in vehicle_trips if boundary_gap(trip, charge_time) <= settings.low_window]
    if nearby:
        return _candidate(toll, _closest(nearby, charge_time), "low", rule="low_window", charge_time=charge_time)

    return _candidate(toll, None, "none", rule="outside_low_window", charge_time=charge_time)


def boundary_gap(trip: TripRecord, moment: datetime) -> timedelta:
    if moment < trip.start_time:
        return trip.start_time - moment
    if moment > trip.end_time:
        return moment - trip.end_time
    return timedelta(0)


def haversine_meters(a: GeoPoint, b: GeoPoint) -> float:
    lat1, lon1, lat2, lon2 = map(math.radians, (a.lat, a.lon, b.lat, b.lon))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def _proximity_distances(toll: TollRecord, trips: Sequence[TripRecord]) -> dict[str, float] | None:
    toll_point = toll.location.point if toll.location is not None else None
    if toll_point is None:
        return None

    distances: dict[str, float] = {}
    for trip in trips:
        points = [
            location.point
            for location in (trip.pickup_location, trip.return_location)
            if location is not None and location.point is not None
        ]
        if not points:
            return None
        distances[trip.trip_id] = round(min(haversine_meters(toll_point, point) for point in points), 1)
    return distances


def _closest(trips: Sequence[TripRecord], moment: datetime) -> TripRecord:
    return min(trips, key=lambda trip: (boundary_gap(trip, moment), _midpoint_delta(trip, moment), trip.trip_id))


def _midpoint_delta(trip: TripRecord, moment: datetime) -> timedelta:
    return abs(trip.midpoint - moment)


def _candidate(
    toll: TollRecord,
    trip: TripRecord | None,
    confidence: Confidence,
    *,
    rule: str,
    charge_time: datetime,
    candidate_trip_ids: list[str] | None = None,
    distance_meters: float | None = None,
    distances_meters: dict[str, float] | None = None,
) -> MatchCandidate:
    reasons: dict[str, Any] = {"rule": rule}
    if trip is not None:
        reasons["time_delta_seconds"] = boundary_gap(trip, charge_time).total_seconds()
        reasons["midpoint_delta_seconds"] = _midpoint_delta(trip, charge_time).total_seconds()
    if candidate_trip_ids is not None:
        reasons["candidate_trip_ids"] = sorted(candidate_trip_ids)
    if distance_meters is not None:
        reasons["distance_meters"] = distance_meters
    if distances_meters is not None:
        reasons["distances_meters"] = dict(sorted(distances_meters.items()))
    return MatchCandidate(
        toll_id=toll.toll_id,
        trip_id=trip.trip_id if trip is not None else None,
        confidence=confidence,
        reasons=reasons,
    )
