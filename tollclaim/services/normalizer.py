"""Turn raw collector output into canonical trip and toll records.

Collectors hand over JSON arrays (or their ``{"trips": [...]}`` /
``{"records": [...]}`` envelopes). Every record may carry a
``source_version``:

* ``"1"`` (default): canonical field names, snake_case or camelCase.
* ``"0"``: the legacy scraper shape (``tripId`` + ``dates.start/end`` for
  trips; ``id`` + ``date``/``time`` + ``"$4.50"`` style amounts for tolls).

A malformed record is dropped with a logged reason; it never fails the batch.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from zoneinfo import ZoneInfo

from tollclaim.core.config import get_settings
from tollclaim.schemas.records import GeoPoint, Location, TollRecord, TripRecord

logger = logging.getLogger(__name__)

SUPPORTED_SOURCE_VERSIONS = {"0", "1"}
_CENTS = Decimal("0.01")
_AMOUNT_RE = re.compile(r"-?\d+(?:\.\d+)?")
_LEGACY_DATE_FORMATS = (
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%Y-%m-%d %I:%M %p",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)


class NormalizationError(ValueError):
    """Raised for a single raw record that cannot be normalized."""


@dataclass(slots=True)
class Rejection:
    index: int
    reason: str
    record_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "reason": self.reason, "record_id": self.record_id}


class Normalizer:
    def __init__(self, source_timezone: str | None = None) -> None:
        self.source_timezone = ZoneInfo(source_timezone or get_settings().source_timezone)

    def normalize_trips(self, payload: Any) -> tuple[list[TripRecord], list[Rejection]]:
        records: list[TripRecord] = []
        rejections: list[Rejection] = []
        seen: set[str] = set()
        for index, raw in enumerate(unwrap_batch(payload, "trips")):
            try:
                trip = self._trip_from_raw(raw)
            except NormalizationError as exc:
                rejection = Rejection(index=index, reason=str(exc), record_id=_raw_id(raw, "trip_id", "tripId"))
                logger.warning("dropped trip record index=%s id=%s reason=%s", index, rejection.record_id, exc)
                rejections.append(rejection)
                continue
            if trip.trip_id in seen:
                rejections.append(Rejection(index=index, reason="duplicate_trip_id", record_id=trip.trip_id))
                logger.warning("dropped duplicate trip record index=%s id=%s", index, trip.trip_id)
                continue
            seen.add(trip.trip_id)
            records.append(trip)
        return records, rejections

    def normalize_tolls(self, payload: Any) -> tuple[list[TollRecord], list[Rejection]]:
        records: list[TollRecord] = []
        rejections: list[Rejection] = []
        seen: set[str] = set()
        for index, raw in enumerate(unwrap_batch(payload, "records", "tolls")):
            try:
                toll = self._toll_from_raw(raw)
            except NormalizationError as exc:
                rejection = Rejection(index=index, reason=str(exc), record_id=_raw_id(raw, "toll_id", "tollId", "id"))
                logger.warning("dropped toll record index=%s id=%s reason=%s", index, rejection.record_id, exc)
                rejections.append(rejection)
                continue
            if toll.toll_id in seen:
                rejections.append(Rejection(index=index, reason="duplicate_toll_id", record_id=toll.toll_id))
                logger.warning("dropped duplicate toll record index=%s id=%s", index, toll.toll_id)
                continue
            seen.add(toll.toll_id)
            records.append(toll)
        return records, rejections

    def _trip_from_raw(self, raw: Any) -> TripRecord:
        if not isinstance(raw, dict):
            raise NormalizationError("record_not_an_object")
        version = _source_version(raw)

        if version == "0":
            dates = raw.get("dates") if isinstance(raw.get("dates"), dict) else {}
            vehicle = raw.get("vehicle") if isinstance(raw.get("vehicle"), dict) else {}
            trip_id = _as_text(raw.get("tripId"))
            vehicle_id = _as_text(vehicle.get("id")) or _as_text(vehicle.get("plate")) or _as_text(raw.get("vehicleId"))
            host_id = _as_text(raw.get("hostId"))
            start_raw = dates.get("start")
            end_raw = dates.get("end")
            pickup = _parse_location(raw.get("location"))
            dropoff = pickup
        else:
            trip_id = _as_text(_field(raw, "trip_id", "tripId"))
            vehicle_id = _as_text(_field(raw, "vehicle_id", "vehicleId"))
            host_id = _as_text(_field(raw, "host_id", "hostId"))
            start_raw = _field(raw, "start_time", "startTime")
            end_raw = _field(raw, "end_time", "endTime")
            pickup = _parse_location(_field(raw, "pickup_location", "pickupLocation"))
            dropoff = _parse_location(_field(raw, "return_location", "returnLocation"))

        if not trip_id:
            raise NormalizationError("missing_trip_id")
        if not vehicle_id:
            raise NormalizationError("missing_vehicle_id")
        start_time = self._parse_timestamp(start_raw)
        end_time = self._parse_timestamp(end_raw)
        if start_time is None:
            raise NormalizationError("missing_or_invalid_start_time")
        if end_time is None:
            raise NormalizationError("missing_or_invalid_end_time")
        if end_time < start_time:
            raise NormalizationError("end_time_before_start_time")

        return TripRecord(
            trip_id=trip_id,
            vehicle_id=vehicle_id,
            host_id=host_id,
            start_time=start_time,
            end_time=end_time,
            pickup_location=pickup,
            return_location=dropoff,
        )

    def _toll_from_raw(self, raw: Any) -> TollRecord:
        if not isinstance(raw, dict):
            raise NormalizationError("record_not_an_object")
        version = _source_version(raw)

        if version == "0":
            # Legacy scraper ids embed the scrape timestamp, so they are not stable across runs.
            toll_id = None
            vehicle_id = (
                _as_text(raw.get("vehicleId"))
                or _as_text(raw.get("tagNumber"))
                or _as_text(raw.get("plate"))
            )
            date_part = _as_text(raw.get("date"))
            time_part = _as_text(raw.get("time"))
            charge_raw: Any = f"{date_part} {time_part}" if date_part and time_part else date_part
            amount_raw = raw.get("amount")
            location = _parse_location(raw.get("location"))
            proof_reference = _as_text(raw.get("screenshotPath")) or _as_text(raw.get("screenshotFilename"))
        else:
            toll_id = _as_text(_field(raw, "toll_id", "tollId"))
            vehicle_id = _as_text(_field(raw, "vehicle_id", "vehicleId"))
            charge_raw = _field(raw, "charge_time", "chargeTime")
            amount_raw = raw.get("amount")
            location = _parse_location(raw.get("location"))
            proof_reference = _as_text(_field(raw, "proof_reference", "proofReference"))

        if not vehicle_id:
            raise NormalizationError("missing_vehicle_id")
        charge_time = self._parse_timestamp(charge_raw)
        if charge_time is None:
            raise NormalizationError("missing_or_invalid_charge_time")
        amount = parse_amount(amount_raw)
        if toll_id is None:
            toll_id = content_toll_id(vehicle_id=vehicle_id, charge_time=charge_time, amount=amount, location=location)

        return TollRecord(
            toll_id=toll_id,
            vehicle_id=vehicle_id,
            charge_time=charge_time,
            amount=amount,
            location=location,
            proof_reference=proof_reference,
            raw_payload=dict(raw),
        )

    def _parse_timestamp(self, value: Any) -> datetime | None:
        if isinstance(value, datetime):
            dt = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            try:
                return datetime.fromtimestamp(float(value), tz=timezone.utc)
            except (OverflowError, ValueError, OSError):
                return None
        elif isinstance(value, str):
            raw = value.strip()
            if not raw:
                return None
            try:
                dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                dt = _parse_legacy_timestamp(raw)
                if dt is None:
                    return None
        else:
            return None

        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=self.source_timezone)
        try:
            return dt.astimezone(timezone.utc)
        except (OverflowError, ValueError, OSError):
            return None


def unwrap_batch(payload: Any, *keys: str) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            items = payload.get(key)
            if isinstance(items, list):
                return items
    raise NormalizationError(f"batch must be a list or an object with one of {list(keys)}")


def parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise NormalizationError("missing_or_invalid_amount")
    if isinstance(value, (int, float, Decimal)):
        text = str(value)
    elif isinstance(value, str):
        match = _AMOUNT_RE.search(value.replace(",", ""))
        if not match:
            raise NormalizationError("missing_or_invalid_amount")
        text = match.group(0)
    else:
        raise NormalizationError("missing_or_invalid_amount")
    try:
        amount = Decimal(text).quantize(_CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise NormalizationError("missing_or_invalid_amount") from exc
    if not amount.is_finite():
        raise NormalizationError("missing_or_invalid_amount")
    if amount < 0:
        raise NormalizationError("negative_amount")
    return amount


def content_toll_id(*, vehicle_id: str, charge_time: datetime, amount: Decimal, location: Location | None) -> str:
    parts = [vehicle_id, charge_time.isoformat(), str(amount)]
    if location is not None:
        if location.point is not None:
            parts.append(f"{location.point.lat:.6f},{location.point.lon:.6f}")
        if location.area:
            parts.append(location.area.lower())
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return f"toll-{digest[:32]}"


def _parse_location(value: Any) -> Location | None:
    if value is None:
        return None
    if isinstance(value, str):
        area = _as_text(value)
        return Location(area=area) if area else None
    if not isinstance(value, dict):
        return None

    lat = _as_float(_field(value, "lat", "latitude"))
    lon = _as_float(_field(value, "lon", "lng", "longitude"))
    point: GeoPoint | None = None
    if lat is not None and lon is not None:
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            raise NormalizationError("coordinates_out_of_range")
        point = GeoPoint(lat=lat, lon=lon)
    area = _as_text(_field(value, "area", "name", "plaza", "gantry"))
    if point is None and area is None:
        return None
    return Location(point=point, area=area)


def _parse_legacy_timestamp(raw: str) -> datetime | None:
    compact = " ".join(raw.split())
    for fmt in _LEGACY_DATE_FORMATS:
        try:
            return datetime.strptime(compact, fmt)
        except ValueError:
            continue
    return None


def _source_version(raw: dict[str, Any]) -> str:
    value = _field(raw, "source_version", "sourceVersion")
    version = "1" if value is None else str(value).strip()
    if version not in SUPPORTED_SOURCE_VERSIONS:
        raise NormalizationError(f"unsupported_source_version:{version}")
    return version


def _field(raw: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


def _raw_id(raw: Any, *names: str) -> str | None:
    if not isinstance(raw, dict):
        return None
    return _as_text(_field(raw, *names))


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
