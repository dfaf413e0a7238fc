"""Request payload validation shared by the HTTP handlers and managers."""

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from errors import InvalidRequestError
from models import (
    LiveTrackingMode,
    RideStatus,
    ScheduleRecurrence,
    ScheduleStatus,
    VehicleStatus,
    isoformat,
)

_MISSING = object()
_CAMEL_RE = re.compile(r'(?<!^)(?=[A-Z])')


def _code(field: str) -> str:
    return "invalid_" + _CAMEL_RE.sub('_', field).lower()


def parse_seat_count(raw: Any) -> int:
    """Coerce the requested seat count; ``None`` means the default of one seat."""
    if raw is None:
        return 1
    if isinstance(raw, bool):
        raise InvalidRequestError("invalid_seats")

    if isinstance(raw, str):
        try:
            value = float(raw.strip()) if raw.strip() else 0.0
        except ValueError:
            raise InvalidRequestError("invalid_seats")
    elif isinstance(raw, (int, float)):
        value = float(raw)
    else:
        raise InvalidRequestError("invalid_seats")

    if not math.isfinite(value) or value <= 0 or not value.is_integer():
        raise InvalidRequestError("invalid_seats")
    return int(value)


def parse_iso_datetime(raw: Any, code: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime."""
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidRequestError(code)
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidRequestError(code)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso_string(value: datetime) -> str:
    return isoformat(value)


def parse_pagination(query: Mapping[str, Any], *, default_limit: int, max_limit: int) -> Tuple[int, int]:
    """Return ``(limit, offset)``; junk or zero falls back to the default limit."""
    limit = _lenient_int(query.get("limit")) or default_limit
    offset = _lenient_int(query.get("offset")) or 0
    return min(max(limit, 1), max_limit), max(offset, 0)


def _lenient_int(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return int(value)


def require_json_object(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise InvalidRequestError("invalid_body", "request body must be a JSON object")
    return data


# ---------------------------------------------------------------------------
# field helpers
# ---------------------------------------------------------------------------

def _string(data: Mapping, field: str, *, required: bool = False, max_length: Optional[int] = None,
            allow_null: bool = False):
    raw = data.get(field, _MISSING)
    if raw is _MISSING or (raw is None and not required):
        if required:
            raise InvalidRequestError(_code(field))
        return raw if raw is None and allow_null else _MISSING
    if not isinstance(raw, str):
        raise InvalidRequestError(_code(field))
    if max_length is not None and len(raw) > max_length:
        raise InvalidRequestError(_code(field))
    return raw


def _integer(data: Mapping, field: str, *, required: bool = False, minimum: Optional[int] = None,
             maximum: Optional[int] = None):
    raw = data.get(field, _MISSING)
    if raw is _MISSING or raw is None:
        if required:
            raise InvalidRequestError(_code(field))
        return _MISSING
    if isinstance(raw, bool) or not isinstance(raw, int):
        if not (isinstance(raw, float) and raw.is_integer()):
            raise InvalidRequestError(_code(field))
        raw = int(raw)
    if minimum is not None and raw < minimum:
        raise InvalidRequestError(_code(field))
    if maximum is not None and raw > maximum:
        raise InvalidRequestError(_code(field))
    return raw


def _boolean(data: Mapping, field: str):
    raw = data.get(field, _MISSING)
    if raw is _MISSING or raw is None:
        return _MISSING
    if not isinstance(raw, bool):
        raise InvalidRequestError(_code(field))
    return raw


def _choice(data: Mapping, field: str, enum_cls):
    raw = data.get(field, _MISSING)
    if raw is _MISSING or raw is None:
        return _MISSING
    try:
        return enum_cls(raw)
    except ValueError:
        raise InvalidRequestError(_code(field))


def _string_list(data: Mapping, field: str, *, max_items: int, non_empty: bool = False):
    raw = data.get(field, _MISSING)
    if raw is _MISSING or raw is None:
        return raw if raw is None else _MISSING
    if not isinstance(raw, list) or len(raw) > max_items or (non_empty and not raw):
        raise InvalidRequestError(_code(field))
    if any(not isinstance(item, str) for item in raw):
        raise InvalidRequestError(_code(field))
    return raw


def _object(data: Mapping, field: str):
    raw = data.get(field, _MISSING)
    if raw is _MISSING or raw is None:
        return raw if raw is None else _MISSING
    if not isinstance(raw, dict):
        raise InvalidRequestError(_code(field))
    return raw


def _collect(**fields) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not _MISSING}


def trimmed_list(items: Optional[List[str]]) -> Optional[List[str]]:
    if items is None:
        return None
    return [item.strip() for item in items if item.strip()]


# ---------------------------------------------------------------------------
# rides
# ---------------------------------------------------------------------------

def validate_create_ride(data: Mapping[str, Any]) -> Dict[str, Any]:
    payload = _collect(
        driver_id=_string(data, "driverId"),
        driver_label=_string(data, "driverLabel", max_length=255),
        driver_photo_url=_string(data, "driverPhotoUrl", max_length=1024),
        origin_city=_string(data, "originCity", required=True),
        destination_city=_string(data, "destinationCity", required=True),
        seats_total=_integer(data, "seatsTotal", required=True, minimum=1),
        seats_available=_integer(data, "seatsAvailable", minimum=0),
        price_per_seat=_integer(data, "pricePerSeat", required=True, minimum=0),
        comfort_level=_string(data, "comfortLevel", max_length=32),
        estimated_duration_minutes=_integer(data, "estimatedDurationMinutes", minimum=0),
        stops=_string_list(data, "stops", max_items=20),
        live_tracking_enabled=_boolean(data, "liveTrackingEnabled"),
        live_tracking_mode=_choice(data, "liveTrackingMode", LiveTrackingMode),
    )

    payload["origin_city"] = payload["origin_city"].strip()
    payload["destination_city"] = payload["destination_city"].strip()
    if not payload["origin_city"]:
        raise InvalidRequestError("origin_required")
    if not payload["destination_city"]:
        raise InvalidRequestError("destination_required")

    departure = parse_iso_datetime(data.get("departureAt"), "invalid_departure")
    payload["departure_at"] = to_iso_string(departure)

    if payload.get("seats_available", 0) > payload["seats_total"]:
        raise InvalidRequestError("seats_available_too_high")
    if payload.get("driver_id") is not None and not payload["driver_id"].strip():
        del payload["driver_id"]
    if "stops" in payload:
        payload["stops"] = trimmed_list(payload["stops"])
    return payload


def validate_admin_ride_update(data: Mapping[str, Any]) -> Dict[str, Any]:
    payload = _collect(
        origin_city=_string(data, "originCity", max_length=160),
        destination_city=_string(data, "destinationCity", max_length=160),
        departure_at=_string(data, "departureAt"),
        seats_total=_integer(data, "seatsTotal", minimum=1),
        seats_available=_integer(data, "seatsAvailable", minimum=0),
        price_per_seat=_integer(data, "pricePerSeat", minimum=0),
        status=_choice(data, "status", RideStatus),
    )
    if "departure_at" in payload:
        if payload["departure_at"]:
            payload["departure_at"] = parse_iso_datetime(payload["departure_at"], "invalid_departure")
        else:
            del payload["departure_at"]
    return payload


# ---------------------------------------------------------------------------
# fleet
# ---------------------------------------------------------------------------

def _max_vehicle_year() -> int:
    return datetime.now(timezone.utc).year + 1


def validate_create_vehicle(data: Mapping[str, Any]) -> Dict[str, Any]:
    return _collect(
        label=_string(data, "label", required=True, max_length=160),
        plate_number=_string(data, "plateNumber", required=True, max_length=32),
        category=_string(data, "category", required=True, max_length=32),
        seats=_integer(data, "seats", required=True, minimum=1, maximum=200),
        brand=_string(data, "brand", max_length=120),
        model=_string(data, "model", max_length=120),
        year=_integer(data, "year", minimum=1950, maximum=_max_vehicle_year()),
        amenities=_string_list(data, "amenities", max_items=12, non_empty=True),
        specs=_object(data, "specs"),
    )


def validate_update_vehicle(data: Mapping[str, Any]) -> Dict[str, Any]:
    return _collect(
        label=_string(data, "label", max_length=160),
        category=_string(data, "category", max_length=32),
        seats=_integer(data, "seats", minimum=1, maximum=200),
        brand=_string(data, "brand", max_length=120, allow_null=True),
        model=_string(data, "model", max_length=120, allow_null=True),
        year=_integer(data, "year", minimum=1950, maximum=_max_vehicle_year()),
        amenities=_string_list(data, "amenities", max_items=12),
        specs=_object(data, "specs"),
        status=_choice(data, "status", VehicleStatus),
    )


def validate_create_schedule(data: Mapping[str, Any]) -> Dict[str, Any]:
    payload = _collect(
        origin_city=_string(data, "originCity", required=True, max_length=160),
        destination_city=_string(data, "destinationCity", required=True, max_length=160),
        planned_seats=_integer(data, "plannedSeats", minimum=1, maximum=200),
        price_per_seat=_integer(data, "pricePerSeat", minimum=0),
        recurrence=_choice(data, "recurrence", ScheduleRecurrence),
        notes=_string(data, "notes", max_length=512),
        metadata=_object(data, "metadata"),
    )
    payload["departure_at"] = parse_iso_datetime(data.get("departureAt"), "invalid_departure")
    if data.get("arrivalEstimate"):
        payload["arrival_estimate"] = parse_iso_datetime(data["arrivalEstimate"], "invalid_arrival")
    return payload


def validate_update_schedule(data: Mapping[str, Any]) -> Dict[str, Any]:
    payload = _collect(
        origin_city=_string(data, "originCity", max_length=160),
        destination_city=_string(data, "destinationCity", max_length=160),
        planned_seats=_integer(data, "plannedSeats", minimum=1, maximum=200),
        price_per_seat=_integer(data, "pricePerSeat", minimum=0),
        recurrence=_choice(data, "recurrence", ScheduleRecurrence),
        notes=_string(data, "notes", max_length=512, allow_null=True),
        metadata=_object(data, "metadata"),
        status=_choice(data, "status", ScheduleStatus),
        reserved_seats=_integer(data, "reservedSeats", minimum=0),
    )
    if "departureAt" in data:
        payload["departure_at"] = parse_iso_datetime(data["departureAt"], "invalid_departure")
    if "arrivalEstimate" in data:
        arrival = data["arrivalEstimate"]
        payload["arrival_estimate"] = (
            None if arrival is None else parse_iso_datetime(arrival, "invalid_arrival")
        )
    return payload


# ---------------------------------------------------------------------------
# company operations
# ---------------------------------------------------------------------------

def _blackout_windows(data: Mapping):
    raw = data.get("blackoutWindows", _MISSING)
    if raw is _MISSING or raw is None:
        return raw if raw is None else _MISSING
    if not isinstance(raw, list) or len(raw) > 20:
        raise InvalidRequestError("invalid_blackout_windows")

    windows = []
    for window in raw:
        if not isinstance(window, dict):
            raise InvalidRequestError("invalid_blackout_windows")
        start, end = window.get("start"), window.get("end")
        if not isinstance(start, str) or not isinstance(end, str) or not start.strip() or not end.strip():
            raise InvalidRequestError("invalid_blackout_windows")
        days = window.get("days")
        if days is not None and (
            not isinstance(days, list)
            or any(isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6 for day in days)
        ):
            raise InvalidRequestError("invalid_blackout_windows")
        cleaned = {"start": start.strip(), "end": end.strip()}
        if days is not None:
            cleaned["days"] = days
        windows.append(cleaned)
    return windows


def validate_policy_update(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Fields present in the body are applied; an explicit ``null`` clears them."""
    payload = _collect(
        max_price_per_seat=_integer(data, "maxPricePerSeat", minimum=0),
        allowed_origins=_string_list(data, "allowedOrigins", max_items=50),
        allowed_destinations=_string_list(data, "allowedDestinations", max_items=50),
        blackout_windows=_blackout_windows(data),
        require_approval=_boolean(data, "requireApproval"),
    )
    if "maxPricePerSeat" in data and data["maxPricePerSeat"] is None:
        payload["max_price_per_seat"] = None
    return payload


def validate_approval(data: Mapping[str, Any]) -> Dict[str, Any]:
    return _collect(
        actor_id=_string(data, "actorId", max_length=64),
        note=_string(data, "note", max_length=512),
    )


def validate_auto_assign(data: Mapping[str, Any]) -> Dict[str, Any]:
    origin = data.get("originCity")
    destination = data.get("destinationCity")
    if not isinstance(origin, str) or not origin.strip() \
            or not isinstance(destination, str) or not destination.strip():
        raise InvalidRequestError("origin_destination_required")

    payload = _collect(
        planned_seats=_integer(data, "plannedSeats", minimum=1, maximum=200),
        price_per_seat=_integer(data, "pricePerSeat", minimum=0),
        recurrence=_choice(data, "recurrence", ScheduleRecurrence),
    )
    payload["origin_city"] = origin.strip()
    payload["destination_city"] = destination.strip()
    payload["departure_at"] = parse_iso_datetime(data.get("departureAt"), "invalid_departure")
    payload.setdefault("planned_seats", 1)
    return payload
