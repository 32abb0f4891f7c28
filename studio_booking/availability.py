"""Slot availability for the studio calendar.

All wall-clock times are handled as integer minutes since midnight. A booking
occupies the half-open interval [start, start + duration), so a session that
ends at 11:00 does not conflict with one that starts at 11:00.
"""
from __future__ import annotations
import logging
from datetime import date, time, timedelta
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

# Duration assumed for appointments whose service can no longer be resolved
FALLBACK_DURATION_MINUTES = 60

DurationLookup = Callable[[str], "int | None"]


class InvalidParameters(ValueError):
    """Slot parameters that cannot describe a bookable day."""


def time_to_minutes(value: str | time) -> int:
    """Convert "HH:MM" / "HH:MM:SS" (or a time) to minutes since midnight.

    Seconds are truncated so "12:00:00" and "12:00" compare equal.
    """
    if isinstance(value, time):
        return value.hour * 60 + value.minute

    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time value: {value!r}")
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid time value: {value!r}") from None

    # 24:00 is accepted as an end-of-day closing time
    if not (0 <= minutes < 60 and (0 <= hours < 24 or (hours == 24 and minutes == 0))):
        raise ValueError(f"Invalid time value: {value!r}")
    return hours * 60 + minutes


def minutes_to_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def intervals_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """Half-open interval overlap; touching endpoints are not an overlap."""
    return a_start < b_end and a_end > b_start


def validate_parameters(
    duration_minutes: int,
    granularity_minutes: int,
    start: str | time,
    end: str | time,
) -> tuple[int, int]:
    """Check caller input and return (open, close) in minutes.

    Raises InvalidParameters for non-positive duration or granularity and for
    an opening window where start >= end.
    """
    if duration_minutes is None or duration_minutes <= 0:
        raise InvalidParameters(f"Service duration must be positive, got {duration_minutes}")
    if granularity_minutes is None or granularity_minutes <= 0:
        raise InvalidParameters(f"Slot granularity must be positive, got {granularity_minutes}")
    try:
        open_min, close_min = time_to_minutes(start), time_to_minutes(end)
    except ValueError as exc:
        raise InvalidParameters(str(exc)) from exc
    if open_min >= close_min:
        raise InvalidParameters(f"Business hours start {start} must be before end {end}")
    return open_min, close_min


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _as_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _is_cancelled(appointment: Any) -> bool:
    status = _field(appointment, "status")
    return getattr(status, "value", status) == "cancelled"


def _resolve_duration(appointment: Any, lookup: DurationLookup) -> int:
    service_id = _field(appointment, "service_id")
    duration = lookup(service_id) if service_id is not None else None
    if not duration or duration <= 0:
        logger.warning(
            "Service %s not found for appointment %s, assuming %d minutes",
            service_id, _field(appointment, "id"), FALLBACK_DURATION_MINUTES,
        )
        return FALLBACK_DURATION_MINUTES
    return duration


def busy_intervals(
    target_date: date,
    appointments: Iterable[Any],
    lookup: DurationLookup,
) -> list[tuple[int, int]]:
    """Occupied (start, end) minute intervals on target_date, sorted by start."""
    intervals = []
    for appt in appointments:
        if _is_cancelled(appt):
            continue
        appt_date = _field(appt, "date")
        if appt_date is not None and _as_date(appt_date) != target_date:
            continue
        start = time_to_minutes(_field(appt, "time"))
        intervals.append((start, start + _resolve_duration(appt, lookup)))
    intervals.sort()
    return intervals


def compute_available_slots(
    target_date: date,
    duration_minutes: int,
    business_hours: Any,
    granularity_minutes: int,
    appointments: Iterable[Any],
    lookup: DurationLookup,
    unavailable_dates: Iterable[date | str] = (),
) -> list[str]:
    """Return the bookable "HH:MM" start times for a service on target_date.

    Candidates run from opening time in granularity steps while strictly
    before closing. A candidate is kept when the whole session fits before
    closing and does not overlap any non-cancelled appointment on that date.
    Invalid parameters (including a closed day, business_hours=None) yield [].
    """
    if target_date in {_as_date(d) for d in unavailable_dates}:
        return []
    if business_hours is None:
        return []

    try:
        open_min, close_min = validate_parameters(
            duration_minutes,
            granularity_minutes,
            _field(business_hours, "start"),
            _field(business_hours, "end"),
        )
    except InvalidParameters as exc:
        logger.debug("No slots for %s: %s", target_date, exc)
        return []

    busy = busy_intervals(target_date, appointments, lookup)

    slots = []
    candidate = open_min
    while candidate < close_min:
        candidate_end = candidate + duration_minutes
        if candidate_end <= close_min and not any(
            intervals_overlap(candidate, candidate_end, start, end) for start, end in busy
        ):
            slots.append(minutes_to_time(candidate))
        candidate += granularity_minutes
    return slots


def find_conflicts(
    target_date: date,
    start: str | time,
    duration_minutes: int,
    appointments: Iterable[Any],
    lookup: DurationLookup,
) -> list[Any]:
    """Appointments on target_date that a new booking at start would overlap."""
    new_start = time_to_minutes(start)
    new_end = new_start + duration_minutes
    conflicts = []
    for appt in appointments:
        if _is_cancelled(appt):
            continue
        appt_date = _field(appt, "date")
        if appt_date is not None and _as_date(appt_date) != target_date:
            continue
        appt_start = time_to_minutes(_field(appt, "time"))
        appt_end = appt_start + _resolve_duration(appt, lookup)
        if intervals_overlap(new_start, new_end, appt_start, appt_end):
            conflicts.append(appt)
    return conflicts


def available_days(
    start_date: date,
    end_date: date,
    duration_minutes: int,
    hours_for_day: Callable[[date], Any],
    granularity_minutes: int,
    appointments: Iterable[Any],
    lookup: DurationLookup,
    unavailable_dates: Iterable[date | str] = (),
) -> dict[str, int]:
    """Number of bookable slots per day (YYYY-MM-DD) between two dates inclusive."""
    appointments = list(appointments)
    blocked = {_as_date(d) for d in unavailable_dates}

    result = {}
    current = start_date
    while current <= end_date:
        slots = compute_available_slots(
            current,
            duration_minutes,
            hours_for_day(current),
            granularity_minutes,
            appointments,
            lookup,
            blocked,
        )
        result[current.isoformat()] = len(slots)
        current += timedelta(days=1)
    return result
