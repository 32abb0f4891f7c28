"""Helpers behind the admin appointment views."""
from __future__ import annotations
from collections import defaultdict
from .models import Appointment, AppointmentStats, AppointmentStatus


def filter_appointments(
    appointments: list[Appointment],
    status: AppointmentStatus | None = None,
    search: str | None = None,
) -> list[Appointment]:
    """Filter by status and by a search term over name, email and phone.

    Result is sorted by date then time, earliest first.
    """
    result = appointments
    if status is not None:
        result = [a for a in result if a.status == status]
    if search:
        term = search.strip().lower()
        result = [
            a for a in result
            if term in a.client_name.lower()
            or term in a.client_email.lower()
            or term in a.client_phone
        ]
    return sorted(result, key=lambda a: (a.date, a.time))


def appointment_stats(appointments: list[Appointment]) -> AppointmentStats:
    stats = AppointmentStats(total=len(appointments))
    for appt in appointments:
        setattr(stats, appt.status.value, getattr(stats, appt.status.value) + 1)
    return stats


def find_duplicates(appointments: list[Appointment]) -> list[Appointment]:
    """Non-cancelled bookings sharing a date and start time with an older one.

    The oldest booking of each group (by created_at) is kept and not returned.
    """
    groups: dict[tuple, list[Appointment]] = defaultdict(list)
    for appt in appointments:
        if appt.status != AppointmentStatus.cancelled:
            groups[(appt.date, appt.time)].append(appt)

    duplicates = []
    for group in groups.values():
        if len(group) > 1:
            group.sort(key=lambda a: a.created_at or "")
            duplicates.extend(group[1:])
    return duplicates
