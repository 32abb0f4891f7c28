"""Async client for the studio's hosted database.

Talks to the PostgREST interface exposed by Supabase (`/rest/v1`). Reads of
catalog data are mirrored into the local cache and served from there when the
store cannot be reached.
"""
from __future__ import annotations
import logging
import os
from datetime import date, datetime, timezone
from typing import Any
import httpx
from dotenv import load_dotenv
from . import cache
from .models import (
    WEEKDAYS,
    Appointment,
    AppointmentStatus,
    AppointmentUpdate,
    BookingRequest,
    BusinessHours,
    PortfolioCreate,
    PortfolioItem,
    PortfolioUpdate,
    Service,
    ServiceCreate,
    ServiceUpdate,
    SettingsUpdate,
    StudioSettings,
    UnavailableDate,
)

load_dotenv()

logger = logging.getLogger(__name__)

_BASE_URL = os.getenv("SUPABASE_URL", "http://localhost:54321").rstrip("/")
_REST_URL = f"{_BASE_URL}/rest/v1"
_API_KEY = os.getenv("SUPABASE_KEY", "")

# PostgREST: ask for the written rows back
_RETURN_ROWS = "return=representation"


class StoreError(Exception):
    """The hosted database rejected a request or could not be reached."""

    def __init__(self, message: str, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class NotFoundError(StoreError):
    pass


class DuplicateSlotError(StoreError):
    """Another booking already holds an overlapping interval."""


def _offline() -> bool:
    return os.getenv("OFFLINE_MODE", "0") == "1"


def _headers(prefer: str | None = None) -> dict[str, str]:
    headers = {
        "apikey": _API_KEY,
        "Authorization": f"Bearer {_API_KEY}",
        "Accept": "application/json",
    }
    if prefer:
        headers["Prefer"] = prefer
    return headers


async def _request(
    method: str,
    path: str,
    *,
    params: dict[str, str] | None = None,
    json: Any = None,
    prefer: str | None = None,
) -> Any:
    if _offline():
        raise StoreError(f"{method} {path}: store disabled in OFFLINE_MODE")

    try:
        async with httpx.AsyncClient(http2=True, timeout=15) as client:
            resp = await client.request(
                method, f"{_REST_URL}/{path}", headers=_headers(prefer), params=params, json=json
            )
    except httpx.HTTPError as exc:
        raise StoreError(f"{method} {path} failed: {exc}") from exc

    if resp.is_error:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("message") or resp.text or resp.reason_phrase
        raise StoreError(
            f"{method} {path} returned {resp.status_code}: {message}",
            status=resp.status_code,
            code=body.get("code"),
        )

    if not resp.content:
        return None
    return resp.json()


async def _cached_read(key: str, path: str, params: dict[str, str]) -> list[dict]:
    """GET rows, mirroring them to the cache; fall back to the cache on failure."""
    try:
        rows = await _request("GET", path, params=params)
    except StoreError as exc:
        cached = cache.load(key)
        if cached is None:
            raise
        logger.warning("Serving cached %s: %s", key, exc)
        return cached
    cache.save(key, rows)
    return rows


def _single(rows: Any, what: str) -> dict:
    if isinstance(rows, dict):
        return rows
    if not rows:
        raise NotFoundError(f"{what} not found", status=404)
    return rows[0]


# Services ------------------------------------------------------------------

async def list_services(active_only: bool = True) -> list[Service]:
    """Return the catalog ordered by creation, optionally only active services."""
    rows = await _cached_read(
        cache.SERVICES_KEY, "services", {"select": "*", "order": "created_at.asc"}
    )
    services = [Service.model_validate(row) for row in rows]
    if active_only:
        services = [s for s in services if s.active]
    return services


async def get_service(service_id: str) -> Service:
    """Fetch a service by id, active or not."""
    try:
        rows = await _request("GET", "services", params={"select": "*", "id": f"eq.{service_id}"})
    except StoreError as exc:
        for row in cache.load(cache.SERVICES_KEY, []):
            if str(row.get("id")) == service_id:
                logger.warning("Serving cached service %s: %s", service_id, exc)
                return Service.model_validate(row)
        raise
    return Service.model_validate(_single(rows, f"Service {service_id}"))


async def create_service(data: ServiceCreate) -> Service:
    body = data.model_dump(by_alias=True)
    body["active"] = True
    rows = await _request("POST", "services", json=body, prefer=_RETURN_ROWS)
    service = Service.model_validate(_single(rows, "Created service"))
    cache.remove(cache.SERVICES_KEY)
    logger.info("Created service %s (%s)", service.id, service.name)
    return service


async def update_service(service_id: str, data: ServiceUpdate) -> Service:
    body = data.model_dump(by_alias=True, exclude_unset=True)
    return await _patch_service(service_id, body)


async def soft_delete_service(service_id: str) -> Service:
    """Mark a service inactive; past appointments keep their reference."""
    service = await _patch_service(service_id, {"active": False})
    logger.info("Deactivated service %s", service_id)
    return service


async def reactivate_service(service_id: str) -> Service:
    service = await _patch_service(service_id, {"active": True})
    logger.info("Reactivated service %s", service_id)
    return service


async def _patch_service(service_id: str, body: dict) -> Service:
    rows = await _request(
        "PATCH", "services", params={"id": f"eq.{service_id}"}, json=body, prefer=_RETURN_ROWS
    )
    service = Service.model_validate(_single(rows, f"Service {service_id}"))
    cache.remove(cache.SERVICES_KEY)
    return service


# Appointments --------------------------------------------------------------

async def list_appointments(
    date_iso: str | None = None,
    exclude_cancelled: bool = False,
    status: AppointmentStatus | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[Appointment]:
    """Return appointments ordered by date and time.

    The per-date, non-cancelled query backs availability and is cached so
    slots can still be computed when the store is down.
    """
    params = {"select": "*", "order": "date.asc,time.asc"}
    if date_iso:
        params["date"] = f"eq.{date_iso}"
    elif date_from and date_to:
        params["and"] = f"(date.gte.{date_from.isoformat()},date.lte.{date_to.isoformat()})"
    if status is not None:
        params["status"] = f"eq.{status.value}"
    elif exclude_cancelled:
        params["status"] = "neq.cancelled"

    if date_iso and exclude_cancelled and status is None:
        rows = await _cached_read(cache.appointments_key(date_iso), "appointments", params)
    else:
        rows = await _request("GET", "appointments", params=params)
    return [Appointment.model_validate(row) for row in rows]


async def get_appointment(appt_id: str) -> Appointment:
    rows = await _request("GET", "appointments", params={"select": "*", "id": f"eq.{appt_id}"})
    return Appointment.model_validate(_single(rows, f"Appointment {appt_id}"))


async def create_appointment(booking: BookingRequest, duration_minutes: int) -> Appointment:
    """Book a slot through the `book_appointment` database function.

    The function inserts only when no non-cancelled appointment on that date
    overlaps [time, time + duration); otherwise PostgREST answers 409 and
    DuplicateSlotError is raised.
    """
    payload = {
        "p_client_name": booking.client_name,
        "p_client_email": booking.client_email,
        "p_client_phone": booking.client_phone,
        "p_service_id": booking.service_id,
        "p_date": booking.date.isoformat(),
        "p_time": booking.time,
        "p_notes": booking.notes,
        "p_duration_minutes": duration_minutes,
    }
    try:
        rows = await _request("POST", "rpc/book_appointment", json=payload)
    except StoreError as exc:
        if exc.status == 409:
            logger.info("Slot %s %s taken concurrently: %s", booking.date, booking.time, exc)
            raise DuplicateSlotError(str(exc), status=409, code=exc.code) from exc
        raise

    appointment = Appointment.model_validate(_single(rows, "Created appointment"))
    cache.remove(cache.appointments_key(booking.date.isoformat()))
    logger.info("Created appointment %s on %s at %s", appointment.id, appointment.date, appointment.time)
    return appointment


async def update_appointment(appt_id: str, data: AppointmentUpdate) -> Appointment:
    previous = await get_appointment(appt_id) if data.date is not None else None
    body = data.model_dump(mode="json", exclude_unset=True)
    rows = await _request(
        "PATCH", "appointments", params={"id": f"eq.{appt_id}"}, json=body, prefer=_RETURN_ROWS
    )
    appointment = Appointment.model_validate(_single(rows, f"Appointment {appt_id}"))
    cache.remove(cache.appointments_key(appointment.date.isoformat()))
    if previous is not None and previous.date != appointment.date:
        cache.remove(cache.appointments_key(previous.date.isoformat()))
    return appointment


async def delete_appointment(appt_id: str) -> None:
    rows = await _request(
        "DELETE", "appointments", params={"id": f"eq.{appt_id}"}, prefer=_RETURN_ROWS
    )
    deleted = Appointment.model_validate(_single(rows, f"Appointment {appt_id}"))
    cache.remove(cache.appointments_key(deleted.date.isoformat()))
    logger.info("Deleted appointment %s", appt_id)


# Studio settings -----------------------------------------------------------

def _settings_from_row(row: dict) -> StudioSettings:
    opening: dict[str, BusinessHours | None] = {}
    for day, hours in (row.get("opening_hours") or {}).items():
        if day not in WEEKDAYS:
            continue
        # a day without both ends is closed
        if hours and hours.get("start") and hours.get("end"):
            opening[day] = BusinessHours(start=hours["start"], end=hours["end"])
        else:
            opening[day] = None

    return StudioSettings(
        id=str(row["id"]) if row.get("id") is not None else None,
        business_hours=opening.get("monday") or BusinessHours(),
        opening_hours=opening,
        slot_granularity_minutes=row.get("break_duration") or 15,
        advance_booking_days=row.get("advance_booking_days", 30),
    )


def _settings_to_row(settings: StudioSettings) -> dict:
    opening = {}
    for day in WEEKDAYS:
        hours = settings.opening_hours.get(day, settings.business_hours)
        opening[day] = hours.model_dump() if hours is not None else None
    return {
        "opening_hours": opening,
        "break_duration": settings.slot_granularity_minutes,
        "advance_booking_days": settings.advance_booking_days,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }


async def get_settings() -> StudioSettings:
    """Current studio settings, creating the default row on first use."""
    rows = await _cached_read(
        cache.SETTINGS_KEY,
        "studio_settings",
        {"select": "*", "order": "updated_at.desc", "limit": "1"},
    )
    if rows:
        settings = _settings_from_row(rows[0])
    else:
        logger.info("No studio settings stored, creating defaults")
        settings = await _insert_settings(StudioSettings())

    settings.unavailable_dates = [d.date for d in await list_unavailable_dates()]
    return settings


async def _insert_settings(settings: StudioSettings) -> StudioSettings:
    rows = await _request(
        "POST", "studio_settings", json=_settings_to_row(settings), prefer=_RETURN_ROWS
    )
    created = _settings_from_row(_single(rows, "Created settings"))
    cache.remove(cache.SETTINGS_KEY)
    return created


async def update_settings(data: SettingsUpdate) -> StudioSettings:
    """Merge a partial update into the stored settings.

    Setting business_hours without opening_hours makes every weekday use the
    new window.
    """
    current = await get_settings()
    if data.business_hours is not None:
        current.business_hours = data.business_hours
        if data.opening_hours is None:
            current.opening_hours = {}
    if data.opening_hours is not None:
        current.opening_hours = {**current.opening_hours, **data.opening_hours}
    if data.slot_granularity_minutes is not None:
        current.slot_granularity_minutes = data.slot_granularity_minutes
    if data.advance_booking_days is not None:
        current.advance_booking_days = data.advance_booking_days

    if current.id is None:
        updated = await _insert_settings(current)
    else:
        rows = await _request(
            "PATCH",
            "studio_settings",
            params={"id": f"eq.{current.id}"},
            json=_settings_to_row(current),
            prefer=_RETURN_ROWS,
        )
        updated = _settings_from_row(_single(rows, f"Settings {current.id}"))
        cache.remove(cache.SETTINGS_KEY)

    updated.unavailable_dates = current.unavailable_dates
    logger.info("Updated studio settings %s", updated.id)
    return updated


# Unavailable dates ---------------------------------------------------------

async def list_unavailable_dates() -> list[UnavailableDate]:
    rows = await _cached_read(
        cache.UNAVAILABLE_DATES_KEY,
        "unavailable_dates",
        {"select": "date,reason", "order": "date.asc"},
    )
    return [UnavailableDate.model_validate(row) for row in rows]


async def add_unavailable_date(day: date, reason: str | None = None) -> None:
    """Block a date; blocking an already blocked date is a no-op."""
    try:
        await _request("POST", "unavailable_dates", json={"date": day.isoformat(), "reason": reason})
    except StoreError as exc:
        if exc.code == "23505":
            logger.info("Date %s is already blocked", day)
            return
        raise
    cache.remove(cache.UNAVAILABLE_DATES_KEY)
    logger.info("Blocked date %s", day)


async def remove_unavailable_date(day: date) -> None:
    await _request("DELETE", "unavailable_dates", params={"date": f"eq.{day.isoformat()}"})
    cache.remove(cache.UNAVAILABLE_DATES_KEY)
    logger.info("Unblocked date %s", day)


# Portfolio -----------------------------------------------------------------

async def list_portfolio() -> list[PortfolioItem]:
    rows = await _cached_read(
        cache.PORTFOLIO_KEY, "portfolio", {"select": "*", "order": "created_at.desc"}
    )
    return [PortfolioItem.model_validate(row) for row in rows]


async def create_portfolio_item(data: PortfolioCreate) -> PortfolioItem:
    rows = await _request("POST", "portfolio", json=data.model_dump(mode="json"), prefer=_RETURN_ROWS)
    cache.remove(cache.PORTFOLIO_KEY)
    return PortfolioItem.model_validate(_single(rows, "Created portfolio item"))


async def update_portfolio_item(item_id: str, data: PortfolioUpdate) -> PortfolioItem:
    rows = await _request(
        "PATCH",
        "portfolio",
        params={"id": f"eq.{item_id}"},
        json=data.model_dump(mode="json", exclude_unset=True),
        prefer=_RETURN_ROWS,
    )
    cache.remove(cache.PORTFOLIO_KEY)
    return PortfolioItem.model_validate(_single(rows, f"Portfolio item {item_id}"))


async def delete_portfolio_item(item_id: str) -> None:
    rows = await _request(
        "DELETE", "portfolio", params={"id": f"eq.{item_id}"}, prefer=_RETURN_ROWS
    )
    _single(rows, f"Portfolio item {item_id}")
    cache.remove(cache.PORTFOLIO_KEY)
