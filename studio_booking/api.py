import logging
import os
import secrets
from datetime import date, timedelta
from typing import Optional
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from .admin import appointment_stats, filter_appointments, find_duplicates
from .availability import (
    InvalidParameters,
    available_days,
    compute_available_slots,
    find_conflicts,
    validate_parameters,
)
from .cache import is_available as cache_available
from .client import (
    DuplicateSlotError,
    NotFoundError,
    StoreError,
    add_unavailable_date,
    create_appointment,
    create_portfolio_item,
    create_service,
    delete_appointment,
    delete_portfolio_item,
    get_appointment,
    get_service,
    get_settings,
    list_appointments,
    list_portfolio,
    list_services,
    list_unavailable_dates,
    reactivate_service,
    remove_unavailable_date,
    soft_delete_service,
    update_appointment,
    update_portfolio_item,
    update_service,
    update_settings,
)
from .models import (
    Appointment,
    AppointmentStats,
    AppointmentStatus,
    AppointmentUpdate,
    BookingRequest,
    CalendarResponse,
    PortfolioCreate,
    PortfolioItem,
    PortfolioUpdate,
    Service,
    ServiceCreate,
    ServiceUpdate,
    SettingsUpdate,
    SlotsResponse,
    StudioSettings,
    UnavailableDate,
)

logger = logging.getLogger(__name__)

ADMIN_TOKEN = os.getenv("STUDIO_ADMIN_TOKEN", "")
# HTTPBearer scheme so Swagger-UI can attach the Authorization header globally
auth_scheme = HTTPBearer(auto_error=False)

SLOT_TAKEN = "Slot no longer available, please pick another"

app = FastAPI(title="Studio Booking Service")


def verify_admin(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)):
    """Validate the admin bearer token; an unset token locks the admin API."""
    if (
        not ADMIN_TOKEN
        or credentials is None
        or credentials.scheme.lower() != "bearer"
        or not secrets.compare_digest(credentials.credentials, ADMIN_TOKEN)
    ):
        raise HTTPException(status_code=401, detail="Invalid admin token")


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": "Studio database unavailable, please retry"})


@app.get("/health")
async def health():
    return {"status": "ok", "offline": os.getenv("OFFLINE_MODE", "0") == "1", "cache": cache_available()}


# Availability helpers --------------------------------------------------------

async def _active_service(service_id: str) -> Service:
    service = await get_service(service_id)
    if not service.active:
        raise HTTPException(status_code=404, detail=f"Service {service_id} is not offered")
    return service


async def _duration_lookup():
    # inactive services still resolve so past bookings keep their length
    durations = {s.id: s.duration_minutes for s in await list_services(active_only=False)}
    return durations.get


def _booking_window(settings: StudioSettings) -> tuple[date, date]:
    today = date.today()
    return today, today + timedelta(days=settings.advance_booking_days)


async def _slots_for(service: Service, day: date, settings: StudioSettings) -> list[str]:
    first, last = _booking_window(settings)
    if not first <= day <= last:
        return []
    if day in settings.unavailable_dates:
        return []

    appointments = await list_appointments(day.isoformat(), exclude_cancelled=True)
    return compute_available_slots(
        day,
        service.duration_minutes,
        settings.hours_for(day),
        settings.slot_granularity_minutes,
        appointments,
        await _duration_lookup(),
        settings.unavailable_dates,
    )


# Public endpoints ------------------------------------------------------------

@app.get("/services", response_model=list[Service])
async def public_services():
    """Active services offered for booking."""
    return await list_services(active_only=True)


@app.get("/availability", response_model=SlotsResponse)
async def availability(
    day: date = Query(..., alias="date", description="YYYY-MM-DD"),
    service_id: str = Query(...),
):
    """Bookable start times for a service on a date."""
    service = await _active_service(service_id)
    settings = await get_settings()
    slots = await _slots_for(service, day, settings)
    return SlotsResponse(date=day, service_id=service.id, duration_minutes=service.duration_minutes, slots=slots)


@app.get("/availability/calendar", response_model=CalendarResponse)
async def availability_calendar(
    service_id: str = Query(...),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
):
    """Slot counts per day, clamped to the booking window."""
    service = await _active_service(service_id)
    settings = await get_settings()
    first, last = _booking_window(settings)
    start = max(start or first, first)
    end = min(end or last, last)
    if end < start:
        return CalendarResponse(service_id=service.id, days={})

    appointments = await list_appointments(exclude_cancelled=True, date_from=start, date_to=end)
    days = available_days(
        start,
        end,
        service.duration_minutes,
        settings.hours_for,
        settings.slot_granularity_minutes,
        appointments,
        await _duration_lookup(),
        settings.unavailable_dates,
    )
    return CalendarResponse(service_id=service.id, days=days)


@app.post("/book", response_model=Appointment, status_code=201)
async def book(req: BookingRequest):
    """Book a slot. The slot is re-checked here and again atomically by the store."""
    service = await _active_service(req.service_id)
    settings = await get_settings()
    slots = await _slots_for(service, req.date, settings)
    if req.time not in slots:
        raise HTTPException(status_code=409, detail=SLOT_TAKEN)

    try:
        return await create_appointment(req, service.duration_minutes)
    except DuplicateSlotError:
        raise HTTPException(status_code=409, detail=SLOT_TAKEN) from None


@app.get("/portfolio", response_model=list[PortfolioItem])
async def public_portfolio():
    return await list_portfolio()


# Admin: appointments ---------------------------------------------------------

@app.get("/admin/appointments", dependencies=[Depends(verify_admin)], response_model=list[Appointment])
async def admin_appointments(
    status: Optional[AppointmentStatus] = Query(None),
    search: Optional[str] = Query(None, description="Matches name, email or phone"),
):
    return filter_appointments(await list_appointments(), status=status, search=search)


@app.get("/admin/appointments/stats", dependencies=[Depends(verify_admin)], response_model=AppointmentStats)
async def admin_appointment_stats():
    return appointment_stats(await list_appointments())


@app.post("/admin/appointments/dedupe", dependencies=[Depends(verify_admin)])
async def admin_dedupe_appointments():
    """Delete bookings that repeat an older booking's date and start time."""
    duplicates = find_duplicates(await list_appointments())
    for appt in duplicates:
        await delete_appointment(appt.id)
    if duplicates:
        logger.info("Removed %d duplicate appointments", len(duplicates))
    return {"deleted": [appt.id for appt in duplicates]}


@app.patch("/admin/appointments/{appt_id}", dependencies=[Depends(verify_admin)], response_model=Appointment)
async def admin_update_appointment(appt_id: str, req: AppointmentUpdate):
    current = await get_appointment(appt_id)
    merged = current.model_copy(update=req.model_dump(exclude_unset=True))

    moves_slot = any(
        getattr(merged, field) != getattr(current, field) for field in ("date", "time", "service_id")
    )
    reopens = current.status == AppointmentStatus.cancelled and merged.status != AppointmentStatus.cancelled
    if merged.status != AppointmentStatus.cancelled and (moves_slot or reopens):
        service = await get_service(merged.service_id)
        others = [
            a for a in await list_appointments(merged.date.isoformat(), exclude_cancelled=True)
            if a.id != appt_id
        ]
        conflicts = find_conflicts(merged.date, merged.time, service.duration_minutes, others, await _duration_lookup())
        if conflicts:
            raise HTTPException(
                status_code=409,
                detail=f"Overlaps appointment(s) {', '.join(a.id for a in conflicts)}",
            )

    return await update_appointment(appt_id, req)


@app.delete("/admin/appointments/{appt_id}", dependencies=[Depends(verify_admin)], status_code=204)
async def admin_delete_appointment(appt_id: str):
    await delete_appointment(appt_id)


# Admin: services -------------------------------------------------------------

@app.get("/admin/services", dependencies=[Depends(verify_admin)], response_model=list[Service])
async def admin_services():
    """All services, including deactivated ones."""
    return await list_services(active_only=False)


@app.post("/admin/services", dependencies=[Depends(verify_admin)], response_model=Service, status_code=201)
async def admin_create_service(req: ServiceCreate):
    return await create_service(req)


@app.patch("/admin/services/{service_id}", dependencies=[Depends(verify_admin)], response_model=Service)
async def admin_update_service(service_id: str, req: ServiceUpdate):
    return await update_service(service_id, req)


@app.delete("/admin/services/{service_id}", dependencies=[Depends(verify_admin)], response_model=Service)
async def admin_delete_service(service_id: str):
    return await soft_delete_service(service_id)


@app.post("/admin/services/{service_id}/reactivate", dependencies=[Depends(verify_admin)], response_model=Service)
async def admin_reactivate_service(service_id: str):
    return await reactivate_service(service_id)


# Admin: settings and blocked dates -------------------------------------------

@app.get("/admin/settings", dependencies=[Depends(verify_admin)], response_model=StudioSettings)
async def admin_settings():
    return await get_settings()


@app.patch("/admin/settings", dependencies=[Depends(verify_admin)], response_model=StudioSettings)
async def admin_update_settings(req: SettingsUpdate):
    granularity = req.slot_granularity_minutes or 1
    windows = list((req.opening_hours or {}).values())
    if req.business_hours is not None:
        windows.append(req.business_hours)
    for hours in windows:
        if hours is None:
            continue
        try:
            validate_parameters(1, granularity, hours.start, hours.end)
        except InvalidParameters as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from None
    return await update_settings(req)


@app.get("/admin/unavailable-dates", dependencies=[Depends(verify_admin)], response_model=list[UnavailableDate])
async def admin_unavailable_dates():
    return await list_unavailable_dates()


@app.post("/admin/unavailable-dates", dependencies=[Depends(verify_admin)], status_code=204)
async def admin_block_date(req: UnavailableDate):
    await add_unavailable_date(req.date, req.reason)


@app.delete("/admin/unavailable-dates/{day}", dependencies=[Depends(verify_admin)], status_code=204)
async def admin_unblock_date(day: date):
    await remove_unavailable_date(day)


# Admin: portfolio ------------------------------------------------------------

@app.post("/admin/portfolio", dependencies=[Depends(verify_admin)], response_model=PortfolioItem, status_code=201)
async def admin_create_portfolio_item(req: PortfolioCreate):
    return await create_portfolio_item(req)


@app.patch("/admin/portfolio/{item_id}", dependencies=[Depends(verify_admin)], response_model=PortfolioItem)
async def admin_update_portfolio_item(item_id: str, req: PortfolioUpdate):
    return await update_portfolio_item(item_id, req)


@app.delete("/admin/portfolio/{item_id}", dependencies=[Depends(verify_admin)], status_code=204)
async def admin_delete_portfolio_item(item_id: str):
    await delete_portfolio_item(item_id)
