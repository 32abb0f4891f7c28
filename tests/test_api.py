from datetime import date, timedelta
import pytest
from fastapi.testclient import TestClient
from studio_booking import api, cache
from studio_booking.availability import find_conflicts
from studio_booking.client import DuplicateSlotError, NotFoundError, StoreError
from studio_booking.models import (
    Appointment,
    BusinessHours,
    PortfolioItem,
    Service,
    StudioSettings,
    UnavailableDate,
)

TOKEN = "s3cret-admin"
AUTH = {"Authorization": f"Bearer {TOKEN}"}
DAY = date.today() + timedelta(days=7)


def _appt(appt_id, time, service_id="svc-60", status="confirmed", day=DAY, created_at=None, **extra):
    data = dict(
        id=appt_id,
        client_name="Jane Doe",
        client_email="jane@example.com",
        client_phone="5551234567",
        service_id=service_id,
        date=day,
        time=time,
        status=status,
        created_at=created_at,
    )
    data.update(extra)
    return Appointment(**data)


def _booking_body(**overrides):
    body = {
        "client_name": "Ana Ruiz",
        "client_email": "ana@example.com",
        "client_phone": "5550001111",
        "service_id": "svc-60",
        "date": DAY.isoformat(),
        "time": "09:00",
    }
    body.update(overrides)
    return body


class FakeStore:
    """In-memory stand-in for the hosted database."""

    def __init__(self):
        self.services = [
            Service(id="svc-60", name="Recording Session", duration=60),
            Service(id="svc-30", name="Podcast Edit", duration=30, active=False),
        ]
        self.appointments: list[Appointment] = []
        self.settings = StudioSettings(
            id="settings-1",
            business_hours=BusinessHours(start="09:00", end="12:00"),
            slot_granularity_minutes=30,
            advance_booking_days=30,
        )
        self.stale_reads = False
        self._snapshot: list[Appointment] = []

    def lookup(self, service_id):
        return {s.id: s.duration_minutes for s in self.services}.get(service_id)

    async def list_services(self, active_only=True):
        return [s for s in self.services if s.active or not active_only]

    async def get_service(self, service_id):
        for service in self.services:
            if service.id == service_id:
                return service
        raise NotFoundError(f"Service {service_id} not found", status=404)

    async def get_settings(self):
        return self.settings.model_copy(deep=True)

    async def list_appointments(self, date_iso=None, exclude_cancelled=False, status=None,
                                date_from=None, date_to=None):
        source = self._snapshot if self.stale_reads else self.appointments
        result = list(source)
        if date_iso:
            result = [a for a in result if a.date.isoformat() == date_iso]
        if exclude_cancelled:
            result = [a for a in result if a.status != "cancelled"]
        if status is not None:
            result = [a for a in result if a.status == status]
        return result

    async def create_appointment(self, booking, duration_minutes):
        # mirrors the atomic insert-if-no-overlap routine in the database
        if find_conflicts(booking.date, booking.time, duration_minutes, self.appointments, self.lookup):
            raise DuplicateSlotError("slot taken", status=409, code="23P01")
        appt = _appt(f"appt-{len(self.appointments) + 1}", booking.time, booking.service_id,
                     status="pending", day=booking.date, client_name=booking.client_name)
        self.appointments.append(appt)
        return appt

    async def get_appointment(self, appt_id):
        for appt in self.appointments:
            if appt.id == appt_id:
                return appt
        raise NotFoundError(f"Appointment {appt_id} not found", status=404)

    async def update_appointment(self, appt_id, data):
        current = await self.get_appointment(appt_id)
        updated = current.model_copy(update=data.model_dump(exclude_unset=True))
        self.appointments = [updated if a.id == appt_id else a for a in self.appointments]
        return updated

    async def delete_appointment(self, appt_id):
        await self.get_appointment(appt_id)
        self.appointments = [a for a in self.appointments if a.id != appt_id]


@pytest.fixture
def store(monkeypatch, tmp_path):
    fake = FakeStore()
    for name in (
        "list_services", "get_service", "get_settings", "list_appointments",
        "create_appointment", "get_appointment", "update_appointment", "delete_appointment",
    ):
        monkeypatch.setattr(api, name, getattr(fake, name))
    monkeypatch.setattr(api, "ADMIN_TOKEN", TOKEN)
    monkeypatch.setattr(cache, "CACHE_DIR", tmp_path)
    return fake


@pytest.fixture
def client(store):
    return TestClient(api.app)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_public_services_lists_active_only(client):
    resp = client.get("/services")
    assert resp.status_code == 200
    assert [s["id"] for s in resp.json()] == ["svc-60"]


def test_availability_around_existing_booking(client, store):
    store.appointments.append(_appt("a1", "10:00"))

    resp = client.get("/availability", params={"date": DAY.isoformat(), "service_id": "svc-60"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["slots"] == ["09:00", "11:00"]
    assert body["duration_minutes"] == 60


def test_availability_ignores_cancelled_bookings(client, store):
    store.appointments.append(_appt("a1", "10:00", status="cancelled"))

    resp = client.get("/availability", params={"date": DAY.isoformat(), "service_id": "svc-60"})

    assert resp.json()["slots"] == ["09:00", "09:30", "10:00", "10:30", "11:00"]


def test_availability_blocked_date(client, store):
    store.settings.unavailable_dates = [DAY]

    resp = client.get("/availability", params={"date": DAY.isoformat(), "service_id": "svc-60"})

    assert resp.json()["slots"] == []


def test_availability_outside_booking_window(client):
    past = date.today() - timedelta(days=1)
    too_far = date.today() + timedelta(days=31)
    for day in (past, too_far):
        resp = client.get("/availability", params={"date": day.isoformat(), "service_id": "svc-60"})
        assert resp.status_code == 200
        assert resp.json()["slots"] == []


def test_availability_closed_weekday(client, store):
    weekday = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")[DAY.weekday()]
    store.settings.opening_hours = {weekday: None}

    resp = client.get("/availability", params={"date": DAY.isoformat(), "service_id": "svc-60"})

    assert resp.json()["slots"] == []


def test_availability_unknown_or_inactive_service(client):
    assert client.get("/availability", params={"date": DAY.isoformat(), "service_id": "nope"}).status_code == 404
    assert client.get("/availability", params={"date": DAY.isoformat(), "service_id": "svc-30"}).status_code == 404


def test_availability_calendar_counts(client, store):
    store.appointments.append(_appt("a1", "09:00"))

    resp = client.get(
        "/availability/calendar",
        params={"service_id": "svc-60", "start": DAY.isoformat(), "end": (DAY + timedelta(days=1)).isoformat()},
    )

    assert resp.status_code == 200
    assert resp.json()["days"] == {DAY.isoformat(): 3, (DAY + timedelta(days=1)).isoformat(): 5}


def test_book_creates_pending_appointment(client, store):
    resp = client.post("/book", json=_booking_body(time="11:00:00"))

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["time"] == "11:00"
    assert len(store.appointments) == 1


def test_book_taken_slot_is_rejected(client, store):
    store.appointments.append(_appt("a1", "09:00"))

    resp = client.post("/book", json=_booking_body(time="09:30"))

    assert resp.status_code == 409
    assert resp.json()["detail"] == api.SLOT_TAKEN
    assert len(store.appointments) == 1


def test_concurrent_double_booking_second_request_loses(client, store):
    # both requests see the empty day; the store's atomic insert decides
    store.stale_reads = True

    first = client.post("/book", json=_booking_body(time="09:00"))
    second = client.post("/book", json=_booking_body(time="09:30", client_name="Ben Cole"))

    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["detail"] == api.SLOT_TAKEN
    assert [a.time for a in store.appointments] == ["09:00"]


def test_back_to_back_booking_is_allowed(client, store):
    store.appointments.append(_appt("a1", "09:00"))

    resp = client.post("/book", json=_booking_body(time="10:00"))

    assert resp.status_code == 201


@pytest.mark.parametrize(
    "overrides",
    [
        {"client_name": " A "},
        {"client_email": "not-an-email"},
        {"client_phone": "12345"},
        {"time": "9am"},
        {"service_id": ""},
    ],
)
def test_book_rejects_invalid_form(client, store, overrides):
    resp = client.post("/book", json=_booking_body(**overrides))
    assert resp.status_code == 422
    assert store.appointments == []


def test_store_failure_maps_to_502(client, monkeypatch):
    async def broken(active_only=True):
        raise StoreError("connection refused")

    monkeypatch.setattr(api, "list_services", broken)

    resp = client.get("/services")

    assert resp.status_code == 502


def test_admin_requires_token(client, monkeypatch):
    assert client.get("/admin/appointments").status_code == 401
    assert client.get("/admin/appointments", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/admin/appointments", headers=AUTH).status_code == 200

    monkeypatch.setattr(api, "ADMIN_TOKEN", "")
    assert client.get("/admin/appointments", headers=AUTH).status_code == 401


def test_admin_filters_and_sorts_appointments(client, store):
    store.appointments.extend([
        _appt("a1", "11:00", status="pending", client_name="Zoe Hart"),
        _appt("a2", "09:00", status="confirmed", client_name="Ana Ruiz", client_email="ana@studio.io"),
        _appt("a3", "10:00", status="pending", day=DAY - timedelta(days=1), client_phone="5559990000"),
    ])

    pending = client.get("/admin/appointments", params={"status": "pending"}, headers=AUTH).json()
    by_email = client.get("/admin/appointments", params={"search": "STUDIO"}, headers=AUTH).json()
    by_phone = client.get("/admin/appointments", params={"search": "999"}, headers=AUTH).json()

    assert [a["id"] for a in pending] == ["a3", "a1"]
    assert [a["id"] for a in by_email] == ["a2"]
    assert [a["id"] for a in by_phone] == ["a3"]


def test_admin_stats(client, store):
    store.appointments.extend([
        _appt("a1", "09:00", status="pending"),
        _appt("a2", "10:00", status="pending"),
        _appt("a3", "11:00", status="cancelled"),
    ])

    resp = client.get("/admin/appointments/stats", headers=AUTH)

    assert resp.json() == {"total": 3, "pending": 2, "confirmed": 0, "completed": 0, "cancelled": 1}


def test_admin_dedupe_keeps_oldest(client, store):
    store.appointments.extend([
        _appt("new", "09:00", created_at="2026-02-02T10:00:00+00:00"),
        _appt("old", "09:00", created_at="2026-02-01T10:00:00+00:00"),
        _appt("other", "11:00", created_at="2026-02-01T11:00:00+00:00"),
    ])

    resp = client.post("/admin/appointments/dedupe", headers=AUTH)

    assert resp.json() == {"deleted": ["new"]}
    assert sorted(a.id for a in store.appointments) == ["old", "other"]


def test_admin_reschedule_into_conflict_is_rejected(client, store):
    store.appointments.extend([_appt("a1", "09:00"), _appt("a2", "11:00")])

    moved = client.patch("/admin/appointments/a2", json={"time": "09:30"}, headers=AUTH)
    confirmed = client.patch("/admin/appointments/a2", json={"status": "completed"}, headers=AUTH)
    touching = client.patch("/admin/appointments/a2", json={"time": "10:00"}, headers=AUTH)

    assert moved.status_code == 409
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "completed"
    assert touching.status_code == 200
    assert touching.json()["time"] == "10:00"


def test_admin_cannot_reopen_into_taken_slot(client, store):
    store.appointments.extend([
        _appt("a1", "09:00", status="cancelled"),
        _appt("a2", "09:00"),
    ])

    resp = client.patch("/admin/appointments/a1", json={"status": "pending"}, headers=AUTH)

    assert resp.status_code == 409


@pytest.mark.parametrize("field", ["date", "time", "status", "client_name", "service_id"])
def test_admin_update_rejects_clearing_required_field(client, store, field):
    store.appointments.append(_appt("a1", "10:00"))

    resp = client.patch("/admin/appointments/a1", json={field: None}, headers=AUTH)

    assert resp.status_code == 422
    assert store.appointments[0].status == "confirmed"
    assert store.appointments[0].time == "10:00"


def test_admin_update_can_clear_notes(client, store):
    store.appointments.append(_appt("a1", "10:00", notes="Bring own guitar"))

    resp = client.patch("/admin/appointments/a1", json={"notes": None}, headers=AUTH)

    assert resp.status_code == 200
    assert resp.json()["notes"] is None


def test_admin_delete_missing_appointment(client):
    resp = client.delete("/admin/appointments/missing", headers=AUTH)
    assert resp.status_code == 404


def test_admin_settings_rejects_inverted_hours(client, monkeypatch):
    async def must_not_be_called(data):
        raise AssertionError("settings should not be written")

    monkeypatch.setattr(api, "update_settings", must_not_be_called)

    resp = client.patch(
        "/admin/settings",
        json={"business_hours": {"start": "18:00", "end": "09:00"}},
        headers=AUTH,
    )

    assert resp.status_code == 422


def test_admin_settings_update(client, monkeypatch):
    seen = {}

    async def fake_update(data):
        seen["data"] = data
        return StudioSettings(
            id="settings-1",
            business_hours=data.business_hours,
            slot_granularity_minutes=data.slot_granularity_minutes,
        )

    monkeypatch.setattr(api, "update_settings", fake_update)

    resp = client.patch(
        "/admin/settings",
        json={"business_hours": {"start": "10:00", "end": "19:00"}, "break_duration": 45},
        headers=AUTH,
    )

    assert resp.status_code == 200
    assert seen["data"].slot_granularity_minutes == 45
    assert resp.json()["business_hours"] == {"start": "10:00", "end": "19:00"}


def test_admin_reactivate_service(client, store, monkeypatch):
    async def reactivate(service_id):
        service = await store.get_service(service_id)
        service.active = True
        return service

    monkeypatch.setattr(api, "reactivate_service", reactivate)

    before = client.get("/services").json()
    resp = client.post("/admin/services/svc-30/reactivate", headers=AUTH)
    after = client.get("/services").json()

    assert resp.status_code == 200
    assert resp.json()["active"] is True
    assert "svc-30" not in [s["id"] for s in before]
    assert "svc-30" in [s["id"] for s in after]


def test_admin_unavailable_dates_round_trip(client, store, monkeypatch):
    blocked: dict[date, UnavailableDate] = {}

    async def list_dates():
        return list(blocked.values())

    async def add_date(day, reason=None):
        blocked.setdefault(day, UnavailableDate(date=day, reason=reason))

    async def remove_date(day):
        blocked.pop(day, None)

    monkeypatch.setattr(api, "list_unavailable_dates", list_dates)
    monkeypatch.setattr(api, "add_unavailable_date", add_date)
    monkeypatch.setattr(api, "remove_unavailable_date", remove_date)

    added = client.post(
        "/admin/unavailable-dates", json={"date": DAY.isoformat(), "reason": "Holiday"}, headers=AUTH
    )
    listed = client.get("/admin/unavailable-dates", headers=AUTH)
    removed = client.delete(f"/admin/unavailable-dates/{DAY.isoformat()}", headers=AUTH)

    assert added.status_code == 204
    assert listed.json() == [{"date": DAY.isoformat(), "reason": "Holiday"}]
    assert removed.status_code == 204
    assert blocked == {}


def test_admin_portfolio_endpoints(client, monkeypatch):
    items: dict[str, PortfolioItem] = {}

    async def create(data):
        item = PortfolioItem(id=f"pf-{len(items) + 1}", **data.model_dump())
        items[item.id] = item
        return item

    async def update(item_id, data):
        if item_id not in items:
            raise NotFoundError(f"Portfolio item {item_id} not found", status=404)
        items[item_id] = items[item_id].model_copy(update=data.model_dump(exclude_unset=True))
        return items[item_id]

    async def delete(item_id):
        if items.pop(item_id, None) is None:
            raise NotFoundError(f"Portfolio item {item_id} not found", status=404)

    monkeypatch.setattr(api, "create_portfolio_item", create)
    monkeypatch.setattr(api, "update_portfolio_item", update)
    monkeypatch.setattr(api, "delete_portfolio_item", delete)

    body = {"title": "Night Drive", "type": "music", "image_url": "https://cdn.example.com/nd.jpg"}
    anonymous = client.post("/admin/portfolio", json=body)
    created = client.post("/admin/portfolio", json=body, headers=AUTH)
    bad_type = client.post("/admin/portfolio", json={**body, "type": "podcast"}, headers=AUTH)
    updated = client.patch("/admin/portfolio/pf-1", json={"genre": "synthwave"}, headers=AUTH)
    deleted = client.delete("/admin/portfolio/pf-1", headers=AUTH)
    missing = client.delete("/admin/portfolio/pf-1", headers=AUTH)

    assert anonymous.status_code == 401
    assert created.status_code == 201
    assert created.json()["id"] == "pf-1"
    assert bad_type.status_code == 422
    assert updated.json()["genre"] == "synthwave"
    assert deleted.status_code == 204
    assert missing.status_code == 404
