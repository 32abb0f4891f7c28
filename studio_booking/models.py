import datetime as dt
import re
from enum import Enum
from typing import Annotated
from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator
from .availability import minutes_to_time, time_to_minutes

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _normalize_time(value: str | dt.time) -> str:
    # "12:00:00" -> "12:00"
    return minutes_to_time(time_to_minutes(value))


WallTime = Annotated[str, BeforeValidator(_normalize_time)]


class AppointmentStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"


class Service(BaseModel):
    id: str
    name: str
    description: str = ""
    duration_minutes: int = Field(alias="duration", gt=0)
    price: float = 0
    color: str = "#6366f1"
    active: bool = True
    created_at: str | None = None

    model_config = {"populate_by_name": True}


class ServiceCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    duration_minutes: int = Field(alias="duration", gt=0)
    price: float = Field(0, ge=0)
    color: str = "#6366f1"

    model_config = {"populate_by_name": True}


class ServiceUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    duration_minutes: int | None = Field(None, alias="duration", gt=0)
    price: float | None = Field(None, ge=0)
    color: str | None = None

    model_config = {"populate_by_name": True}


class Appointment(BaseModel):
    """A booking row as stored in the `appointments` table."""
    id: str
    client_name: str
    client_email: str
    client_phone: str
    service_id: str
    date: dt.date
    time: WallTime  # HH:MM, local wall-clock
    status: AppointmentStatus = AppointmentStatus.pending
    notes: str | None = ""
    created_at: str | None = None


class BookingRequest(BaseModel):
    """Public booking form."""
    client_name: str
    client_email: str
    client_phone: str
    service_id: str = Field(min_length=1)
    date: dt.date
    time: WallTime
    notes: str | None = None

    @field_validator("client_name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Client name must be at least 2 characters long")
        return value

    @field_validator("client_email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip()
        if not _EMAIL_RE.match(value):
            raise ValueError("Please enter a valid email address")
        return value

    @field_validator("client_phone")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 10:
            raise ValueError("Please enter a valid phone number")
        return value


class AppointmentUpdate(BaseModel):
    client_name: str | None = None
    client_email: str | None = None
    client_phone: str | None = None
    service_id: str | None = None
    date: dt.date | None = None
    time: str | None = None
    status: AppointmentStatus | None = None
    notes: str | None = None

    @field_validator("time", mode="before")
    @classmethod
    def _check_time(cls, value):
        return None if value is None else _normalize_time(value)

    @model_validator(mode="after")
    def _no_null_required_fields(self):
        # only notes may be cleared
        cleared = [
            name for name in self.model_fields_set
            if name != "notes" and getattr(self, name) is None
        ]
        if cleared:
            raise ValueError(f"Cannot clear {', '.join(sorted(cleared))}")
        return self


class AppointmentStats(BaseModel):
    total: int = 0
    pending: int = 0
    confirmed: int = 0
    completed: int = 0
    cancelled: int = 0


class BusinessHours(BaseModel):
    start: WallTime = "09:00"
    end: WallTime = "18:00"


class StudioSettings(BaseModel):
    id: str | None = None
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    # weekday name -> hours; None marks a closed day
    opening_hours: dict[str, BusinessHours | None] = Field(default_factory=dict)
    slot_granularity_minutes: int = Field(15, alias="break_duration", gt=0)
    advance_booking_days: int = Field(30, ge=0)
    unavailable_dates: list[dt.date] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    def hours_for(self, day: dt.date) -> BusinessHours | None:
        """Opening window for a given date, None when the studio is closed."""
        weekday = WEEKDAYS[day.weekday()]
        if weekday in self.opening_hours:
            return self.opening_hours[weekday]
        return self.business_hours


class SettingsUpdate(BaseModel):
    business_hours: BusinessHours | None = None
    opening_hours: dict[str, BusinessHours | None] | None = None
    slot_granularity_minutes: int | None = Field(None, alias="break_duration", gt=0)
    advance_booking_days: int | None = Field(None, ge=0)

    model_config = {"populate_by_name": True}

    @field_validator("opening_hours")
    @classmethod
    def _check_weekdays(cls, value):
        if value is not None:
            unknown = set(value) - set(WEEKDAYS)
            if unknown:
                raise ValueError(f"Unknown weekdays: {', '.join(sorted(unknown))}")
        return value


class UnavailableDate(BaseModel):
    date: dt.date
    reason: str | None = None


class PortfolioType(str, Enum):
    music = "music"
    video = "video"


class PortfolioItem(BaseModel):
    id: str
    title: str
    artist: str | None = None
    description: str = ""
    type: PortfolioType
    image_url: str
    audio_url: str | None = None
    video_url: str | None = None
    genre: str | None = None
    duration: str | None = None  # display length, e.g. "3:45"
    created_at: str | None = None


class PortfolioCreate(BaseModel):
    title: str = Field(min_length=1)
    artist: str | None = None
    description: str = ""
    type: PortfolioType
    image_url: str
    audio_url: str | None = None
    video_url: str | None = None
    genre: str | None = None
    duration: str | None = None


class PortfolioUpdate(BaseModel):
    title: str | None = None
    artist: str | None = None
    description: str | None = None
    type: PortfolioType | None = None
    image_url: str | None = None
    audio_url: str | None = None
    video_url: str | None = None
    genre: str | None = None
    duration: str | None = None


class SlotsResponse(BaseModel):
    date: dt.date
    service_id: str
    duration_minutes: int
    slots: list[str]


class CalendarResponse(BaseModel):
    service_id: str
    days: dict[str, int]
