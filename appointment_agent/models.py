"""Domain models for businesses, appointments and conversations.

All times are *civil* times without a timezone: opening hours are ``HH:MM``
strings and appointment start times are ``YYYY-MM-DDTHH:MM`` strings.  They
are interpreted in the business calendar's timezone only when an event is
pushed to the external calendar.
"""

from __future__ import annotations

import re
import secrets
import unicodedata
import uuid
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from appointment_agent.errors import ValidationError

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_START_TIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2})?$")

MINUTES_PER_DAY = 24 * 60
DEFAULT_SERVICE_DURATION_MINUTES = 60


# ── Time helpers ─────────────────────────────────────────────────────


def to_minutes(hhmm: str) -> int:
    """Convert ``"09:30"`` to minutes after midnight (570)."""
    hours, minutes = hhmm.split(":")[:2]
    return int(hours) * 60 + int(minutes)


def format_minutes(total: int) -> str:
    """Convert minutes after midnight back to ``HH:MM`` (wraps past 24h)."""
    hours, minutes = divmod(total % MINUTES_PER_DAY, 60)
    return f"{hours:02d}:{minutes:02d}"


def parse_start_time(value: str) -> datetime:
    """Parse a naive ``YYYY-MM-DDTHH:MM[:SS]`` start time.

    Raises:
        ValidationError: if *value* is not in that exact shape or is not a
            real calendar date/time.
    """
    if not isinstance(value, str) or not _START_TIME_RE.match(value.strip()):
        raise ValidationError(
            f"Invalid appointment time format: {value!r}. Expected YYYY-MM-DDTHH:MM."
        )
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid appointment time: {value!r}") from exc


def shift_local_time(value: str, minutes: int) -> str:
    """Add *minutes* (may be negative) to a naive local date-time string.

    Works on date components only: the time of day is converted to minutes,
    shifted, and whole days carried into the calendar date.  No timezone is
    ever attached, so DST cannot be applied twice.  Always returns
    ``YYYY-MM-DDTHH:MM:SS``.

    >>> shift_local_time("2025-01-06T23:45", 30)
    '2025-01-07T00:15:00'
    """
    day_part, _, time_part = value.partition("T")
    parts = [int(p) for p in time_part.split(":")]
    hours, mins = parts[0], parts[1]
    seconds = parts[2] if len(parts) > 2 else 0

    day_shift, minute_of_day = divmod(hours * 60 + mins + minutes, MINUTES_PER_DAY)
    new_day = date.fromisoformat(day_part) + timedelta(days=day_shift)
    new_hours, new_minutes = divmod(minute_of_day, 60)
    return f"{new_day.isoformat()}T{new_hours:02d}:{new_minutes:02d}:{seconds:02d}"


def calculate_end_time(start: str, duration_minutes: int) -> str:
    """End of an appointment starting at *start* lasting *duration_minutes*."""
    return shift_local_time(start, duration_minutes)


def with_seconds(value: str) -> str:
    """``2025-01-06T09:00`` → ``2025-01-06T09:00:00``; already-complete values pass through."""
    return value if value.count(":") >= 2 else f"{value}:00"


def parse_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` calendar date or raise ``ValidationError``."""
    try:
        return date.fromisoformat(value.strip())
    except (AttributeError, ValueError) as exc:
        raise ValidationError(
            f"Invalid date: {value!r}. Expected YYYY-MM-DD."
        ) from exc


# ── Weekday ──────────────────────────────────────────────────────────


def _fold(name: str) -> str:
    decomposed = unicodedata.normalize("NFKD", name.strip())
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


class Weekday(str, Enum):
    """Day of the week, independent of the process locale."""

    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def from_date(cls, value: date) -> Weekday:
        return list(cls)[value.weekday()]

    @classmethod
    def parse(cls, name: str) -> Weekday:
        """Accept any localised weekday name ("Miércoles", "wednesday", ...)."""
        folded = _fold(name)
        for names in LOCALIZED_WEEKDAY_NAMES.values():
            for member, localized in zip(cls, names, strict=True):
                if _fold(localized) == folded:
                    return member
        raise ValueError(f"Unknown weekday name: {name!r}")

    def localized(self, locale: str = "en") -> str:
        names = LOCALIZED_WEEKDAY_NAMES.get(locale, LOCALIZED_WEEKDAY_NAMES["en"])
        return names[list(Weekday).index(self)]


# Fixed table, Monday first. Never derived from the runtime locale.
LOCALIZED_WEEKDAY_NAMES: dict[str, tuple[str, ...]] = {
    "en": ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"),
    "es": ("Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado", "Domingo"),
}


# ── Availability template ────────────────────────────────────────────


class TimeRange(BaseModel):
    """An open interval of the weekly template, e.g. 09:00–13:00."""

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if not _HHMM_RE.match(value):
            raise ValueError(f"Time must be HH:MM (24h), got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_order(self) -> TimeRange:
        if self.start >= self.end:
            raise ValueError(f"Range start {self.start} must be before end {self.end}")
        return self

    @property
    def start_minutes(self) -> int:
        return to_minutes(self.start)

    @property
    def end_minutes(self) -> int:
        return to_minutes(self.end)

    def contains(self, hhmm: str) -> bool:
        return self.start <= hhmm < self.end


class DayAvailability(BaseModel):
    """Open ranges for one weekday."""

    day: Weekday
    slots: list[TimeRange] = Field(default_factory=list)

    @field_validator("day", mode="before")
    @classmethod
    def _parse_day(cls, value):
        if isinstance(value, str) and not isinstance(value, Weekday):
            return Weekday.parse(value)
        return value

    @model_validator(mode="after")
    def _check_no_overlap(self) -> DayAvailability:
        ordered = sorted(self.slots, key=lambda r: r.start)
        for previous, current in zip(ordered, ordered[1:]):
            if current.start < previous.end:
                raise ValueError(
                    f"Overlapping ranges on {self.day.value}: "
                    f"{previous.start}-{previous.end} and {current.start}-{current.end}"
                )
        return self


# ── Catalog / business ───────────────────────────────────────────────


class Service(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(..., min_length=1)
    duration_minutes: int = Field(..., gt=0)
    price: float | None = Field(None, ge=0)
    max_capacity: int = Field(1, ge=1)


class Business(BaseModel):
    """A service business with its catalog and weekly availability."""

    id: str
    owner_id: str | None = Field(
        None, description="Identity-provider user id used to fetch calendar tokens",
    )
    name: str
    description: str = ""
    subdomain: str
    email: str | None = None
    phone: str | None = None
    locale: Literal["en", "es"] = "en"
    services: list[Service] = Field(default_factory=list)
    availability: list[DayAvailability] = Field(default_factory=list)
    calendar_enabled: bool = False
    calendar_id: str = "primary"
    telegram_enabled: bool = False
    telegram_bot_token: str | None = None
    welcome_message: str | None = None

    @model_validator(mode="after")
    def _check_unique_days(self) -> Business:
        days = [entry.day for entry in self.availability]
        if len(days) != len(set(days)):
            raise ValueError("Each weekday may appear only once in the availability template")
        return self

    def ranges_for(self, weekday: Weekday) -> list[TimeRange]:
        for entry in self.availability:
            if entry.day == weekday:
                return sorted(entry.slots, key=lambda r: r.start)
        return []

    def find_service(self, name: str) -> Service | None:
        """Match a service by name, trimmed and case-insensitive."""
        wanted = name.strip().casefold()
        for service in self.services:
            if service.name.strip().casefold() == wanted:
                return service
        return None

    def service_duration(self, name: str) -> int:
        service = self.find_service(name)
        return service.duration_minutes if service else DEFAULT_SERVICE_DURATION_MINUTES


# ── Appointments ─────────────────────────────────────────────────────


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.CONFIRMED: frozenset({AppointmentStatus.CANCELLED}),
    AppointmentStatus.CANCELLED: frozenset(),
}


class Customer(BaseModel):
    name: str = Field(..., min_length=1)
    email: str | None = None
    phone: str | None = None


class Appointment(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    business_id: str
    customer: Customer
    start_time: str
    service_name: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    notes: str | None = None
    owner_note: str | None = None
    rescheduled_from: str | None = None
    external_calendar_event_id: str | None = None
    # Secret for the customer-facing cancel link.
    cancellation_token: str = Field(default_factory=lambda: secrets.token_urlsafe(24))
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def starts_at(self) -> datetime:
        return parse_start_time(self.start_time)

    @property
    def day(self) -> str:
        return self.start_time.split("T")[0]

    @property
    def is_active(self) -> bool:
        return self.status != AppointmentStatus.CANCELLED


class Slot(BaseModel):
    """A bookable interval on a concrete date."""

    model_config = ConfigDict(populate_by_name=True)

    start: str
    end: str
    is_booked: bool = Field(False, alias="isBooked")


# ── Conversations ────────────────────────────────────────────────────


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
