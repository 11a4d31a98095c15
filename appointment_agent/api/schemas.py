"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from appointment_agent.models import (
    Appointment,
    AppointmentStatus,
    Business,
    ConversationTurn,
    DayAvailability,
    Service,
    Slot,
)


class ChatRequest(BaseModel):
    """A turn from the web chat widget, with the full visible history."""

    subdomain: str = Field(..., min_length=1, max_length=100)
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Browser session identifier; also the rate-limit key",
    )
    messages: list[ConversationTurn] = Field(..., min_length=1, max_length=100)


class ChatResponse(BaseModel):
    reply: str = Field(..., description="The agent's response message")
    session_id: str


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "appointment-agent"


# ── Owner surface ───────────────────────────────────────────────────


class AvailabilityUpdate(BaseModel):
    availability: list[DayAvailability]


class ServicesUpdate(BaseModel):
    services: list[Service]


class OwnerAction(BaseModel):
    owner_note: str | None = Field(None, max_length=1000)


class RescheduleRequest(BaseModel):
    new_start_time: str = Field(..., description="YYYY-MM-DDTHH:MM")
    owner_note: str | None = Field(None, max_length=1000)


class CalendarSettings(BaseModel):
    calendar_id: str | None = Field(None, description="Defaults to the current calendar id")


class WebhookRequest(BaseModel):
    url: str = Field(..., min_length=1, description="Public HTTPS URL of the webhook route")


class SlotsResponse(BaseModel):
    date: str
    day_name: str
    slots: list[Slot]


class DaySlots(BaseModel):
    date: str
    day_name: str
    slots: list[Slot]


class WeekResponse(BaseModel):
    start: str
    days: list[DaySlots]


class UpcomingAppointment(Appointment):
    duration_minutes: int
    end_time: str


class PendingAppointment(BaseModel):
    id: str
    customer_name: str
    customer_email: str | None = None
    customer_phone: str | None = None
    start_time: str
    service_name: str
    status: AppointmentStatus
    notes: str | None = None

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> PendingAppointment:
        return cls(
            id=appointment.id,
            customer_name=appointment.customer.name,
            customer_email=appointment.customer.email,
            customer_phone=appointment.customer.phone,
            start_time=appointment.start_time,
            service_name=appointment.service_name,
            status=appointment.status,
            notes=appointment.notes,
        )


class TokenAppointment(BaseModel):
    """What the customer sees on the cancel page."""

    business_name: str
    customer_name: str
    service_name: str
    start_time: str
    status: AppointmentStatus


class CalendarConnection(BaseModel):
    connected: bool = True
    calendar_id: str
    summary: str | None = None
    timezone: str


class BusinessResponse(Business):
    """A business as returned to its owner (bot token hidden)."""

    telegram_bot_token: str | None = Field(None, exclude=True)
