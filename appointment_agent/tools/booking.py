"""LangChain tools the booking agent calls on behalf of a customer.

Tools are built per business: each one closes over the business id so the
model can never read or book outside the conversation's business.  Every
tool returns a JSON string.  Failures come back as::

    {"success": false, "error_type": "validation", "error": "..."}

so the model can relay the reason instead of claiming success.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from appointment_agent.errors import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    SchedulingError,
    ValidationError,
)
from appointment_agent.models import Business, Customer
from appointment_agent.services.booking import BookingService

logger = logging.getLogger(__name__)

# RFC 5322-ish pattern, good enough to catch typos before booking.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def validate_email(email: str | None) -> str | None:
    """Return an error message if an email was given and looks invalid, else ``None``."""
    if email is None or not email.strip():
        return None
    email = email.strip()
    if not _EMAIL_RE.match(email):
        return (
            f'"{email}" does not look like a valid email address. '
            "Ask the customer to double-check it, or book without an email."
        )
    return None


def _error_type(exc: Exception) -> str:
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, ValidationError):
        return "validation"
    if isinstance(exc, ConflictError):
        return "conflict"
    if isinstance(exc, ExternalServiceError):
        return "external"
    return "internal"


def tool_failure(exc: Exception) -> str:
    return json.dumps(
        {"success": False, "error_type": _error_type(exc), "error": str(exc)},
        ensure_ascii=False,
    )


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


# ── Argument schemas (camelCase is the wire contract with the model) ─


class GetAvailableSlotsInput(BaseModel):
    date: str = Field(
        ...,
        description=(
            "Date in YYYY-MM-DD format, e.g. 2025-01-15. "
            "Work out the right date from the day the customer mentioned."
        ),
    )


class CreateAppointmentInput(BaseModel):
    customerName: str = Field(..., description="Customer's full name")
    serviceName: str = Field(
        ..., description="Name of the service exactly as returned by get_services",
    )
    appointmentTime: str = Field(
        ..., description="Appointment date and time as YYYY-MM-DDTHH:MM, e.g. 2025-01-15T10:00",
    )
    customerEmail: str | None = Field(None, description="Customer's email (optional)")
    customerPhone: str | None = Field(None, description="Customer's phone (optional)")
    notes: str | None = Field(None, description="Extra notes for the appointment (optional)")


# ── Tool factory ────────────────────────────────────────────────────


def build_booking_tools(booking: BookingService, business: Business) -> list[StructuredTool]:
    """The three customer-facing tools bound to *business*."""
    business_id = business.id

    def get_services() -> str:
        logger.info("Tool get_services for business %s", business_id)
        try:
            current = booking.get_business(business_id)
        except SchedulingError as exc:
            return tool_failure(exc)
        return _dumps(
            {
                "businessName": current.name,
                "services": [
                    {
                        "name": s.name,
                        "durationMinutes": s.duration_minutes,
                        "price": s.price,
                    }
                    for s in current.services
                ],
            }
        )

    def get_available_slots(date: str) -> str:
        logger.info("Tool get_available_slots for business %s on %s", business_id, date)
        try:
            weekday, slots = booking.available_slots(business_id, date)
        except SchedulingError as exc:
            return tool_failure(exc)
        return _dumps(
            {
                "date": date,
                "dayName": weekday.localized(business.locale),
                "availableSlots": [
                    {"start": s.start, "end": s.end} for s in slots if not s.is_booked
                ],
            }
        )

    def create_appointment(
        customerName: str,  # noqa: N803
        serviceName: str,  # noqa: N803
        appointmentTime: str,  # noqa: N803
        customerEmail: str | None = None,  # noqa: N803
        customerPhone: str | None = None,  # noqa: N803
        notes: str | None = None,
    ) -> str:
        details = {
            "customerName": customerName,
            "serviceName": serviceName,
            "appointmentTime": appointmentTime,
            "customerEmail": customerEmail,
            "customerPhone": customerPhone,
            "notes": notes,
        }
        logger.info("Tool create_appointment for business %s: %s", business_id, appointmentTime)

        email_error = validate_email(customerEmail)
        if email_error:
            return tool_failure(ValidationError(email_error))

        try:
            customer = Customer(
                name=customerName.strip(),
                email=customerEmail.strip() if customerEmail else None,
                phone=customerPhone.strip() if customerPhone else None,
            )
        except ValueError as exc:
            return tool_failure(ValidationError(f"Invalid customer details: {exc}"))

        try:
            appointment = booking.create_appointment(
                business_id, customer, appointmentTime, serviceName, notes=notes,
            )
        except SchedulingError as exc:
            logger.warning("create_appointment rejected: %s", exc)
            return tool_failure(exc)

        return _dumps(
            {
                "success": True,
                "appointmentId": appointment.id,
                "status": appointment.status.value,
                "message": "Appointment created. You may confirm the booking to the customer.",
                "details": {**details, "serviceName": appointment.service_name},
            }
        )

    return [
        StructuredTool.from_function(
            func=get_services,
            name="get_services",
            description=(
                "List every service the business offers. "
                "Use it whenever the customer asks what can be booked."
            ),
        ),
        StructuredTool.from_function(
            func=get_available_slots,
            name="get_available_slots",
            description=(
                "Free time slots for one date. Returns the date, its weekday name "
                "and the list of slots that are not booked."
            ),
            args_schema=GetAvailableSlotsInput,
        ),
        StructuredTool.from_function(
            func=create_appointment,
            name="create_appointment",
            description=(
                "Create a new appointment for the customer. Only call it once the customer "
                "has confirmed the details. Use the EXACT service name from get_services. "
                "If success is false, do NOT tell the customer the appointment was created."
            ),
            args_schema=CreateAppointmentInput,
        ),
    ]
