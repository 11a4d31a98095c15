"""Slot resolution and the appointment guard.

``resolve_slots`` is a pure function of a business's weekly template, its
appointments and a date.  ``AppointmentGuard`` validates booking requests
against that template, commits appointments through the store and owns the
``pending → confirmed → cancelled`` state machine.

The guard never talks to the external calendar; ``services.booking`` wires
state changes to the calendar sync outbox.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any

from appointment_agent.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from appointment_agent.models import (
    ALLOWED_TRANSITIONS,
    Appointment,
    AppointmentStatus,
    Business,
    Customer,
    Service,
    Slot,
    Weekday,
    calculate_end_time,
    format_minutes,
    parse_date,
    parse_start_time,
    to_minutes,
)
from appointment_agent.services.store import ConflictCheck, InMemoryStore

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7


# ── Slot resolver ────────────────────────────────────────────────────


def resolve_slots(
    business: Business,
    appointments: list[Appointment],
    on_date: date,
    interval_minutes: int | None = None,
) -> list[Slot]:
    """Return the bookable slots of *business* on *on_date*.

    Without *interval_minutes* every open range of the weekday is one slot,
    booked iff an active appointment starts inside ``[start, end)``.  With
    it, ranges are split into fixed-length slots (the last one clipped to
    the range end) and a slot is booked iff an active appointment covers its
    start.
    """
    ranges = business.ranges_for(Weekday.from_date(on_date))
    if not ranges:
        return []

    day = on_date.isoformat()
    booked = [
        (to_minutes(a.start_time.split("T")[1]), business.service_duration(a.service_name))
        for a in appointments
        if a.is_active and a.day == day
    ]

    slots: list[Slot] = []
    for time_range in ranges:
        if not interval_minutes:
            is_booked = any(
                time_range.start_minutes <= start < time_range.end_minutes
                for start, _ in booked
            )
            slots.append(Slot(start=time_range.start, end=time_range.end, is_booked=is_booked))
            continue

        for slot_start in range(time_range.start_minutes, time_range.end_minutes, interval_minutes):
            slot_end = min(slot_start + interval_minutes, time_range.end_minutes)
            is_booked = any(start <= slot_start < start + duration for start, duration in booked)
            slots.append(
                Slot(
                    start=format_minutes(slot_start),
                    end=format_minutes(slot_end),
                    is_booked=is_booked,
                )
            )
    return slots


def weekly_availability(
    business: Business,
    appointments: list[Appointment],
    start_date: date,
    interval_minutes: int | None = None,
) -> list[dict[str, Any]]:
    """Seven consecutive days of slots starting at *start_date*."""
    week = []
    for offset in range(DAYS_PER_WEEK):
        current = start_date + timedelta(days=offset)
        week.append(
            {
                "date": current.isoformat(),
                "day_name": Weekday.from_date(current).localized(business.locale),
                "slots": resolve_slots(business, appointments, current, interval_minutes),
            }
        )
    return week


# ── Appointment guard ────────────────────────────────────────────────


def _overlap_check(business: Business, starts_at: datetime, duration: int) -> ConflictCheck:
    """Build the store callback that rejects a clash with *starts_at*."""
    new_end = starts_at + timedelta(minutes=duration)

    def check(existing: list[Appointment]) -> None:
        for other in existing:
            other_start = other.starts_at
            if other_start == starts_at:
                raise ConflictError("Slot already booked")
            other_end = other_start + timedelta(
                minutes=business.service_duration(other.service_name)
            )
            if starts_at < other_end and new_end > other_start:
                raise ConflictError("This time slot conflicts with an existing appointment")

    return check


class AppointmentGuard:
    """Validates and commits appointments for one store."""

    def __init__(self, store: InMemoryStore, *, slot_interval_minutes: int = 0) -> None:
        self._store = store
        self._interval = slot_interval_minutes or None

    # ── Reads ────────────────────────────────────────────────────────

    def get_business(self, business_id: str) -> Business:
        business = self._store.get_business(business_id)
        if business is None:
            raise NotFoundError("Business not found")
        return business

    def available_slots(self, business_id: str, day: str) -> tuple[Weekday, list[Slot]]:
        """Weekday of *day* and every slot on it (booked ones included)."""
        business = self.get_business(business_id)
        on_date = parse_date(day)
        appointments = self._store.list_appointments(business_id, day=on_date.isoformat())
        return Weekday.from_date(on_date), resolve_slots(
            business, appointments, on_date, self._interval,
        )

    def week_view(self, business_id: str, start_day: str) -> list[dict[str, Any]]:
        business = self.get_business(business_id)
        appointments = self._store.list_appointments(business_id)
        return weekly_availability(business, appointments, parse_date(start_day), self._interval)

    def upcoming_appointments(
        self, business_id: str, now: datetime | None = None, limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Active appointments starting at or after *now* (naive local time)."""
        business = self.get_business(business_id)
        cutoff = (now or datetime.now()).strftime("%Y-%m-%dT%H:%M")
        upcoming = [
            a for a in self._store.list_appointments(business_id) if a.start_time >= cutoff
        ][:limit]
        result = []
        for appointment in upcoming:
            duration = business.service_duration(appointment.service_name)
            result.append(
                {
                    **appointment.model_dump(mode="json"),
                    "duration_minutes": duration,
                    "end_time": calculate_end_time(appointment.start_time, duration),
                }
            )
        return result

    def pending_appointments(
        self, business_id: str, now: datetime | None = None, limit: int = 5,
    ) -> list[Appointment]:
        """Not-yet-confirmed appointments from *now* on, soonest first."""
        self.get_business(business_id)
        cutoff = (now or datetime.now()).strftime("%Y-%m-%dT%H:%M")
        return [
            a for a in self._store.list_appointments(business_id)
            if a.status == AppointmentStatus.PENDING and a.start_time >= cutoff
        ][:limit]

    # ── Validation ───────────────────────────────────────────────────

    @staticmethod
    def _check_open(business: Business, start_time: str) -> datetime:
        starts_at = parse_start_time(start_time)
        ranges = business.ranges_for(Weekday.from_date(starts_at.date()))
        if not ranges:
            raise ValidationError("No availability for this day")
        hhmm = starts_at.strftime("%H:%M")
        if not any(r.contains(hhmm) for r in ranges):
            raise ValidationError("Time slot not available")
        return starts_at

    @staticmethod
    def _resolve_service(business: Business, service_name: str) -> Service:
        service = business.find_service(service_name)
        if service is None:
            available = ", ".join(s.name for s in business.services) or "none"
            raise ValidationError(
                f'Service not found: "{service_name}". Available services: {available}'
            )
        return service

    # ── Writes ───────────────────────────────────────────────────────

    def create_appointment(
        self,
        business_id: str,
        customer: Customer,
        start_time: str,
        service_name: str,
        notes: str | None = None,
    ) -> Appointment:
        """Book a pending appointment.

        Raises:
            NotFoundError: unknown business.
            ValidationError: malformed time, closed day, time outside the
                open ranges, or unknown service.
            ConflictError: the slot is already booked.
        """
        business = self.get_business(business_id)
        starts_at = self._check_open(business, start_time)
        service = self._resolve_service(business, service_name)

        appointment = Appointment(
            business_id=business_id,
            customer=customer,
            start_time=starts_at.strftime("%Y-%m-%dT%H:%M"),
            service_name=service.name,
            notes=notes,
        )
        self._store.insert_appointment(
            appointment,
            check=_overlap_check(business, starts_at, service.duration_minutes),
        )
        return appointment

    def _transition(
        self, appointment_id: str, target: AppointmentStatus, **changes: Any,
    ) -> Appointment:
        appointment = self._store.get_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found")
        if appointment.status == target:
            return appointment
        if target not in ALLOWED_TRANSITIONS[appointment.status]:
            raise InvalidTransitionError(
                f"Cannot change a {appointment.status.value} appointment to {target.value}"
            )
        logger.info(
            "Appointment %s: %s -> %s", appointment_id, appointment.status.value, target.value,
        )
        return self._store.update_appointment(appointment_id, status=target, **changes)

    def confirm_appointment(self, appointment_id: str, owner_note: str | None = None) -> Appointment:
        extra = {"owner_note": owner_note} if owner_note is not None else {}
        return self._transition(appointment_id, AppointmentStatus.CONFIRMED, **extra)

    def cancel_appointment(self, appointment_id: str, owner_note: str | None = None) -> Appointment:
        extra = {"owner_note": owner_note} if owner_note is not None else {}
        return self._transition(appointment_id, AppointmentStatus.CANCELLED, **extra)

    def reschedule_appointment(
        self, appointment_id: str, new_start_time: str, owner_note: str | None = None,
    ) -> Appointment:
        """Move an active appointment to a new time and confirm it."""
        appointment = self._store.get_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found")
        if not appointment.is_active:
            raise InvalidTransitionError("Cannot reschedule a cancelled appointment")

        business = self.get_business(appointment.business_id)
        starts_at = self._check_open(business, new_start_time)
        duration = business.service_duration(appointment.service_name)
        extra = {"owner_note": owner_note} if owner_note is not None else {}

        return self._store.update_appointment(
            appointment_id,
            check=_overlap_check(business, starts_at, duration),
            start_time=starts_at.strftime("%Y-%m-%dT%H:%M"),
            rescheduled_from=appointment.start_time,
            status=AppointmentStatus.CONFIRMED,
            **extra,
        )
