"""Booking operations shared by the agent tools and the owner routes.

Wraps ``AppointmentGuard`` so that every successful state change is
followed by the matching calendar sync task.  Sync is fire-and-forget: the
appointment is committed before anything is enqueued.

Owner confirmations, cancellations and reschedules also email the customer
when a notifier is configured.  The email is sent only when the
appointment actually changed, and its failure never fails the operation.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from appointment_agent.errors import ExternalServiceError, NotFoundError
from appointment_agent.models import (
    Appointment,
    AppointmentStatus,
    Business,
    Customer,
    Slot,
    Weekday,
)
from appointment_agent.services.calendar_sync import (
    CalendarSyncAdapter,
    CalendarSyncOutbox,
    SyncAction,
    SyncTask,
)
from appointment_agent.services.notifications import AppointmentNotifier, NotificationKind
from appointment_agent.services.scheduling import AppointmentGuard
from appointment_agent.services.store import InMemoryStore

logger = logging.getLogger(__name__)


class BookingService:
    def __init__(
        self,
        store: InMemoryStore,
        guard: AppointmentGuard,
        outbox: CalendarSyncOutbox | None = None,
        calendar: CalendarSyncAdapter | None = None,
        notifier: AppointmentNotifier | None = None,
    ) -> None:
        self._store = store
        self._guard = guard
        self._outbox = outbox
        self._calendar = calendar
        self._notifier = notifier

    # ── Reads ────────────────────────────────────────────────────────

    def get_business(self, business_id: str) -> Business:
        return self._guard.get_business(business_id)

    def available_slots(self, business_id: str, day: str) -> tuple[Weekday, list[Slot]]:
        return self._guard.available_slots(business_id, day)

    def week_view(self, business_id: str, start_day: str) -> list[dict[str, Any]]:
        return self._guard.week_view(business_id, start_day)

    def upcoming_appointments(
        self, business_id: str, now: datetime | None = None, limit: int = 10,
    ) -> list[dict[str, Any]]:
        return self._guard.upcoming_appointments(business_id, now=now, limit=limit)

    def pending_appointments(
        self, business_id: str, now: datetime | None = None, limit: int = 5,
    ) -> list[Appointment]:
        return self._guard.pending_appointments(business_id, now=now, limit=limit)

    def appointment_by_token(self, token: str) -> Appointment:
        appointment = self._store.get_appointment_by_token(token)
        if appointment is None:
            raise NotFoundError("Appointment not found")
        return appointment

    # ── Appointment writes ───────────────────────────────────────────

    def create_appointment(
        self,
        business_id: str,
        customer: Customer,
        start_time: str,
        service_name: str,
        notes: str | None = None,
    ) -> Appointment:
        appointment = self._guard.create_appointment(
            business_id, customer, start_time, service_name, notes=notes,
        )
        logger.info(
            "Booked %s for %s at %s (appointment %s)",
            appointment.service_name, customer.name, appointment.start_time, appointment.id,
        )
        self._sync(SyncAction.CREATE, appointment)
        return appointment

    def confirm_appointment(self, appointment_id: str, owner_note: str | None = None) -> Appointment:
        previous = self._status_of(appointment_id)
        appointment = self._guard.confirm_appointment(appointment_id, owner_note=owner_note)
        self._sync(SyncAction.UPDATE, appointment)
        if previous != appointment.status:
            self._notify(NotificationKind.CONFIRMED, appointment)
        return appointment

    def cancel_appointment(self, appointment_id: str, owner_note: str | None = None) -> Appointment:
        previous = self._status_of(appointment_id)
        appointment = self._guard.cancel_appointment(appointment_id, owner_note=owner_note)
        self._sync(SyncAction.DELETE, appointment, event_id=appointment.external_calendar_event_id)
        if previous != appointment.status:
            self._notify(NotificationKind.CANCELLED, appointment)
        return appointment

    def cancel_by_token(self, token: str) -> Appointment:
        """Customer-initiated cancel through the emailed link."""
        appointment = self.appointment_by_token(token)
        logger.info("Customer cancelling appointment %s by token", appointment.id)
        return self.cancel_appointment(appointment.id)

    def reschedule_appointment(
        self, appointment_id: str, new_start_time: str, owner_note: str | None = None,
    ) -> Appointment:
        appointment = self._guard.reschedule_appointment(
            appointment_id, new_start_time, owner_note=owner_note,
        )
        logger.info(
            "Rescheduled appointment %s from %s to %s",
            appointment_id, appointment.rescheduled_from, appointment.start_time,
        )
        self._sync(SyncAction.UPDATE, appointment)
        self._notify(NotificationKind.RESCHEDULED, appointment)
        return appointment

    def _status_of(self, appointment_id: str) -> AppointmentStatus | None:
        appointment = self._store.get_appointment(appointment_id)
        return appointment.status if appointment else None

    def _notify(self, kind: NotificationKind, appointment: Appointment) -> None:
        if self._notifier is None:
            return
        business = self._store.get_business(appointment.business_id)
        if business is None:
            return
        self._notifier.notify(kind, business, appointment)

    def _sync(self, action: SyncAction, appointment: Appointment, event_id: str | None = None) -> None:
        if self._outbox is None:
            return
        self._outbox.enqueue(SyncTask(action=action, appointment_id=appointment.id, event_id=event_id))

    # ── Calendar settings ────────────────────────────────────────────

    def set_calendar_enabled(
        self, business_id: str, enabled: bool, calendar_id: str | None = None,
    ) -> Business:
        changes: dict[str, Any] = {"calendar_enabled": enabled}
        if calendar_id:
            changes["calendar_id"] = calendar_id
        business = self._store.update_business(business_id, **changes)
        logger.info(
            "Calendar sync %s for business %s",
            "enabled" if enabled else "disabled", business_id,
        )
        return business

    def test_calendar_connection(self, business_id: str) -> dict[str, Any]:
        """Check the owner's calendar linkage.  Raises ``ExternalServiceError``."""
        business = self.get_business(business_id)
        if self._calendar is None:
            raise ExternalServiceError("Calendar sync is not configured")
        return self._calendar.test_connection(business)
