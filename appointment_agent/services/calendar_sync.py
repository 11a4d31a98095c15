"""Mirrors appointments into the business owner's external calendar.

``CalendarSyncAdapter`` performs one calendar operation for one appointment.
``CalendarSyncOutbox`` decouples those operations from the booking path:
state changes enqueue a ``SyncTask`` and a worker thread applies it later, so
a slow or failing calendar API never fails or delays a booking.

Event times are civil times in the calendar's own timezone.  The start is
sent as stored (seconds appended) and the end is computed with date-component
arithmetic; both carry an explicit ``timeZone`` so the calendar API does the
only timezone conversion.

Each appointment maps to one event id derived from the appointment id
(:func:`event_id_for`).  An insert whose response was lost leaves the event
in the calendar without the id being stored; the next create or update for
that appointment sends the same id, gets ``409``, and patches the existing
event instead of adding a second one.
"""

from __future__ import annotations

import base64
import logging
import queue
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from appointment_agent.errors import CalendarAPIError, ExternalServiceError, UserNotConnectedError
from appointment_agent.models import Appointment, Business, calculate_end_time, with_seconds
from appointment_agent.services.calendar_client import GoogleCalendarClient, TokenProvider
from appointment_agent.services.store import InMemoryStore

logger = logging.getLogger(__name__)

MAX_RECORDED_FAILURES = 100
_DUPLICATE_STATUS = 409


def event_id_for(appointment: Appointment) -> str:
    """Calendar event id for *appointment*: lowercase base32hex, no padding."""
    encoded = base64.b32hexencode(appointment.id.encode("utf-8")).decode("ascii")
    return encoded.rstrip("=").lower()


def build_event_body(business: Business, appointment: Appointment, timezone: str) -> dict[str, Any]:
    """Calendar event payload for *appointment* in *timezone*."""
    duration = business.service_duration(appointment.service_name)
    start = with_seconds(appointment.start_time)
    end = calculate_end_time(start, duration)

    lines = [f"Customer: {appointment.customer.name}"]
    if appointment.customer.email:
        lines.append(f"Email: {appointment.customer.email}")
    if appointment.customer.phone:
        lines.append(f"Phone: {appointment.customer.phone}")
    if appointment.notes:
        lines.append(f"Notes: {appointment.notes}")
    lines.append(f"Status: {appointment.status.value}")

    return {
        "summary": f"{appointment.service_name} - {appointment.customer.name}",
        "description": "\n".join(lines),
        "start": {"dateTime": start, "timeZone": timezone},
        "end": {"dateTime": end, "timeZone": timezone},
    }


class CalendarSyncAdapter:
    """Create, update and delete calendar events for appointments."""

    def __init__(
        self,
        store: InMemoryStore,
        token_provider: TokenProvider,
        client_factory: Callable[[str], GoogleCalendarClient] = GoogleCalendarClient,
    ) -> None:
        self._store = store
        self._token_provider = token_provider
        self._client_factory = client_factory

    def _client_for(self, business: Business) -> GoogleCalendarClient:
        if not business.owner_id:
            raise UserNotConnectedError(f"Business {business.id} has no calendar owner")
        token = self._token_provider.get_access_token(business.owner_id)
        return self._client_factory(token)

    def create_event(self, business: Business, appointment: Appointment) -> str:
        """Insert the appointment's event and store its id on the appointment.

        The insert is sent once.  ``409`` means an earlier insert with the
        same id reached the calendar, so that event is patched instead.
        """
        event_id = event_id_for(appointment)
        with self._client_for(business) as client:
            timezone = client.get_timezone(business.calendar_id)
            body = build_event_body(business, appointment, timezone)
            try:
                event = client.insert_event(
                    business.calendar_id,
                    {**body, "id": event_id, "reminders": {"useDefault": True}},
                )
                event_id = event.get("id") or event_id
                logger.info("Created calendar event %s for appointment %s", event_id, appointment.id)
            except CalendarAPIError as exc:
                if exc.status_code != _DUPLICATE_STATUS:
                    raise
                logger.warning(
                    "Calendar event %s already exists for appointment %s; updating it",
                    event_id, appointment.id,
                )
                client.patch_event(business.calendar_id, event_id, body)

        self._store.update_appointment(appointment.id, external_calendar_event_id=event_id)
        return event_id

    def update_event(self, business: Business, appointment: Appointment) -> str:
        """Patch the appointment's event, creating it if no id was recorded."""
        if not appointment.external_calendar_event_id:
            return self.create_event(business, appointment)

        with self._client_for(business) as client:
            timezone = client.get_timezone(business.calendar_id)
            client.patch_event(
                business.calendar_id,
                appointment.external_calendar_event_id,
                build_event_body(business, appointment, timezone),
            )
        logger.info(
            "Updated calendar event %s for appointment %s",
            appointment.external_calendar_event_id, appointment.id,
        )
        return appointment.external_calendar_event_id

    def delete_event(self, business: Business, event_id: str) -> None:
        with self._client_for(business) as client:
            client.delete_event(business.calendar_id, event_id)
        logger.info("Deleted calendar event %s", event_id)

    def test_connection(self, business: Business) -> dict[str, Any]:
        """Read the business calendar's metadata; raises on any failure."""
        with self._client_for(business) as client:
            calendar = client.get_calendar(business.calendar_id)
        return {
            "calendar_id": business.calendar_id,
            "summary": calendar.get("summary"),
            "timezone": calendar.get("timeZone") or "UTC",
        }


# ── Outbox ──────────────────────────────────────────────────────────


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class SyncTask:
    action: SyncAction
    appointment_id: str
    # Captured at enqueue time for deletes.
    event_id: str | None = None


@dataclass
class SyncFailure:
    task: SyncTask
    error: str
    error_type: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class CalendarSyncOutbox:
    """FIFO queue of calendar operations, applied off the request path.

    Tasks for one appointment are applied in enqueue order, so a ``delete``
    that follows a ``create`` sees the event id the create stored.
    """

    def __init__(self, store: InMemoryStore, adapter: CalendarSyncAdapter) -> None:
        self._store = store
        self._adapter = adapter
        self._queue: queue.Queue[SyncTask | None] = queue.Queue()
        self._failures: deque[SyncFailure] = deque(maxlen=MAX_RECORDED_FAILURES)
        self._worker: threading.Thread | None = None

    @property
    def failures(self) -> list[SyncFailure]:
        return list(self._failures)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, task: SyncTask) -> None:
        logger.debug("Queued calendar %s for appointment %s", task.action.value, task.appointment_id)
        self._queue.put(task)

    # ── Worker lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, daemon=True, name="calendar-sync")
        self._worker.start()
        logger.info("Calendar sync worker started")

    def stop(self, timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        self._queue.put(None)
        self._worker.join(timeout)
        self._worker = None
        logger.info("Calendar sync worker stopped")

    def _run(self) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is None:
                    return
                self.process(task)
            finally:
                self._queue.task_done()

    def drain(self) -> int:
        """Apply every queued task on the calling thread.  Returns count applied."""
        processed = 0
        while True:
            try:
                task = self._queue.get_nowait()
            except queue.Empty:
                return processed
            try:
                if task is not None:
                    self.process(task)
                    processed += 1
            finally:
                self._queue.task_done()

    # ── Task application ─────────────────────────────────────────────

    def process(self, task: SyncTask) -> bool:
        """Apply *task*.  Never raises; failures are logged and recorded."""
        try:
            self._apply(task)
            return True
        except ExternalServiceError as exc:
            logger.error(
                "Calendar %s failed for appointment %s: %s",
                task.action.value, task.appointment_id, exc,
            )
            self._record(task, exc)
        except Exception as exc:
            logger.exception(
                "Unexpected error during calendar %s for appointment %s",
                task.action.value, task.appointment_id,
            )
            self._record(task, exc)
        return False

    def _record(self, task: SyncTask, exc: Exception) -> None:
        self._failures.append(
            SyncFailure(task=task, error=str(exc), error_type=type(exc).__name__)
        )

    def _apply(self, task: SyncTask) -> None:
        appointment = self._store.get_appointment(task.appointment_id)
        if appointment is None:
            logger.warning("Calendar sync skipped: appointment %s not found", task.appointment_id)
            return
        business = self._store.get_business(appointment.business_id)
        if business is None or not business.calendar_enabled:
            logger.debug("Calendar sync disabled for business %s", appointment.business_id)
            return

        if task.action is SyncAction.CREATE:
            if appointment.external_calendar_event_id or not appointment.is_active:
                return
            self._adapter.create_event(business, appointment)

        elif task.action is SyncAction.UPDATE:
            if not appointment.is_active:
                return
            self._adapter.update_event(business, appointment)

        elif task.action is SyncAction.DELETE:
            # Without a stored id the event may still exist from an insert
            # whose response was lost; deleting a missing event is a no-op.
            event_id = (
                task.event_id
                or appointment.external_calendar_event_id
                or event_id_for(appointment)
            )
            self._adapter.delete_event(business, event_id)
            self._store.update_appointment(appointment.id, external_calendar_event_id=None)
