"""Tests for the booking service and the LLM-facing booking tools."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from appointment_agent.errors import (
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
)
from appointment_agent.models import AppointmentStatus
from appointment_agent.services.booking import BookingService
from appointment_agent.services.calendar_sync import SyncAction
from appointment_agent.services.notifications import NotificationKind
from appointment_agent.tools.booking import build_booking_tools, tool_failure, validate_email


@pytest.fixture
def outbox():
    return MagicMock()


@pytest.fixture
def booking(store, guard, outbox):
    return BookingService(store, guard, outbox=outbox)


@pytest.fixture
def tools(booking, business):
    return {t.name: t for t in build_booking_tools(booking, business)}


# ── Email validation ─────────────────────────────────────────────────


class TestValidateEmail:
    @pytest.mark.parametrize("email", ["ana@example.com", "john.doe+tag@mail.co.uk", None, "", "  "])
    def test_valid_or_missing(self, email):
        assert validate_email(email) is None

    @pytest.mark.parametrize("email", ["ana@", "ana.example.com", "ana@example", "a b@example.com"])
    def test_invalid(self, email):
        assert "does not look like a valid email" in validate_email(email)


# ── Booking service ──────────────────────────────────────────────────


class TestBookingService:
    def test_create_enqueues_create(self, booking, outbox, customer):
        appt = booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        task = outbox.enqueue.call_args[0][0]
        assert task.action is SyncAction.CREATE
        assert task.appointment_id == appt.id

    def test_rejected_booking_enqueues_nothing(self, booking, outbox, customer):
        booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        outbox.reset_mock()
        with pytest.raises(ConflictError):
            booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        outbox.enqueue.assert_not_called()

    def test_cancel_enqueues_delete(self, booking, outbox, customer):
        appt = booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        booking.cancel_appointment(appt.id)
        assert outbox.enqueue.call_args[0][0].action is SyncAction.DELETE

    def test_reschedule_enqueues_update(self, booking, outbox, customer):
        appt = booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        booking.reschedule_appointment(appt.id, "2025-01-06T10:00")
        assert outbox.enqueue.call_args[0][0].action is SyncAction.UPDATE

    def test_enable_calendar_with_custom_id(self, booking):
        business = booking.set_calendar_enabled("biz-1", True, calendar_id="team@example.com")
        assert business.calendar_enabled is True
        assert business.calendar_id == "team@example.com"

    def test_test_connection_without_adapter(self, booking):
        with pytest.raises(ExternalServiceError):
            booking.test_calendar_connection("biz-1")


class TestCustomerNotifications:
    @pytest.fixture
    def notifier(self):
        return MagicMock()

    @pytest.fixture
    def booking(self, store, guard, outbox, notifier):
        return BookingService(store, guard, outbox=outbox, notifier=notifier)

    def test_booking_itself_sends_nothing(self, booking, notifier, customer):
        booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        notifier.notify.assert_not_called()

    def test_confirm_emails_once(self, booking, notifier, customer):
        appt = booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        booking.confirm_appointment(appt.id, owner_note="Bring ID")
        booking.confirm_appointment(appt.id)

        notifier.notify.assert_called_once()
        kind, business, sent = notifier.notify.call_args[0]
        assert kind is NotificationKind.CONFIRMED
        assert business.id == "biz-1"
        assert sent.owner_note == "Bring ID"

    def test_cancel_emails_cancelled(self, booking, notifier, customer):
        appt = booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        booking.cancel_appointment(appt.id, owner_note="Closed for holidays")
        kind, _, sent = notifier.notify.call_args[0]
        assert kind is NotificationKind.CANCELLED
        assert sent.owner_note == "Closed for holidays"

    def test_reschedule_emails_previous_time(self, booking, notifier, customer):
        appt = booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        booking.reschedule_appointment(appt.id, "2025-01-06T11:00")
        kind, _, sent = notifier.notify.call_args[0]
        assert kind is NotificationKind.RESCHEDULED
        assert sent.rescheduled_from == "2025-01-06T09:00"
        assert sent.start_time == "2025-01-06T11:00"

    def test_failed_transition_sends_nothing(self, booking, notifier, customer):
        appt = booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        booking.cancel_appointment(appt.id)
        notifier.reset_mock()
        with pytest.raises(InvalidTransitionError):
            booking.confirm_appointment(appt.id)
        notifier.notify.assert_not_called()

    def test_cancel_by_token(self, booking, notifier, outbox, customer):
        appt = booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        cancelled = booking.cancel_by_token(appt.cancellation_token)
        assert cancelled.id == appt.id
        assert cancelled.status == AppointmentStatus.CANCELLED
        assert outbox.enqueue.call_args[0][0].action is SyncAction.DELETE
        assert notifier.notify.call_args[0][0] is NotificationKind.CANCELLED

    def test_unknown_token(self, booking):
        with pytest.raises(NotFoundError):
            booking.cancel_by_token("not-a-token")


# ── Tools ────────────────────────────────────────────────────────────


class TestGetServicesTool:
    def test_lists_catalog(self, tools):
        result = json.loads(tools["get_services"].invoke({}))
        assert result["businessName"] == "Salon Bella"
        assert [s["name"] for s in result["services"]] == ["Haircut", "Coloring"]
        assert result["services"][0]["durationMinutes"] == 30


class TestGetAvailableSlotsTool:
    def test_returns_only_free_slots_and_day_name(self, tools, booking, customer):
        booking.create_appointment("biz-1", customer, "2025-01-06T10:00", "Haircut")
        result = json.loads(tools["get_available_slots"].invoke({"date": "2025-01-06"}))
        assert result["dayName"] == "Monday"
        assert result["availableSlots"] == [{"start": "15:00", "end": "19:00"}]

    def test_closed_day_returns_empty_list(self, tools):
        result = json.loads(tools["get_available_slots"].invoke({"date": "2025-01-07"}))
        assert result["dayName"] == "Tuesday"
        assert result["availableSlots"] == []

    def test_bad_date_returns_failure(self, tools):
        result = json.loads(tools["get_available_slots"].invoke({"date": "next monday"}))
        assert result["success"] is False
        assert result["error_type"] == "validation"


class TestCreateAppointmentTool:
    def test_success(self, tools, store):
        result = json.loads(
            tools["create_appointment"].invoke(
                {
                    "customerName": "Ana Pérez",
                    "serviceName": "haircut",
                    "appointmentTime": "2025-01-06T09:00",
                    "customerEmail": "ana@example.com",
                }
            )
        )
        assert result["success"] is True
        assert result["details"]["serviceName"] == "Haircut"
        stored = store.get_appointment(result["appointmentId"])
        assert stored.customer.email == "ana@example.com"

    def test_invalid_email_is_rejected_before_booking(self, tools, store):
        result = json.loads(
            tools["create_appointment"].invoke(
                {
                    "customerName": "Ana",
                    "serviceName": "Haircut",
                    "appointmentTime": "2025-01-06T09:00",
                    "customerEmail": "ana@",
                }
            )
        )
        assert result["success"] is False
        assert result["error_type"] == "validation"
        assert store.list_appointments("biz-1") == []

    def test_conflict_is_reported(self, tools):
        args = {"customerName": "Ana", "serviceName": "Haircut", "appointmentTime": "2025-01-06T09:00"}
        tools["create_appointment"].invoke(args)
        result = json.loads(tools["create_appointment"].invoke(args))
        assert result == {"success": False, "error_type": "conflict", "error": "Slot already booked"}

    def test_outside_hours_is_reported(self, tools):
        result = json.loads(
            tools["create_appointment"].invoke(
                {"customerName": "Ana", "serviceName": "Haircut", "appointmentTime": "2025-01-06T14:00"}
            )
        )
        assert result["error"] == "Time slot not available"

    def test_blank_name_is_rejected(self, tools):
        result = json.loads(
            tools["create_appointment"].invoke(
                {"customerName": "  ", "serviceName": "Haircut", "appointmentTime": "2025-01-06T09:00"}
            )
        )
        assert result["success"] is False
        assert result["error_type"] == "validation"


class TestToolFailure:
    def test_unknown_exception_is_internal(self):
        assert json.loads(tool_failure(RuntimeError("x")))["error_type"] == "internal"
