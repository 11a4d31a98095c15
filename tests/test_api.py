"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from appointment_agent.errors import CalendarAPIError, ChannelError, TelegramAPIError
from appointment_agent.models import Weekday
from appointment_agent.services.booking import BookingService
from appointment_agent.services.rate_limit import FixedWindowRateLimiter
from appointment_agent.server import app

STATE_NAMES = (
    "store", "booking", "agent", "rate_limiter", "telegram", "telegram_client_factory",
)


@pytest.fixture
def mock_agent():
    agent = MagicMock()
    agent.respond.return_value = "Hi! We have Haircut and Coloring."
    return agent


@pytest.fixture
def calendar():
    return MagicMock()


@pytest.fixture
def booking(store, guard, calendar):
    return BookingService(store, guard, calendar=calendar)


@pytest.fixture
def telegram_client():
    client = MagicMock()
    client.__enter__.return_value = client
    return client


@pytest.fixture
def client(store, booking, mock_agent, telegram_client):
    """Test client with app state wired the way the lifespan does it."""
    app.state.store = store
    app.state.booking = booking
    app.state.agent = mock_agent
    app.state.rate_limiter = FixedWindowRateLimiter(3)
    app.state.telegram = MagicMock()
    app.state.telegram_client_factory = lambda token: telegram_client
    yield TestClient(app)
    for name in STATE_NAMES:
        setattr(app.state, name, None)


def _chat(session_id="sess-1", subdomain="bella", text="What services do you offer?"):
    return {
        "subdomain": subdomain,
        "session_id": session_id,
        "messages": [{"role": "user", "content": text}],
    }


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "appointment-agent"}


class TestRootEndpoint:
    def test_root_lists_docs(self, client):
        data = client.get("/").json()
        assert data["docs"] == "/docs"
        assert data["health"] == "/api/health"


class TestChatEndpoint:
    def test_chat_returns_reply(self, client, mock_agent):
        response = client.post("/api/chat", json=_chat())
        assert response.status_code == 200
        assert response.json() == {"reply": "Hi! We have Haircut and Coloring.", "session_id": "sess-1"}

        business, history = mock_agent.respond.call_args[0]
        assert business.subdomain == "bella"
        assert history[0].content == "What services do you offer?"

    def test_unknown_subdomain(self, client, mock_agent):
        response = client.post("/api/chat", json=_chat(subdomain="nope"))
        assert response.status_code == 404
        mock_agent.respond.assert_not_called()

    def test_empty_history_is_rejected(self, client):
        payload = _chat()
        payload["messages"] = []
        assert client.post("/api/chat", json=payload).status_code == 422

    def test_missing_session_is_rejected(self, client):
        payload = _chat()
        del payload["session_id"]
        assert client.post("/api/chat", json=payload).status_code == 422

    def test_rate_limit_per_session(self, client):
        for _ in range(3):
            assert client.post("/api/chat", json=_chat()).status_code == 200

        response = client.post("/api/chat", json=_chat())
        assert response.status_code == 429
        assert "up to 3 messages per hour" in response.json()["detail"]

        assert client.post("/api/chat", json=_chat(session_id="sess-2")).status_code == 200

    def test_agent_error_is_not_leaked(self, client, mock_agent):
        mock_agent.respond.side_effect = RuntimeError("LLM exploded")
        response = client.post("/api/chat", json=_chat())
        assert response.status_code == 500
        detail = response.json()["detail"]
        assert "LLM exploded" not in detail
        assert "internal error" in detail.lower()

    def test_request_id_is_echoed(self, client):
        response = client.post("/api/chat", json=_chat(), headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"

    def test_returns_503_before_startup(self, client):
        app.state.agent = None
        response = client.post("/api/chat", json=_chat())
        assert response.status_code == 503
        assert "starting up" in response.json()["detail"].lower()


class TestTelegramWebhook:
    def test_update_schedules_job(self, client):
        job = MagicMock()
        app.state.telegram.handle_update.return_value = job

        response = client.post("/api/telegram/webhook/biz-1", json={"message": {"chat": {"id": 1}}})

        assert response.status_code == 200
        assert response.text == "OK"
        app.state.telegram.handle_update.assert_called_once_with("biz-1", {"message": {"chat": {"id": 1}}})
        job.assert_called_once()

    def test_malformed_body_still_returns_ok(self, client):
        response = client.post(
            "/api/telegram/webhook/biz-1",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 200
        assert response.text == "OK"
        app.state.telegram.handle_update.assert_not_called()

    def test_channel_error_still_returns_ok(self, client):
        app.state.telegram.handle_update.side_effect = ChannelError("no chat id")
        response = client.post("/api/telegram/webhook/biz-1", json={"message": {}})
        assert response.status_code == 200

    def test_register_webhook(self, client, telegram_client):
        response = client.post(
            "/api/businesses/biz-1/telegram/webhook",
            json={"url": "https://example.com/api/telegram/webhook/biz-1"},
        )
        assert response.status_code == 200
        telegram_client.set_webhook.assert_called_once_with(
            "https://example.com/api/telegram/webhook/biz-1"
        )

    def test_register_webhook_failure(self, client, telegram_client):
        telegram_client.set_webhook.side_effect = TelegramAPIError("Unauthorized", status_code=401)
        response = client.post("/api/businesses/biz-1/telegram/webhook", json={"url": "https://x.test"})
        assert response.status_code == 502

    def test_webhook_info(self, client, telegram_client):
        telegram_client.get_webhook_info.return_value = {"url": "https://x.test", "pending_update_count": 0}
        response = client.get("/api/businesses/biz-1/telegram/webhook")
        assert response.json()["url"] == "https://x.test"


class TestOwnerAvailability:
    def test_update_availability(self, client, store):
        response = client.put(
            "/api/businesses/biz-1/availability",
            json={"availability": [{"day": "Martes", "slots": [{"start": "10:00", "end": "12:00"}]}]},
        )
        assert response.status_code == 200
        assert response.json()["availability"][0]["day"] == "tuesday"
        assert "telegram_bot_token" not in response.json()
        assert store.get_business("biz-1").ranges_for(Weekday.TUESDAY)[0].start == "10:00"

    def test_overlapping_ranges_are_rejected(self, client):
        response = client.put(
            "/api/businesses/biz-1/availability",
            json={
                "availability": [
                    {
                        "day": "monday",
                        "slots": [{"start": "09:00", "end": "12:00"}, {"start": "11:00", "end": "13:00"}],
                    }
                ]
            },
        )
        assert response.status_code == 422

    def test_unknown_business(self, client):
        response = client.put("/api/businesses/nope/availability", json={"availability": []})
        assert response.status_code == 404

    def test_update_services(self, client, store):
        response = client.put(
            "/api/businesses/biz-1/services",
            json={"services": [{"name": "Beard trim", "duration_minutes": 15}]},
        )
        assert response.status_code == 200
        assert [s.name for s in store.get_business("biz-1").services] == ["Beard trim"]

    def test_slots_use_camel_case_flag(self, client, booking, customer):
        booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")
        response = client.get("/api/businesses/biz-1/slots", params={"date": "2025-01-06"})
        assert response.status_code == 200
        data = response.json()
        assert data["day_name"] == "Monday"
        assert data["slots"][0] == {"start": "09:00", "end": "13:00", "isBooked": True}

    def test_slots_bad_date(self, client):
        response = client.get("/api/businesses/biz-1/slots", params={"date": "06/01/2025"})
        assert response.status_code == 400


class TestOwnerAppointments:
    @pytest.fixture
    def appointment(self, booking, customer):
        return booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")

    def test_confirm(self, client, appointment):
        response = client.post(
            f"/api/appointments/{appointment.id}/confirm", json={"owner_note": "See you!"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"
        assert response.json()["owner_note"] == "See you!"

    def test_confirm_without_body(self, client, appointment):
        assert client.post(f"/api/appointments/{appointment.id}/confirm").status_code == 200

    def test_confirm_cancelled_is_rejected(self, client, appointment):
        client.post(f"/api/appointments/{appointment.id}/cancel")
        response = client.post(f"/api/appointments/{appointment.id}/confirm")
        assert response.status_code == 400

    def test_unknown_appointment(self, client):
        assert client.post("/api/appointments/missing/cancel").status_code == 404

    def test_reschedule_conflict(self, client, appointment, booking, customer):
        booking.create_appointment("biz-1", customer, "2025-01-06T10:00", "Haircut")
        response = client.post(
            f"/api/appointments/{appointment.id}/reschedule",
            json={"new_start_time": "2025-01-06T10:00"},
        )
        assert response.status_code == 409

    def test_reschedule(self, client, appointment):
        response = client.post(
            f"/api/appointments/{appointment.id}/reschedule",
            json={"new_start_time": "2025-01-06T11:00"},
        )
        assert response.status_code == 200
        assert response.json()["start_time"] == "2025-01-06T11:00"
        assert response.json()["rescheduled_from"] == "2025-01-06T09:00"

    def test_pending_lists_future_unconfirmed(self, client, appointment, booking, customer):
        # 2030-01-07 is a Monday.
        waiting = booking.create_appointment("biz-1", customer, "2030-01-07T10:00", "Haircut")
        confirmed = booking.create_appointment("biz-1", customer, "2030-01-07T09:00", "Haircut")
        booking.confirm_appointment(confirmed.id)

        response = client.get("/api/businesses/biz-1/appointments/pending")
        assert response.status_code == 200
        assert response.json() == [
            {
                "id": waiting.id,
                "customer_name": "Ana Pérez",
                "customer_email": "ana@example.com",
                "customer_phone": "+34600000000",
                "start_time": "2030-01-07T10:00",
                "service_name": "Haircut",
                "status": "pending",
                "notes": None,
            }
        ]

    def test_pending_unknown_business(self, client):
        assert client.get("/api/businesses/nope/appointments/pending").status_code == 404


class TestCancelByToken:
    @pytest.fixture
    def appointment(self, booking, customer):
        return booking.create_appointment("biz-1", customer, "2025-01-06T09:00", "Haircut")

    def test_lookup(self, client, appointment):
        response = client.get(f"/api/appointments/by-token/{appointment.cancellation_token}")
        assert response.status_code == 200
        assert response.json() == {
            "business_name": "Salon Bella",
            "customer_name": "Ana Pérez",
            "service_name": "Haircut",
            "start_time": "2025-01-06T09:00",
            "status": "pending",
        }

    def test_cancel(self, client, appointment, store):
        response = client.post(f"/api/appointments/by-token/{appointment.cancellation_token}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert store.get_appointment(appointment.id).status.value == "cancelled"

    def test_cancel_twice_is_idempotent(self, client, appointment):
        url = f"/api/appointments/by-token/{appointment.cancellation_token}/cancel"
        client.post(url)
        assert client.post(url).status_code == 200

    def test_unknown_token(self, client, appointment):
        assert client.get("/api/appointments/by-token/wrong").status_code == 404
        assert client.post("/api/appointments/by-token/wrong/cancel").status_code == 404


class TestOwnerCalendar:
    def test_enable_with_calendar_id(self, client, store):
        store.update_business("biz-1", calendar_enabled=False)
        response = client.post(
            "/api/businesses/biz-1/calendar/enable", json={"calendar_id": "team@example.com"},
        )
        assert response.status_code == 200
        assert response.json()["calendar_enabled"] is True
        assert response.json()["calendar_id"] == "team@example.com"

    def test_disable(self, client):
        response = client.post("/api/businesses/biz-1/calendar/disable")
        assert response.json()["calendar_enabled"] is False

    def test_connection_ok(self, client, calendar):
        calendar.test_connection.return_value = {
            "calendar_id": "salon@example.com", "summary": "Salon", "timezone": "Europe/Madrid",
        }
        response = client.post("/api/businesses/biz-1/calendar/test")
        assert response.status_code == 200
        assert response.json()["connected"] is True
        assert response.json()["timezone"] == "Europe/Madrid"

    def test_connection_failure_is_bad_gateway(self, client, calendar):
        calendar.test_connection.side_effect = CalendarAPIError("Forbidden", status_code=403)
        response = client.post("/api/businesses/biz-1/calendar/test")
        assert response.status_code == 502
        assert "Forbidden" in response.json()["detail"]
