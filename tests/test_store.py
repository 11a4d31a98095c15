"""Tests for the in-memory store and the conversation store."""

from __future__ import annotations

import json

import pydantic
import pytest

from appointment_agent.errors import ConflictError, NotFoundError
from appointment_agent.models import Appointment, AppointmentStatus, Customer
from appointment_agent.services.store import ConversationStore, InMemoryStore


def _appointment(start: str = "2025-01-06T09:00") -> Appointment:
    return Appointment(
        business_id="biz-1", customer=Customer(name="Test"), start_time=start, service_name="Haircut",
    )


class TestBusinesses:
    def test_lookup_by_subdomain(self, store):
        assert store.get_business_by_subdomain("bella").id == "biz-1"
        assert store.get_business_by_subdomain("missing") is None

    def test_returned_records_are_copies(self, store):
        business = store.get_business("biz-1")
        business.name = "Changed"
        assert store.get_business("biz-1").name == "Salon Bella"

    def test_update_business_revalidates(self, store):
        with pytest.raises(pydantic.ValidationError):
            store.update_business(
                "biz-1", availability=[{"day": "monday", "slots": [{"start": "10:00", "end": "09:00"}]}],
            )
        monday = store.get_business("biz-1").availability[0]
        assert [r.start for r in monday.slots] == ["09:00", "15:00"]

    def test_update_unknown_business(self, store):
        with pytest.raises(NotFoundError):
            store.update_business("nope", name="X")

    def test_load_businesses_from_seed_file(self, tmp_path, business):
        seed = tmp_path / "seed.json"
        seed.write_text(json.dumps([business.model_dump(mode="json")]), encoding="utf-8")
        store = InMemoryStore()
        assert store.load_businesses(seed) == 1
        assert store.get_business("biz-1").services[0].name == "Haircut"


class TestAppointments:
    def test_insert_and_list_sorted(self, store):
        store.insert_appointment(_appointment("2025-01-06T11:00"))
        store.insert_appointment(_appointment("2025-01-06T09:00"))
        starts = [a.start_time for a in store.list_appointments("biz-1")]
        assert starts == ["2025-01-06T09:00", "2025-01-06T11:00"]

    def test_list_filters_day_and_cancelled(self, store):
        kept = store.insert_appointment(_appointment("2025-01-06T09:00"))
        gone = store.insert_appointment(_appointment("2025-01-06T10:00"))
        store.insert_appointment(_appointment("2025-01-07T09:00"))
        store.update_appointment(gone.id, status=AppointmentStatus.CANCELLED)

        assert [a.id for a in store.list_appointments("biz-1", day="2025-01-06")] == [kept.id]
        assert len(store.list_appointments("biz-1", day="2025-01-06", include_cancelled=True)) == 2

    def test_check_runs_against_active_appointments(self, store):
        store.insert_appointment(_appointment())
        seen = []

        def check(existing):
            seen.extend(existing)
            raise ConflictError("taken")

        with pytest.raises(ConflictError):
            store.insert_appointment(_appointment(), check=check)
        assert len(seen) == 1
        assert len(store.list_appointments("biz-1")) == 1

    def test_update_check_excludes_self(self, store):
        appt = store.insert_appointment(_appointment())
        seen = []
        store.update_appointment(appt.id, check=seen.extend, notes="x")
        assert seen == []

    def test_update_unknown_appointment(self, store):
        with pytest.raises(NotFoundError):
            store.update_appointment("missing", notes="x")

    def test_lookup_by_cancellation_token(self, store):
        appt = store.insert_appointment(_appointment())
        other = store.insert_appointment(_appointment("2025-01-06T11:00"))
        assert appt.cancellation_token != other.cancellation_token
        assert store.get_appointment_by_token(appt.cancellation_token).id == appt.id
        assert store.get_appointment_by_token("nope") is None
        assert store.get_appointment_by_token("ñ") is None

    def test_token_survives_updates(self, store):
        appt = store.insert_appointment(_appointment())
        updated = store.update_appointment(appt.id, status=AppointmentStatus.CONFIRMED)
        assert updated.cancellation_token == appt.cancellation_token


class TestConversationStore:
    def test_append_returns_history(self):
        conversations = ConversationStore()
        conversations.append("biz-1", 42, "user", "hi")
        history = conversations.append("biz-1", 42, "assistant", "hello")
        assert [(t.role, t.content) for t in history] == [("user", "hi"), ("assistant", "hello")]

    def test_history_is_capped(self):
        conversations = ConversationStore(max_turns=20)
        for i in range(25):
            conversations.append("biz-1", 42, "user", f"m{i}")
        history = conversations.history("biz-1", 42)
        assert len(history) == 20
        assert history[0].content == "m5"

    def test_chats_are_isolated_per_business(self):
        conversations = ConversationStore()
        conversations.append("biz-1", 42, "user", "a")
        conversations.append("biz-2", 42, "user", "b")
        assert [t.content for t in conversations.history("biz-1", 42)] == ["a"]

    def test_clear(self):
        conversations = ConversationStore()
        conversations.append("biz-1", 42, "user", "a")
        conversations.clear("biz-1", 42)
        assert conversations.history("biz-1", 42) == []
