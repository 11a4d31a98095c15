"""Shared test fixtures for the appointment agent test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("CLERK_SECRET_KEY", "test-clerk-secret-456")
    os.environ.setdefault("METRICS_ENABLED", "false")


@pytest.fixture
def business():
    """A salon open Monday 09:00-13:00 and 15:00-19:00, Saturday 10:00-14:00."""
    from appointment_agent.models import Business

    return Business.model_validate(
        {
            "id": "biz-1",
            "owner_id": "user_owner_1",
            "name": "Salon Bella",
            "description": "Hair and beauty studio.",
            "subdomain": "bella",
            "locale": "en",
            "services": [
                {"id": "svc-cut", "name": "Haircut", "duration_minutes": 30, "price": 25},
                {"id": "svc-color", "name": "Coloring", "duration_minutes": 90, "price": 70},
            ],
            "availability": [
                {
                    "day": "monday",
                    "slots": [
                        {"start": "09:00", "end": "13:00"},
                        {"start": "15:00", "end": "19:00"},
                    ],
                },
                {"day": "saturday", "slots": [{"start": "10:00", "end": "14:00"}]},
            ],
            "calendar_enabled": True,
            "calendar_id": "salon@example.com",
            "telegram_enabled": True,
            "telegram_bot_token": "123:bot-token",
        }
    )


@pytest.fixture
def store(business):
    from appointment_agent.services.store import InMemoryStore

    store = InMemoryStore()
    store.save_business(business)
    return store


@pytest.fixture
def guard(store):
    from appointment_agent.services.scheduling import AppointmentGuard

    return AppointmentGuard(store)


@pytest.fixture
def customer():
    from appointment_agent.models import Customer

    return Customer(name="Ana Pérez", email="ana@example.com", phone="+34600000000")


@pytest.fixture
def mock_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
