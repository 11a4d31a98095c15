"""Thread-safe in-memory storage for businesses, appointments and chats.

Design decisions
────────────────
• One ``threading.Lock`` per store; FastAPI serves sync routes and background
  tasks from a thread pool, so every read-modify-write runs under it.
• Records are handed out as copies.  Callers change state only through the
  store's methods, which re-validate the merged record.
• ``insert_appointment`` / ``update_appointment`` accept a *check* callback
  that runs under the lock against the business's active appointments, so a
  conflict check and the write that depends on it cannot interleave with
  another booking in this process.
• Appointments are never deleted, only marked cancelled.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
from collections import OrderedDict
from collections.abc import Callable
from pathlib import Path
from typing import Any

from appointment_agent.errors import NotFoundError
from appointment_agent.models import Appointment, Business, ConversationTurn

logger = logging.getLogger(__name__)

ConflictCheck = Callable[[list[Appointment]], None]


class InMemoryStore:
    """Availability store plus the per-business appointment collection."""

    def __init__(self) -> None:
        self._businesses: dict[str, Business] = {}
        self._appointments: OrderedDict[str, Appointment] = OrderedDict()
        self._lock = threading.Lock()

    # ── Businesses ───────────────────────────────────────────────────

    def save_business(self, business: Business) -> Business:
        with self._lock:
            self._businesses[business.id] = business.model_copy(deep=True)
        return business

    def get_business(self, business_id: str) -> Business | None:
        with self._lock:
            business = self._businesses.get(business_id)
            return business.model_copy(deep=True) if business else None

    def get_business_by_subdomain(self, subdomain: str) -> Business | None:
        with self._lock:
            for business in self._businesses.values():
                if business.subdomain == subdomain:
                    return business.model_copy(deep=True)
        return None

    def list_businesses(self) -> list[Business]:
        with self._lock:
            return [b.model_copy(deep=True) for b in self._businesses.values()]

    def update_business(self, business_id: str, **changes: Any) -> Business:
        """Patch a business; the merged record is validated before it is stored.

        Raises:
            NotFoundError: unknown *business_id*.
            pydantic.ValidationError: the patched record is invalid.
        """
        with self._lock:
            current = self._businesses.get(business_id)
            if current is None:
                raise NotFoundError("Business not found")
            merged = Business.model_validate({**current.model_dump(), **changes})
            self._businesses[business_id] = merged
            return merged.model_copy(deep=True)

    def load_businesses(self, path: str | Path) -> int:
        """Load a JSON list of businesses (the seed file).  Returns count loaded."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        businesses = [Business.model_validate(item) for item in raw]
        for business in businesses:
            self.save_business(business)
        logger.info("Loaded %d businesses from %s", len(businesses), path)
        return len(businesses)

    # ── Appointments ─────────────────────────────────────────────────

    def get_appointment(self, appointment_id: str) -> Appointment | None:
        with self._lock:
            appointment = self._appointments.get(appointment_id)
            return appointment.model_copy(deep=True) if appointment else None

    def get_appointment_by_token(self, token: str) -> Appointment | None:
        with self._lock:
            for appointment in self._appointments.values():
                if secrets.compare_digest(appointment.cancellation_token.encode(), token.encode()):
                    return appointment.model_copy(deep=True)
        return None

    def list_appointments(
        self,
        business_id: str,
        *,
        day: str | None = None,
        include_cancelled: bool = False,
    ) -> list[Appointment]:
        """Appointments of a business ordered by start time.

        Args:
            business_id: Owning business.
            day: Optional ``YYYY-MM-DD`` filter on the start date.
            include_cancelled: Whether cancelled appointments are returned.
        """
        with self._lock:
            result = [
                a.model_copy(deep=True)
                for a in self._appointments.values()
                if a.business_id == business_id
                and (include_cancelled or a.is_active)
                and (day is None or a.day == day)
            ]
        return sorted(result, key=lambda a: a.start_time)

    def _active_for(self, business_id: str, exclude_id: str | None = None) -> list[Appointment]:
        return [
            a for a in self._appointments.values()
            if a.business_id == business_id and a.is_active and a.id != exclude_id
        ]

    def insert_appointment(
        self, appointment: Appointment, *, check: ConflictCheck | None = None,
    ) -> Appointment:
        """Insert *appointment* if *check* accepts the current active bookings."""
        with self._lock:
            if check is not None:
                check(self._active_for(appointment.business_id))
            self._appointments[appointment.id] = appointment.model_copy(deep=True)
        logger.info(
            "Stored appointment %s for business %s at %s",
            appointment.id, appointment.business_id, appointment.start_time,
        )
        return appointment

    def update_appointment(
        self,
        appointment_id: str,
        *,
        check: ConflictCheck | None = None,
        **changes: Any,
    ) -> Appointment:
        """Patch an appointment.  *check* sees every other active booking."""
        with self._lock:
            current = self._appointments.get(appointment_id)
            if current is None:
                raise NotFoundError("Appointment not found")
            if check is not None:
                check(self._active_for(current.business_id, exclude_id=appointment_id))
            updated = Appointment.model_validate({**current.model_dump(), **changes})
            self._appointments[appointment_id] = updated
            return updated.model_copy(deep=True)


class ConversationStore:
    """Bounded per-chat history used as the agent's working memory."""

    def __init__(self, max_turns: int = 20) -> None:
        self._max_turns = max_turns
        self._conversations: dict[tuple[str, int], list[ConversationTurn]] = {}
        self._lock = threading.Lock()

    def history(self, business_id: str, chat_id: int) -> list[ConversationTurn]:
        with self._lock:
            return list(self._conversations.get((business_id, chat_id), []))

    def append(
        self, business_id: str, chat_id: int, role: str, content: str,
    ) -> list[ConversationTurn]:
        """Append a turn, keep only the most recent ``max_turns``, return the history."""
        turn = ConversationTurn(role=role, content=content)
        with self._lock:
            turns = self._conversations.get((business_id, chat_id), []) + [turn]
            turns = turns[-self._max_turns:]
            self._conversations[(business_id, chat_id)] = turns
            return list(turns)

    def clear(self, business_id: str, chat_id: int) -> None:
        with self._lock:
            self._conversations[(business_id, chat_id)] = []
