"""Appointment agent: conversational booking for service businesses.

Architecture Overview
=====================

A business publishes a weekly availability template and a service catalog.
Customers book through a chat widget or a Telegram bot; a language model
drives the conversation and books through three tools.

1. **Slot resolver / appointment guard** (``services/scheduling.py``) turn the
   weekly template plus existing appointments into bookable slots, and accept
   or reject new appointments.
2. **Booking agent** (``agent.py``) is a LangGraph state machine around a
   Claude model with ``get_services``, ``get_available_slots`` and
   ``create_appointment`` tools, with a bounded number of tool rounds.
3. **Calendar sync** (``services/calendar_sync.py``) mirrors appointments
   into the owner's Google Calendar from a background outbox, so calendar
   failures never fail a booking.
4. **Telegram channel** (``channels/telegram.py``) acknowledges webhooks at
   once and replies from a background task.

Owner confirmations, cancellations and reschedules email the customer
(``services/notifications.py``) with a link to cancel.

Key Design Decisions
--------------------
- **Civil time**: start times are naive ``YYYY-MM-DDTHH:MM`` strings in the
  business's local time; only the calendar API applies a timezone.
- **Atomic booking**: the conflict check and the insert run under the
  store lock.
- **Stateless agent**: callers pass the conversation history every turn.

Package Structure
-----------------
- ``appointment_agent/models.py``: domain models
- ``appointment_agent/errors.py``: error taxonomy
- ``appointment_agent/config.py``: configuration from environment variables
- ``appointment_agent/prompts.py``: system prompt
- ``appointment_agent/agent.py``: booking agent
- ``appointment_agent/server.py``: FastAPI application
- ``appointment_agent/main.py``: CLI chat interface
- ``appointment_agent/services/``: store, scheduling, booking, calendar,
  customer emails, metrics
- ``appointment_agent/tools/``: LangChain tools
- ``appointment_agent/channels/``: Telegram
- ``appointment_agent/api/``: FastAPI routes and Pydantic schemas
"""
