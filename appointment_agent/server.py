"""FastAPI server for the appointment agent.

Run with:
    uvicorn appointment_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from appointment_agent.agent import BookingAgent
from appointment_agent.api.routes import router
from appointment_agent.channels.telegram import TelegramChannel, TelegramClient
from appointment_agent.config import (
    CHAT_RATE_LIMIT_PER_HOUR,
    CONVERSATION_MAX_TURNS,
    CORS_ORIGINS,
    SEED_FILE,
    SERVER_HOST,
    SERVER_PORT,
    SLOT_INTERVAL_MINUTES,
)
from appointment_agent.services.booking import BookingService
from appointment_agent.services.calendar_client import ClerkTokenProvider
from appointment_agent.services.calendar_sync import CalendarSyncAdapter, CalendarSyncOutbox
from appointment_agent.services.metrics import metrics
from appointment_agent.services.notifications import AppointmentNotifier
from appointment_agent.services.rate_limit import FixedWindowRateLimiter
from appointment_agent.services.scheduling import AppointmentGuard
from appointment_agent.services.store import ConversationStore, InMemoryStore

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the store, services, agent and channels once per process."""
    store = InMemoryStore()
    if SEED_FILE:
        store.load_businesses(SEED_FILE)

    token_provider = ClerkTokenProvider()
    calendar = CalendarSyncAdapter(store, token_provider)
    outbox = CalendarSyncOutbox(store, calendar)
    guard = AppointmentGuard(store, slot_interval_minutes=SLOT_INTERVAL_MINUTES)
    notifier = AppointmentNotifier()
    if not notifier.enabled:
        logger.warning("RESEND_API_KEY not set; customer emails are disabled.")
    booking = BookingService(store, guard, outbox=outbox, calendar=calendar, notifier=notifier)
    agent = BookingAgent(booking)

    application.state.store = store
    application.state.booking = booking
    application.state.outbox = outbox
    application.state.agent = agent
    application.state.rate_limiter = FixedWindowRateLimiter(CHAT_RATE_LIMIT_PER_HOUR)
    application.state.telegram_client_factory = TelegramClient
    application.state.telegram = TelegramChannel(
        store, ConversationStore(max_turns=CONVERSATION_MAX_TURNS), agent,
    )

    outbox.start()
    logger.info("Appointment agent ready (%d businesses).", len(store.list_businesses()))
    yield
    outbox.stop()
    token_provider.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Appointment Agent",
    description=(
        "Conversational booking for service businesses: weekly availability, "
        "appointment guard, calendar sync and Telegram."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Tag each request with an ``X-Request-ID`` for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    return {
        "service": "Appointment Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting appointment agent API on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "appointment_agent.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
