"""FastAPI route definitions.

Three surfaces share one router (mounted under ``/api``):

* ``POST /chat`` for the web chat widget,
* ``POST /telegram/webhook/{business_id}`` for Telegram,
* owner endpoints that change availability, services, appointments and
  calendar settings.  Authentication happens upstream and is not checked here.
* ``/appointments/by-token/{token}`` for the cancel link emailed to
  customers; the token itself is the credential.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import date

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from appointment_agent.api.schemas import (
    AvailabilityUpdate,
    BusinessResponse,
    CalendarConnection,
    CalendarSettings,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    OwnerAction,
    PendingAppointment,
    RescheduleRequest,
    ServicesUpdate,
    SlotsResponse,
    TokenAppointment,
    UpcomingAppointment,
    WebhookRequest,
    WeekResponse,
)
from appointment_agent.errors import (
    ChannelError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    SchedulingError,
    ValidationError,
)
from appointment_agent.models import Appointment, Business

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_resource(request: Request, name: str):
    """Fetch a lifespan-initialised resource from app state (503 until ready)."""
    resource = getattr(request.app.state, name, None)
    if resource is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return resource


def _http_error(exc: SchedulingError) -> HTTPException:
    """Translate a domain error into the matching HTTP status."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ExternalServiceError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail="An internal error occurred. Please try again.")


def _business_response(business: Business) -> BusinessResponse:
    return BusinessResponse.model_validate(business.model_dump())


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse()


# ── Web chat ─────────────────────────────────────────────────────────


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Answer the last message of a web chat conversation.

    The widget sends the whole visible history each time; nothing is kept
    server-side between calls.  ``agent.respond`` blocks on the model API,
    so it runs in a worker thread.
    """
    agent = _get_resource(http_request, "agent")
    store = _get_resource(http_request, "store")
    limiter = _get_resource(http_request, "rate_limiter")
    request_id = getattr(http_request.state, "request_id", "?")

    allowed, _, retry_after = limiter.check(request.session_id)
    if not allowed:
        minutes = max(1, math.ceil(retry_after / 60))
        raise HTTPException(
            status_code=429,
            detail=(
                f"You have reached the message limit. You can send up to {limiter.limit} "
                f"messages per hour. Please try again in {minutes} "
                f"minute{'s' if minutes != 1 else ''}."
            ),
        )

    business = store.get_business_by_subdomain(request.subdomain)
    if business is None:
        raise HTTPException(status_code=404, detail="Business not found")

    try:
        reply = await asyncio.to_thread(agent.respond, business, request.messages)
    except Exception as e:
        # Full traceback stays in the server log only.
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(reply=reply, session_id=request.session_id)


# ── Telegram ─────────────────────────────────────────────────────────


@router.post("/telegram/webhook/{business_id}", response_class=PlainTextResponse)
async def telegram_webhook(business_id: str, http_request: Request, background_tasks: BackgroundTasks):
    """Acknowledge a Telegram update immediately; the reply is sent later.

    Always answers ``200 OK``, otherwise Telegram keeps redelivering the
    same update.
    """
    channel = getattr(http_request.app.state, "telegram", None)
    if channel is None:
        logger.error("[telegram] Update received before the channel was ready")
        return PlainTextResponse("OK")

    try:
        payload = await http_request.json()
        job = channel.handle_update(business_id, payload)
    except (ChannelError, ValueError) as exc:
        logger.warning("[telegram] Ignoring malformed update for business %s: %s", business_id, exc)
    except Exception:
        logger.exception("[telegram] Error handling update for business %s", business_id)
    else:
        if job is not None:
            background_tasks.add_task(job)
    return PlainTextResponse("OK")


@router.post("/businesses/{business_id}/telegram/webhook")
def register_telegram_webhook(business_id: str, body: WebhookRequest, http_request: Request):
    """Point the business's bot at *url* (Bot API ``setWebhook``)."""
    business = _owned_business(http_request, business_id)
    if not business.telegram_bot_token:
        raise HTTPException(status_code=400, detail="Telegram bot token is not configured")
    factory = _get_resource(http_request, "telegram_client_factory")
    try:
        with factory(business.telegram_bot_token) as client:
            client.set_webhook(body.url)
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    return {"success": True}


@router.get("/businesses/{business_id}/telegram/webhook")
def telegram_webhook_info(business_id: str, http_request: Request):
    business = _owned_business(http_request, business_id)
    if not business.telegram_bot_token:
        raise HTTPException(status_code=400, detail="Telegram bot token is not configured")
    factory = _get_resource(http_request, "telegram_client_factory")
    try:
        with factory(business.telegram_bot_token) as client:
            return client.get_webhook_info()
    except SchedulingError as exc:
        raise _http_error(exc) from exc


# ── Owner: availability, services, slots ─────────────────────────────


def _owned_business(http_request: Request, business_id: str) -> Business:
    booking = _get_resource(http_request, "booking")
    try:
        return booking.get_business(business_id)
    except SchedulingError as exc:
        raise _http_error(exc) from exc


@router.put("/businesses/{business_id}/availability", response_model=BusinessResponse)
def update_availability(business_id: str, body: AvailabilityUpdate, http_request: Request):
    store = _get_resource(http_request, "store")
    try:
        business = store.update_business(business_id, availability=body.availability)
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Availability updated for business %s", business_id)
    return _business_response(business)


@router.put("/businesses/{business_id}/services", response_model=BusinessResponse)
def update_services(business_id: str, body: ServicesUpdate, http_request: Request):
    store = _get_resource(http_request, "store")
    try:
        business = store.update_business(business_id, services=body.services)
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Services updated for business %s (%d)", business_id, len(body.services))
    return _business_response(business)


@router.get("/businesses/{business_id}/slots", response_model=SlotsResponse)
def get_slots(
    business_id: str,
    http_request: Request,
    day: str = Query(..., alias="date", description="YYYY-MM-DD"),
):
    booking = _get_resource(http_request, "booking")
    try:
        business = booking.get_business(business_id)
        weekday, slots = booking.available_slots(business_id, day)
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    return SlotsResponse(date=day, day_name=weekday.localized(business.locale), slots=slots)


@router.get("/businesses/{business_id}/week", response_model=WeekResponse)
def get_week(
    business_id: str,
    http_request: Request,
    start: str | None = Query(None, description="YYYY-MM-DD, defaults to today"),
):
    booking = _get_resource(http_request, "booking")
    start = start or date.today().isoformat()
    try:
        days = booking.week_view(business_id, start)
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    return WeekResponse(start=start, days=days)


@router.get(
    "/businesses/{business_id}/appointments/upcoming",
    response_model=list[UpcomingAppointment],
)
def get_upcoming(
    business_id: str,
    http_request: Request,
    limit: int = Query(10, ge=1, le=100),
):
    booking = _get_resource(http_request, "booking")
    try:
        return booking.upcoming_appointments(business_id, limit=limit)
    except SchedulingError as exc:
        raise _http_error(exc) from exc


@router.get(
    "/businesses/{business_id}/appointments/pending",
    response_model=list[PendingAppointment],
)
def get_pending(
    business_id: str,
    http_request: Request,
    limit: int = Query(5, ge=1, le=100),
):
    """Appointments still waiting for the owner's confirmation."""
    booking = _get_resource(http_request, "booking")
    try:
        pending = booking.pending_appointments(business_id, limit=limit)
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    return [PendingAppointment.from_appointment(a) for a in pending]


# ── Owner: appointment state ─────────────────────────────────────────


@router.post("/appointments/{appointment_id}/confirm", response_model=Appointment)
def confirm_appointment(appointment_id: str, http_request: Request, body: OwnerAction | None = None):
    booking = _get_resource(http_request, "booking")
    try:
        return booking.confirm_appointment(appointment_id, owner_note=body.owner_note if body else None)
    except SchedulingError as exc:
        raise _http_error(exc) from exc


@router.post("/appointments/{appointment_id}/cancel", response_model=Appointment)
def cancel_appointment(appointment_id: str, http_request: Request, body: OwnerAction | None = None):
    booking = _get_resource(http_request, "booking")
    try:
        return booking.cancel_appointment(appointment_id, owner_note=body.owner_note if body else None)
    except SchedulingError as exc:
        raise _http_error(exc) from exc


@router.post("/appointments/{appointment_id}/reschedule", response_model=Appointment)
def reschedule_appointment(appointment_id: str, body: RescheduleRequest, http_request: Request):
    booking = _get_resource(http_request, "booking")
    try:
        return booking.reschedule_appointment(
            appointment_id, body.new_start_time, owner_note=body.owner_note,
        )
    except SchedulingError as exc:
        raise _http_error(exc) from exc


# ── Owner: calendar sync ─────────────────────────────────────────────


@router.post("/businesses/{business_id}/calendar/enable", response_model=BusinessResponse)
def enable_calendar(business_id: str, http_request: Request, body: CalendarSettings | None = None):
    booking = _get_resource(http_request, "booking")
    try:
        business = booking.set_calendar_enabled(
            business_id, True, calendar_id=body.calendar_id if body else None,
        )
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    return _business_response(business)


@router.post("/businesses/{business_id}/calendar/disable", response_model=BusinessResponse)
def disable_calendar(business_id: str, http_request: Request):
    booking = _get_resource(http_request, "booking")
    try:
        business = booking.set_calendar_enabled(business_id, False)
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    return _business_response(business)


@router.post("/businesses/{business_id}/calendar/test", response_model=CalendarConnection)
def test_calendar(business_id: str, http_request: Request):
    booking = _get_resource(http_request, "booking")
    try:
        return CalendarConnection(**booking.test_calendar_connection(business_id))
    except SchedulingError as exc:
        raise _http_error(exc) from exc


# ── Customer: cancel link ────────────────────────────────────────────


def _token_view(booking, appointment: Appointment) -> TokenAppointment:
    business = booking.get_business(appointment.business_id)
    return TokenAppointment(
        business_name=business.name,
        customer_name=appointment.customer.name,
        service_name=appointment.service_name,
        start_time=appointment.start_time,
        status=appointment.status,
    )


@router.get("/appointments/by-token/{token}", response_model=TokenAppointment)
def get_appointment_by_token(token: str, http_request: Request):
    booking = _get_resource(http_request, "booking")
    try:
        return _token_view(booking, booking.appointment_by_token(token))
    except SchedulingError as exc:
        raise _http_error(exc) from exc


@router.post("/appointments/by-token/{token}/cancel", response_model=TokenAppointment)
def cancel_appointment_by_token(token: str, http_request: Request):
    booking = _get_resource(http_request, "booking")
    try:
        return _token_view(booking, booking.cancel_by_token(token))
    except SchedulingError as exc:
        raise _http_error(exc) from exc
