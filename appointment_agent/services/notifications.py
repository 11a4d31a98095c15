"""Customer emails for owner-driven appointment changes.

Confirmations, cancellations and reschedules are mailed to the customer
through Resend.  Delivery is best effort: a customer without an address, a
missing API key or a provider failure is logged and never reaches the
booking operation that triggered the email.
"""

from __future__ import annotations

import html
import logging
from enum import Enum
from urllib.parse import quote

import resend

from appointment_agent.config import EMAIL_FROM_ADDRESS, PUBLIC_BASE_URL, RESEND_API_KEY
from appointment_agent.models import Appointment, Business, Weekday, parse_start_time
from appointment_agent.services.metrics import metrics

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"


_COPY: dict[str, dict[str, str]] = {
    "en": {
        "subject_confirmed": "Appointment confirmed - {business}",
        "subject_cancelled": "Appointment cancelled - {business}",
        "subject_rescheduled": "Appointment rescheduled - {business}",
        "headline_confirmed": "Your appointment has been confirmed",
        "headline_cancelled": "Your appointment has been cancelled",
        "headline_rescheduled": "Your appointment has been rescheduled",
        "greeting": "Hi {name},",
        "details": "{service} on {day} at {time}.",
        "previous": "Previous time: {day} at {time}",
        "owner_note": "Note from {business}:",
        "cancel": "Cancel appointment",
        "cancel_hint": "Can't make it? You can cancel here:",
    },
    "es": {
        "subject_confirmed": "Cita confirmada - {business}",
        "subject_cancelled": "Cita cancelada - {business}",
        "subject_rescheduled": "Cita reprogramada - {business}",
        "headline_confirmed": "Tu cita ha sido confirmada",
        "headline_cancelled": "Tu cita ha sido cancelada",
        "headline_rescheduled": "Tu cita ha sido reprogramada",
        "greeting": "Hola {name},",
        "details": "{service} el {day} a las {time}.",
        "previous": "Hora original: {day} a las {time}",
        "owner_note": "Nota de {business}:",
        "cancel": "Cancelar cita",
        "cancel_hint": "¿No puedes asistir? Puedes cancelar aquí:",
    },
}


def _copy(business: Business) -> dict[str, str]:
    return _COPY.get(business.locale, _COPY["en"])


def _day_and_time(value: str, business: Business) -> tuple[str, str]:
    starts_at = parse_start_time(value)
    weekday = Weekday.from_date(starts_at.date()).localized(business.locale)
    return f"{weekday} {starts_at.date().isoformat()}", starts_at.strftime("%H:%M")


def build_subject(kind: NotificationKind, business: Business) -> str:
    return _copy(business)[f"subject_{kind.value}"].format(business=business.name)


def cancel_url(appointment: Appointment, base_url: str = PUBLIC_BASE_URL) -> str:
    return f"{base_url}/cancel-appointment?token={quote(appointment.cancellation_token, safe='')}"


def render_email(
    kind: NotificationKind,
    business: Business,
    appointment: Appointment,
    base_url: str = PUBLIC_BASE_URL,
) -> str:
    """HTML body for *kind*.  Every customer- or owner-supplied value is escaped."""
    copy = _copy(business)
    esc = html.escape
    day, time_of_day = _day_and_time(appointment.start_time, business)

    parts = [
        f"<h1>{esc(business.name)}</h1>",
        f"<h2>{esc(copy[f'headline_{kind.value}'])}</h2>",
        f"<p>{esc(copy['greeting'].format(name=appointment.customer.name))}</p>",
        "<p>"
        + esc(copy["details"].format(service=appointment.service_name, day=day, time=time_of_day))
        + "</p>",
    ]
    if kind is NotificationKind.RESCHEDULED and appointment.rescheduled_from:
        old_day, old_time = _day_and_time(appointment.rescheduled_from, business)
        parts.append(f"<p>{esc(copy['previous'].format(day=old_day, time=old_time))}</p>")
    if appointment.owner_note:
        parts.append(
            f"<p><strong>{esc(copy['owner_note'].format(business=business.name))}</strong><br>"
            f"{esc(appointment.owner_note)}</p>"
        )
    if kind is not NotificationKind.CANCELLED:
        link = esc(cancel_url(appointment, base_url), quote=True)
        parts.append(f'<p>{esc(copy["cancel_hint"])} <a href="{link}">{esc(copy["cancel"])}</a></p>')

    contact = [esc(v) for v in (business.phone, business.email) if v]
    if contact:
        parts.append(f"<p>{' · '.join(contact)}</p>")
    return "\n".join(parts)


class AppointmentNotifier:
    """Sends appointment emails to customers through Resend."""

    def __init__(
        self,
        api_key: str | None = RESEND_API_KEY,
        sender: str = EMAIL_FROM_ADDRESS,
        public_base_url: str = PUBLIC_BASE_URL,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._base_url = public_base_url.rstrip("/")
        if api_key:
            resend.api_key = api_key

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def notify(self, kind: NotificationKind, business: Business, appointment: Appointment) -> bool:
        """Email the customer about *kind*.  Returns whether a message was sent."""
        recipient = appointment.customer.email
        if not recipient:
            logger.debug("No customer email for appointment %s; skipping %s notice", appointment.id, kind.value)
            return False
        if not self.enabled:
            logger.info("Email is not configured; skipping %s notice for appointment %s", kind.value, appointment.id)
            return False

        try:
            params = {
                "from": self._sender,
                "to": [recipient],
                "subject": build_subject(kind, business),
                "html": render_email(kind, business, appointment, self._base_url),
            }
            with metrics.timed("email", "send"):
                response = resend.Emails.send(params)
            logger.info(
                "Sent %s email for appointment %s (message %s)",
                kind.value, appointment.id, response.get("id"),
            )
        except Exception:
            logger.exception("Failed to send %s email for appointment %s", kind.value, appointment.id)
            return False
        return True
