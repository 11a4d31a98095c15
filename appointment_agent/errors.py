"""Error taxonomy for the scheduling engine.

Every error the core raises derives from :class:`SchedulingError` so the HTTP
layer and the agent tools can translate them in one place:

* :class:`ValidationError`: malformed input, unknown ids, a time outside the
  open hours.  Shown to the caller verbatim, never retried.
* :class:`ConflictError`: the slot is already taken.  The caller may
  re-query availability and pick another time.
* :class:`ExternalServiceError`: calendar, identity-provider or messaging
  API failures.  Logged; never fails the appointment operation itself.
* :class:`AgentError`: the model produced no usable reply.
* :class:`ChannelError`: malformed inbound webhook payload.
"""

from __future__ import annotations


class SchedulingError(Exception):
    """Base class for all errors raised by the scheduling engine."""


class ValidationError(SchedulingError):
    """A request was rejected because its input is invalid."""


class NotFoundError(ValidationError):
    """A referenced business or appointment does not exist."""


class InvalidTransitionError(ValidationError):
    """An appointment status change is not allowed by the state machine."""


class ConflictError(SchedulingError):
    """The requested slot is already booked."""


class ExternalServiceError(SchedulingError):
    """An external API call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class CalendarAPIError(ExternalServiceError):
    """Raised when a calendar API call fails after all retries."""


class UserNotConnectedError(ExternalServiceError):
    """The business owner has not connected their calendar account."""


class NoTokenFoundError(ExternalServiceError):
    """The identity provider returned no calendar access token."""


class TelegramAPIError(ExternalServiceError):
    """Raised when the Telegram Bot API rejects a request."""


class AgentError(SchedulingError):
    """The booking agent could not produce a reply."""


class ChannelError(SchedulingError):
    """An inbound messaging-channel payload could not be understood."""
