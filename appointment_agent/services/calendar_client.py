"""HTTP clients for the external calendar and the identity provider.

Calendar API (Google Calendar v3 shape):
  GET    /calendars/{id}                   → {"timeZone": ...}
  POST   /calendars/{id}/events            → {"id": ...}
  PATCH  /calendars/{id}/events/{eventId}
  DELETE /calendars/{id}/events/{eventId}

Every request carries the business owner's bearer token, obtained from the
identity provider (Clerk) by ``ClerkTokenProvider``.

Reads, patches and deletes are idempotent and retried with exponential
backoff on timeouts, connection errors and 5xx.  Event creation is sent
exactly once; callers supply the event id so a retried create after a
lost response is rejected with ``409`` instead of adding a duplicate.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from appointment_agent.config import (
    CALENDAR_REQUEST_TIMEOUT_SECONDS,
    CLERK_API_URL,
    CLERK_SECRET_KEY,
    GOOGLE_CALENDAR_BASE_URL,
)
from appointment_agent.errors import (
    CalendarAPIError,
    NoTokenFoundError,
    UserNotConnectedError,
)
from appointment_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
DEFAULT_TIMEZONE = "UTC"
_GONE_STATUSES = (404, 410)


class GoogleCalendarClient:
    """Thin wrapper around the calendar REST API for one access token."""

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        *,
        timeout: float = CALENDAR_REQUEST_TIMEOUT_SECONDS,
    ):
        self._client = httpx.Client(
            base_url=base_url or GOOGLE_CALENDAR_BASE_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GoogleCalendarClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: dict[str, Any] | None = None,
        retry: bool = True,
        gone_ok: bool = False,
    ) -> dict[str, Any]:
        """Execute a request; retried with backoff only when *retry* is set."""
        attempts = MAX_RETRIES if retry else 1
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(method, path, json=json_body)
                if gone_ok and response.status_code in _GONE_STATUSES:
                    logger.info("Calendar %s %s: already gone (%d)", method, path, response.status_code)
                    return {}
                if response.status_code >= 400:
                    raise CalendarAPIError(
                        f"Calendar API error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success(
                    "calendar", operation, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                if method == "DELETE" or response.status_code == 204:
                    return {}
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure("calendar", operation, error_type=type(exc).__name__)
                logger.warning(
                    "Calendar API %s attempt %d/%d failed (%s)",
                    operation, attempt, attempts, type(exc).__name__,
                )
            except CalendarAPIError as exc:
                metrics.record_failure(
                    "calendar", operation, error_type=f"http_{exc.status_code}",
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                if exc.status_code is None or exc.status_code < 500:
                    raise  # 4xx errors are not retried
                last_error = exc
                logger.warning(
                    "Calendar API %s server error on attempt %d/%d", operation, attempt, attempts,
                )

            if attempt < attempts:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise CalendarAPIError(
            f"Calendar API {operation} failed after {attempts} attempt(s): {last_error}",
            status_code=getattr(last_error, "status_code", None),
        )

    @staticmethod
    def _calendar_path(calendar_id: str) -> str:
        return f"/calendars/{quote(calendar_id, safe='')}"

    # ── Public API methods ───────────────────────────────────────────

    def get_calendar(self, calendar_id: str) -> dict[str, Any]:
        return self._request("GET", self._calendar_path(calendar_id), operation="get_calendar")

    def get_timezone(self, calendar_id: str) -> str:
        """The calendar's reported IANA timezone, or ``UTC`` if it cannot be read."""
        try:
            return self.get_calendar(calendar_id).get("timeZone") or DEFAULT_TIMEZONE
        except CalendarAPIError as exc:
            logger.warning("Could not read timezone of calendar %s, using UTC: %s", calendar_id, exc)
            return DEFAULT_TIMEZONE

    def insert_event(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """Create an event.  Never retried."""
        return self._request(
            "POST",
            f"{self._calendar_path(calendar_id)}/events",
            operation="insert_event",
            json_body=body,
            retry=False,
        )

    def patch_event(
        self, calendar_id: str, event_id: str, body: dict[str, Any],
    ) -> dict[str, Any]:
        return self._request(
            "PATCH",
            f"{self._calendar_path(calendar_id)}/events/{quote(event_id, safe='')}",
            operation="patch_event",
            json_body=body,
        )

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event; an event that no longer exists counts as deleted."""
        self._request(
            "DELETE",
            f"{self._calendar_path(calendar_id)}/events/{quote(event_id, safe='')}",
            operation="delete_event",
            gone_ok=True,
        )


# ── Identity provider ───────────────────────────────────────────────


class TokenProvider(Protocol):
    def get_access_token(self, owner_id: str) -> str: ...


class ClerkTokenProvider:
    """Fetches the owner's Google OAuth access token stored by Clerk."""

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        *,
        timeout: float = CALENDAR_REQUEST_TIMEOUT_SECONDS,
    ):
        self._secret_key = secret_key or CLERK_SECRET_KEY
        self._client = httpx.Client(
            base_url=base_url or CLERK_API_URL,
            headers={
                "Authorization": f"Bearer {self._secret_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ClerkTokenProvider:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def get_access_token(self, owner_id: str) -> str:
        """Return a calendar-scoped bearer token for *owner_id*.

        Raises:
            UserNotConnectedError: the provider is not configured, unreachable,
                or rejected the lookup.
            NoTokenFoundError: the user has no Google token on file.
        """
        if not self._secret_key:
            raise UserNotConnectedError("Identity provider secret key is not configured")

        t0 = time.perf_counter()
        try:
            response = self._client.get(f"/users/{owner_id}/oauth_access_tokens/oauth_google")
        except httpx.HTTPError as exc:
            metrics.record_failure("identity", "oauth_token", error_type=type(exc).__name__)
            raise UserNotConnectedError(f"Could not reach identity provider: {exc}") from exc

        latency_ms = (time.perf_counter() - t0) * 1000
        if response.status_code >= 400:
            metrics.record_failure(
                "identity", "oauth_token",
                error_type=f"http_{response.status_code}", latency_ms=latency_ms,
            )
            raise UserNotConnectedError(
                f"Failed to get calendar token for user {owner_id}: "
                f"{response.status_code} {response.text}",
                status_code=response.status_code,
            )
        metrics.record_success("identity", "oauth_token", latency_ms=latency_ms)

        tokens = response.json()
        if not tokens:
            raise NoTokenFoundError(f"No Google OAuth tokens found for user {owner_id}")
        return tokens[0]["token"]
