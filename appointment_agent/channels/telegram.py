"""Telegram channel: webhook updates in, agent replies out.

Telegram retries a webhook that does not answer quickly with a 2xx, so the
HTTP handler only validates the update and returns ``OK``; the agent turn
and the reply run afterwards as a background job.

Each business has its own bot and its own webhook path
(``/api/telegram/webhook/{business_id}``).  Conversations are keyed by
``(business_id, chat_id)`` and capped at the last 20 turns.
"""

from __future__ import annotations

import functools
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from appointment_agent.config import TELEGRAM_API_BASE_URL, TELEGRAM_REQUEST_TIMEOUT_SECONDS
from appointment_agent.errors import ChannelError, TelegramAPIError
from appointment_agent.models import Business
from appointment_agent.services.metrics import metrics
from appointment_agent.services.store import ConversationStore, InMemoryStore

logger = logging.getLogger(__name__)

RESET_COMMAND = "/start"
DEFAULT_GREETING = (
    "Hi! I'm your booking assistant. Ask me about our services or availability to get started."
)
APOLOGY_REPLY = "Sorry, I couldn't process your message right now. Please try again."

# ── Markdown stripping ──────────────────────────────────────────────
# Replies are sent without parse_mode, so markup would show up literally.

_CODE_FENCE_RE = re.compile(r"```(?:[\w+-]*\n)?(.*?)```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`\n]+)`")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_HEADING_RE = re.compile(r"^[ \t]*#{1,6}[ \t]+", re.MULTILINE)
_STAR_BULLET_RE = re.compile(r"^([ \t]*)[*+][ \t]+", re.MULTILINE)
_BOLD_RE = re.compile(r"(\*\*|__)(.+?)\1", re.DOTALL)
_STAR_EMPHASIS_RE = re.compile(r"(?<![\w*])\*(?!\s)([^*\n]+?)(?<!\s)\*(?![\w*])")
_UNDERSCORE_EMPHASIS_RE = re.compile(r"(?<!\w)_(?!\s)([^_\n]+?)(?<!\s)_(?!\w)")


def strip_markdown(text: str) -> str:
    """Turn model markdown into plain text.

    Code fences keep their content, links keep their label, bullets become
    dashes.  Underscores inside words (``john_doe@example.com``) are kept.
    """
    text = _CODE_FENCE_RE.sub(r"\1", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _HEADING_RE.sub("", text)
    text = _STAR_BULLET_RE.sub(r"\1- ", text)
    text = _BOLD_RE.sub(r"\2", text)
    text = _STAR_EMPHASIS_RE.sub(r"\1", text)
    text = _UNDERSCORE_EMPHASIS_RE.sub(r"\1", text)
    return text.replace("**", "").strip()


# ── Bot API client ──────────────────────────────────────────────────


class TelegramClient:
    """Minimal Bot API client for one bot token."""

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        *,
        timeout: float = TELEGRAM_REQUEST_TIMEOUT_SECONDS,
    ):
        self._client = httpx.Client(
            base_url=f"{base_url or TELEGRAM_API_BASE_URL}/bot{token}",
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TelegramClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _call(self, method: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        t0 = time.perf_counter()
        try:
            response = self._client.post(f"/{method}", json=payload or {})
        except httpx.HTTPError as exc:
            metrics.record_failure("telegram", method, error_type=type(exc).__name__)
            raise TelegramAPIError(f"Telegram {method} failed: {exc}") from exc

        latency_ms = (time.perf_counter() - t0) * 1000
        if response.status_code >= 400:
            metrics.record_failure(
                "telegram", method, error_type=f"http_{response.status_code}", latency_ms=latency_ms,
            )
            raise TelegramAPIError(
                f"Telegram {method} error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        data = response.json()
        if not data.get("ok"):
            metrics.record_failure("telegram", method, error_type="not_ok", latency_ms=latency_ms)
            raise TelegramAPIError(data.get("description") or f"Telegram {method} failed")

        metrics.record_success("telegram", method, latency_ms=latency_ms)
        return data.get("result") or {}

    def send_message(self, chat_id: int, text: str) -> dict[str, Any]:
        """Send *text* as plain text (no ``parse_mode``)."""
        return self._call("sendMessage", {"chat_id": chat_id, "text": text})

    def set_webhook(self, url: str) -> dict[str, Any]:
        return self._call("setWebhook", {"url": url})

    def get_webhook_info(self) -> dict[str, Any]:
        return self._call("getWebhookInfo")


# ── Inbound updates ─────────────────────────────────────────────────


@dataclass(frozen=True)
class InboundMessage:
    chat_id: int
    text: str | None


def parse_update(payload: Any) -> InboundMessage | None:
    """Extract chat id and text from a webhook update.

    Returns ``None`` for updates without a ``message`` (edits, callbacks, ...).

    Raises:
        ChannelError: the update has a message but no usable chat id.
    """
    if not isinstance(payload, dict):
        raise ChannelError("Update payload is not a JSON object")
    message = payload.get("message")
    if message is None:
        return None
    if not isinstance(message, dict):
        raise ChannelError("Update message is not an object")

    chat = message.get("chat")
    chat_id = chat.get("id") if isinstance(chat, dict) else None
    if isinstance(chat_id, bool) or not isinstance(chat_id, int):
        raise ChannelError("Update message has no chat id")

    text = message.get("text")
    return InboundMessage(chat_id=chat_id, text=text if isinstance(text, str) else None)


class TelegramChannel:
    """Bridges webhook updates to the booking agent."""

    def __init__(
        self,
        store: InMemoryStore,
        conversations: ConversationStore,
        agent,
        client_factory: Callable[[str], TelegramClient] = TelegramClient,
    ) -> None:
        self._store = store
        self._conversations = conversations
        self._agent = agent
        self._client_factory = client_factory

    def handle_update(self, business_id: str, payload: Any) -> Callable[[], None] | None:
        """Validate an update and return the work to run after acknowledging it.

        Returns ``None`` when there is nothing to do.  ``/start`` clears the
        conversation here, before the webhook is acknowledged.

        Raises:
            ChannelError: malformed update.
        """
        inbound = parse_update(payload)
        if inbound is None:
            logger.debug("[telegram] Update without message for business %s", business_id)
            return None

        business = self._store.get_business(business_id)
        if business is None or not business.telegram_enabled or not business.telegram_bot_token:
            logger.warning("[telegram] Update for unknown or disabled business %s", business_id)
            return None

        text = (inbound.text or "").strip()
        if text == RESET_COMMAND:
            logger.info("[telegram] /start from chat %s (business %s)", inbound.chat_id, business_id)
            self._conversations.clear(business.id, inbound.chat_id)
            greeting = business.welcome_message or DEFAULT_GREETING
            return functools.partial(self.send_text, business, inbound.chat_id, greeting)

        if not text:
            logger.debug("[telegram] Ignoring non-text message from chat %s", inbound.chat_id)
            return None

        return functools.partial(self.process_message, business, inbound.chat_id, text)

    def send_text(self, business: Business, chat_id: int, text: str) -> None:
        """Send a fixed text without involving the model."""
        try:
            with self._client_factory(business.telegram_bot_token) as client:
                client.send_message(chat_id, text)
        except TelegramAPIError as exc:
            logger.error("[telegram] Could not send message to chat %s: %s", chat_id, exc)

    def process_message(self, business: Business, chat_id: int, text: str) -> None:
        """Run one agent turn for *text* and send the reply.  Never raises."""
        t0 = time.perf_counter()
        try:
            history = self._conversations.append(business.id, chat_id, "user", text)
            reply = self._agent.respond(business, history)
            self._conversations.append(business.id, chat_id, "assistant", reply)
            with self._client_factory(business.telegram_bot_token) as client:
                client.send_message(chat_id, strip_markdown(reply))
            logger.info(
                "[telegram] Replied to chat %s (business %s) in %.0fms",
                chat_id, business.id, (time.perf_counter() - t0) * 1000,
            )
        except Exception:
            logger.exception("[telegram] Failed to process message from chat %s", chat_id)
            self.send_text(business, chat_id, APOLOGY_REPLY)
