"""Centralized configuration for the appointment agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/appointment-agent/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/appointment-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value:
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name) or default
    return default


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /appointment-agent/{name} (AWS)."
    )


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
MODEL_TEMPERATURE: float = float(os.getenv("MODEL_TEMPERATURE", "0.1"))
MODEL_MAX_TOKENS: int = int(os.getenv("MODEL_MAX_TOKENS", "1024"))
MAX_TOOL_ROUNDS: int = int(os.getenv("MAX_TOOL_ROUNDS", "3"))

# ── Scheduling ──────────────────────────────────────────────────────
# 0 returns whole open ranges; N > 0 splits them into N-minute slots.
SLOT_INTERVAL_MINUTES: int = int(os.getenv("SLOT_INTERVAL_MINUTES", "0"))
SEED_FILE: str | None = os.getenv("SEED_FILE")

# ── Conversations / chat ────────────────────────────────────────────
CONVERSATION_MAX_TURNS: int = int(os.getenv("CONVERSATION_MAX_TURNS", "20"))
CHAT_RATE_LIMIT_PER_HOUR: int = int(os.getenv("CHAT_RATE_LIMIT_PER_HOUR", "60"))

# ── Calendar / identity provider ────────────────────────────────────
GOOGLE_CALENDAR_BASE_URL: str = "https://www.googleapis.com/calendar/v3"
CALENDAR_REQUEST_TIMEOUT_SECONDS: float = float(
    os.getenv("CALENDAR_REQUEST_TIMEOUT_SECONDS", "10")
)
CLERK_SECRET_KEY: str | None = _optional_env("CLERK_SECRET_KEY")
CLERK_API_URL: str = os.getenv("CLERK_API_URL", "https://api.clerk.com/v1")

# ── Customer email ──────────────────────────────────────────────────
# Without a key, confirmation and cancellation emails are skipped.
RESEND_API_KEY: str | None = _optional_env("RESEND_API_KEY")
EMAIL_FROM_ADDRESS: str = os.getenv("EMAIL_FROM_ADDRESS", "Appointments <notifications@example.com>")
# Base of the customer-facing cancellation link.
PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")

# ── Telegram ────────────────────────────────────────────────────────
TELEGRAM_API_BASE_URL: str = "https://api.telegram.org"
TELEGRAM_REQUEST_TIMEOUT_SECONDS: float = float(
    os.getenv("TELEGRAM_REQUEST_TIMEOUT_SECONDS", "8")
)

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
