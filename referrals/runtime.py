"""
🧠 Referral Engine Runtime Core
-------------------------------
Centralized utilities for logging, retries, time handling,
phone normalization, and environment introspection.
"""

from __future__ import annotations

import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

_LOGGING_CONFIGURED = False
_CORE_ENV_LOGGED = False
_PHONE_STRIP = re.compile(r"[^\d+]")
E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def _mask_env_value(value: Optional[str]) -> str:
    """Mask sensitive env values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    if value is None:
        env_level = os.getenv("REFERRALS_LOG_LEVEL")
        if env_level:
            value = env_level
        else:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True
    _log_core_env()


def get_logger(name: str = "referrals") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


def _log_core_env() -> None:
    """Logs masked environment variables for observability."""
    global _CORE_ENV_LOGGED
    if _CORE_ENV_LOGGED:
        return
    _CORE_ENV_LOGGED = True
    logger = logging.getLogger("env")
    logger.info(
        "Core env summary:\n"
        "• Airtable Key=%s | ReferralsBase=%s\n"
        "• Twilio SID=%s | SharedNumber=%s | DryRun=%s\n"
        "• OpenAI Key=%s | Redis=%s | UpstashREST=%s",
        _mask_env_value(os.getenv("AIRTABLE_API_KEY")),
        os.getenv("REFERRALS_BASE") or os.getenv("AIRTABLE_REFERRALS_BASE_ID") or "<missing>",
        _mask_env_value(os.getenv("TWILIO_ACCOUNT_SID")),
        os.getenv("TWILIO_PHONE_NUMBER") or "<missing>",
        os.getenv("GATEWAY_DRY_RUN", "false"),
        _mask_env_value(os.getenv("OPENAI_API_KEY")),
        bool(os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")),
        bool(os.getenv("UPSTASH_REDIS_REST_URL")),
    )


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as ISO8601 UTC with a Z suffix (millisecond precision)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_now() -> str:
    return to_iso(utc_now())


def parse_ts(value: object) -> Optional[datetime]:
    """Parse an ISO8601 string (or datetime) into an aware UTC datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ────────────────────────────────────────────────
# PHONE UTILITIES
# ────────────────────────────────────────────────
def normalize_phone(value: str | None) -> Optional[str]:
    """
    Normalize a phone number toward E.164.

    10 bare digits get a +1 prefix, 11 digits starting with 1 get a +,
    anything already starting with + is kept as typed (minus punctuation).
    Other shapes come back as stripped digits and fail `is_valid_e164`.
    """
    if not value:
        return None
    cleaned = _PHONE_STRIP.sub("", str(value))
    if not cleaned:
        return None
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith("1") and len(cleaned) == 11:
        return f"+{cleaned}"
    if len(cleaned) == 10:
        return f"+1{cleaned}"
    return cleaned


def is_valid_e164(value: str | None) -> bool:
    return bool(value) and bool(E164_RE.fullmatch(str(value)))


# ────────────────────────────────────────────────
# RETRY UTILITIES
# ────────────────────────────────────────────────
def retry(
    func: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> T:
    """Retry a callable with exponential backoff."""
    log = logger or get_logger(__name__)
    caught = tuple(exceptions)
    attempt = 0
    while True:
        try:
            return func()
        except caught as exc:
            if attempt >= retries:
                log.error("Retry exhausted after %s attempts: %s", attempt + 1, exc)
                raise
            delay = base_delay * (backoff ** attempt)
            log.warning("Retryable error (%s/%s): %s, sleeping %.2fs", attempt + 1, retries + 1, exc, delay)
            time.sleep(delay)
            attempt += 1
