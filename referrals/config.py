from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# -----------------------------
# .env Loader
# -----------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=False)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v if (v and str(v).strip() != "") else default


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    AIRTABLE_API_KEY: Optional[str]
    REFERRALS_BASE: Optional[str]
    FORCE_IN_MEMORY: bool

    TWILIO_ACCOUNT_SID: Optional[str]
    TWILIO_AUTH_TOKEN: Optional[str]
    TWILIO_PHONE_NUMBER: Optional[str]
    TWILIO_API_BASE: str
    GATEWAY_DRY_RUN: bool
    GATEWAY_TIMEOUT_SEC: float

    OPENAI_API_KEY: Optional[str]
    OPENAI_MODEL: str
    OPENAI_TEMPERATURE: float
    OPENAI_TIMEOUT: float
    OPENAI_MAX_RETRIES: int
    OPENAI_MAX_TOKENS: int
    REPLY_TEST_MODE: bool

    OPENER_DELAY_SEC: int
    OPENER_MAX_ATTEMPTS: int
    OPENER_RETRY_BASE_SEC: int
    DRIP_WORKERS: int
    WORKER_INTERVAL_SEC: int
    DRIP_INTERVAL_SEC: int

    REDIS_URL: Optional[str]
    UPSTASH_REDIS_REST_URL: Optional[str]
    UPSTASH_REDIS_REST_TOKEN: Optional[str]
    LOCK_TTL_SEC: int
    KEY_PREFIX: str

    CRON_TOKEN: Optional[str]
    OPERATOR_TOKEN: Optional[str]
    WEBHOOK_TOKEN: Optional[str]


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings(
        AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
        REFERRALS_BASE=env_str("REFERRALS_BASE") or env_str("AIRTABLE_REFERRALS_BASE_ID"),
        FORCE_IN_MEMORY=env_bool("REFERRALS_FORCE_IN_MEMORY", False),
        TWILIO_ACCOUNT_SID=env_str("TWILIO_ACCOUNT_SID"),
        TWILIO_AUTH_TOKEN=env_str("TWILIO_AUTH_TOKEN"),
        TWILIO_PHONE_NUMBER=env_str("TWILIO_PHONE_NUMBER"),
        TWILIO_API_BASE=env_str("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01"),
        GATEWAY_DRY_RUN=env_bool("GATEWAY_DRY_RUN", False),
        GATEWAY_TIMEOUT_SEC=env_float("GATEWAY_TIMEOUT_SEC", 15.0),
        OPENAI_API_KEY=env_str("OPENAI_API_KEY"),
        OPENAI_MODEL=env_str("OPENAI_MODEL", "gpt-4o-mini"),
        OPENAI_TEMPERATURE=env_float("OPENAI_TEMPERATURE", 0.7),
        OPENAI_TIMEOUT=env_float("OPENAI_TIMEOUT", 20.0),
        OPENAI_MAX_RETRIES=env_int("OPENAI_MAX_RETRIES", 2),
        OPENAI_MAX_TOKENS=env_int("OPENAI_MAX_TOKENS", 300),
        REPLY_TEST_MODE=env_bool("REPLY_TEST_MODE", False),
        OPENER_DELAY_SEC=env_int("OPENER_DELAY_SEC", 75),
        OPENER_MAX_ATTEMPTS=env_int("OPENER_MAX_ATTEMPTS", 3),
        OPENER_RETRY_BASE_SEC=env_int("OPENER_RETRY_BASE_SEC", 60),
        DRIP_WORKERS=max(1, env_int("DRIP_WORKERS", 4)),
        WORKER_INTERVAL_SEC=env_int("WORKER_INTERVAL_SEC", 15),
        DRIP_INTERVAL_SEC=env_int("DRIP_INTERVAL_SEC", 4 * 60 * 60),
        REDIS_URL=env_str("REDIS_URL") or env_str("UPSTASH_REDIS_URL"),
        UPSTASH_REDIS_REST_URL=env_str("UPSTASH_REDIS_REST_URL"),
        UPSTASH_REDIS_REST_TOKEN=env_str("UPSTASH_REDIS_REST_TOKEN"),
        LOCK_TTL_SEC=env_int("LOCK_TTL_SEC", 60),
        KEY_PREFIX=env_str("REFERRALS_KEY_PREFIX", "referrals"),
        CRON_TOKEN=env_str("CRON_TOKEN"),
        OPERATOR_TOKEN=env_str("OPERATOR_TOKEN"),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN"),
    )
