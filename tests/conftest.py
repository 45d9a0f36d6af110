import os
import sys
from datetime import datetime, timezone

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from referrals.config import settings
from referrals.datastore import STORE, reset_state
from referrals.gateway import GatewayError
from referrals.inbound_webhook import reset_idempotency
from referrals.runtime import to_iso

T0 = datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)

AGENT_NUMBER = "+15550001111"
REFERRAL_PHONE = "+15557654321"


@pytest.fixture(autouse=True)
def _reset_datastore(monkeypatch):
    for key in [
        "AIRTABLE_API_KEY",
        "REFERRALS_BASE",
        "AIRTABLE_REFERRALS_BASE_ID",
        "TWILIO_ACCOUNT_SID",
        "TWILIO_AUTH_TOKEN",
        "TWILIO_PHONE_NUMBER",
        "OPENAI_API_KEY",
        "REPLY_TEST_MODE",
        "REDIS_URL",
        "UPSTASH_REDIS_URL",
        "UPSTASH_REDIS_REST_URL",
        "UPSTASH_REDIS_REST_TOKEN",
        "CRON_TOKEN",
        "OPERATOR_TOKEN",
        "WEBHOOK_TOKEN",
        "OPENER_DELAY_SEC",
        "OPENER_MAX_ATTEMPTS",
    ]:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("REFERRALS_FORCE_IN_MEMORY", "1")
    monkeypatch.setenv("GATEWAY_DRY_RUN", "1")
    settings.cache_clear()
    reset_state()
    reset_idempotency()
    yield
    settings.cache_clear()
    reset_state()
    reset_idempotency()


class FakeGateway:
    """Records sends instead of hitting the provider; `fail=True` raises GatewayError."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def __call__(self, *, from_number, to, body):
        if self.fail:
            raise GatewayError("HTTP 500: provider down", status_code=500)
        self.sent.append({"from": from_number, "to": to, "body": body})
        return {"status": "sent", "sid": f"SM{len(self.sent)}", "provider_status": "queued"}


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    for module in ("referrals.drip", "referrals.opener", "referrals.inbound_webhook", "referrals.manual"):
        monkeypatch.setattr(f"{module}.send_message", fake)
    return fake


@pytest.fixture
def agent():
    return STORE.create_agent(
        "Dana Whitfield",
        twilio_number=AGENT_NUMBER,
        scheduling_url="https://cal.example.com/dana",
        phone="+15550002222",
    )


@pytest.fixture
def make_referral(agent):
    def _make(**overrides):
        fields = {
            "AGENT_ID": agent.id,
            "CLIENT_ID": "client_1",
            "CLIENT_NAME": "Marcus",
            "REFERRAL_NAME": "Jordan",
            "REFERRAL_PHONE": REFERRAL_PHONE,
            "STATUS": "pending",
            "CONVERSATION": "[]",
            "AI_ENABLED": True,
            "DRIP_COUNT": 0,
            "CREATED_AT": to_iso(T0),
        }
        fields.update(overrides)
        return STORE.create_referral(fields)

    return _make
