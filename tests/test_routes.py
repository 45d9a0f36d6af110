from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from referrals import inbound_webhook
from referrals.config import settings
from referrals.datastore import STORE
from referrals.locks import LockTimeout
from referrals.main import app
from referrals.runtime import utc_now
from referrals.schema import ReferralStatus

from tests.conftest import AGENT_NUMBER, REFERRAL_PHONE

client = TestClient(app)


def test_ping_and_health():
    assert client.get("/ping").json()["pong"] is True
    data = client.get("/health").json()
    assert data["ok"] is True
    assert "version" in data


# ---------------- webhook ----------------
def test_webhook_answers_empty_twiml(gateway, monkeypatch, make_referral):
    ref = make_referral(STATUS="outreach-sent")
    monkeypatch.setattr(inbound_webhook, "generate_reply", lambda ctx, msg: "Thanks Jordan!")

    resp = client.post(
        "/twilio/webhook",
        data={"From": REFERRAL_PHONE, "To": AGENT_NUMBER, "Body": "hey", "MessageSid": "SM42"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/xml")
    assert resp.text.endswith("<Response></Response>")
    assert STORE.require_referral(ref.id).status is ReferralStatus.ACTIVE
    assert gateway.sent[0]["body"] == "Thanks Jordan!"


def test_webhook_acks_even_when_persistence_fails(gateway, monkeypatch, make_referral):
    make_referral(STATUS="outreach-sent")

    def _broken(referral_id, message):
        raise RuntimeError("airtable down")

    monkeypatch.setattr(inbound_webhook.LIFECYCLE, "record_inbound", _broken)
    resp = client.post("/twilio/webhook", data={"From": REFERRAL_PHONE, "To": AGENT_NUMBER, "Body": "hey"})
    assert resp.status_code == 200
    rows = STORE.connector.logs().all()
    assert rows[-1]["fields"]["Type"] == "INBOUND_PERSIST_FAILED"


def test_webhook_accepts_json_and_unknown_senders(gateway):
    resp = client.post("/twilio/webhook", json={"From": "+15559990000", "To": AGENT_NUMBER, "Body": "hi"})
    assert resp.status_code == 200
    assert gateway.sent == []


def test_webhook_token(monkeypatch):
    monkeypatch.setenv("WEBHOOK_TOKEN", "hook")
    settings.cache_clear()
    assert client.post("/twilio/webhook", data={"Body": "x"}).status_code == 401
    assert client.post("/twilio/webhook?token=hook", data={"Body": "x"}).status_code == 200


# ---------------- operator ----------------
def test_notify_creates_referral_with_opener(agent):
    resp = client.post(
        "/referral/notify",
        json={"agentId": agent.id, "referralPhone": "555-765-4321", "referralName": "Jordan", "clientName": "Marcus"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["status"] == "pending"
    assert body["aiEnabled"] is True
    assert body["openerDueAt"] is not None
    assert STORE.require_referral(body["referralId"]).referral_phone == REFERRAL_PHONE


def test_notify_unknown_agent():
    resp = client.post("/referral/notify", json={"agentId": "rec_missing", "referralPhone": REFERRAL_PHONE})
    assert resp.status_code == 404


def test_send_message_validation(gateway, agent, make_referral):
    ref = make_referral()
    missing = client.post("/referral/send-message", json={"agentId": agent.id, "referralId": ref.id})
    assert missing.status_code == 400
    blank = client.post("/referral/send-message", json={"agentId": agent.id, "referralId": ref.id, "message": "  "})
    assert blank.status_code == 400
    unknown = client.post(
        "/referral/send-message", json={"agentId": agent.id, "referralId": "rec_missing", "message": "hi"}
    )
    assert unknown.status_code == 404
    assert client.post("/referral/send-message", json={"message": "hi"}).status_code == 422
    assert gateway.sent == []


def test_send_message_then_resume(gateway, agent, make_referral):
    ref = make_referral(STATUS="active")
    sent = client.post(
        "/referral/send-message", json={"agentId": agent.id, "referralId": ref.id, "message": "Call you at 5?"}
    )
    assert sent.status_code == 200
    assert sent.json()["aiEnabled"] is False
    assert gateway.sent[0]["body"] == "Call you at 5?"

    resumed = client.post("/referral/resume", json={"agentId": agent.id, "referralId": ref.id})
    assert resumed.json()["aiEnabled"] is True
    assert resumed.json()["status"] == "active"


def test_send_message_gateway_failure(gateway, agent, make_referral):
    ref = make_referral()
    gateway.fail = True
    resp = client.post("/referral/send-message", json={"agentId": agent.id, "referralId": ref.id, "message": "hi"})
    assert resp.status_code == 502


def test_busy_referral_answers_conflict(monkeypatch, agent, make_referral):
    ref = make_referral()

    def _busy(*args, **kwargs):
        raise LockTimeout(f"referral {ref.id} busy")

    monkeypatch.setattr("referrals.routes.referrals.send_manual", _busy)
    monkeypatch.setattr("referrals.routes.referrals.resume_automation", _busy)
    payload = {"agentId": agent.id, "referralId": ref.id, "message": "hi"}

    sent = client.post("/referral/send-message", json=payload)
    assert sent.status_code == 409
    assert sent.json()["detail"] == "Referral is busy, retry shortly"
    assert client.post("/referral/resume", json=payload).status_code == 409


def test_first_message_is_idempotent(agent, make_referral):
    ref = make_referral()
    first = client.post("/referral/first-message", json={"agentId": agent.id, "referralId": ref.id}).json()
    second = client.post("/referral/first-message", json={"agentId": agent.id, "referralId": ref.id}).json()
    assert first["scheduled"] is True
    assert first["openerDueAt"] == second["openerDueAt"]


def test_group_ack_route(monkeypatch, agent, make_referral):
    ref = make_referral()
    monkeypatch.setattr("referrals.intake.generate_group_ack", lambda ctx: "Thanks Marcus!")
    resp = client.post("/referral/group-ack", json={"agentId": agent.id, "referralId": ref.id})
    assert resp.json() == {"success": True, "message": "Thanks Marcus!"}


def test_operator_token(monkeypatch, agent):
    monkeypatch.setenv("OPERATOR_TOKEN", "op")
    settings.cache_clear()
    payload = {"agentId": agent.id, "referralPhone": REFERRAL_PHONE}
    assert client.post("/referral/notify", json=payload).status_code == 401
    ok = client.post("/referral/notify", json=payload, headers={"Authorization": "Bearer op"})
    assert ok.status_code == 200


# ---------------- cron ----------------
def test_cron_requires_token(monkeypatch):
    monkeypatch.setenv("CRON_TOKEN", "tick")
    settings.cache_clear()
    assert client.get("/cron/referral-drip").status_code == 401
    resp = client.post("/cron/referral-drip", headers={"x-cron-token": "tick"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True


def test_cron_drip_runs_sweep(gateway, make_referral):
    make_referral(STATUS="outreach-sent", LAST_DRIP_AT=utc_now() - timedelta(days=3))
    body = client.get("/cron/referral-drip").json()
    assert body["sent"] == 1
    assert body["due"] == 1


@pytest.mark.parametrize("method", ["get", "post"])
def test_cron_openers(method, gateway, monkeypatch, make_referral):
    make_referral(OPENER_DUE_AT=utc_now() - timedelta(seconds=5))
    monkeypatch.setattr("referrals.opener.generate_opener", lambda ctx: "Hey Jordan!")
    body = getattr(client, method)("/cron/openers").json()
    assert body["success"] is True
    assert body["sent"] == 1
