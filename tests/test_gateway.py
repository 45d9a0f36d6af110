import httpx
import pytest

from referrals import gateway
from referrals.config import settings
from referrals.gateway import GatewayError, resolve_from_number, send_message
from referrals.models import Agent


@pytest.fixture
def live(monkeypatch):
    monkeypatch.setenv("GATEWAY_DRY_RUN", "0")
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "secret")
    monkeypatch.setenv("TWILIO_PHONE_NUMBER", "+15550004444")
    settings.cache_clear()

    calls = []
    responses = []

    def fake_post(url, data=None, auth=None, timeout=None):
        calls.append({"url": url, "data": data, "auth": auth})
        status, payload = responses.pop(0) if responses else (201, {"sid": "SM1", "status": "queued"})
        return httpx.Response(status, json=payload, request=httpx.Request("POST", url))

    monkeypatch.setattr(gateway.httpx, "post", fake_post)
    return calls, responses


def test_send_posts_form_to_messages_endpoint(live):
    calls, _ = live
    result = send_message(from_number="+15550001111", to="+15557654321", body=" hi there ")

    assert result == {"status": "sent", "sid": "SM1", "provider_status": "queued"}
    assert calls[0]["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    assert calls[0]["data"] == {"To": "+15557654321", "From": "+15550001111", "Body": "hi there"}
    assert calls[0]["auth"] == ("AC123", "secret")


def test_http_error_raises_with_body(live):
    _, responses = live
    responses.append((400, {"message": "The 'To' number is not a valid phone number."}))
    with pytest.raises(GatewayError) as exc:
        send_message(from_number="+15550001111", to="+15557654321", body="hi")
    assert exc.value.status_code == 400
    assert "not a valid phone number" in str(exc.value)


def test_rejected_status_raises(live):
    _, responses = live
    responses.append((201, {"sid": "SM2", "status": "failed", "error_message": "blocked"}))
    with pytest.raises(GatewayError):
        send_message(from_number="+15550001111", to="+15557654321", body="hi")


def test_rate_limit_raises(live):
    _, responses = live
    responses.append((429, {"message": "Too many requests"}))
    with pytest.raises(GatewayError) as exc:
        send_message(from_number="+15550001111", to="+15557654321", body="hi")
    assert exc.value.status_code == 429


def test_transport_error_is_wrapped(live, monkeypatch):
    def _down(*args, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(gateway.httpx, "post", _down)
    with pytest.raises(GatewayError):
        send_message(from_number="+15550001111", to="+15557654321", body="hi")


def test_payload_validation_happens_before_network(live):
    calls, _ = live
    with pytest.raises(GatewayError):
        send_message(from_number="+15550001111", to="555-1234", body="hi")
    with pytest.raises(GatewayError):
        send_message(from_number="+15550001111", to="+15557654321", body="")
    with pytest.raises(GatewayError):
        send_message(from_number="+15550001111", to="+15557654321", body="x" * 1601)
    assert calls == []


def test_missing_credentials_raise(monkeypatch):
    monkeypatch.setenv("GATEWAY_DRY_RUN", "0")
    settings.cache_clear()
    with pytest.raises(GatewayError):
        send_message(from_number="+15550001111", to="+15557654321", body="hi")


def test_dry_run_does_not_post(monkeypatch):
    monkeypatch.setattr(gateway.httpx, "post", lambda *a, **k: pytest.fail("network used"))
    result = send_message(from_number="+15550001111", to="+15557654321", body="hi")
    assert result["status"] == "sent"
    assert result["sid"].startswith("SM_dry_")


def test_resolve_from_number_prefers_agent(live):
    assert resolve_from_number(Agent(id="a1", twilio_number="+15550001111")) == "+15550001111"
    assert resolve_from_number(Agent(id="a2")) == "+15550004444"
    assert resolve_from_number(None) == "+15550004444"
