# referrals/gateway.py
"""
📡 Message Gateway: Twilio-style 2010-04-01 Messages API over httpx.

`send_message` either returns a confirmed delivery envelope or raises
`GatewayError`; callers never have to inspect a "failed" status.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from referrals.config import settings
from referrals.models import Agent
from referrals.runtime import E164_RE, get_logger

logger = get_logger("gateway")

MAX_BODY_CHARS = 1600
ACCEPTED_STATUSES = {"queued", "accepted", "sending", "sent", "delivered", "scheduled"}


# =========================
# Errors
# =========================


class GatewayError(RuntimeError):
    """Send failure carrying HTTP metadata and the provider response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.payload = payload

    def __str__(self) -> str:  # pragma: no cover - string formatting helper
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


# =========================
# Small helpers
# =========================


def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _validate_payload(payload: Dict[str, Any]) -> None:
    problems: List[str] = []

    for field in ("To", "From"):
        value = payload.get(field)
        if not _has_value(value):
            problems.append(f"{field} is required")
        elif not E164_RE.fullmatch(str(value)):
            problems.append(f"{field} must be E.164 (got {value!r})")

    body = payload.get("Body")
    if not _has_value(body):
        problems.append("Body is required")
    elif len(str(body)) > MAX_BODY_CHARS:
        problems.append(f"Body exceeds {MAX_BODY_CHARS} characters")

    if problems:
        raise GatewayError("Invalid message payload: " + "; ".join(problems), payload=dict(payload))


def _extract_error_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "").strip()


def _summarize_error_body(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "error_message"):
            if _has_value(body.get(key)):
                return str(body[key])
    return str(body or "")


def _messages_url() -> Optional[str]:
    s = settings()
    if not s.TWILIO_ACCOUNT_SID:
        return None
    return f"{s.TWILIO_API_BASE.rstrip('/')}/Accounts/{s.TWILIO_ACCOUNT_SID}/Messages.json"


def _http_post(url: str, data: Dict[str, Any], auth: Tuple[str, str], timeout: float) -> Dict[str, Any]:
    if settings().GATEWAY_DRY_RUN:
        logger.info("[DRY RUN] POST %s to=%s", url, data.get("To"))
        return {"sid": f"SM_dry_{int(time.time() * 1000)}", "status": "queued"}

    try:
        resp = httpx.post(url, data=data, auth=auth, timeout=timeout)
    except httpx.HTTPError as exc:
        raise GatewayError(f"Gateway transport error: {exc}", payload=data) from exc

    if resp.status_code == 429:
        raise GatewayError(
            f"429 rate limited; retry_after={resp.headers.get('Retry-After')}",
            status_code=429,
            body=resp.headers.get("Retry-After"),
            payload=data,
        )
    if resp.is_error:
        body = _extract_error_body(resp)
        logger.error("Gateway %s error body: %s", resp.status_code, body)
        message = f"Gateway HTTP {resp.status_code}"
        summary = _summarize_error_body(body)
        if summary:
            message = f"{message}: {summary}"
        raise GatewayError(message, status_code=resp.status_code, body=body, payload=data)
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text}


# =========================
# Public API
# =========================


def resolve_from_number(agent: Optional[Agent]) -> Optional[str]:
    """Agent's dedicated number, else the shared platform number."""
    if agent and agent.twilio_number:
        return agent.twilio_number
    return settings().TWILIO_PHONE_NUMBER


def send_message(*, from_number: Optional[str], to: str, body: str) -> Dict[str, Any]:
    """
    Send one SMS. Returns {"status": "sent", "sid": ..., "provider_status": ...}.
    Raises GatewayError on validation, transport or provider rejection.
    """
    s = settings()
    data: Dict[str, Any] = {"To": (to or "").strip(), "From": (from_number or "").strip(), "Body": (body or "").strip()}
    _validate_payload(data)

    url = _messages_url()
    if not s.GATEWAY_DRY_RUN and not (url and s.TWILIO_AUTH_TOKEN):
        raise GatewayError("Gateway credentials missing (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN)", payload=data)

    resp = _http_post(
        url or "dry-run://messages",
        data=data,
        auth=(s.TWILIO_ACCOUNT_SID or "", s.TWILIO_AUTH_TOKEN or ""),
        timeout=s.GATEWAY_TIMEOUT_SEC,
    )

    sid = resp.get("sid") or resp.get("messageSid") or resp.get("id")
    provider_status = str(resp.get("status") or "queued").lower()
    if provider_status not in ACCEPTED_STATUSES:
        raise GatewayError(
            f"Gateway rejected message: status={provider_status}",
            body=resp.get("error_message") or resp,
            payload=data,
        )

    logger.info("📤 Sent SMS %s → %s (sid=%s, status=%s)", data["From"], data["To"], sid, provider_status)
    return {"status": "sent", "sid": sid, "provider_status": provider_status}
