"""
📥 Inbound Dispatcher
---------------------
One provider callback per inbound text:

    persist inbound → AI gate → generate → send → persist reply → status

The inbound write is the only step allowed to fail loudly; everything after
it is logged and dropped so the message stays in the transcript. The
provider always gets an empty TwiML 200.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import redis
import requests
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from referrals.ai.responder import (
    NO_REPLY,
    ReferralContext,
    ReplyGenerationError,
    generate_reply,
)
from referrals.auth import require_webhook_token
from referrals.config import settings
from referrals.datastore import STORE, ReferralStore
from referrals.gateway import GatewayError, resolve_from_number, send_message
from referrals.lifecycle import LIFECYCLE, Lifecycle
from referrals.logger import escalate
from referrals.models import Agent, Message, Referral
from referrals.runtime import get_logger, normalize_phone
from referrals.schema import MessageRole

logger = get_logger("inbound")

router = APIRouter()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


class InboundPersistenceError(RuntimeError):
    """The inbound message could not be written to the transcript."""


# === IDEMPOTENCY STORE ===
class IdempotencyStore:
    """Redis / Upstash idempotency on the provider message id, with a bounded local fallback."""

    def __init__(self, ttl_sec: int = 24 * 60 * 60, max_mem_size: int = 10000):
        s = settings()
        self.ttl = ttl_sec
        self.r = None
        self.rest_url = s.UPSTASH_REDIS_REST_URL
        self.rest_token = s.UPSTASH_REDIS_REST_TOKEN
        self.prefix = s.KEY_PREFIX
        if s.REDIS_URL:
            try:
                self.r = redis.from_url(s.REDIS_URL, decode_responses=True, socket_timeout=3)
            except (redis.RedisError, ValueError):
                logger.exception("Idempotency Redis init failed")
        self._mem: Dict[str, None] = {}
        self._max_mem_size = max_mem_size

    def _key(self, msg_id: str) -> str:
        return f"{self.prefix}:inbound:msg:{msg_id}"

    def seen(self, msg_id: Optional[str]) -> bool:
        """True if `msg_id` was already processed; marks it as seen otherwise."""
        if not msg_id:
            return False
        key = self._key(msg_id)

        if self.r is not None:
            try:
                return not bool(self.r.set(key, "1", nx=True, ex=self.ttl))
            except redis.RedisError:
                logger.exception("Idempotency Redis SET failed; falling through")

        if self.rest_url and self.rest_token:
            try:
                resp = requests.post(
                    self.rest_url,
                    headers={"Authorization": f"Bearer {self.rest_token}"},
                    json=["SET", key, "1", "EX", str(self.ttl), "NX"],
                    timeout=5,
                )
                data = resp.json() if resp.ok else {}
                return data.get("result") != "OK"
            except (requests.RequestException, ValueError):
                logger.exception("Idempotency Upstash SET failed; falling through")

        if key in self._mem:
            return True
        if len(self._mem) >= self._max_mem_size:
            # dicts keep insertion order: drop the oldest fifth
            for old_key in list(self._mem)[: self._max_mem_size // 5]:
                self._mem.pop(old_key, None)
        self._mem[key] = None
        return False

    def forget(self, msg_id: Optional[str]) -> None:
        """Allow a redelivery of `msg_id` to be processed again."""
        if not msg_id:
            return
        key = self._key(msg_id)
        self._mem.pop(key, None)
        if self.r is not None:
            try:
                self.r.delete(key)
            except redis.RedisError:
                logger.exception("Idempotency Redis DEL failed for %s", msg_id)
        elif self.rest_url and self.rest_token:
            try:
                requests.post(
                    self.rest_url,
                    headers={"Authorization": f"Bearer {self.rest_token}"},
                    json=["DEL", key],
                    timeout=5,
                )
            except requests.RequestException:
                logger.exception("Idempotency Upstash DEL failed for %s", msg_id)


_IDEM: Optional[IdempotencyStore] = None


def idempotency() -> IdempotencyStore:
    global _IDEM
    if _IDEM is None:
        _IDEM = IdempotencyStore()
    return _IDEM


def reset_idempotency() -> None:
    global _IDEM
    _IDEM = None


# === EVENT ===
@dataclass(frozen=True)
class InboundEvent:
    from_number: str
    to_number: str
    body: str
    message_sid: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "InboundEvent":
        return cls(
            from_number=normalize_phone(payload.get("From") or payload.get("from")) or "",
            to_number=normalize_phone(payload.get("To") or payload.get("to")) or "",
            body=str(payload.get("Body") or payload.get("body") or "").strip(),
            message_sid=payload.get("MessageSid") or payload.get("SmsSid") or payload.get("message_sid"),
        )


# === RESOLUTION ===
def resolve_referral(event: InboundEvent, store: ReferralStore = STORE) -> Optional[Tuple[Agent, Referral]]:
    """
    Agent owning the destination number first; only when no agent owns it,
    scan every agent and keep the most recently created match.
    """
    agent = store.find_agent_by_number(event.to_number)
    if agent is not None:
        referral = store.find_referral_by_phone(agent.id, event.from_number)
        return (agent, referral) if referral else None

    logger.warning("No agent owns %s; scanning all agents for %s", event.to_number, event.from_number)
    best: Optional[Tuple[Agent, Referral]] = None
    for candidate in store.list_agents():
        referral = store.find_referral_by_phone(candidate.id, event.from_number)
        if referral is None:
            continue
        if best is None or _created_key(referral) > _created_key(best[1]):
            best = (candidate, referral)
    return best


def _created_key(referral: Referral) -> str:
    return referral.created_at.isoformat() if referral.created_at else ""


# === DISPATCH ===
def handle_inbound(
    event: InboundEvent,
    *,
    store: ReferralStore = STORE,
    lifecycle: Lifecycle = LIFECYCLE,
) -> Dict[str, Any]:
    if not event.from_number or not event.body:
        logger.warning("Ignoring inbound without sender or body: %s", event)
        return {"status": "ignored"}

    idem = idempotency()
    if idem.seen(event.message_sid):
        logger.info("🔁 Duplicate inbound %s ignored", event.message_sid)
        return {"status": "duplicate"}

    try:
        resolved = resolve_referral(event, store)
    except Exception as exc:
        idem.forget(event.message_sid)
        raise InboundPersistenceError(f"lookup for {event.from_number} failed: {exc}") from exc
    if resolved is None:
        logger.info("No referral matches %s → %s", event.from_number, event.to_number)
        return {"status": "unmatched"}
    agent, referral = resolved

    # 1) Persist the inbound before anything else can fail.
    inbound = Message.now(MessageRole.REFERRAL, event.body)
    try:
        referral = lifecycle.record_inbound(referral.id, inbound)
    except Exception as exc:
        idem.forget(event.message_sid)
        raise InboundPersistenceError(f"referral {referral.id}: {exc}") from exc
    logger.info("📥 Inbound stored for %s (status=%s)", referral.id, referral.status.value)

    # 2) Manual override gate.
    if not referral.ai_enabled:
        return {"status": "manual", "referral_id": referral.id}

    # 3) Generate.
    ctx = ReferralContext.build(agent, referral, conversation=referral.conversation[:-1])
    try:
        reply = generate_reply(ctx, event.body)
    except ReplyGenerationError as exc:
        logger.error("AI reply failed for %s: %s", referral.id, exc)
        return {"status": "generation_failed", "referral_id": referral.id}
    if reply is NO_REPLY:
        return {"status": "no_reply", "referral_id": referral.id}

    # 4) Send and record. The gate is re-read but no lock is held across the provider call.
    fresh = store.require_referral(referral.id)
    if not fresh.ai_enabled:
        logger.info("Operator took over %s during generation; dropping AI reply", referral.id)
        return {"status": "manual", "referral_id": referral.id}
    try:
        send_message(from_number=resolve_from_number(agent), to=fresh.referral_phone, body=reply)
    except GatewayError as exc:
        logger.error("AI reply send failed for %s: %s", referral.id, exc)
        return {"status": "send_failed", "referral_id": referral.id}

    booking = bool(agent.scheduling_url) and agent.scheduling_url in reply
    updated = lifecycle.record_ai_reply(referral.id, Message.now(MessageRole.AGENT_AI, reply), booking)

    logger.info("🤖 AI reply sent to %s (status=%s)", referral.id, updated.status.value)
    return {"status": "replied", "referral_id": referral.id, "referral_status": updated.status.value}


# === BODY PARSING ===
async def _parse_body(request: Request) -> Dict[str, Any]:
    """Parse request body supporting both form data and JSON."""
    content_type = request.headers.get("content-type", "").lower()
    try:
        if "application/json" in content_type:
            body = await request.json()
            return dict(body) if isinstance(body, dict) else {}
        form = await request.form()
        return {k: (v if isinstance(v, str) else str(v)) for k, v in form.items()}
    except ValueError as e:
        logger.warning("Failed to parse inbound body: %s", e)
        return {}


# === ROUTE ===
@router.post("/twilio/webhook", dependencies=[Depends(require_webhook_token)])
async def twilio_webhook(request: Request) -> Response:
    payload = await _parse_body(request)
    event = InboundEvent.from_payload(payload)
    try:
        result = await asyncio.to_thread(handle_inbound, event)
        logger.info("Inbound %s → %s", event.message_sid, result.get("status"))
    except InboundPersistenceError as exc:
        escalate("INBOUND_PERSIST_FAILED", str(exc), {"from": event.from_number, "sid": event.message_sid})
    except Exception:
        logger.exception("Unhandled inbound failure for %s", event.message_sid)
    return Response(content=EMPTY_TWIML, media_type="text/xml")
