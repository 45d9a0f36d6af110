"""
Delayed 1:1 opener.

Creation stamps `Opener Due At` on the referral; the worker (or the
/cron/openers route) sweeps due rows and fires them. Nothing sleeps inside
a request, so a restart between creation and send loses nothing.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from referrals.ai.responder import ReferralContext, ReplyGenerationError, generate_opener
from referrals.config import settings
from referrals.datastore import STORE, Change, ReferralStore
from referrals.gateway import GatewayError, resolve_from_number, send_message
from referrals.lifecycle import LIFECYCLE, Lifecycle
from referrals.locks import dist
from referrals.logger import log_run
from referrals.models import Message, Referral
from referrals.runtime import get_logger, is_valid_e164, parse_ts, utc_now
from referrals.schema import MessageRole, ReferralStatus

logger = get_logger("opener")


def schedule_opener(referral_id: str, *, now: Optional[datetime] = None, store: ReferralStore = STORE) -> Referral:
    """Persist a single due-at for the opener; re-scheduling an armed opener is a no-op."""
    due = (now or utc_now()) + timedelta(seconds=settings().OPENER_DELAY_SEC)

    def _apply(current: Referral) -> Optional[Change]:
        if current.status is not ReferralStatus.PENDING or not current.ai_enabled:
            return None
        if current.opener_due_at is not None:
            return None
        return Change(fields={"OPENER_DUE_AT": due, "OPENER_ATTEMPTS": 0})

    referral = store.mutate(referral_id, _apply)
    logger.info("⏰ Opener for %s due at %s", referral_id, referral.opener_due_at)
    return referral


def _retry_delay(attempts: int) -> timedelta:
    exponent = max(0, attempts - 1)
    return timedelta(seconds=settings().OPENER_RETRY_BASE_SEC * (2**exponent))


def _record_failure(referral_id: str, reason: str, store: ReferralStore, now: datetime) -> None:
    max_attempts = settings().OPENER_MAX_ATTEMPTS

    def _apply(current: Referral) -> Change:
        attempts = current.opener_attempts + 1
        fields: Dict[str, Any] = {"OPENER_ATTEMPTS": attempts}
        if attempts >= max_attempts:
            fields["OPENER_DUE_AT"] = None
            logger.error("Opener for %s abandoned after %s attempts: %s", referral_id, attempts, reason)
        else:
            retry_at = now + _retry_delay(attempts)
            fields["OPENER_DUE_AT"] = retry_at
            logger.warning("Opener for %s retrying at %s (attempt %s): %s", referral_id, retry_at, attempts, reason)
        return Change(fields=fields)

    store.mutate(referral_id, _apply)


def send_opener(
    referral_id: str,
    *,
    now: Optional[datetime] = None,
    store: ReferralStore = STORE,
    lifecycle: Lifecycle = LIFECYCLE,
) -> Dict[str, Any]:
    """
    Fire the opener for one referral.

    Aborts unless the referral is still pending with AI enabled. On generation
    or send failure the referral stays pending, the attempt is counted and the
    due-at is pushed back with exponential backoff.
    """
    now = now or utc_now()
    referral = store.get_referral(referral_id)
    if referral is None:
        return {"status": "not_found", "referral_id": referral_id}
    if referral.status is not ReferralStatus.PENDING:
        logger.info("Opener for %s skipped: status is %s", referral_id, referral.status.value)
        return {"status": "skipped", "reason": referral.status.value, "referral_id": referral_id}
    if not referral.ai_enabled:
        return {"status": "skipped", "reason": "manual", "referral_id": referral_id}

    agent = store.get_agent(referral.agent_id)
    if agent is None:
        _record_failure(referral_id, "agent not found", store, now)
        return {"status": "failed", "reason": "agent_not_found", "referral_id": referral_id}

    try:
        body = generate_opener(ReferralContext.build(agent, referral, conversation=()))
    except ReplyGenerationError as exc:
        logger.error("Opener generation failed for %s: %s", referral_id, exc)
        _record_failure(referral_id, str(exc), store, now)
        return {"status": "failed", "reason": "generation", "referral_id": referral_id}

    fresh = store.require_referral(referral_id)
    if fresh.status is not ReferralStatus.PENDING or not fresh.ai_enabled:
        logger.info("Opener for %s aborted after generation (status=%s)", referral_id, fresh.status.value)
        return {"status": "skipped", "reason": fresh.status.value, "referral_id": referral_id}
    if not is_valid_e164(fresh.referral_phone):
        logger.warning("Opener for %s skipped: invalid phone %r", referral_id, fresh.referral_phone)
        store.mutate(referral_id, lambda _cur: Change(fields={"OPENER_DUE_AT": None}))
        return {"status": "skipped", "reason": "invalid_phone", "referral_id": referral_id}

    # Sent without the referral lock; record_opener leaves a referral that moved on as it is.
    try:
        send_message(from_number=resolve_from_number(agent), to=fresh.referral_phone, body=body)
    except GatewayError as exc:
        logger.error("Opener send failed for %s: %s", referral_id, exc)
        _record_failure(referral_id, str(exc), store, now)
        return {"status": "failed", "reason": "send", "referral_id": referral_id}

    updated = lifecycle.record_opener(referral_id, Message.now(MessageRole.AGENT_AI, body, at=now), now)
    logger.info("👋 Opener sent to %s (status=%s)", referral_id, updated.status.value)
    return {"status": "sent", "referral_id": referral_id, "referral_status": updated.status.value}


def run_due_openers(now: Optional[datetime] = None, *, store: ReferralStore = STORE) -> Dict[str, Any]:
    """Fire every opener whose due-at has passed."""
    now = parse_ts(now) or utc_now()
    summary: Dict[str, Any] = {"ok": True, "sent": 0, "skipped": 0, "failed": 0}

    with dist().sweep("openers") as acquired:
        if not acquired:
            summary["locked"] = True
            return summary

        for referral in store.list_due_openers(now):
            if not referral.ai_enabled:
                continue
            try:
                result = send_opener(referral.id, now=now, store=store)
            except Exception:
                logger.exception("Opener crashed for %s", referral.id)
                summary["failed"] += 1
                continue
            key = {"sent": "sent", "failed": "failed"}.get(result["status"], "skipped")
            summary[key] += 1

    if summary["sent"] or summary["failed"]:
        log_run(
            "REFERRAL_OPENERS",
            processed=summary["sent"] + summary["failed"] + summary["skipped"],
            breakdown=summary,
            status="OK" if not summary["failed"] else "PARTIAL",
        )
    return summary
