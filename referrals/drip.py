"""
💧 Drip Scheduler
-----------------
Periodic sweep over referrals that never replied. Each overdue referral gets
the scripted follow-up for its stage and moves one step along

    outreach-sent ─2d→ drip-1 ─3d→ drip-2 ─3d→ drip-complete

measured from the last automated send (or creation). Every unit is re-read
just before sending, and the write that records it only advances the status
the send was made from, so an inbound reply that lands mid-sweep wins.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from referrals.config import settings
from referrals.datastore import STORE, ReferralStore
from referrals.gateway import GatewayError, resolve_from_number, send_message
from referrals.lifecycle import LIFECYCLE, Lifecycle
from referrals.locks import dist
from referrals.logger import log_run
from referrals.models import Agent, Message, Referral
from referrals.runtime import get_logger, is_valid_e164, parse_ts, utc_now
from referrals.schema import DRIP_STATUSES, MessageRole, ReferralStatus
from referrals.templates import render_drip

logger = get_logger("drip")

DRIP_DELAYS: Dict[ReferralStatus, timedelta] = {
    ReferralStatus.OUTREACH_SENT: timedelta(days=2),
    ReferralStatus.DRIP_1: timedelta(days=3),
    ReferralStatus.DRIP_2: timedelta(days=3),
}

SENT, SKIPPED, FAILED = "sent", "skipped", "failed"


def is_due(referral: Referral, now: datetime) -> bool:
    delay = DRIP_DELAYS.get(referral.status)
    anchor = referral.drip_anchor
    if delay is None or anchor is None:
        return False
    return now - anchor >= delay


def _process(referral_id: str, agent: Agent, now: datetime, store: ReferralStore, lifecycle: Lifecycle) -> str:
    current = store.require_referral(referral_id)
    status = current.status
    if not current.ai_enabled or not is_due(current, now):
        return SKIPPED
    if not is_valid_e164(current.referral_phone):
        logger.warning("Drip skipped for %s: invalid phone %r", referral_id, current.referral_phone)
        return SKIPPED

    body = render_drip(
        status,
        referral_name=current.display_name,
        client_name=current.display_client_name,
        agent_first_name=agent.first_name,
    )
    if not body:
        return SKIPPED

    # No referral lock across the provider call; record_drip only advances from `status`.
    try:
        send_message(from_number=resolve_from_number(agent), to=current.referral_phone, body=body)
    except GatewayError as exc:
        logger.error("Drip send failed for %s (%s): %s", referral_id, status.value, exc)
        return FAILED

    updated = lifecycle.record_drip(referral_id, Message.now(MessageRole.AGENT_AI, body, at=now), status, now)
    logger.info("💧 Drip %s → %s for %s (count=%s)", status.value, updated.status.value, referral_id, updated.drip_count)
    return SENT


def _candidates(now: datetime, store: ReferralStore) -> List[Tuple[Agent, Referral]]:
    agents = {a.id: a for a in store.list_agents()}
    found: List[Tuple[Agent, Referral]] = []
    for status in DRIP_STATUSES:
        for referral in store.list_by_status(status):
            agent = agents.get(referral.agent_id)
            if agent is None:
                logger.warning("Referral %s has unknown agent %s", referral.id, referral.agent_id)
                continue
            if referral.ai_enabled and is_due(referral, now):
                found.append((agent, referral))
    return found


def run_drips(
    now: Optional[datetime] = None,
    *,
    store: ReferralStore = STORE,
    lifecycle: Lifecycle = LIFECYCLE,
) -> Dict[str, Any]:
    """One sweep. Returns {"ok", "sent", "skipped", "failed", "due"}."""
    now = parse_ts(now) or utc_now()
    summary: Dict[str, Any] = {"ok": True, "sent": 0, "skipped": 0, "failed": 0, "due": 0}

    with dist().sweep("referral-drip") as acquired:
        if not acquired:
            logger.info("Drip sweep already running elsewhere; skipping")
            summary["locked"] = True
            return summary

        # Snapshot first so a referral advanced in this sweep is not picked up again.
        jobs = _candidates(now, store)
        summary["due"] = len(jobs)
        if jobs:
            with ThreadPoolExecutor(max_workers=settings().DRIP_WORKERS) as pool:
                futures = {pool.submit(_process, r.id, agent, now, store, lifecycle): r.id for agent, r in jobs}
                for fut in as_completed(futures):
                    try:
                        outcome = fut.result()
                    except Exception:
                        logger.exception("Drip crashed for %s", futures[fut])
                        outcome = FAILED
                    summary[outcome] += 1

    logger.info("💧 Drip sweep done: %s", summary)
    log_run(
        "REFERRAL_DRIP",
        processed=summary["due"],
        breakdown=summary,
        status="OK" if not summary["failed"] else "PARTIAL",
    )
    return summary
