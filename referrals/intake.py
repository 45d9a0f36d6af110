"""Referral creation and the group-thread acknowledgment."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from referrals.ai.responder import ReferralContext, generate_group_ack
from referrals.datastore import STORE, RecordNotFound, ReferralStore
from referrals.models import DEFAULT_CLIENT_NAME, DEFAULT_REFERRAL_NAME, Referral
from referrals.opener import schedule_opener
from referrals.runtime import get_logger, is_valid_e164, normalize_phone, to_iso, utc_now
from referrals.schema import ReferralStatus

logger = get_logger("intake")


def create_referral(
    *,
    agent_id: str,
    referral_phone: str,
    referral_name: Optional[str] = None,
    client_name: Optional[str] = None,
    client_id: Optional[str] = None,
    ai_enabled: bool = True,
    now: Optional[datetime] = None,
    store: ReferralStore = STORE,
) -> Referral:
    """Create a pending referral and, with AI on, arm its delayed opener."""
    if not agent_id or not referral_phone:
        raise ValueError("agentId and referralPhone are required")
    if store.get_agent(agent_id) is None:
        raise RecordNotFound(f"agent {agent_id} not found")

    phone = normalize_phone(referral_phone)
    if not phone:
        raise ValueError("referralPhone has no digits")
    if not is_valid_e164(phone):
        logger.warning("Referral phone %r is not E.164; it will be skipped by automated sends", phone)

    created_at = now or utc_now()
    referral = store.create_referral(
        {
            "AGENT_ID": agent_id,
            "CLIENT_ID": client_id or "",
            "CLIENT_NAME": (client_name or "").strip() or DEFAULT_CLIENT_NAME,
            "REFERRAL_NAME": (referral_name or "").strip() or DEFAULT_REFERRAL_NAME,
            "REFERRAL_PHONE": phone,
            "STATUS": ReferralStatus.PENDING,
            "CONVERSATION": "[]",
            "GATHERED_INFO": "{}",
            "AI_ENABLED": bool(ai_enabled),
            "DRIP_COUNT": 0,
            "APPOINTMENT_BOOKED": False,
            "CREATED_AT": to_iso(created_at),
        }
    )
    logger.info("🆕 Referral %s created for agent %s", referral.id, agent_id)

    if referral.ai_enabled:
        referral = schedule_opener(referral.id, now=created_at, store=store)
    return referral


def group_ack(agent_id: str, referral_id: str, *, store: ReferralStore = STORE) -> str:
    """Text for the agent to post in the client's group thread."""
    agent = store.get_agent(agent_id)
    if agent is None:
        raise RecordNotFound(f"agent {agent_id} not found")
    referral = store.get_referral(referral_id, agent_id=agent_id)
    if referral is None:
        raise RecordNotFound(f"referral {referral_id} not found")
    return generate_group_ack(ReferralContext.build(agent, referral))
