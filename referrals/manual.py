"""Operator override: human-sent messages and automation resume."""

from __future__ import annotations

from referrals.datastore import STORE, RecordNotFound, ReferralStore
from referrals.gateway import resolve_from_number, send_message
from referrals.lifecycle import LIFECYCLE, Lifecycle
from referrals.models import Message, Referral
from referrals.runtime import get_logger, is_valid_e164
from referrals.schema import MessageRole

logger = get_logger("manual")


def send_manual(
    agent_id: str,
    referral_id: str,
    body: str,
    *,
    store: ReferralStore = STORE,
    lifecycle: Lifecycle = LIFECYCLE,
) -> Referral:
    """
    Send `body` as the agent, bypassing the reply generator.

    On success the message is appended as agent-manual and AI is switched
    off for the referral; status is untouched. Gateway failures propagate
    so the operator sees them immediately.

    Raises:
        ValueError: empty body or undeliverable referral phone.
        RecordNotFound: unknown agent, or referral not owned by the agent.
        GatewayError: the provider did not accept the message.
        LockTimeout: the referral stayed busy while recording the message.
    """
    text = (body or "").strip()
    if not text:
        raise ValueError("message body is required")

    agent = store.get_agent(agent_id)
    if agent is None:
        raise RecordNotFound(f"agent {agent_id} not found")

    referral = store.get_referral(referral_id, agent_id=agent_id)
    if referral is None:
        raise RecordNotFound(f"referral {referral_id} not found")
    if not is_valid_e164(referral.referral_phone):
        raise ValueError(f"referral phone {referral.referral_phone!r} is not deliverable")

    send_message(from_number=resolve_from_number(agent), to=referral.referral_phone, body=text)
    updated = lifecycle.record_manual(referral_id, Message.now(MessageRole.AGENT_MANUAL, text))

    logger.info("✍️ Manual message sent to %s; AI paused", referral_id)
    return updated


def resume_automation(
    agent_id: str,
    referral_id: str,
    *,
    store: ReferralStore = STORE,
    lifecycle: Lifecycle = LIFECYCLE,
) -> Referral:
    """Re-enable AI replies and drips. Status and transcript are left alone."""
    if store.get_referral(referral_id, agent_id=agent_id) is None:
        raise RecordNotFound(f"referral {referral_id} not found")
    updated = lifecycle.set_automation(referral_id, True)
    logger.info("▶️ Automation resumed for %s", referral_id)
    return updated
