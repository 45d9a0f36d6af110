# referrals/templates.py
"""Scripted drip follow-ups, keyed by the status the referral is leaving."""

from __future__ import annotations

from typing import Dict

from referrals.schema import DRIP_STATUSES, ReferralStatus

# -------------------------------
# Drip Templates (no AI, deterministic)
# -------------------------------

DRIP_TEMPLATES: Dict[ReferralStatus, str] = {
    # Day 2: gentle nudge referencing the client
    ReferralStatus.OUTREACH_SENT: (
        "Hey {referral_name}, just following up — {client_name} spoke really highly of you "
        "and I wanted to make sure you got my message. No worries if now isn't the right time."
    ),
    # Day 5: value question
    ReferralStatus.DRIP_1: (
        "Hey {referral_name}, quick question — if something unexpected happened tomorrow, "
        "how would your family handle the mortgage and bills? Most people don't think about "
        "that until it's too late. Happy to chat whenever you're ready."
    ),
    # Day 8: leave the door open
    ReferralStatus.DRIP_2: (
        "Hey {referral_name}, just wanted to leave the door open. If you ever want to look "
        "into getting your family protected, I'm a text away. Take care!"
    ),
    ReferralStatus.PENDING: "",
    ReferralStatus.ACTIVE: "",
    ReferralStatus.DRIP_COMPLETE: "",
    ReferralStatus.BOOKING_SENT: "",
    ReferralStatus.BOOKED: "",
    ReferralStatus.CLOSED: "",
}


def _validate() -> None:
    missing = set(ReferralStatus) - set(DRIP_TEMPLATES)
    if missing:
        raise RuntimeError(f"DRIP_TEMPLATES missing statuses: {sorted(s.value for s in missing)}")
    for status in DRIP_STATUSES:
        if not DRIP_TEMPLATES[status].strip():
            raise RuntimeError(f"drip stage {status.value} has an empty template")


_validate()


# -------------------------------
# Helpers
# -------------------------------


def render_drip(status: ReferralStatus, *, referral_name: str, client_name: str, agent_first_name: str = "") -> str:
    """Return the follow-up text for `status`, or "" when that stage sends nothing."""
    template = DRIP_TEMPLATES[ReferralStatus(status)]
    if not template:
        return ""
    return template.format(
        referral_name=referral_name,
        client_name=client_name,
        agent_first_name=agent_first_name,
    ).strip()
