"""
Referral lifecycle state machine.

The only writer of the Status column. Every status change is computed from
the record as re-read under the referral lock, so a stale caller can never
move a referral backwards (e.g. a drip send racing an inbound reply).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from referrals.config import settings
from referrals.datastore import STORE, Change, ReferralStore
from referrals.models import Message, Referral
from referrals.runtime import get_logger
from referrals.schema import (
    DRIP_STATUSES,
    PRE_RESPONSE_STATUSES,
    MessageRole,
    ReferralStatus,
)

logger = get_logger(__name__)

S = ReferralStatus


class Trigger(str, Enum):
    OPENER_SENT = "opener-sent"
    INBOUND = "inbound"
    DRIP_ELAPSED = "drip-elapsed"
    BOOKING_LINK_SENT = "booking-link-sent"


TRANSITIONS: Dict[Tuple[ReferralStatus, Trigger], ReferralStatus] = {
    (S.PENDING, Trigger.OPENER_SENT): S.OUTREACH_SENT,
    (S.PENDING, Trigger.INBOUND): S.ACTIVE,
    (S.OUTREACH_SENT, Trigger.INBOUND): S.ACTIVE,
    (S.DRIP_1, Trigger.INBOUND): S.ACTIVE,
    (S.DRIP_2, Trigger.INBOUND): S.ACTIVE,
    (S.OUTREACH_SENT, Trigger.DRIP_ELAPSED): S.DRIP_1,
    (S.DRIP_1, Trigger.DRIP_ELAPSED): S.DRIP_2,
    (S.DRIP_2, Trigger.DRIP_ELAPSED): S.DRIP_COMPLETE,
    (S.ACTIVE, Trigger.BOOKING_LINK_SENT): S.BOOKING_SENT,
}


class IllegalTransition(ValueError):
    def __init__(self, current: ReferralStatus, trigger: Trigger):
        super().__init__(f"no transition from {current.value!r} on {trigger.value!r}")
        self.current = current
        self.trigger = trigger


def _check_table() -> None:
    # Once a referral has responded it must never re-enter the drip sequence.
    responded = set(S) - PRE_RESPONSE_STATUSES
    for (src, trigger), dst in TRANSITIONS.items():
        if src in responded and dst in DRIP_STATUSES:
            raise RuntimeError(f"backward transition {src.value} -> {dst.value} on {trigger.value}")


_check_table()


def can_fire(current: ReferralStatus, trigger: Trigger) -> bool:
    return (ReferralStatus(current), Trigger(trigger)) in TRANSITIONS


def next_status(current: ReferralStatus, trigger: Trigger) -> ReferralStatus:
    current, trigger = ReferralStatus(current), Trigger(trigger)
    try:
        return TRANSITIONS[(current, trigger)]
    except KeyError:
        raise IllegalTransition(current, trigger) from None


class Lifecycle:
    def __init__(self, store: ReferralStore = STORE):
        self.store = store

    def record_inbound(self, referral_id: str, message: Message) -> Referral:
        """Append the inbound text; pre-response referrals become active."""

        def _apply(current: Referral) -> Change:
            fields = {}
            if can_fire(current.status, Trigger.INBOUND):
                fields["STATUS"] = next_status(current.status, Trigger.INBOUND)
            return Change(fields=fields, messages=(message,))

        # A Redis holder keeps the lock for at most LOCK_TTL_SEC.
        return self.store.mutate(referral_id, _apply, timeout=settings().LOCK_TTL_SEC)

    def record_opener(self, referral_id: str, message: Message, now: datetime) -> Referral:
        def _apply(current: Referral) -> Change:
            fields = {"OPENER_DUE_AT": None}
            if can_fire(current.status, Trigger.OPENER_SENT):
                fields.update(
                    STATUS=next_status(current.status, Trigger.OPENER_SENT),
                    DRIP_COUNT=0,
                    LAST_DRIP_AT=now,
                )
            else:
                logger.warning(
                    "Opener for %s delivered after status moved to %s; status left as is",
                    referral_id,
                    current.status.value,
                )
            return Change(fields=fields, messages=(message,))

        return self.store.mutate(referral_id, _apply)

    def record_drip(
        self,
        referral_id: str,
        message: Message,
        from_status: ReferralStatus,
        now: datetime,
    ) -> Referral:
        """Record a delivered scripted follow-up and advance the drip stage."""

        def _apply(current: Referral) -> Change:
            fields = {"DRIP_COUNT": current.drip_count + 1, "LAST_DRIP_AT": now}
            if current.status == from_status:
                fields["STATUS"] = next_status(current.status, Trigger.DRIP_ELAPSED)
            else:
                logger.warning(
                    "Drip for %s sent from %s but status is now %s; not advancing",
                    referral_id,
                    from_status.value,
                    current.status.value,
                )
            return Change(fields=fields, messages=(message,))

        return self.store.mutate(referral_id, _apply)

    def record_ai_reply(self, referral_id: str, message: Message, booking_link_sent: bool) -> Referral:
        def _apply(current: Referral) -> Change:
            fields = {}
            if booking_link_sent and can_fire(current.status, Trigger.BOOKING_LINK_SENT):
                fields["STATUS"] = next_status(current.status, Trigger.BOOKING_LINK_SENT)
            return Change(fields=fields, messages=(message,))

        return self.store.mutate(referral_id, _apply)

    def record_manual(self, referral_id: str, message: Message) -> Referral:
        """Human message: appended as sent, automation suspended, status untouched."""
        if message.role is not MessageRole.AGENT_MANUAL:
            raise ValueError("manual sends must carry the agent-manual role")
        return self.store.mutate(
            referral_id,
            lambda _current: Change(fields={"AI_ENABLED": False}, messages=(message,)),
        )

    def set_automation(self, referral_id: str, enabled: bool) -> Referral:
        def _apply(current: Referral) -> Optional[Change]:
            if current.ai_enabled == enabled:
                return None
            return Change(fields={"AI_ENABLED": enabled})

        return self.store.mutate(referral_id, _apply)


LIFECYCLE = Lifecycle()
