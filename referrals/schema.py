from __future__ import annotations

"""
Central Airtable schema definitions for the referral engine.

Canonical field names for the Agents / Referrals / Logs tables live here so
business logic never hard-codes column strings. Environment variables can
override individual names to line up with a customised Airtable copy.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Tuple


# ---------------------------------------------------------------------------
# Core data containers
# ---------------------------------------------------------------------------


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    return v if v else None


@dataclass(frozen=True)
class FieldDefinition:
    """
    Represents an Airtable column.

    Args:
        default: Canonical field name in Airtable.
        env_vars: Ordered env vars that can override the field name.
        options: Allowed values for single-select fields (if applicable).
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    options: Tuple[str, ...] = field(default_factory=tuple)

    def resolve(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default


@dataclass(frozen=True)
class TableDefinition:
    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    fields: Dict[str, FieldDefinition] = field(default_factory=dict)

    def name(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default

    def field_name(self, key: str) -> str:
        return self.fields[key].resolve()

    def field_names(self) -> Dict[str, str]:
        return {key: f.resolve() for key, f in self.fields.items()}


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ReferralStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    OUTREACH_SENT = "outreach-sent"
    DRIP_1 = "drip-1"
    DRIP_2 = "drip-2"
    DRIP_COMPLETE = "drip-complete"
    BOOKING_SENT = "booking-sent"
    BOOKED = "booked"
    CLOSED = "closed"


class MessageRole(str, Enum):
    REFERRAL = "referral"
    AGENT_AI = "agent-ai"
    AGENT_MANUAL = "agent-manual"


# Statuses where the referral has not replied yet; an inbound moves them to ACTIVE.
PRE_RESPONSE_STATUSES: FrozenSet[ReferralStatus] = frozenset(
    {
        ReferralStatus.PENDING,
        ReferralStatus.OUTREACH_SENT,
        ReferralStatus.DRIP_1,
        ReferralStatus.DRIP_2,
    }
)

DRIP_STATUSES: Tuple[ReferralStatus, ...] = (
    ReferralStatus.OUTREACH_SENT,
    ReferralStatus.DRIP_1,
    ReferralStatus.DRIP_2,
)

TERMINAL_STATUSES: FrozenSet[ReferralStatus] = frozenset(
    {ReferralStatus.DRIP_COMPLETE, ReferralStatus.BOOKED, ReferralStatus.CLOSED}
)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

AGENTS_TABLE = TableDefinition(
    default="Agents",
    env_vars=("AGENTS_TABLE",),
    fields={
        "NAME": FieldDefinition("Name", ("AGENT_NAME_FIELD",)),
        "TWILIO_NUMBER": FieldDefinition("Twilio Phone Number", ("AGENT_TWILIO_NUMBER_FIELD",)),
        "SCHEDULING_URL": FieldDefinition("Scheduling URL", ("AGENT_SCHEDULING_URL_FIELD",)),
        "PHONE": FieldDefinition("Phone Number", ("AGENT_PHONE_FIELD",)),
    },
)

REFERRALS_TABLE = TableDefinition(
    default="Referrals",
    env_vars=("REFERRALS_TABLE",),
    fields={
        "AGENT_ID": FieldDefinition("Agent ID"),
        "CLIENT_ID": FieldDefinition("Client ID"),
        "CLIENT_NAME": FieldDefinition("Client Name"),
        "REFERRAL_NAME": FieldDefinition("Referral Name"),
        "REFERRAL_PHONE": FieldDefinition("Referral Phone", ("REFERRAL_PHONE_FIELD",)),
        "STATUS": FieldDefinition(
            "Status",
            ("REFERRAL_STATUS_FIELD",),
            options=tuple(s.value for s in ReferralStatus),
        ),
        "CONVERSATION": FieldDefinition("Conversation"),
        "AI_ENABLED": FieldDefinition("AI Enabled"),
        "DRIP_COUNT": FieldDefinition("Drip Count"),
        "LAST_DRIP_AT": FieldDefinition("Last Drip At"),
        "OPENER_DUE_AT": FieldDefinition("Opener Due At"),
        "OPENER_ATTEMPTS": FieldDefinition("Opener Attempts"),
        "GATHERED_INFO": FieldDefinition("Gathered Info"),
        "APPOINTMENT_BOOKED": FieldDefinition("Appointment Booked"),
        "CREATED_AT": FieldDefinition("Created At"),
        "UPDATED_AT": FieldDefinition("Updated At"),
    },
)

LOGS_TABLE = TableDefinition(
    default="Logs",
    env_vars=("LOGS_TABLE",),
    fields={
        "TYPE": FieldDefinition("Type"),
        "PROCESSED": FieldDefinition("Processed"),
        "BREAKDOWN": FieldDefinition("Breakdown"),
        "STATUS": FieldDefinition("Status"),
        "TIMESTAMP": FieldDefinition("Timestamp"),
    },
)


def agents_field_map() -> Dict[str, str]:
    return AGENTS_TABLE.field_names()


def referrals_field_map() -> Dict[str, str]:
    """
    Logical key → live Airtable column, e.g.::

        {"STATUS": "Status", "LAST_DRIP_AT": "Last Drip At", ...}
    """
    return REFERRALS_TABLE.field_names()


def logs_field_map() -> Dict[str, str]:
    return LOGS_TABLE.field_names()
