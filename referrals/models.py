"""Typed views over Agents / Referrals records."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from referrals.runtime import get_logger, parse_ts, to_iso, utc_now
from referrals.schema import (
    MessageRole,
    ReferralStatus,
    agents_field_map,
    referrals_field_map,
)

logger = get_logger(__name__)

DEFAULT_REFERRAL_NAME = "Friend"
DEFAULT_CLIENT_NAME = "A client"
DEFAULT_AGENT_NAME = "Your agent"


@dataclass(frozen=True)
class Message:
    role: MessageRole
    body: str
    timestamp: str

    @classmethod
    def now(cls, role: MessageRole, body: str, at: Optional[datetime] = None) -> "Message":
        return cls(role=MessageRole(role), body=body, timestamp=to_iso(at or utc_now()))

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "body": self.body, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=MessageRole(data.get("role", MessageRole.REFERRAL.value)),
            body=str(data.get("body") or ""),
            timestamp=str(data.get("timestamp") or ""),
        )


def _load_json(value: Any, default: Any) -> Any:
    if value in (None, ""):
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable JSON field value: %.80r", value)
        return default


def decode_conversation(value: Any) -> Tuple[Message, ...]:
    raw = _load_json(value, [])
    return tuple(Message.from_dict(m) for m in raw if isinstance(m, dict))


def encode_conversation(messages: Tuple[Message, ...] | List[Message]) -> str:
    return json.dumps([m.to_dict() for m in messages], ensure_ascii=False)


def parse_status(value: Any) -> ReferralStatus:
    if not value:
        return ReferralStatus.PENDING
    return ReferralStatus(str(value).strip())


@dataclass(frozen=True)
class Agent:
    id: str
    name: str = ""
    twilio_number: Optional[str] = None
    scheduling_url: Optional[str] = None
    phone: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name.strip() or DEFAULT_AGENT_NAME

    @property
    def first_name(self) -> str:
        return self.display_name.split()[0]

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Agent":
        F = agents_field_map()
        fields = record.get("fields", {}) or {}
        return cls(
            id=record["id"],
            name=str(fields.get(F["NAME"]) or ""),
            twilio_number=fields.get(F["TWILIO_NUMBER"]) or None,
            scheduling_url=fields.get(F["SCHEDULING_URL"]) or None,
            phone=fields.get(F["PHONE"]) or None,
        )


@dataclass(frozen=True)
class Referral:
    id: str
    agent_id: str
    client_id: str = ""
    client_name: str = ""
    referral_name: str = ""
    referral_phone: str = ""
    status: ReferralStatus = ReferralStatus.PENDING
    conversation: Tuple[Message, ...] = ()
    ai_enabled: bool = True
    drip_count: int = 0
    last_drip_at: Optional[datetime] = None
    opener_due_at: Optional[datetime] = None
    opener_attempts: int = 0
    gathered_info: Dict[str, Any] = field(default_factory=dict)
    appointment_booked: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.referral_name.strip() or DEFAULT_REFERRAL_NAME

    @property
    def display_client_name(self) -> str:
        return self.client_name.strip() or DEFAULT_CLIENT_NAME

    @property
    def drip_anchor(self) -> Optional[datetime]:
        """Timestamp the next scripted send is measured from."""
        return self.last_drip_at or self.created_at

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Referral":
        F = referrals_field_map()
        fields = record.get("fields", {}) or {}
        return cls(
            id=record["id"],
            agent_id=str(fields.get(F["AGENT_ID"]) or ""),
            client_id=str(fields.get(F["CLIENT_ID"]) or ""),
            client_name=str(fields.get(F["CLIENT_NAME"]) or ""),
            referral_name=str(fields.get(F["REFERRAL_NAME"]) or ""),
            referral_phone=str(fields.get(F["REFERRAL_PHONE"]) or ""),
            status=parse_status(fields.get(F["STATUS"])),
            conversation=decode_conversation(fields.get(F["CONVERSATION"])),
            # Airtable omits unchecked checkboxes, so a missing value reads as off.
            ai_enabled=bool(fields.get(F["AI_ENABLED"])),
            drip_count=int(fields.get(F["DRIP_COUNT"]) or 0),
            last_drip_at=parse_ts(fields.get(F["LAST_DRIP_AT"])),
            opener_due_at=parse_ts(fields.get(F["OPENER_DUE_AT"])),
            opener_attempts=int(fields.get(F["OPENER_ATTEMPTS"]) or 0),
            gathered_info=_load_json(fields.get(F["GATHERED_INFO"]), {}),
            appointment_booked=bool(fields.get(F["APPOINTMENT_BOOKED"])),
            created_at=parse_ts(fields.get(F["CREATED_AT"])),
            updated_at=parse_ts(fields.get(F["UPDATED_AT"])),
        )
