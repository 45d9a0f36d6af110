"""Airtable-backed referral store with a deterministic in-memory fallback."""

from __future__ import annotations

import itertools
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from pyairtable import Api

from referrals.config import settings
from referrals.locks import dist, reset_locks
from referrals.models import Agent, Message, Referral, encode_conversation
from referrals.runtime import get_logger, iso_now, normalize_phone, to_iso
from referrals.schema import (
    AGENTS_TABLE,
    LOGS_TABLE,
    REFERRALS_TABLE,
    ReferralStatus,
    agents_field_map,
    referrals_field_map,
)

logger = get_logger(__name__)

_FORMULA_EQ = re.compile(r"\{([^}]+)\}\s*=\s*'([^']*)'")


class RecordNotFound(LookupError):
    """Referral or agent id does not resolve to a record."""


class InMemoryTable:
    """Minimal Airtable drop-in replacement used for local runs and tests."""

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, fields: Dict[str, Any]):
        with self._lock:
            record_id = f"rec_{next(self._sequence)}"
            record = {"id": record_id, "fields": dict(fields)}
            self._records[record_id] = record
            return _copy(record)

    def update(self, record_id: str, fields: Dict[str, Any]):
        with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Unknown record id {record_id} in {self.name}")
            self._records[record_id]["fields"].update(fields)
            return _copy(self._records[record_id])

    def get(self, record_id: str):
        with self._lock:
            record = self._records.get(record_id)
            return _copy(record) if record else None

    def all(self, **kwargs):
        with self._lock:
            records = [_copy(r) for r in self._records.values()]
        formula = kwargs.get("formula")
        max_records = kwargs.get("max_records")
        if formula:
            records = [rec for rec in records if _formula_match(rec, formula)]
        for key in reversed(kwargs.get("sort") or []):
            desc = key.startswith("-")
            name = key[1:] if desc else key
            records.sort(key=lambda r: str(r["fields"].get(name) or ""), reverse=desc)
        if max_records is not None:
            records = records[: int(max_records)]
        return records


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": record["id"], "fields": dict(record["fields"])}


def _formula_match(record: Dict[str, Any], formula: str) -> bool:
    matches = _FORMULA_EQ.findall(formula)
    if not matches:
        return False
    fields = record.get("fields", {})
    for field_name, expected in matches:
        if str(fields.get(field_name)) != expected:
            return False
    return True


def _eq(field_name: str, value: Any) -> str:
    escaped = str(value).replace("'", "\\'")
    return f"{{{field_name}}}='{escaped}'"


def _and(*clauses: str) -> str:
    return clauses[0] if len(clauses) == 1 else f"AND({','.join(clauses)})"


# ============================================================
# CONNECTOR
# ============================================================


class DataConnector:
    """Lazy pyairtable connector with in-memory fallback."""

    def __init__(self) -> None:
        self._tables: Dict[str, Any] = {}
        self._guard = threading.Lock()

    def _table(self, table_name: str):
        with self._guard:
            if table_name in self._tables:
                return self._tables[table_name]
            s = settings()
            if s.FORCE_IN_MEMORY or not (s.AIRTABLE_API_KEY and s.REFERRALS_BASE):
                if not s.FORCE_IN_MEMORY:
                    logger.warning("Airtable not configured; using in-memory table for %s", table_name)
                table = InMemoryTable(table_name)
            else:
                table = Api(s.AIRTABLE_API_KEY).table(s.REFERRALS_BASE, table_name)
            self._tables[table_name] = table
            return table

    def agents(self):
        return self._table(AGENTS_TABLE.name())

    def referrals(self):
        return self._table(REFERRALS_TABLE.name())

    def logs(self):
        return self._table(LOGS_TABLE.name())


CONNECTOR = DataConnector()


# ============================================================
# REFERRAL STORE
# ============================================================


@dataclass
class Change:
    """One atomic write: logical field keys → values, plus messages to append."""

    fields: Dict[str, Any] = field(default_factory=dict)
    messages: Tuple[Message, ...] = ()


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    return value


def _get_or_none(table, record_id: str) -> Optional[Dict[str, Any]]:
    try:
        return table.get(record_id)
    except requests.HTTPError as exc:
        if getattr(exc.response, "status_code", None) == 404:
            return None
        raise


class ReferralStore:
    def __init__(self, connector: DataConnector = CONNECTOR):
        self.connector = connector

    # ---------------- agents ----------------
    def create_agent(
        self,
        name: str,
        *,
        twilio_number: Optional[str] = None,
        scheduling_url: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Agent:
        F = agents_field_map()
        payload = {
            F["NAME"]: name,
            F["TWILIO_NUMBER"]: normalize_phone(twilio_number),
            F["SCHEDULING_URL"]: scheduling_url,
            F["PHONE"]: normalize_phone(phone),
        }
        record = self.connector.agents().create({k: v for k, v in payload.items() if v not in (None, "")})
        return Agent.from_record(record)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        if not agent_id:
            return None
        record = _get_or_none(self.connector.agents(), agent_id)
        return Agent.from_record(record) if record else None

    def find_agent_by_number(self, number: Optional[str]) -> Optional[Agent]:
        phone = normalize_phone(number)
        if not phone:
            return None
        F = agents_field_map()
        records = self.connector.agents().all(formula=_eq(F["TWILIO_NUMBER"], phone), max_records=1)
        return Agent.from_record(records[0]) if records else None

    def list_agents(self) -> List[Agent]:
        return [Agent.from_record(r) for r in self.connector.agents().all()]

    # ---------------- referrals ----------------
    def create_referral(self, fields: Dict[str, Any]) -> Referral:
        F = referrals_field_map()
        now = iso_now()
        payload = {F[k]: _serialize(v) for k, v in fields.items()}
        payload.setdefault(F["CREATED_AT"], now)
        payload[F["UPDATED_AT"]] = now
        record = self.connector.referrals().create(payload)
        return Referral.from_record(record)

    def get_referral(self, referral_id: str, agent_id: Optional[str] = None) -> Optional[Referral]:
        """Point lookup; with `agent_id` the referral must belong to that agent."""
        if not referral_id:
            return None
        record = _get_or_none(self.connector.referrals(), referral_id)
        if not record:
            return None
        referral = Referral.from_record(record)
        if agent_id and referral.agent_id != agent_id:
            return None
        return referral

    def require_referral(self, referral_id: str, agent_id: Optional[str] = None) -> Referral:
        referral = self.get_referral(referral_id, agent_id)
        if referral is None:
            raise RecordNotFound(f"referral {referral_id} not found")
        return referral

    def find_referral_by_phone(self, agent_id: str, phone: str) -> Optional[Referral]:
        """Most recently created referral of `agent_id` with this phone."""
        F = referrals_field_map()
        records = self.connector.referrals().all(
            formula=_and(_eq(F["AGENT_ID"], agent_id), _eq(F["REFERRAL_PHONE"], phone)),
            sort=[f"-{F['CREATED_AT']}"],
            max_records=1,
        )
        return Referral.from_record(records[0]) if records else None

    def list_by_status(self, status: ReferralStatus, agent_id: Optional[str] = None) -> List[Referral]:
        F = referrals_field_map()
        clauses = [_eq(F["STATUS"], ReferralStatus(status).value)]
        if agent_id:
            clauses.append(_eq(F["AGENT_ID"], agent_id))
        records = self.connector.referrals().all(formula=_and(*clauses), sort=[F["CREATED_AT"]])
        return [Referral.from_record(r) for r in records]

    def list_due_openers(self, now: datetime) -> List[Referral]:
        return [
            r
            for r in self.list_by_status(ReferralStatus.PENDING)
            if r.opener_due_at is not None and r.opener_due_at <= now
        ]

    # ---------------- mutation ----------------
    def locked(self, referral_id: str, timeout: Optional[float] = None):
        if timeout is None:
            return dist().referral(referral_id)
        return dist().referral(referral_id, timeout=timeout)

    def mutate(
        self,
        referral_id: str,
        mutator: Callable[[Referral], Optional[Change]],
        *,
        timeout: Optional[float] = None,
    ) -> Referral:
        """
        Read-modify-write one referral under its lock.

        `mutator` sees the freshly read record and returns the `Change` to
        apply, or None to leave the record untouched. Field updates and the
        transcript append land in a single update call.
        """
        with self.locked(referral_id, timeout):
            current = self.require_referral(referral_id)
            change = mutator(current)
            if change is None:
                return current
            return self._write(current, change)

    def _write(self, current: Referral, change: Change) -> Referral:
        F = referrals_field_map()
        payload = {F[k]: _serialize(v) for k, v in change.fields.items()}
        if change.messages:
            payload[F["CONVERSATION"]] = encode_conversation(current.conversation + tuple(change.messages))
        payload[F["UPDATED_AT"]] = iso_now()
        record = self.connector.referrals().update(current.id, payload)
        return Referral.from_record(record)


STORE = ReferralStore()


def reset_state():
    CONNECTOR._tables.clear()
    reset_locks()
    logger.debug("🧹 Datastore state and locks cleared.")
