# referrals/logger.py
"""
Run Logger
----------
Records sweep runs (drips, openers) and escalations to the 'Logs' table.
Best-effort: a Logs outage never breaks the run being logged.
"""

from __future__ import annotations

import json
from typing import Dict, Optional

import requests

from referrals.datastore import CONNECTOR
from referrals.runtime import get_logger, iso_now
from referrals.schema import logs_field_map

logger = get_logger("run_logger")


def log_run(
    run_type: str,
    processed: int = 0,
    breakdown: dict | str | None = None,
    status: str = "OK",
) -> Dict:
    """
    Log a system run into the Logs table.
    Example:
        log_run("REFERRAL_DRIP", processed=12, breakdown={"sent": 3})
    """
    F = logs_field_map()
    if isinstance(breakdown, dict):
        breakdown = json.dumps(breakdown, default=str)
    record = {
        F["TYPE"]: run_type,
        F["PROCESSED"]: processed,
        F["BREAKDOWN"]: breakdown or "",
        F["STATUS"]: status,
        F["TIMESTAMP"]: iso_now(),
    }
    try:
        CONNECTOR.logs().create(record)
    except (requests.RequestException, KeyError, ValueError) as e:
        logger.error("❌ log_run failed: %s (%s)", run_type, e)
        return {"ok": False, "error": str(e)}
    logger.info("📝 Logged run: %s | %s | processed=%s", run_type, status, processed)
    return {"ok": True, "type": run_type, "status": status}


def escalate(run_type: str, detail: str, extra: Optional[dict] = None) -> None:
    """Critical log line plus an ERROR row in Logs."""
    logger.critical("🚨 %s: %s %s", run_type, detail, extra or "")
    log_run(run_type, processed=0, breakdown={"detail": detail, **(extra or {})}, status="ERROR")
