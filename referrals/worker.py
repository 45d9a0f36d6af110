"""
🚀 Referral Worker
- Fires due openers every WORKER_INTERVAL_SEC
- Runs the drip sweep every DRIP_INTERVAL_SEC
- Sweep-level Redis locks keep multiple workers from overlapping
- Graceful SIGINT / SIGTERM shutdown
"""

from __future__ import annotations

import random
import signal
import time
from typing import Any, Callable, Dict, Optional

from referrals.config import env_bool, env_int, settings
from referrals.drip import run_drips
from referrals.opener import run_due_openers
from referrals.runtime import configure_logging, get_logger

logger = get_logger("worker")

JITTER_SEC = env_int("WORKER_JITTER_SEC", 3)
RUN_ONCE = env_bool("WORKER_RUN_ONCE", False)
MAX_CYCLES = env_int("WORKER_MAX_CYCLES", 0)

_shutdown = False


def _signal_handler(signum, frame):
    global _shutdown
    _shutdown = True
    logger.info("👋 Worker got signal %s, shutting down...", signum)


def _run_safely(name: str, fn: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    try:
        return fn() or {}
    except Exception as e:
        logger.exception("%s crashed", name)
        return {"ok": False, "error": str(e)}


def _sleep(base: float) -> None:
    """Sleep with jitter in short slices so a shutdown signal is honoured quickly."""
    remaining = base + random.uniform(0, max(0, JITTER_SEC))
    while remaining > 0 and not _shutdown:
        step = min(1.0, remaining)
        time.sleep(step)
        remaining -= step


def run_cycle(last_drip_at: Optional[float], now: Optional[float] = None) -> tuple[Dict[str, Any], Optional[float]]:
    """One poll: openers always, drips when their interval has passed."""
    now = time.monotonic() if now is None else now
    results: Dict[str, Any] = {"openers": _run_safely("openers", run_due_openers)}
    if last_drip_at is None or now - last_drip_at >= settings().DRIP_INTERVAL_SEC:
        results["drips"] = _run_safely("drips", run_drips)
        last_drip_at = now
    return results, last_drip_at


def main():
    configure_logging()
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    s = settings()
    logger.info(
        "🚀 Starting referral worker | interval=%ss drip_interval=%ss jitter=%ss",
        s.WORKER_INTERVAL_SEC,
        s.DRIP_INTERVAL_SEC,
        JITTER_SEC,
    )

    cycles = 0
    last_drip_at: Optional[float] = None
    while not _shutdown:
        if MAX_CYCLES and cycles >= MAX_CYCLES:
            break
        cycles += 1
        results, last_drip_at = run_cycle(last_drip_at)
        logger.info("cycle=%s %s", cycles, results)
        if RUN_ONCE:
            break
        _sleep(s.WORKER_INTERVAL_SEC)

    logger.info("🏁 Worker stopped cleanly after %s cycles.", cycles)


if __name__ == "__main__":
    main()
