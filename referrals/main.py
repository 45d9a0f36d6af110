"""
Referral Engine: FastAPI application
- Twilio inbound webhook (always answers empty TwiML)
- Operator endpoints for intake, manual override, resume
- CRON endpoints for drip and opener sweeps
"""

from __future__ import annotations

from fastapi import FastAPI

from referrals import __version__
from referrals.config import settings
from referrals.inbound_webhook import router as inbound_router
from referrals.routes.jobs import router as jobs_router
from referrals.routes.referrals import router as referrals_router
from referrals.runtime import configure_logging, get_logger, iso_now

configure_logging()
logger = get_logger("main")

app = FastAPI(title="Referral Engine", version=__version__)
app.include_router(inbound_router)
app.include_router(referrals_router)
app.include_router(jobs_router)


@app.on_event("startup")
async def _startup() -> None:
    s = settings()
    logger.info(
        "🚀 Referral engine %s up | airtable=%s | dry_run=%s | opener_delay=%ss",
        __version__,
        "memory" if s.FORCE_IN_MEMORY or not s.AIRTABLE_API_KEY else "airtable",
        s.GATEWAY_DRY_RUN,
        s.OPENER_DELAY_SEC,
    )


# ─────────────────────────── Health ────────────────────────────────
@app.get("/ping")
async def ping():
    return {"ok": True, "pong": True, "time": iso_now()}


@app.get("/health")
async def health():
    return {"ok": True, "timestamp": iso_now(), "version": __version__}
