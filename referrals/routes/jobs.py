# referrals/routes/jobs.py
"""
🧠 Scheduled Job Router
-----------------------
CRON-triggered sweeps: drip follow-ups and due openers.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends

from referrals.auth import require_cron_token
from referrals.drip import run_drips
from referrals.opener import run_due_openers

router = APIRouter(prefix="/cron", tags=["jobs"], dependencies=[Depends(require_cron_token)])


@router.api_route("/referral-drip", methods=["GET", "POST"])
async def referral_drip():
    result = await asyncio.to_thread(run_drips)
    return {"success": True, **result}


@router.api_route("/openers", methods=["GET", "POST"])
async def due_openers():
    result = await asyncio.to_thread(run_due_openers)
    return {"success": True, **result}
