# referrals/routes/referrals.py
"""
Operator-facing referral endpoints (mobile app + dashboard).
"""

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from referrals.ai.responder import ReplyGenerationError
from referrals.auth import require_operator_token
from referrals.datastore import STORE, RecordNotFound
from referrals.gateway import GatewayError
from referrals.intake import create_referral, group_ack
from referrals.locks import LockTimeout
from referrals.manual import resume_automation, send_manual
from referrals.models import Referral
from referrals.opener import schedule_opener
from referrals.runtime import get_logger, to_iso

log = get_logger("routes.referrals")

router = APIRouter(prefix="/referral", tags=["referrals"], dependencies=[Depends(require_operator_token)])


# -------------------------------------------------------------------
# Payloads
# -------------------------------------------------------------------
class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ReferralRef(_Camel):
    agent_id: str = Field(alias="agentId", min_length=1)
    referral_id: str = Field(alias="referralId", min_length=1)


class NotifyRequest(_Camel):
    agent_id: str = Field(alias="agentId", min_length=1)
    referral_phone: str = Field(alias="referralPhone", min_length=1)
    referral_name: Optional[str] = Field(default=None, alias="referralName")
    client_name: Optional[str] = Field(default=None, alias="clientName")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    ai_enabled: bool = Field(default=True, alias="aiEnabled")


class SendMessageRequest(ReferralRef):
    message: Optional[str] = None


def _busy(e: LockTimeout) -> HTTPException:
    log.warning("Operator request hit a busy referral: %s", e)
    return HTTPException(status_code=409, detail="Referral is busy, retry shortly")


def _summary(referral: Referral) -> dict:
    return {
        "referralId": referral.id,
        "status": referral.status.value,
        "aiEnabled": referral.ai_enabled,
        "dripCount": referral.drip_count,
        "openerDueAt": to_iso(referral.opener_due_at) if referral.opener_due_at else None,
    }


# -------------------------------------------------------------------
# Routes
# -------------------------------------------------------------------
@router.post("/notify")
async def notify(req: NotifyRequest):
    try:
        referral = await asyncio.to_thread(
            create_referral,
            agent_id=req.agent_id,
            referral_phone=req.referral_phone,
            referral_name=req.referral_name,
            client_name=req.client_name,
            client_id=req.client_id,
            ai_enabled=req.ai_enabled,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, **_summary(referral)}


@router.post("/first-message")
async def first_message(req: ReferralRef):
    """Arm the delayed opener (idempotent)."""
    referral = await asyncio.to_thread(STORE.get_referral, req.referral_id, req.agent_id)
    if referral is None:
        raise HTTPException(status_code=404, detail="Referral not found")
    try:
        referral = await asyncio.to_thread(schedule_opener, referral.id)
    except LockTimeout as e:
        raise _busy(e)
    return {"success": True, "scheduled": referral.opener_due_at is not None, **_summary(referral)}


@router.post("/group-ack")
async def group_acknowledgment(req: ReferralRef):
    try:
        text = await asyncio.to_thread(group_ack, req.agent_id, req.referral_id)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReplyGenerationError as e:
        log.error("Group ack generation failed: %s", e)
        raise HTTPException(status_code=502, detail="Failed to generate message")
    return {"success": True, "message": text}


@router.post("/send-message")
async def send_message_route(req: SendMessageRequest):
    if not (req.message or "").strip():
        raise HTTPException(status_code=400, detail="Missing required fields: agentId, referralId, message")
    try:
        referral = await asyncio.to_thread(send_manual, req.agent_id, req.referral_id, req.message)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GatewayError as e:
        log.error("Manual send failed for %s: %s", req.referral_id, e)
        raise HTTPException(status_code=502, detail=f"Failed to send message: {e}")
    except LockTimeout as e:
        raise _busy(e)
    return {"success": True, **_summary(referral)}


@router.post("/resume")
async def resume(req: ReferralRef):
    try:
        referral = await asyncio.to_thread(resume_automation, req.agent_id, req.referral_id)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LockTimeout as e:
        raise _busy(e)
    return {"success": True, **_summary(referral)}
