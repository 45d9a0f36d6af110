"""Reusable token-based auth helpers for webhook, cron and operator routes."""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from referrals.config import settings


def _token_from_authorization(header: str | None) -> str | None:
    if not header:
        return None
    parts = header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _check(request: Request, expected: Optional[str], header_name: str, label: str) -> None:
    if not expected:
        return  # no auth configured

    provided = request.query_params.get("token")
    provided = provided or request.headers.get(header_name)
    provided = provided or _token_from_authorization(request.headers.get("Authorization"))

    if provided != expected:
        raise HTTPException(status_code=401, detail=f"Invalid {label} token")


async def require_webhook_token(request: Request) -> None:
    _check(request, settings().WEBHOOK_TOKEN, "x-webhook-token", "webhook")


async def require_cron_token(request: Request) -> None:
    _check(request, settings().CRON_TOKEN, "x-cron-token", "cron")


async def require_operator_token(request: Request) -> None:
    _check(request, settings().OPERATOR_TOKEN, "x-operator-token", "operator")
