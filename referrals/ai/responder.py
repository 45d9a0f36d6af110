# referrals/ai/responder.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import openai
from openai import OpenAI

from referrals.ai.prompts import (
    DONE_MARKER,
    GROUP_ACK_INSTRUCTION,
    WAIT_MARKER,
    conversation_system_prompt,
    group_ack_system_prompt,
    opener_instruction,
)
from referrals.config import settings
from referrals.models import Agent, Message, Referral
from referrals.runtime import get_logger, retry
from referrals.schema import MessageRole

logger = get_logger("ai.responder")

_TRANSIENT_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


# ───────────────────────────────────────────────────────────
# Sentinel + errors
# ───────────────────────────────────────────────────────────
class _NoReply:
    """The model chose not to answer; distinct from an error and from ""."""

    _instance: Optional["_NoReply"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_REPLY"


NO_REPLY = _NoReply()

Reply = Union[str, _NoReply]


class ReplyGenerationError(RuntimeError):
    """Upstream model failure (missing key, exhausted retries, empty output)."""


# ───────────────────────────────────────────────────────────
# Context
# ───────────────────────────────────────────────────────────
@dataclass(frozen=True)
class ReferralContext:
    agent_name: str
    agent_first_name: str
    client_name: str
    referral_name: str
    scheduling_url: Optional[str] = None
    agent_phone: Optional[str] = None
    conversation: Tuple[Message, ...] = ()

    @classmethod
    def build(
        cls,
        agent: Agent,
        referral: Referral,
        conversation: Optional[Sequence[Message]] = None,
    ) -> "ReferralContext":
        return cls(
            agent_name=agent.display_name,
            agent_first_name=agent.first_name,
            client_name=referral.display_client_name,
            referral_name=referral.display_name,
            scheduling_url=agent.scheduling_url,
            agent_phone=agent.phone,
            conversation=tuple(referral.conversation if conversation is None else conversation),
        )


# ───────────────────────────────────────────────────────────
# Helpers
# ───────────────────────────────────────────────────────────
def _clean(text: Optional[str]) -> str:
    text = re.sub(r"\s+", " ", text or "").strip()
    if len(text) >= 2 and text[0] == text[-1] == '"':
        text = text[1:-1].strip()
    return text


def _history(conversation: Sequence[Message]) -> List[Dict[str, str]]:
    return [
        {"role": "user" if m.role is MessageRole.REFERRAL else "assistant", "content": m.body}
        for m in conversation
    ]


def _client() -> OpenAI:
    s = settings()
    if not s.OPENAI_API_KEY:
        raise ReplyGenerationError("OPENAI_API_KEY is not set; AI referral replies are disabled")
    # Retries are handled by `retry` below so the backoff is visible in logs.
    return OpenAI(api_key=s.OPENAI_API_KEY, timeout=s.OPENAI_TIMEOUT, max_retries=0)


def _complete(system: str, messages: List[Dict[str, str]], max_tokens: Optional[int] = None) -> str:
    s = settings()
    cli = _client()

    def _call() -> str:
        resp = cli.chat.completions.create(
            model=s.OPENAI_MODEL,
            temperature=s.OPENAI_TEMPERATURE,
            max_tokens=max_tokens or s.OPENAI_MAX_TOKENS,
            messages=[{"role": "system", "content": system}, *messages],
        )
        return resp.choices[0].message.content or ""

    try:
        return retry(
            _call,
            retries=s.OPENAI_MAX_RETRIES,
            base_delay=1.5,
            backoff=2.0,
            exceptions=_TRANSIENT_ERRORS,
            logger=logger,
        )
    except openai.OpenAIError as exc:
        raise ReplyGenerationError(f"model call failed: {exc}") from exc


# ───────────────────────────────────────────────────────────
# Test-mode canned output
# ───────────────────────────────────────────────────────────
def _test_reply(ctx: ReferralContext, new_message: str) -> Reply:
    lowered = new_message.lower()
    if "not interested" in lowered or lowered.strip() in {"no", "stop"}:
        return NO_REPLY
    if ctx.scheduling_url and any(w in lowered for w in ("call", "time", "book", "schedule")):
        return f"Perfect, {ctx.referral_name}. Grab whatever time works best here: {ctx.scheduling_url}"
    return f"Thanks {ctx.referral_name}! Mind if I ask a couple quick questions to see if it even makes sense to chat?"


# ───────────────────────────────────────────────────────────
# Public API
# ───────────────────────────────────────────────────────────
def generate_reply(ctx: ReferralContext, new_message: str) -> Reply:
    """
    Answer the referral's latest text given the prior conversation.

    Returns the reply text, or NO_REPLY when the model answers with the
    wait/done markers or nothing at all. Raises ReplyGenerationError when the
    model cannot be reached.
    """
    if settings().REPLY_TEST_MODE:
        return _test_reply(ctx, new_message)

    raw = _complete(
        conversation_system_prompt(ctx),
        _history(ctx.conversation) + [{"role": "user", "content": new_message}],
    )
    text = _clean(raw)
    for marker in (WAIT_MARKER, DONE_MARKER):
        text = text.replace(marker, "").strip()
    if not text:
        logger.info("🤐 No reply for %s (model returned %r)", ctx.referral_name, _clean(raw)[:40])
        return NO_REPLY
    return text


def generate_opener(ctx: ReferralContext) -> str:
    """First 1:1 message to the referral; no prior conversation is sent."""
    if settings().REPLY_TEST_MODE:
        return (
            f"Hey {ctx.referral_name}, it's {ctx.agent_first_name}. {ctx.client_name} and I worked together "
            "recently. Mind if I ask a couple quick questions to see if it even makes sense to chat?"
        )
    text = _clean(_complete(conversation_system_prompt(ctx), [{"role": "user", "content": opener_instruction(ctx)}]))
    if not text or text in (WAIT_MARKER, DONE_MARKER):
        raise ReplyGenerationError("model returned an empty opener")
    return text


def generate_group_ack(ctx: ReferralContext) -> str:
    if settings().REPLY_TEST_MODE:
        return (
            f"Hey {ctx.referral_name}! {ctx.client_name}, thank you for connecting us. "
            f"{ctx.referral_name}, great to meet you, I'll shoot you a text."
        )
    text = _clean(
        _complete(group_ack_system_prompt(ctx), [{"role": "user", "content": GROUP_ACK_INSTRUCTION}], max_tokens=200)
    )
    if not text:
        raise ReplyGenerationError("model returned an empty group acknowledgment")
    return text
