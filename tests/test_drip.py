from datetime import timedelta

from referrals import drip
from referrals.datastore import STORE
from referrals.lifecycle import LIFECYCLE
from referrals.locks import dist
from referrals.models import Message
from referrals.opener import run_due_openers
from referrals.schema import MessageRole, ReferralStatus

from tests.conftest import REFERRAL_PHONE, T0

S = ReferralStatus


def test_full_sequence_without_reply(gateway, monkeypatch, make_referral):
    monkeypatch.setattr("referrals.opener.generate_opener", lambda ctx: f"Hey {ctx.referral_name}!")
    ref = make_referral(CREATED_AT=T0 - timedelta(seconds=75), OPENER_DUE_AT=T0)

    assert run_due_openers(now=T0)["sent"] == 1
    assert STORE.require_referral(ref.id).status is S.OUTREACH_SENT

    # Not yet due one minute early.
    assert drip.run_drips(now=T0 + timedelta(days=2) - timedelta(minutes=1))["sent"] == 0

    assert drip.run_drips(now=T0 + timedelta(days=2))["sent"] == 1
    assert STORE.require_referral(ref.id).status is S.DRIP_1

    assert drip.run_drips(now=T0 + timedelta(days=5))["sent"] == 1
    assert STORE.require_referral(ref.id).status is S.DRIP_2

    assert drip.run_drips(now=T0 + timedelta(days=8))["sent"] == 1
    final = STORE.require_referral(ref.id)
    assert final.status is S.DRIP_COMPLETE
    assert final.drip_count == 3

    assert drip.run_drips(now=T0 + timedelta(days=60))["due"] == 0
    assert len(gateway.sent) == 4
    assert all(s["to"] == REFERRAL_PHONE for s in gateway.sent)
    roles = [m.role for m in final.conversation]
    assert roles == [MessageRole.AGENT_AI] * 4


def test_drip_anchor_strictly_increases(gateway, make_referral):
    ref = make_referral(STATUS="outreach-sent", LAST_DRIP_AT=T0)
    stamps = []
    for day in (2, 5, 8):
        drip.run_drips(now=T0 + timedelta(days=day))
        stamps.append(STORE.require_referral(ref.id).last_drip_at)
    assert stamps == sorted(stamps) and len(set(stamps)) == 3


def test_sweep_twice_sends_once(gateway, make_referral):
    ref = make_referral(STATUS="outreach-sent", LAST_DRIP_AT=T0)
    now = T0 + timedelta(days=2, hours=1)
    drip.run_drips(now=now)
    second = drip.run_drips(now=now)
    assert second["sent"] == 0
    assert len(gateway.sent) == 1
    assert STORE.require_referral(ref.id).drip_count == 1


def test_reply_stops_drips(gateway, make_referral):
    ref = make_referral(STATUS="outreach-sent", LAST_DRIP_AT=T0)
    LIFECYCLE.record_inbound(ref.id, Message.now(MessageRole.REFERRAL, "sure", at=T0 + timedelta(hours=1)))

    result = drip.run_drips(now=T0 + timedelta(days=3))
    assert result["due"] == 0
    assert gateway.sent == []
    assert STORE.require_referral(ref.id).status is S.ACTIVE


def test_manual_referral_is_not_dripped(gateway, make_referral):
    make_referral(STATUS="drip-1", LAST_DRIP_AT=T0, AI_ENABLED=False)
    assert drip.run_drips(now=T0 + timedelta(days=10))["sent"] == 0
    assert gateway.sent == []


def test_anchor_falls_back_to_created_at(gateway, make_referral):
    make_referral(STATUS="outreach-sent", CREATED_AT=T0)
    assert drip.run_drips(now=T0 + timedelta(days=2))["sent"] == 1


def test_send_failure_leaves_state_untouched(gateway, make_referral):
    ref = make_referral(STATUS="outreach-sent", LAST_DRIP_AT=T0)
    gateway.fail = True
    result = drip.run_drips(now=T0 + timedelta(days=2))
    assert result["failed"] == 1

    unchanged = STORE.require_referral(ref.id)
    assert unchanged.status is S.OUTREACH_SENT
    assert unchanged.drip_count == 0
    assert unchanged.conversation == ()

    gateway.fail = False
    assert drip.run_drips(now=T0 + timedelta(days=2, hours=4))["sent"] == 1


def test_invalid_phone_is_skipped(gateway, make_referral):
    make_referral(STATUS="outreach-sent", LAST_DRIP_AT=T0, REFERRAL_PHONE="5551234")
    result = drip.run_drips(now=T0 + timedelta(days=3))
    assert result["skipped"] == 1
    assert gateway.sent == []


def test_one_failure_does_not_stop_the_sweep(gateway, monkeypatch, make_referral):
    broken = make_referral(STATUS="outreach-sent", LAST_DRIP_AT=T0, REFERRAL_NAME="Broken")
    fine = make_referral(STATUS="drip-1", LAST_DRIP_AT=T0, REFERRAL_NAME="Fine")
    real_process = drip._process

    def flaky(referral_id, *args):
        if referral_id == broken.id:
            raise RuntimeError("boom")
        return real_process(referral_id, *args)

    monkeypatch.setattr(drip, "_process", flaky)
    result = drip.run_drips(now=T0 + timedelta(days=4))
    assert result["failed"] == 1
    assert result["sent"] == 1
    assert STORE.require_referral(fine.id).status is S.DRIP_2


def test_drip_text_uses_stage_template(gateway, make_referral):
    make_referral(STATUS="outreach-sent", LAST_DRIP_AT=T0)
    drip.run_drips(now=T0 + timedelta(days=2))
    body = gateway.sent[0]["body"]
    assert body.startswith("Hey Jordan")
    assert "Marcus" in body


def test_overlapping_sweep_is_skipped(gateway, make_referral):
    make_referral(STATUS="outreach-sent", LAST_DRIP_AT=T0)
    with dist().sweep("referral-drip") as acquired:
        assert acquired
        result = drip.run_drips(now=T0 + timedelta(days=3))
    assert result.get("locked") is True
    assert gateway.sent == []


def test_sweep_is_logged(gateway, make_referral):
    make_referral(STATUS="outreach-sent", LAST_DRIP_AT=T0)
    drip.run_drips(now=T0 + timedelta(days=2))
    rows = STORE.connector.logs().all()
    assert rows and rows[-1]["fields"]["Type"] == "REFERRAL_DRIP"


def test_is_due_only_for_drip_statuses(make_referral):
    for status in S:
        ref = make_referral(STATUS=status.value, LAST_DRIP_AT=T0)
        due = drip.is_due(ref, T0 + timedelta(days=30))
        assert due is (status in drip.DRIP_DELAYS)
