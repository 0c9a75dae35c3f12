"""Tests for tamper-evident audit trail behavior."""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from subpermit.agreement import AgreementKey
from subpermit.audit import AuditTrail, EventType
from subpermit.errors import InsufficientAllowanceError, InvalidSignatureError, SubpermitError
from subpermit.permit import PermitMessage, sign_permit
from subpermit.token import SubscriptionToken


DAY = 86_400


@pytest.fixture
def trail(tmp_path, monkeypatch):
    monkeypatch.delenv("SUBPERMIT_AUDIT_HMAC_KEY", raising=False)
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


@pytest.fixture
def audited(store, domain, clock, trail):
    return SubscriptionToken(store, domain, clock=clock, audit=trail)


def test_audit_hash_chain_detects_tampering(tmp_path, trail):
    trail.log(EventType.APPROVAL_FOR_SUBSCRIPTION, owner="0xabc", amount=100)
    trail.log(EventType.SPEND_COMPLETED, owner="0xabc", amount=50)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = "9999"
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()
    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.verify()


def test_dropped_line_breaks_chain(tmp_path, trail):
    for amount in (1, 2, 3):
        trail.log(EventType.SPEND_COMPLETED, owner="0xabc", amount=amount)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    del lines[1]
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.verify()


def test_chain_survives_reopen(tmp_path, trail):
    trail.log(EventType.APPROVAL_FOR_SUBSCRIPTION, owner="0xabc", amount=1)
    reopened = AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )
    reopened.log(EventType.SPEND_COMPLETED, owner="0xabc", amount=1)
    assert reopened.verify() == 2


def test_large_amounts_are_stored_as_strings(trail):
    big = 2**255
    trail.log(EventType.SPEND_COMPLETED, amount=big)
    (event,) = trail.read_events()
    assert event.amount == str(big)


def test_agreement_entries_carry_terms(trail):
    key = AgreementKey.of("0x" + "11" * 20, "0x" + "22" * 20, DAY, 1_800_000_000)
    trail.log_agreement(
        EventType.SPEND_DENIED,
        key,
        amount=5,
        error=InsufficientAllowanceError(5, 0),
        recipient="0x" + "33" * 20,
    )

    (event,) = trail.read_events(spender="0x" + "22" * 20)
    assert event.success is False
    assert event.agreement == (key.owner, key.spender, DAY, 1_800_000_000)
    assert event.details["error"] == "InsufficientAllowanceError"
    assert event.details["recipient"] == "0x" + "33" * 20
    assert "exceeds remaining allowance" in event.reason


def test_token_records_approvals_and_spends(audited, trail, owner, spender, recipient):
    audited.mint(owner.address, 500)
    audited.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)
    audited.transfer_from_for_subscription(
        spender.address, owner.address, recipient.address, 60, DAY, 0
    )
    with pytest.raises(InsufficientAllowanceError):
        audited.transfer_from_for_subscription(
            spender.address, owner.address, recipient.address, 60, DAY, 0
        )

    events = trail.read_events()
    assert [e.event_type for e in events] == [
        EventType.APPROVAL_FOR_SUBSCRIPTION.value,
        EventType.SPEND_COMPLETED.value,
        EventType.SPEND_DENIED.value,
    ]
    assert events[1].details["recipient"] == recipient.address.lower()
    summary = trail.summary(owner=owner.address)
    assert summary["failures"] == 1
    assert summary["total_pulled"] == "60"
    assert summary["by_type"][EventType.SPEND_COMPLETED.value] == 1


def test_token_records_permit_outcomes(audited, trail, clock, owner, spender):
    permit = PermitMessage(
        owner=owner.address,
        spender=spender.address,
        value=100,
        interval=DAY,
        expiry=0,
        nonce=0,
        deadline=clock() + 60,
    )
    signature = sign_permit(owner.key, audited.domain, permit)
    args = (owner.address, spender.address, 100, DAY, 0, permit.deadline, signature)
    audited.permit_for_subscription(*args)
    with pytest.raises(InvalidSignatureError):
        audited.permit_for_subscription(*args)

    accepted = trail.read_events(event_type=EventType.PERMIT_ACCEPTED)
    rejected = trail.read_events(event_type=EventType.PERMIT_REJECTED)
    assert len(accepted) == 1
    assert len(rejected) == 1
    assert rejected[0].details["error"] == "InvalidSignatureError"


def test_filter_by_owner(trail):
    trail.log(EventType.SPEND_COMPLETED, owner="0xaaa")
    trail.log(EventType.SPEND_COMPLETED, owner="0xbbb")
    assert [e.owner for e in trail.read_events(owner="0xAAA")] == ["0xaaa"]


def test_failing_listener_does_not_fail_approval(audited, trail, owner, spender):
    def boom(event):
        raise RuntimeError("listener down")

    audited.subscribe(boom)

    assert audited.approve_for_subscription(owner.address, spender.address, 100, DAY, 0) is True
    assert audited.allowances.read(owner.address, spender.address, DAY, 0) == 100
    approvals = trail.read_events(event_type=EventType.APPROVAL_FOR_SUBSCRIPTION)
    assert [e.amount for e in approvals] == ["100"]


def test_concurrent_pulls_keep_chain_intact(audited, trail, owner, spender, recipient):
    audited.mint(owner.address, 10_000)
    audited.approve_for_subscription(owner.address, spender.address, 100, DAY, 0)

    def attempt(_):
        try:
            return audited.transfer_from_for_subscription(
                spender.address, owner.address, recipient.address, 10, DAY, 0
            )
        except SubpermitError:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(200)))

    assert results.count(True) == 10
    assert trail.verify() == 201
    summary = trail.summary()
    assert summary["by_type"][EventType.SPEND_COMPLETED.value] == 10
    assert summary["by_type"][EventType.SPEND_DENIED.value] == 190
