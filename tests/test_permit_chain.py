"""
Tests: approval chain state machine (pure, no database).

Covers:
    - Chain initialisation: first step pending with deadline, rest blocked
    - Step validation: role or user required, positive escalation hours
    - Approve / reject progression and the single-active-step invariant
    - Escalation of the pending step; escalated steps stay decidable
    - Authority checks: named user wins over role
    - JSON round-trip of timestamps
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cmms.core.exceptions import AuthorizationError, ValidationError
from cmms.services.permit_chain import (
    ApprovalStep,
    Decision,
    PermitStatus,
    StepStatus,
    active_step,
    advance,
    can_decide,
    check_authority,
    dump_chain,
    escalate,
    has_decisions,
    initialize_chain,
    is_overdue,
    load_chain,
    next_deadline,
)

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _two_step_chain():
    return initialize_chain(
        [
            {"role": "safety_officer", "escalate_after_hours": 4},
            {"user": 42, "escalate_after_hours": 2},
        ],
        now=NOW,
    )


def _awaiting(chain):
    return [s for s in chain if s.status in (StepStatus.PENDING, StepStatus.ESCALATED)]


# ═════════════════════════════════════════════════════════════════════════════
# 1. INITIALISATION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_initialize_marks_first_step_pending_with_deadline():
    chain = _two_step_chain()

    assert [s.status for s in chain] == [StepStatus.PENDING, StepStatus.BLOCKED]
    assert chain[0].escalate_at == NOW + timedelta(hours=4)
    assert chain[1].escalate_at is None
    assert [s.sequence for s in chain] == [0, 1]


@pytest.mark.unit
def test_initialize_empty_chain_is_legal():
    assert initialize_chain([], now=NOW) == []
    assert initialize_chain(None, now=NOW) == []


@pytest.mark.unit
def test_initialize_without_escalation_hours_has_no_deadline():
    chain = initialize_chain([{"role": "supervisor"}], now=NOW)
    assert chain[0].status == StepStatus.PENDING
    assert chain[0].escalate_at is None
    assert next_deadline(chain) is None


@pytest.mark.unit
def test_initialize_coerces_string_user_id():
    chain = initialize_chain([{"user": "7"}], now=NOW)
    assert chain[0].user == 7


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw",
    [
        [{}],
        [{"role": "   "}],
        ["safety_officer"],
        [{"role": "x", "escalate_after_hours": 0}],
        [{"role": "x", "escalate_after_hours": -1}],
        [{"user": "abc"}],
        [{"user": True}],
    ],
)
def test_initialize_rejects_malformed_steps(raw):
    with pytest.raises(ValidationError):
        initialize_chain(raw, now=NOW)


@pytest.mark.unit
def test_initialize_rejects_non_list():
    with pytest.raises(ValidationError, match="approval_chain must be a list"):
        initialize_chain({"role": "x"}, now=NOW)


# ═════════════════════════════════════════════════════════════════════════════
# 2. APPROVE / REJECT
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_approve_first_step_activates_next():
    chain = _two_step_chain()
    later = NOW + timedelta(hours=1)

    outcome = advance(chain, Decision.APPROVE, actor_id=5, notes="ok", now=later)

    assert outcome.changed is True
    assert outcome.permit_status == PermitStatus.PENDING
    assert outcome.decided is chain[0]
    assert outcome.activated is chain[1]
    assert chain[0].status == StepStatus.APPROVED
    assert chain[0].approved_at == later
    assert chain[0].acted_by == 5
    assert chain[0].notes == "ok"
    assert chain[0].escalate_at is None
    assert chain[1].status == StepStatus.PENDING
    assert chain[1].escalate_at == later + timedelta(hours=2)


@pytest.mark.unit
def test_approve_last_step_approves_permit():
    chain = _two_step_chain()
    advance(chain, Decision.APPROVE, actor_id=5, now=NOW)
    outcome = advance(chain, Decision.APPROVE, actor_id=42, now=NOW)

    assert outcome.permit_status == PermitStatus.APPROVED
    assert outcome.activated is None
    assert all(s.status == StepStatus.APPROVED for s in chain)
    assert active_step(chain) is None


@pytest.mark.unit
def test_reject_ends_the_chain():
    chain = _two_step_chain()
    outcome = advance(chain, Decision.REJECT, actor_id=5, notes="unsafe", now=NOW)

    assert outcome.permit_status == PermitStatus.REJECTED
    assert chain[0].status == StepStatus.REJECTED
    assert chain[0].approved_at is None
    assert chain[1].status == StepStatus.BLOCKED
    assert active_step(chain) is None


@pytest.mark.unit
def test_advance_without_active_step_is_noop():
    chain = _two_step_chain()
    advance(chain, Decision.REJECT, actor_id=5, now=NOW)
    snapshot = dump_chain(chain)

    outcome = advance(chain, Decision.APPROVE, actor_id=5, now=NOW)

    assert outcome.changed is False
    assert outcome.permit_status is None
    assert dump_chain(chain) == snapshot


@pytest.mark.unit
def test_at_most_one_step_awaits_decision_throughout():
    chain = initialize_chain([{"role": "a"}, {"role": "b"}, {"role": "c"}], now=NOW)
    assert len(_awaiting(chain)) == 1
    for _ in range(3):
        advance(chain, Decision.APPROVE, actor_id=1, now=NOW)
        assert len(_awaiting(chain)) <= 1
    assert _awaiting(chain) == []


@pytest.mark.unit
def test_has_decisions():
    chain = _two_step_chain()
    assert has_decisions(chain) is False
    advance(chain, Decision.APPROVE, actor_id=1, now=NOW)
    assert has_decisions(chain) is True


# ═════════════════════════════════════════════════════════════════════════════
# 3. ESCALATION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_is_overdue_boundaries():
    chain = _two_step_chain()
    step = chain[0]
    assert is_overdue(step, NOW + timedelta(hours=3)) is False
    assert is_overdue(step, NOW + timedelta(hours=4)) is True
    assert is_overdue(None, NOW) is False
    assert is_overdue(chain[1], NOW + timedelta(days=1)) is False


@pytest.mark.unit
def test_is_overdue_accepts_naive_timestamps():
    chain = _two_step_chain()
    naive_now = (NOW + timedelta(hours=5)).replace(tzinfo=None)
    assert is_overdue(chain[0], naive_now) is True


@pytest.mark.unit
def test_escalate_marks_pending_step_and_clears_deadline():
    chain = _two_step_chain()
    outcome = escalate(chain)

    assert outcome.permit_status == PermitStatus.ESCALATED
    assert outcome.decided is chain[0]
    assert chain[0].status == StepStatus.ESCALATED
    assert chain[0].escalate_at is None
    assert next_deadline(chain) is None


@pytest.mark.unit
def test_escalate_twice_has_no_pending_step():
    chain = _two_step_chain()
    escalate(chain)
    with pytest.raises(ValidationError, match="Permit has no pending approvals"):
        escalate(chain)


@pytest.mark.unit
def test_escalated_step_can_still_be_approved():
    chain = _two_step_chain()
    escalate(chain)

    assert active_step(chain) is chain[0]
    outcome = advance(chain, Decision.APPROVE, actor_id=5, now=NOW)

    assert chain[0].status == StepStatus.APPROVED
    assert outcome.activated is chain[1]
    assert outcome.permit_status == PermitStatus.PENDING


# ═════════════════════════════════════════════════════════════════════════════
# 4. AUTHORITY
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_role_step_requires_matching_role():
    step = ApprovalStep(sequence=0, role="safety_officer", status=StepStatus.PENDING)
    assert can_decide(step, 1, ["safety_officer"]) is True
    assert can_decide(step, 1, ["technician"]) is False
    assert can_decide(step, 1, None) is False
    with pytest.raises(AuthorizationError, match="Insufficient role"):
        check_authority(step, 1, ["technician"])


@pytest.mark.unit
def test_named_user_takes_precedence_over_role():
    step = ApprovalStep(sequence=0, role="safety_officer", user=42, status=StepStatus.PENDING)
    assert can_decide(step, 42, []) is True
    assert can_decide(step, "42", []) is True
    assert can_decide(step, 7, ["safety_officer"]) is False
    with pytest.raises(AuthorizationError, match="not assigned"):
        check_authority(step, 7, ["safety_officer"])


@pytest.mark.unit
def test_step_naming_nobody_cannot_be_decided():
    step = ApprovalStep(sequence=0, status=StepStatus.PENDING)
    assert can_decide(step, 1, ["admin"]) is False


# ═════════════════════════════════════════════════════════════════════════════
# 5. SERIALISATION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_dump_and_load_preserve_state():
    chain = _two_step_chain()
    advance(chain, Decision.APPROVE, actor_id=5, notes="fine", now=NOW)

    restored = load_chain(dump_chain(chain))

    assert restored == chain
    assert restored[0].approved_at == NOW
    assert restored[1].escalate_at == NOW + timedelta(hours=2)


@pytest.mark.unit
def test_load_chain_orders_by_sequence():
    data = dump_chain(_two_step_chain())
    restored = load_chain(list(reversed(data)))
    assert [s.sequence for s in restored] == [0, 1]


@pytest.mark.unit
def test_step_label():
    assert ApprovalStep(sequence=0, role="plant_manager").label == "role plant_manager"
    assert ApprovalStep(sequence=0, user=9).label == "user 9"
