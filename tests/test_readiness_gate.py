"""
Tests: readiness gate for work-order transitions.

Covers:
    - Missing / cross-tenant permits fail with the MISSING failure
    - Required permit types must each be covered
    - START stage: approved or active only
    - COMPLETE stage: isolation steps first, then approved/active/closed
    - Stage must be an explicit ReadinessStage
    - The gate never writes
"""

from __future__ import annotations

import pytest

from cmms.models import db as _db
from cmms.models.permit import Permit
from cmms.services.readiness import (
    ReadinessFailure,
    ReadinessStage,
    ensure_readiness,
)

_counter = {"n": 0}


def _make_permit(tenant_id, *, status="approved", type="hot-work", isolation=None) -> Permit:
    _counter["n"] += 1
    p = Permit(
        tenant_id=tenant_id,
        permit_number=f"PER-TEST-{_counter['n']}",
        type=type,
        status=status,
        approval_chain=[],
        isolation_steps=isolation or [],
        watchers=[],
        incidents=[],
        history=[],
    )
    _db.session.add(p)
    _db.session.commit()
    return p


def _step(done):
    return {"index": 0, "description": "Lock out breaker", "completed": done}


# ═════════════════════════════════════════════════════════════════════════════
# 1. RESOLUTION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_no_permits_and_no_requirements_is_ready(tenant):
    result = ensure_readiness(tenant.id, [], [], ReadinessStage.START)
    assert result.ok is True
    assert result.permits == []


@pytest.mark.unit
def test_missing_permit_fails_as_missing(tenant):
    p = _make_permit(tenant.id)
    result = ensure_readiness(tenant.id, [p.id, 9999], [], ReadinessStage.START)

    assert result.ok is False
    assert result.failure == ReadinessFailure.MISSING
    assert result.message == "One or more linked permits could not be found"


@pytest.mark.unit
def test_other_tenants_permit_counts_as_missing(tenant, other_tenant):
    foreign = _make_permit(other_tenant.id)
    result = ensure_readiness(tenant.id, [foreign.id], [], ReadinessStage.START)
    assert result.failure == ReadinessFailure.MISSING


@pytest.mark.unit
def test_duplicate_ids_are_resolved_once(tenant):
    p = _make_permit(tenant.id)
    result = ensure_readiness(tenant.id, [p.id, p.id], [], ReadinessStage.START)
    assert result.ok is True
    assert [x.id for x in result.permits] == [p.id]


# ═════════════════════════════════════════════════════════════════════════════
# 2. REQUIRED TYPES
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_required_type_must_be_covered(tenant):
    p = _make_permit(tenant.id, type="hot-work")
    result = ensure_readiness(tenant.id, [p.id], ["hot-work", "electrical"], ReadinessStage.START)

    assert result.ok is False
    assert result.failure == ReadinessFailure.NOT_READY
    assert result.message == "Permits missing: a electrical permit is required"


@pytest.mark.unit
def test_required_type_without_any_permit_fails(tenant):
    result = ensure_readiness(tenant.id, [], ["confined-space"], ReadinessStage.COMPLETE)
    assert result.ok is False
    assert "confined-space" in result.message


# ═════════════════════════════════════════════════════════════════════════════
# 3. START STAGE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
@pytest.mark.parametrize("status", ["approved", "active"])
def test_start_accepts_approved_and_active(tenant, status):
    p = _make_permit(tenant.id, status=status)
    assert ensure_readiness(tenant.id, [p.id], [], ReadinessStage.START).ok is True


@pytest.mark.unit
@pytest.mark.parametrize("status", ["pending", "escalated", "rejected", "closed"])
def test_start_rejects_other_statuses_naming_the_permit(tenant, status):
    ok = _make_permit(tenant.id, status="approved")
    bad = _make_permit(tenant.id, status=status)

    result = ensure_readiness(tenant.id, [ok.id, bad.id], [], ReadinessStage.START)

    assert result.ok is False
    assert result.permit_id == bad.id
    assert result.message == (
        f"Permits must be approved before work can start: {bad.permit_number} is {status}"
    )


@pytest.mark.unit
def test_start_ignores_incomplete_isolation(tenant):
    p = _make_permit(tenant.id, isolation=[_step(False)])
    assert ensure_readiness(tenant.id, [p.id], [], ReadinessStage.START).ok is True


# ═════════════════════════════════════════════════════════════════════════════
# 4. COMPLETE STAGE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
@pytest.mark.parametrize("status", ["approved", "active", "closed"])
def test_complete_accepts_finished_isolation(tenant, status):
    p = _make_permit(tenant.id, status=status, isolation=[_step(True)])
    assert ensure_readiness(tenant.id, [p.id], [], ReadinessStage.COMPLETE).ok is True


@pytest.mark.unit
def test_complete_fails_on_incomplete_isolation(tenant):
    p = _make_permit(tenant.id, status="active", isolation=[_step(True), _step(False)])
    result = ensure_readiness(tenant.id, [p.id], [], ReadinessStage.COMPLETE)

    assert result.ok is False
    assert result.failure == ReadinessFailure.NOT_READY
    assert result.message.startswith("Permits have incomplete isolation steps")
    assert result.permit_id == p.id


@pytest.mark.unit
def test_complete_fails_on_pending_permit(tenant):
    p = _make_permit(tenant.id, status="pending")
    result = ensure_readiness(tenant.id, [p.id], [], ReadinessStage.COMPLETE)
    assert result.ok is False
    assert "before work can complete" in result.message


# ═════════════════════════════════════════════════════════════════════════════
# 5. CONTRACT
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_stage_must_be_explicit_enum(tenant):
    with pytest.raises(TypeError):
        ensure_readiness(tenant.id, [], [], "start")


@pytest.mark.unit
def test_gate_does_not_write(tenant):
    p = _make_permit(tenant.id, status="approved", isolation=[_step(False)])
    before = p.to_dict()

    ensure_readiness(tenant.id, [p.id], [], ReadinessStage.START)
    ensure_readiness(tenant.id, [p.id], [], ReadinessStage.COMPLETE)

    assert not _db.session.dirty
    assert _db.session.get(Permit, p.id).to_dict() == before


@pytest.mark.unit
def test_result_to_dict(tenant):
    p = _make_permit(tenant.id, status="pending")
    payload = ensure_readiness(tenant.id, [p.id], [], ReadinessStage.START).to_dict()
    assert payload["ok"] is False
    assert payload["failure"] == "not_ready"
    assert payload["permit_id"] == p.id
