"""
Tests: work order lifecycle gated by linked permits.

Covers:
    - Create with permits: linking, required types, already-linked guard
    - start: readiness START, approved permits flip to active once
    - complete: readiness COMPLETE, isolation steps block, permits close
    - Status graph conflicts (409) and missing permits (404)
    - assign / approve / cancel
    - One transaction per transition; side-effect failures never fail it
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import SQLAlchemyError

import cmms.services.permit_service as permit_svc
from cmms.models import db as _db
from cmms.models.audit import AuditLog
from cmms.models.notification import Notification
from cmms.models.permit import Permit
from cmms.models.work_order import WorkOrder
from cmms.services import realtime
from cmms.services.stores import work_order_store


@pytest.fixture()
def headers(users, auth_headers):
    return auth_headers(users["manager"], ["plant_manager"])


def _approved_permit(tenant_id, users, *, type="hot-work", isolation=("Lock out breaker",)) -> Permit:
    """A hot-work permit whose two-step chain both roles have approved."""
    permit = permit_svc.create_permit(
        tenant_id,
        {
            "type": type,
            "approval_chain": [
                {"role": "safety_officer", "escalate_after_hours": 4},
                {"role": "plant_manager"},
            ],
            "isolation_steps": list(isolation),
        },
        user_id=users["requester"],
    )
    permit_svc.approve_permit(tenant_id, permit.id, user_id=users["officer"], roles=["safety_officer"])
    permit_svc.approve_permit(tenant_id, permit.id, user_id=users["manager"], roles=["plant_manager"])
    assert permit.status == "approved"
    return permit


def _pending_permit(tenant_id, users) -> Permit:
    return permit_svc.create_permit(
        tenant_id,
        {"type": "hot-work", "approval_chain": [{"role": "safety_officer"}]},
        user_id=users["requester"],
    )


def _create_wo(client, headers, **body):
    payload = {"title": "Repair line 3 header", "priority": "high"}
    payload.update(body)
    res = client.post("/api/v1/work-orders", json=payload, headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _wo_status(wo_id) -> str:
    _db.session.expire_all()
    return _db.session.get(WorkOrder, wo_id).status


# ═════════════════════════════════════════════════════════════════════════════
# 1. CREATE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_create_links_permits_and_collects_types(client, headers, tenant, users):
    permit = _approved_permit(tenant.id, users, type="electrical")
    wo = _create_wo(client, headers, permits=[permit.id], required_permit_types=["hot-work"])

    assert wo["status"] == "requested"
    assert wo["permits"] == [permit.id]
    assert wo["required_permit_types"] == ["hot-work", "electrical"]
    assert _db.session.get(Permit, permit.id).work_order_id == wo["id"]


@pytest.mark.integration
def test_create_rejects_permit_linked_elsewhere(client, headers, tenant, users):
    permit = _approved_permit(tenant.id, users)
    _create_wo(client, headers, permits=[permit.id])

    res = client.post(
        "/api/v1/work-orders", json={"title": "Second", "permits": [permit.id]}, headers=headers,
    )
    assert res.status_code == 400
    assert "already linked" in res.get_json()["error"]


@pytest.mark.integration
@pytest.mark.parametrize(
    "body",
    [
        {"title": ""},
        {"title": "x", "priority": "whenever"},
        {"title": "x", "permits": [9999]},
        {"title": "x", "permits": ["1"]},
        {"title": "x", "assignees": ["bob"]},
        {"title": "x", "required_permit_types": [3]},
    ],
)
def test_create_validation(client, headers, body):
    assert client.post("/api/v1/work-orders", json=body, headers=headers).status_code == 400


@pytest.mark.integration
def test_create_notifies_assignees(client, headers, users):
    wo = _create_wo(client, headers, assignees=[users["officer"], users["watcher"]])
    assert wo["assigned_to"] == users["officer"]
    assert Notification.query.filter_by(category="work_order").count() == 2


# ═════════════════════════════════════════════════════════════════════════════
# 2. START
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_start_activates_approved_permits(client, headers, tenant, users, events):
    permit = _approved_permit(tenant.id, users)
    wo = _create_wo(client, headers, permits=[permit.id])

    res = client.post(f"/api/v1/work-orders/{wo['id']}/start", headers=headers)

    assert res.status_code == 200
    assert res.get_json()["status"] == "in_progress"
    refreshed = _db.session.get(Permit, permit.id)
    assert refreshed.status == "active"
    started = [h for h in refreshed.history if h["action"] == "work-order-started"]
    assert len(started) == 1
    published = [e.event_type for e in events]
    assert realtime.WORK_ORDER_UPDATED in published
    assert realtime.PERMIT_UPDATED in published


@pytest.mark.integration
def test_start_blocked_by_pending_permit(client, headers, tenant, users):
    permit = _pending_permit(tenant.id, users)
    wo = _create_wo(client, headers, permits=[permit.id])

    res = client.post(f"/api/v1/work-orders/{wo['id']}/start", headers=headers)

    body = res.get_json()
    assert res.status_code == 409
    assert body["code"] == "ERR_PERMIT_READINESS"
    assert permit.permit_number in body["error"]
    assert body["details"]["readiness"]["permit_id"] == permit.id
    assert _wo_status(wo["id"]) == "requested"
    assert _db.session.get(Permit, permit.id).status == "pending"


@pytest.mark.integration
def test_start_blocked_by_missing_required_type(client, headers, tenant, users):
    permit = _approved_permit(tenant.id, users)
    wo = _create_wo(client, headers, permits=[permit.id], required_permit_types=["confined-space"])

    res = client.post(f"/api/v1/work-orders/{wo['id']}/start", headers=headers)

    assert res.status_code == 409
    assert res.get_json()["error"] == "Permits missing: a confined-space permit is required"


@pytest.mark.integration
def test_start_with_missing_permit_is_404(client, headers, tenant):
    wo = WorkOrder(tenant_id=tenant.id, title="Orphaned", permits=[9999])
    _db.session.add(wo)
    _db.session.commit()

    res = client.post(f"/api/v1/work-orders/{wo.id}/start", headers=headers)

    assert res.status_code == 404
    assert res.get_json()["error"] == "One or more linked permits could not be found"


@pytest.mark.integration
def test_start_without_permits_is_allowed(client, headers):
    wo = _create_wo(client, headers)
    res = client.post(f"/api/v1/work-orders/{wo['id']}/start", headers=headers)
    assert res.status_code == 200


@pytest.mark.integration
def test_start_unknown_work_order_is_404(client, headers):
    assert client.post("/api/v1/work-orders/777/start", headers=headers).status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# 3. COMPLETE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_complete_blocked_by_incomplete_isolation(client, headers, tenant, users):
    permit = _approved_permit(tenant.id, users)
    wo = _create_wo(client, headers, permits=[permit.id])
    client.post(f"/api/v1/work-orders/{wo['id']}/start", headers=headers)

    res = client.post(f"/api/v1/work-orders/{wo['id']}/complete", json={}, headers=headers)

    assert res.status_code == 409
    assert res.get_json()["error"].startswith("Permits have incomplete isolation steps")
    assert _wo_status(wo["id"]) == "in_progress"
    assert _db.session.get(Permit, permit.id).status == "active"


@pytest.mark.integration
def test_complete_closes_permits_and_records_completion(client, headers, tenant, users):
    permit = _approved_permit(tenant.id, users)
    wo = _create_wo(client, headers, permits=[permit.id])
    client.post(f"/api/v1/work-orders/{wo['id']}/start", headers=headers)
    permit_svc.complete_isolation_step(tenant.id, permit.id, 0, user_id=users["officer"])

    res = client.post(
        f"/api/v1/work-orders/{wo['id']}/complete",
        json={
            "time_spent_min": 95,
            "parts_used": [{"part_id": "GASKET-12", "qty": 2}],
            "checklists": [{"text": "Area cleaned", "done": True}],
            "failure_code": "LEAK",
        },
        headers=headers,
    )

    body = res.get_json()
    assert res.status_code == 200
    assert body["status"] == "completed"
    assert body["completed_at"] is not None
    assert body["time_spent_min"] == 95
    assert body["parts_used"] == [{"part_id": "GASKET-12", "qty": 2}]
    assert body["signatures"][0]["by"] == users["manager"]
    refreshed = _db.session.get(Permit, permit.id)
    assert refreshed.status == "closed"
    assert refreshed.history[-1]["action"] == "work-order-completed"


@pytest.mark.integration
@pytest.mark.parametrize(
    "body",
    [
        {"time_spent_min": -5},
        {"parts_used": [{"qty": 1}]},
        {"checklists": ["done"]},
        {"photos": [1]},
        {"signatures": [{}]},
    ],
)
def test_complete_validates_record(client, headers, body):
    wo = _create_wo(client, headers)
    client.post(f"/api/v1/work-orders/{wo['id']}/start", headers=headers)
    res = client.post(f"/api/v1/work-orders/{wo['id']}/complete", json=body, headers=headers)
    assert res.status_code == 400
    assert _wo_status(wo["id"]) == "in_progress"


@pytest.mark.integration
def test_complete_requires_in_progress(client, headers):
    wo = _create_wo(client, headers)
    res = client.post(f"/api/v1/work-orders/{wo['id']}/complete", json={}, headers=headers)
    assert res.status_code == 409
    assert res.get_json()["code"] == "ERR_CONFLICT_STATE"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ASSIGN / APPROVE / CANCEL
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_assign_sets_assignees_and_notifies_new_ones(client, headers, users):
    wo = _create_wo(client, headers, assignees=[users["officer"]])
    res = client.post(
        f"/api/v1/work-orders/{wo['id']}/assign",
        json={"assignees": [users["watcher"], users["officer"], users["watcher"]]},
        headers=headers,
    )
    body = res.get_json()
    assert res.status_code == 200
    assert body["status"] == "assigned"
    assert body["assignees"] == [users["watcher"], users["officer"]]
    assert body["assigned_to"] == users["watcher"]
    assert Notification.query.filter_by(recipient_user_id=users["watcher"]).count() == 1
    assert Notification.query.filter_by(recipient_user_id=users["officer"]).count() == 1


@pytest.mark.integration
def test_assign_requires_assignees(client, headers):
    wo = _create_wo(client, headers)
    res = client.post(f"/api/v1/work-orders/{wo['id']}/assign", json={"assignees": []}, headers=headers)
    assert res.status_code == 400


@pytest.mark.integration
def test_assign_blocked_while_approval_pending(client, headers, users):
    wo = _create_wo(client, headers, approval_status="pending")
    res = client.post(
        f"/api/v1/work-orders/{wo['id']}/assign", json={"assignees": [users["officer"]]}, headers=headers,
    )
    assert res.status_code == 409


@pytest.mark.integration
def test_assign_blocked_by_unready_permit(client, headers, tenant, users):
    permit = _pending_permit(tenant.id, users)
    wo = _create_wo(client, headers, permits=[permit.id])
    res = client.post(
        f"/api/v1/work-orders/{wo['id']}/assign", json={"assignees": [users["officer"]]}, headers=headers,
    )
    assert res.status_code == 409
    assert _wo_status(wo["id"]) == "requested"


@pytest.mark.integration
def test_approval_request_and_grant(client, headers, users):
    wo = _create_wo(client, headers, assignees=[users["officer"]])
    url = f"/api/v1/work-orders/{wo['id']}/approve"

    requested = client.post(url, json={"status": "pending"}, headers=headers).get_json()
    assert requested["approval_status"] == "pending"
    assert requested["approval_requested_by"] == users["manager"]

    granted = client.post(url, json={"status": "approved"}, headers=headers).get_json()
    assert granted["approval_status"] == "approved"
    assert granted["approved_by"] == users["manager"]

    messages = [n.message for n in Notification.query.filter_by(recipient_user_id=users["officer"])]
    assert 'Approval requested for work order "Repair line 3 header"' in messages
    assert 'Work order "Repair line 3 header" was approved' in messages


@pytest.mark.integration
def test_approval_status_is_validated(client, headers):
    wo = _create_wo(client, headers)
    res = client.post(f"/api/v1/work-orders/{wo['id']}/approve", json={"status": "maybe"}, headers=headers)
    assert res.status_code == 400


@pytest.mark.integration
def test_cancel_and_terminal_states(client, headers):
    wo = _create_wo(client, headers)
    url = f"/api/v1/work-orders/{wo['id']}"

    assert client.post(f"{url}/cancel", headers=headers).get_json()["status"] == "cancelled"
    assert client.post(f"{url}/cancel", headers=headers).status_code == 409
    assert client.post(f"{url}/start", headers=headers).status_code == 409
    assert client.post(f"{url}/approve", json={"status": "approved"}, headers=headers).status_code == 409


@pytest.mark.integration
def test_cancel_leaves_permits_alone(client, headers, tenant, users):
    permit = _approved_permit(tenant.id, users)
    wo = _create_wo(client, headers, permits=[permit.id])
    client.post(f"/api/v1/work-orders/{wo['id']}/cancel", headers=headers)
    assert _db.session.get(Permit, permit.id).status == "approved"


@pytest.mark.integration
def test_list_work_orders(client, headers):
    _create_wo(client, headers)
    done = _create_wo(client, headers, title="Other")
    client.post(f"/api/v1/work-orders/{done['id']}/cancel", headers=headers)

    everything = client.get("/api/v1/work-orders", headers=headers).get_json()
    cancelled = client.get("/api/v1/work-orders?status=cancelled", headers=headers).get_json()

    assert everything["total"] == 2
    assert [w["id"] for w in cancelled["items"]] == [done["id"]]
    assert client.get("/api/v1/work-orders?status=paused", headers=headers).status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
# 5. TRANSACTIONS AND SIDE EFFECTS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_failed_work_order_write_rolls_back_permit_flip(client, headers, tenant, users, monkeypatch):
    permit = _approved_permit(tenant.id, users)
    wo = _create_wo(client, headers, permits=[permit.id])
    original = work_order_store.save

    def failing_save(entity):
        if isinstance(entity, WorkOrder):
            raise SQLAlchemyError("connection reset")
        return original(entity)

    monkeypatch.setattr(work_order_store, "save", failing_save)

    res = client.post(f"/api/v1/work-orders/{wo['id']}/start", headers=headers)

    assert res.status_code == 500
    assert res.get_json()["code"] == "ERR_INTERNAL"
    assert _wo_status(wo["id"]) == "requested"
    refreshed = _db.session.get(Permit, permit.id)
    assert refreshed.status == "approved"
    assert not [h for h in refreshed.history if h["action"] == "work-order-started"]


@pytest.mark.integration
def test_side_effect_failures_do_not_fail_transition(client, headers, tenant, users, monkeypatch):
    permit = _approved_permit(tenant.id, users)
    wo = _create_wo(client, headers, permits=[permit.id])

    def broken_audit(**kwargs):
        raise RuntimeError("audit store offline")

    def broken_handler(event):
        raise RuntimeError("socket closed")

    monkeypatch.setattr("cmms.services.audit.write_audit", broken_audit)
    realtime.bus.subscribe(realtime.WORK_ORDER_UPDATED, broken_handler)

    res = client.post(f"/api/v1/work-orders/{wo['id']}/start", headers=headers)

    assert res.status_code == 200
    assert _wo_status(wo["id"]) == "in_progress"
    assert _db.session.get(Permit, permit.id).status == "active"
    assert AuditLog.query.filter_by(action="work_order.start").count() == 0


@pytest.mark.unit
def test_audit_rejects_unknown_action(tenant):
    from cmms.models.audit import write_audit
    from cmms.services.audit import record_audit

    with pytest.raises(ValueError):
        write_audit(entity_type="work_order", entity_id=1, action="work_order.teleport")
    assert record_audit(
        tenant_id=tenant.id, user_id=None, action="work_order.start",
        entity_type="invoice", entity_id=1,
    ) is False
    assert AuditLog.query.count() == 0
