"""
Permit Service — permit-to-work operations.

Layer contract:
    - Blueprint parses the request and passes tenant/user identity in.
    - This module validates input, runs the approval chain engine,
      persists through the stores (one ``atomic()`` block per operation)
      and then fires side effects.
    - Side effects (notifications, audit, realtime) run after the commit
      and are best-effort: their failures are logged, never raised.

Every read path calls ``apply_pending_escalations`` first so overdue
approvals are escalated before the caller sees them (lazy policy).
"""

from __future__ import annotations

import logging
import random
import time
from datetime import timedelta

from cmms.core.exceptions import ConflictError, ValidationError
from cmms.models.permit import (
    INCIDENT_SEVERITIES,
    INCIDENT_STATUSES,
    PERMIT_STATUSES,
    RISK_LEVELS,
    Permit,
    SafetyIncident,
)
from cmms.services import realtime
from cmms.services.audit import record_audit
from cmms.services.escalation import apply_pending_escalations
from cmms.services.notification import notify_many, notify_user
from cmms.services.permit_chain import (
    Decision,
    PermitStatus,
    StepStatus,
    active_step,
    advance,
    can_decide,
    check_authority,
    escalate,
    has_decisions,
    initialize_chain,
    is_overdue,
    load_chain,
    store_chain,
)
from cmms.services.stores import atomic, incident_store, permit_store, work_order_store
from cmms.utils.helpers import as_utc, coerce_user_ids, parse_datetime, to_iso, utc_now

logger = logging.getLogger(__name__)

_MAX_NUMBER_ATTEMPTS = 5


# ── Input parsing ────────────────────────────────────────────────────────────


def generate_permit_number() -> str:
    """``PER-{epochMillis}-{0..999}``: collision-resistant, not unique."""
    return f"PER-{int(time.time() * 1000)}-{random.randint(0, 999)}"


def _text(data, key, *, required=False, max_len=None):
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required", details={key: "required"})
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", details={key: "invalid"})
    value = value.strip()
    if required and not value:
        raise ValidationError(f"{key} is required", details={key: "required"})
    if max_len and len(value) > max_len:
        raise ValidationError(f"{key} is too long (max {max_len})", details={key: "too_long"})
    return value


def _choice(data, key, allowed, default=None):
    value = data.get(key, default)
    if value is None:
        return default
    if value not in allowed:
        raise ValidationError(
            f"{key} must be one of {sorted(allowed)}", details={key: "invalid"},
        )
    return value


def _datetime(data, key):
    try:
        return parse_datetime(data.get(key))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be an ISO-8601 datetime", details={key: "invalid"}) from exc


def _user_ids(data, key):
    try:
        return coerce_user_ids(data.get(key))
    except ValueError as exc:
        raise ValidationError(f"{key}: {exc}", details={key: "invalid"}) from exc


def _isolation_steps(raw) -> list[dict]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("isolation_steps must be a list")
    steps = []
    for index, item in enumerate(raw):
        description = item.get("description") if isinstance(item, dict) else item
        if not isinstance(description, str) or not description.strip():
            raise ValidationError(f"isolation_steps[{index}] needs a description")
        steps.append({
            "index": index,
            "description": description.strip(),
            "completed": False,
            "completed_at": None,
            "completed_by": None,
            "verification_notes": None,
        })
    return steps


def _resolve_work_order(tenant_id, work_order_id):
    if work_order_id is None:
        return None
    if isinstance(work_order_id, bool) or not isinstance(work_order_id, int):
        raise ValidationError("work_order_id must be an integer", details={"work_order_id": "invalid"})
    work_order = work_order_store.find_one(tenant_id, work_order_id)
    if work_order is None:
        raise ValidationError(
            f"Work order {work_order_id} not found", details={"work_order_id": "not_found"},
        )
    return work_order


def _release_permit_type(work_order, permit_id, permit_type):
    """Drop ``permit_type`` from the work order unless another linked permit still has it."""
    others = [pid for pid in (work_order.permits or []) if pid != permit_id]
    if others and any(
        p.type == permit_type for p in permit_store.find(work_order.tenant_id, ids=others)
    ):
        return
    work_order.required_permit_types = [
        t for t in (work_order.required_permit_types or []) if t != permit_type
    ]


def _check_validity_window(valid_from, valid_to):
    if valid_from and valid_to and as_utc(valid_to) < as_utc(valid_from):
        raise ValidationError("valid_to must not be before valid_from")


def _status_for_new_chain(chain) -> str:
    # An empty chain means the permit is not approval-gated.
    return PermitStatus.PENDING.value if chain else PermitStatus.APPROVED.value


# ── Side effects ─────────────────────────────────────────────────────────────


def _after_commit(permit, *, action, user_id, before, event=realtime.PERMIT_UPDATED):
    record_audit(
        tenant_id=permit.tenant_id,
        user_id=user_id,
        action=action,
        entity_type="permit",
        entity_id=permit.id,
        before=before,
        after=permit.to_dict(),
    )
    realtime.publish(event, permit.to_dict(), tenant_id=permit.tenant_id)


def _notify(permit, user_id, message, **kwargs):
    return notify_user(
        user_id, message,
        tenant_id=permit.tenant_id, entity_type="permit", entity_id=permit.id, **kwargs,
    )


def _notify_watchers(permit, message, **kwargs):
    return notify_many(
        permit.watchers, message,
        tenant_id=permit.tenant_id, entity_type="permit", entity_id=permit.id, **kwargs,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Create / read / update
# ═════════════════════════════════════════════════════════════════════════════


def create_permit(tenant_id: int, data: dict, *, user_id=None) -> Permit:
    """Create a permit with its approval chain initialised and link it to a work order."""
    data = data or {}
    permit_type = _text(data, "type", required=True, max_len=60)
    description = _text(data, "description") or ""
    risk_level = _choice(data, "risk_level", RISK_LEVELS, default="medium")
    valid_from = _datetime(data, "valid_from")
    valid_to = _datetime(data, "valid_to")
    _check_validity_window(valid_from, valid_to)
    watchers = _user_ids(data, "watchers")
    isolation_steps = _isolation_steps(data.get("isolation_steps"))
    chain = initialize_chain(data.get("approval_chain"))
    work_order = _resolve_work_order(tenant_id, data.get("work_order_id"))

    permit_number = _text(data, "permit_number", max_len=64)
    if permit_number:
        if permit_store.number_exists(tenant_id, permit_number):
            raise ValidationError(
                f"Permit number {permit_number} already exists",
                details={"permit_number": "duplicate"},
            )
    else:
        for _ in range(_MAX_NUMBER_ATTEMPTS):
            permit_number = generate_permit_number()
            if not permit_store.number_exists(tenant_id, permit_number):
                break
        else:
            raise ConflictError(
                "Could not allocate a unique permit number, retry the request",
                details={"permit_number": "exhausted"},
            )

    permit = Permit(
        tenant_id=tenant_id,
        permit_number=permit_number,
        type=permit_type,
        description=description,
        status=_status_for_new_chain(chain),
        risk_level=risk_level,
        valid_from=valid_from,
        valid_to=valid_to,
        requested_by=user_id,
        work_order_id=work_order.id if work_order else None,
        isolation_steps=isolation_steps,
        watchers=watchers,
        incidents=[],
        history=[],
    )
    store_chain(permit, chain)

    with atomic(tenant_id=tenant_id, user_id=user_id):
        permit.add_history("created", by=user_id)
        permit_store.create(permit)
        if work_order is not None:
            work_order.link_permit(permit.id, permit.type)
            work_order_store.save(work_order)

    logger.info(
        "Permit %s created", permit.permit_number,
        extra={"tenant_id": tenant_id, "permit_id": permit.id, "user_id": user_id},
    )

    step = active_step(chain)
    if step is not None and step.user is not None:
        _notify(permit, step.user, f"Permit {permit.permit_number} requires your approval.")
    _after_commit(permit, action="permit.create", user_id=user_id, before=None,
                  event=realtime.PERMIT_CREATED)
    return permit


def get_permit(tenant_id: int, permit_id: int) -> Permit:
    apply_pending_escalations(tenant_id)
    return permit_store.get(tenant_id, permit_id)


def list_permits(tenant_id: int, *, status=None, type=None, work_order_id=None) -> list[Permit]:
    """List permits newest-updated first, after applying due escalations."""
    if status is not None and status not in PERMIT_STATUSES:
        raise ValidationError(f"status must be one of {sorted(PERMIT_STATUSES)}")
    apply_pending_escalations(tenant_id)
    return permit_store.find(
        tenant_id,
        statuses=[status] if status else None,
        type=type,
        work_order_id=work_order_id,
    )


def update_permit(tenant_id: int, permit_id: int, data: dict, *, user_id=None) -> Permit:
    """Edit a permit's descriptive fields, watchers, isolation steps, chain or work order link.

    The approval chain can only be replaced while no step has been decided.
    """
    data = data or {}
    permit = permit_store.get(tenant_id, permit_id)
    before = permit.to_dict()

    # Validate everything before touching the aggregate.
    changes = {}
    if "type" in data:
        changes["type"] = _text(data, "type", required=True, max_len=60)
    if "description" in data:
        changes["description"] = _text(data, "description") or ""
    if "risk_level" in data:
        changes["risk_level"] = _choice(data, "risk_level", RISK_LEVELS)
    if "valid_from" in data:
        changes["valid_from"] = _datetime(data, "valid_from")
    if "valid_to" in data:
        changes["valid_to"] = _datetime(data, "valid_to")
    _check_validity_window(
        changes.get("valid_from", permit.valid_from), changes.get("valid_to", permit.valid_to),
    )
    if "watchers" in data:
        changes["watchers"] = _user_ids(data, "watchers")
    if "isolation_steps" in data:
        changes["isolation_steps"] = _isolation_steps(data.get("isolation_steps"))

    new_chain = None
    if "approval_chain" in data:
        current = load_chain(permit.approval_chain)
        undecided = permit.status in (PermitStatus.PENDING.value, PermitStatus.ESCALATED.value)
        ungated = permit.status == PermitStatus.APPROVED.value and not current
        if has_decisions(current) or not (undecided or ungated):
            raise ValidationError("Approval chain can no longer be changed once a step has been decided")
        new_chain = initialize_chain(data.get("approval_chain"))

    relink = "work_order_id" in data and data.get("work_order_id") != permit.work_order_id
    old_work_order = new_work_order = None
    if relink:
        new_work_order = _resolve_work_order(tenant_id, data.get("work_order_id"))
        if permit.work_order_id is not None:
            old_work_order = work_order_store.find_one(tenant_id, permit.work_order_id)

    with atomic(tenant_id=tenant_id, permit_id=permit.id, user_id=user_id):
        previous_type = permit.type
        for key, value in changes.items():
            setattr(permit, key, value)
        if new_chain is not None:
            store_chain(permit, new_chain)
            permit.status = _status_for_new_chain(new_chain)
        if relink:
            if old_work_order is not None:
                _release_permit_type(old_work_order, permit.id, previous_type)
                old_work_order.unlink_permit(permit.id)
                work_order_store.save(old_work_order)
            permit.work_order_id = new_work_order.id if new_work_order else None
            if new_work_order is not None:
                new_work_order.link_permit(permit.id, permit.type)
                work_order_store.save(new_work_order)
        elif permit.type != previous_type and permit.work_order_id is not None:
            linked = work_order_store.find_one(tenant_id, permit.work_order_id)
            if linked is not None:
                _release_permit_type(linked, permit.id, previous_type)
                linked.link_permit(permit.id, permit.type)
                work_order_store.save(linked)
        permit.add_history("updated", by=user_id)
        permit_store.save(permit)

    if new_chain is not None:
        step = active_step(new_chain)
        if step is not None and step.user is not None:
            _notify(permit, step.user, f"Permit {permit.permit_number} requires your approval.")
    _after_commit(permit, action="permit.update", user_id=user_id, before=before)
    return permit


# ═════════════════════════════════════════════════════════════════════════════
# Approval chain decisions
# ═════════════════════════════════════════════════════════════════════════════


def approve_permit(tenant_id: int, permit_id: int, *, user_id=None, roles=None, notes=None) -> Permit:
    """Approve the active step. A permit with nothing awaiting approval is returned unchanged."""
    permit = permit_store.get(tenant_id, permit_id)
    chain = load_chain(permit.approval_chain)
    step = active_step(chain)
    if step is None:
        return permit
    check_authority(step, user_id, roles)

    before = permit.to_dict()
    outcome = advance(chain, Decision.APPROVE, actor_id=user_id, notes=notes)

    with atomic(tenant_id=tenant_id, permit_id=permit.id, user_id=user_id):
        store_chain(permit, chain)
        permit.status = outcome.permit_status.value
        permit.add_history("approved", by=user_id, notes=f"Step approved for {outcome.decided.label}")
        permit_store.save(permit)

    logger.info(
        "Permit %s step %d approved -> %s", permit.permit_number,
        outcome.decided.sequence, permit.status,
        extra={"tenant_id": tenant_id, "permit_id": permit.id, "user_id": user_id},
    )

    if outcome.activated is not None and outcome.activated.user is not None:
        _notify(permit, outcome.activated.user,
                f"Permit {permit.permit_number} is awaiting your approval")
    if outcome.permit_status == PermitStatus.APPROVED:
        _notify(permit, permit.requested_by, f"Permit {permit.permit_number} was approved",
                severity="success")
    _after_commit(permit, action="permit.approve", user_id=user_id, before=before)
    return permit


def reject_permit(tenant_id: int, permit_id: int, *, user_id=None, roles=None, notes=None) -> Permit:
    """Reject the active step; the permit becomes rejected for good."""
    permit = permit_store.get(tenant_id, permit_id)
    chain = load_chain(permit.approval_chain)
    step = active_step(chain)
    if step is None:
        raise ValidationError("Permit already decided")
    check_authority(step, user_id, roles)

    before = permit.to_dict()
    outcome = advance(chain, Decision.REJECT, actor_id=user_id, notes=notes)

    with atomic(tenant_id=tenant_id, permit_id=permit.id, user_id=user_id):
        store_chain(permit, chain)
        permit.status = outcome.permit_status.value
        permit.add_history("rejected", by=user_id,
                           notes=notes or f"Step rejected for {outcome.decided.label}")
        permit_store.save(permit)

    logger.info(
        "Permit %s rejected", permit.permit_number,
        extra={"tenant_id": tenant_id, "permit_id": permit.id, "user_id": user_id},
    )
    _notify(permit, permit.requested_by, f"Permit {permit.permit_number} was rejected",
            severity="error")
    _after_commit(permit, action="permit.reject", user_id=user_id, before=before)
    return permit


def escalate_permit(tenant_id: int, permit_id: int, *, user_id=None, notes=None) -> Permit:
    """Manually escalate the pending step and alert the watchers."""
    permit = permit_store.get(tenant_id, permit_id)
    chain = load_chain(permit.approval_chain)
    before = permit.to_dict()
    outcome = escalate(chain)

    with atomic(tenant_id=tenant_id, permit_id=permit.id, user_id=user_id):
        store_chain(permit, chain)
        permit.status = outcome.permit_status.value
        permit.add_history("escalated", by=user_id,
                           notes=notes or f"Escalated approval step for {outcome.decided.label}")
        permit_store.save(permit)

    logger.warning(
        "Permit %s escalated manually", permit.permit_number,
        extra={"tenant_id": tenant_id, "permit_id": permit.id, "user_id": user_id},
    )
    _notify_watchers(permit, f"Permit {permit.permit_number} has been escalated.",
                     category="escalation", severity="warning")
    _after_commit(permit, action="permit.escalate", user_id=user_id, before=before,
                  event=realtime.PERMIT_ESCALATED)
    return permit


# ═════════════════════════════════════════════════════════════════════════════
# Isolation, incidents, history
# ═════════════════════════════════════════════════════════════════════════════


def complete_isolation_step(
    tenant_id: int, permit_id: int, index, *, user_id=None, verification_notes=None,
) -> Permit:
    permit = permit_store.get(tenant_id, permit_id)
    steps = [dict(s) for s in (permit.isolation_steps or [])]
    if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(steps):
        raise ValidationError("Invalid isolation step index")
    if verification_notes is not None and not isinstance(verification_notes, str):
        raise ValidationError("verification_notes must be a string")

    before = permit.to_dict()
    steps[index].update(
        completed=True,
        completed_at=to_iso(utc_now()),
        completed_by=user_id,
        verification_notes=verification_notes,
    )

    with atomic(tenant_id=tenant_id, permit_id=permit.id, user_id=user_id):
        permit.isolation_steps = steps
        permit.add_history(
            "isolation-step-completed", by=user_id,
            notes=f"Step {index + 1}: {steps[index]['description']}",
        )
        permit_store.save(permit)

    _after_commit(permit, action="permit.isolation_step_complete", user_id=user_id, before=before)
    return permit


def log_permit_incident(tenant_id: int, permit_id: int, data: dict, *, user_id=None) -> SafetyIncident:
    """Record a safety incident against a permit."""
    data = data or {}
    permit = permit_store.get(tenant_id, permit_id)
    title = _text(data, "title", required=True, max_len=300)
    description = _text(data, "description") or ""
    severity = _choice(data, "severity", INCIDENT_SEVERITIES, default="medium")
    status = _choice(data, "status", INCIDENT_STATUSES, default="open")
    actions = data.get("actions") or []
    if not isinstance(actions, list) or not all(isinstance(a, str) for a in actions):
        raise ValidationError("actions must be a list of strings", details={"actions": "invalid"})

    now = utc_now()
    incident = SafetyIncident(
        tenant_id=tenant_id,
        permit_id=permit.id,
        work_order_id=permit.work_order_id,
        title=title,
        description=description,
        severity=severity,
        status=status,
        reported_by=user_id,
        reported_at=now,
        actions=actions,
        timeline=[{"at": to_iso(now), "by": user_id, "message": "Incident logged"}],
    )

    with atomic(tenant_id=tenant_id, permit_id=permit.id, user_id=user_id):
        incident_store.create(incident)
        permit.incidents = [*(permit.incidents or []), incident.id]
        permit.add_history("incident-logged", by=user_id, notes=title, at=now)
        permit_store.save(permit)

    logger.warning(
        "Safety incident %s logged on permit %s (%s)", incident.id, permit.permit_number, severity,
        extra={"tenant_id": tenant_id, "permit_id": permit.id, "user_id": user_id},
    )
    record_audit(
        tenant_id=tenant_id, user_id=user_id, action="permit.incident_log",
        entity_type="safety_incident", entity_id=incident.id, after=incident.to_dict(),
    )
    realtime.publish(realtime.PERMIT_UPDATED, permit.to_dict(), tenant_id=tenant_id)
    return incident


def get_permit_history(tenant_id: int, permit_id: int) -> list[dict]:
    return list(permit_store.get(tenant_id, permit_id).history or [])


# ═════════════════════════════════════════════════════════════════════════════
# Dashboards
# ═════════════════════════════════════════════════════════════════════════════


def _last_approval(chain):
    stamps = [as_utc(s.approved_at) for s in chain if s.approved_at is not None]
    return max(stamps) if stamps else None


def get_safety_kpis(tenant_id: int, *, now=None) -> dict:
    """Tenant-wide permit safety indicators."""
    now = now or utc_now()
    permits = permit_store.find(tenant_id)

    active_count = 0
    overdue = 0
    approval_hours = []
    for permit in permits:
        chain = load_chain(permit.approval_chain)
        if permit.status == PermitStatus.ACTIVE.value:
            active_count += 1
        if permit.status in (PermitStatus.PENDING.value, PermitStatus.ESCALATED.value):
            step = active_step(chain)
            if step is not None and (step.status == StepStatus.ESCALATED or is_overdue(step, now)):
                overdue += 1
        if permit.status in (
            PermitStatus.APPROVED.value, PermitStatus.ACTIVE.value, PermitStatus.CLOSED.value,
        ):
            approved_at = _last_approval(chain)
            if approved_at is not None and permit.created_at is not None:
                delta = approved_at - as_utc(permit.created_at)
                approval_hours.append(delta.total_seconds() / 3600)

    incidents = incident_store.find(tenant_id, reported_since=now - timedelta(days=30))
    return {
        "active_count": active_count,
        "overdue_approvals": overdue,
        "incidents_last_30": len(incidents),
        "avg_approval_hours": (
            round(sum(approval_hours) / len(approval_hours), 2) if approval_hours else 0.0
        ),
    }


def get_permit_activity(tenant_id: int, user_id, *, roles=None) -> dict:
    """Permits a user is involved in: requested, watching or on the approval chain."""
    if user_id is None:
        raise ValidationError("user_id is required")
    user_id = int(user_id)
    involved = []
    pending = 0
    for permit in permit_store.find(tenant_id):
        chain = load_chain(permit.approval_chain)
        on_chain = any(step.user == user_id for step in chain)
        if permit.requested_by == user_id or user_id in (permit.watchers or []) or on_chain:
            involved.append(permit)
        step = active_step(chain)
        if step is not None and can_decide(step, user_id, roles):
            pending += 1

    history = [
        {**entry, "permit_id": p.id, "permit_number": p.permit_number}
        for p in involved
        for entry in (p.history or [])
    ]
    history.sort(key=lambda e: e.get("at") or "", reverse=True)

    return {
        "total_involved": len(involved),
        "pending_approvals": pending,
        "active_permits": sum(1 for p in involved if p.status == PermitStatus.ACTIVE.value),
        "recent_history": history[:10],
    }
