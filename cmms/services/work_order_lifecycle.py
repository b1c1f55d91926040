"""
Work order lifecycle — status transitions gated by linked permits.

    requested -> assigned -> in_progress -> completed
    (cancelled from any non-terminal state)

Every transition follows the same order:
    1. input validation            ValidationError  -> 400
    2. tenant-scoped lookup        NotFoundError    -> 404
    3. transition allowed          ConflictError    -> 409
    4. readiness gate              NotFoundError / ConflictError
    5. mutation, committed once for the work order and its permits
    6. audit + realtime + notifications (best-effort)

The readiness stage is always passed explicitly: START for approval,
assignment, start and cancel; COMPLETE for completion.
"""

from __future__ import annotations

import logging

from cmms.core.exceptions import ConflictError, NotFoundError, ValidationError
from cmms.models.work_order import TERMINAL_STATUSES, WORK_ORDER_TRANSITIONS, WorkOrder
from cmms.services import realtime
from cmms.services.audit import record_audit
from cmms.services.notification import notify_many, notify_user
from cmms.services.permit_chain import PermitStatus
from cmms.services.readiness import ReadinessFailure, ReadinessStage, ensure_readiness
from cmms.services.stores import atomic, permit_store, work_order_store
from cmms.utils.helpers import coerce_user_ids, to_iso, utc_now

logger = logging.getLogger(__name__)

WORK_ORDER_APPROVAL_DECISIONS = {"pending", "approved", "rejected"}


# ── Shared steps ─────────────────────────────────────────────────────────────


def _check_transition(work_order: WorkOrder, target: str) -> None:
    if target not in WORK_ORDER_TRANSITIONS.get(work_order.status, set()):
        raise ConflictError(
            f"Cannot move work order from {work_order.status} to {target}",
            details={"from": work_order.status, "to": target},
        )


def _require_ready(work_order: WorkOrder, stage: ReadinessStage) -> list:
    result = ensure_readiness(
        work_order.tenant_id,
        work_order.permits,
        work_order.required_permit_types,
        stage,
    )
    if result.ok:
        return result.permits

    logger.info(
        "Work order %s blocked at %s: %s", work_order.id, stage.value, result.message,
        extra={"tenant_id": work_order.tenant_id, "work_order_id": work_order.id},
    )
    if result.failure == ReadinessFailure.MISSING:
        raise NotFoundError(resource="Permit", tenant_id=work_order.tenant_id, message=result.message)
    raise ConflictError(result.message, details={"readiness": result.to_dict()})


def _after_commit(work_order: WorkOrder, *, action, user_id, before, permits=()):
    record_audit(
        tenant_id=work_order.tenant_id,
        user_id=user_id,
        action=action,
        entity_type="work_order",
        entity_id=work_order.id,
        before=before,
        after=work_order.to_dict(),
    )
    realtime.publish(realtime.WORK_ORDER_UPDATED, work_order.to_dict(), tenant_id=work_order.tenant_id)
    for permit in permits:
        realtime.publish(realtime.PERMIT_UPDATED, permit.to_dict(), tenant_id=work_order.tenant_id)


def _notify(work_order, user_ids, message, **kwargs):
    return notify_many(
        user_ids, message,
        tenant_id=work_order.tenant_id, category="work_order",
        entity_type="work_order", entity_id=work_order.id, **kwargs,
    )


# ── Transitions ──────────────────────────────────────────────────────────────


def approve_work_order(tenant_id: int, work_order_id: int, status, *, user_id=None) -> WorkOrder:
    """Request, grant or refuse approval for a work order."""
    if status not in WORK_ORDER_APPROVAL_DECISIONS:
        raise ValidationError(
            f"status must be one of {sorted(WORK_ORDER_APPROVAL_DECISIONS)}",
            details={"status": "invalid"},
        )
    work_order = work_order_store.get(tenant_id, work_order_id)
    if work_order.status in TERMINAL_STATUSES:
        raise ConflictError(f"Work order is already {work_order.status}")
    _require_ready(work_order, ReadinessStage.START)

    before = work_order.to_dict()
    with atomic(tenant_id=tenant_id, work_order_id=work_order.id, user_id=user_id):
        work_order.approval_status = status
        if status == "pending":
            work_order.approval_requested_by = user_id
        else:
            work_order.approved_by = user_id
        work_order_store.save(work_order)

    if status == "pending":
        message = f'Approval requested for work order "{work_order.title}"'
    else:
        message = f'Work order "{work_order.title}" was {status}'
    notify_user(
        work_order.assigned_to, message,
        tenant_id=tenant_id, category="work_order", entity_type="work_order", entity_id=work_order.id,
    )
    _after_commit(work_order, action="work_order.approve", user_id=user_id, before=before)
    return work_order


def assign_work_order(tenant_id: int, work_order_id: int, assignees, *, user_id=None) -> WorkOrder:
    """Assign (or reassign) people; the first assignee becomes ``assigned_to``."""
    try:
        normalized = coerce_user_ids(assignees)
    except ValueError as exc:
        raise ValidationError(f"assignees: {exc}", details={"assignees": "invalid"}) from exc
    if not normalized:
        raise ValidationError("assignees must name at least one user", details={"assignees": "required"})

    work_order = work_order_store.get(tenant_id, work_order_id)
    _check_transition(work_order, "assigned")
    if work_order.approval_status in ("pending", "rejected"):
        raise ConflictError(
            f"Work order approval is {work_order.approval_status}; it cannot be assigned",
            details={"approval_status": work_order.approval_status},
        )
    _require_ready(work_order, ReadinessStage.START)

    before = work_order.to_dict()
    previous = set(work_order.assignees or [])
    with atomic(tenant_id=tenant_id, work_order_id=work_order.id, user_id=user_id):
        work_order.assignees = normalized
        work_order.assigned_to = normalized[0]
        work_order.status = "assigned"
        work_order_store.save(work_order)

    _notify(work_order, [uid for uid in normalized if uid not in previous],
            f'You have been assigned to work order "{work_order.title}"')
    _after_commit(work_order, action="work_order.assign", user_id=user_id, before=before)
    return work_order


def start_work_order(tenant_id: int, work_order_id: int, *, user_id=None) -> WorkOrder:
    """Start work: approved permits go active in the same commit."""
    work_order = work_order_store.get(tenant_id, work_order_id)
    _check_transition(work_order, "in_progress")
    permits = _require_ready(work_order, ReadinessStage.START)

    before = work_order.to_dict()
    touched = []
    with atomic(tenant_id=tenant_id, work_order_id=work_order.id, user_id=user_id):
        for permit in permits:
            if permit.status != PermitStatus.APPROVED.value:
                continue
            permit.status = PermitStatus.ACTIVE.value
            permit.add_history("work-order-started", by=user_id,
                               notes=f"Work order {work_order.id} started")
            permit_store.save(permit)
            touched.append(permit)
        work_order.status = "in_progress"
        work_order_store.save(work_order)

    logger.info(
        "Work order %s started; %d permits activated", work_order.id, len(touched),
        extra={"tenant_id": tenant_id, "work_order_id": work_order.id, "user_id": user_id},
    )
    _after_commit(work_order, action="work_order.start", user_id=user_id, before=before,
                  permits=touched)
    return work_order


# ── Completion payload ───────────────────────────────────────────────────────


def _number(value, key, *, minimum=0, integer=False):
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ValidationError(f"{key} must be a number >= {minimum}", details={key: "invalid"})
    if integer and not float(value).is_integer():
        raise ValidationError(f"{key} must be a whole number", details={key: "invalid"})
    return int(value) if integer else value


def _parse_completion(data: dict, user_id) -> dict:
    data = data or {}
    record = {}

    if data.get("time_spent_min") is not None:
        record["time_spent_min"] = _number(data["time_spent_min"], "time_spent_min", integer=True)

    parts = data.get("parts_used") or []
    if not isinstance(parts, list):
        raise ValidationError("parts_used must be a list")
    record["parts_used"] = []
    for index, part in enumerate(parts):
        if not isinstance(part, dict) or part.get("part_id") in (None, ""):
            raise ValidationError(f"parts_used[{index}] needs a part_id")
        entry = {
            "part_id": part["part_id"],
            "qty": _number(part.get("qty", 1), f"parts_used[{index}].qty"),
        }
        if part.get("cost") is not None:
            entry["cost"] = _number(part["cost"], f"parts_used[{index}].cost")
        record["parts_used"].append(entry)

    checklists = data.get("checklists") or []
    if not isinstance(checklists, list):
        raise ValidationError("checklists must be a list")
    record["checklists"] = []
    for index, item in enumerate(checklists):
        if not isinstance(item, dict) or not isinstance(item.get("text"), str):
            raise ValidationError(f"checklists[{index}] needs text")
        record["checklists"].append({"text": item["text"], "done": bool(item.get("done"))})

    signatures = data.get("signatures")
    if signatures is None:
        signatures = [{"by": user_id}] if user_id is not None else []
    if not isinstance(signatures, list):
        raise ValidationError("signatures must be a list")
    record["signatures"] = []
    for index, sig in enumerate(signatures):
        if not isinstance(sig, dict) or sig.get("by") is None:
            raise ValidationError(f"signatures[{index}] needs a signer")
        record["signatures"].append({"by": sig["by"], "ts": sig.get("ts") or to_iso(utc_now())})

    photos = data.get("photos") or []
    if not isinstance(photos, list) or not all(isinstance(p, str) for p in photos):
        raise ValidationError("photos must be a list of strings")
    record["photos"] = photos

    failure_code = data.get("failure_code")
    if failure_code is not None and not isinstance(failure_code, str):
        raise ValidationError("failure_code must be a string")
    record["failure_code"] = failure_code
    return record


def complete_work_order(tenant_id: int, work_order_id: int, data=None, *, user_id=None) -> WorkOrder:
    """Complete work: permits close and the completion record is stored, in one commit."""
    record = _parse_completion(data, user_id)
    work_order = work_order_store.get(tenant_id, work_order_id)
    _check_transition(work_order, "completed")
    permits = _require_ready(work_order, ReadinessStage.COMPLETE)

    before = work_order.to_dict()
    touched = []
    with atomic(tenant_id=tenant_id, work_order_id=work_order.id, user_id=user_id):
        for permit in permits:
            if permit.status == PermitStatus.CLOSED.value:
                continue
            permit.status = PermitStatus.CLOSED.value
            permit.next_escalation_at = None
            permit.add_history("work-order-completed", by=user_id,
                               notes=f"Work order {work_order.id} completed")
            permit_store.save(permit)
            touched.append(permit)
        for key, value in record.items():
            setattr(work_order, key, value)
        work_order.status = "completed"
        work_order.completed_at = utc_now()
        work_order_store.save(work_order)

    logger.info(
        "Work order %s completed; %d permits closed", work_order.id, len(touched),
        extra={"tenant_id": tenant_id, "work_order_id": work_order.id, "user_id": user_id},
    )
    _after_commit(work_order, action="work_order.complete", user_id=user_id, before=before,
                  permits=touched)
    return work_order


def cancel_work_order(tenant_id: int, work_order_id: int, *, user_id=None) -> WorkOrder:
    work_order = work_order_store.get(tenant_id, work_order_id)
    _check_transition(work_order, "cancelled")
    _require_ready(work_order, ReadinessStage.START)

    before = work_order.to_dict()
    with atomic(tenant_id=tenant_id, work_order_id=work_order.id, user_id=user_id):
        work_order.status = "cancelled"
        work_order_store.save(work_order)

    _notify(work_order, work_order.assignees, f'Work order "{work_order.title}" was cancelled',
            severity="warning")
    _after_commit(work_order, action="work_order.cancel", user_id=user_id, before=before)
    return work_order
