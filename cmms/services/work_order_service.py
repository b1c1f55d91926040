"""
Work order creation and reads.

Status changes live in ``work_order_lifecycle``; this module only creates
work orders (linking any permits given up front) and looks them up.
"""

import logging

from cmms.core.exceptions import ValidationError
from cmms.models.work_order import APPROVAL_STATUSES, PRIORITIES, WORK_ORDER_STATUSES, WorkOrder
from cmms.services import realtime
from cmms.services.audit import record_audit
from cmms.services.notification import notify_many
from cmms.services.stores import atomic, permit_store, work_order_store
from cmms.utils.helpers import coerce_user_ids

logger = logging.getLogger(__name__)


def _string_list(data, key) -> list[str]:
    values = data.get(key) or []
    if not isinstance(values, list) or not all(isinstance(v, str) and v.strip() for v in values):
        raise ValidationError(f"{key} must be a list of strings", details={key: "invalid"})
    unique = []
    for value in values:
        if value.strip() not in unique:
            unique.append(value.strip())
    return unique


def _permit_ids(data) -> list[int]:
    values = data.get("permits") or []
    if not isinstance(values, list) or any(
        isinstance(v, bool) or not isinstance(v, int) for v in values
    ):
        raise ValidationError("permits must be a list of permit ids", details={"permits": "invalid"})
    return list(dict.fromkeys(values))


def create_work_order(tenant_id: int, data: dict, *, user_id=None) -> WorkOrder:
    data = data or {}
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title is required", details={"title": "required"})
    description = data.get("description") or ""
    if not isinstance(description, str):
        raise ValidationError("description must be a string")
    priority = data.get("priority", "medium")
    if priority not in PRIORITIES:
        raise ValidationError(f"priority must be one of {sorted(PRIORITIES)}")
    approval_status = data.get("approval_status", "not-required")
    if approval_status not in APPROVAL_STATUSES:
        raise ValidationError(f"approval_status must be one of {sorted(APPROVAL_STATUSES)}")
    try:
        assignees = coerce_user_ids(data.get("assignees"))
    except ValueError as exc:
        raise ValidationError(f"assignees: {exc}", details={"assignees": "invalid"}) from exc
    required_types = _string_list(data, "required_permit_types")

    permit_ids = _permit_ids(data)
    permits = permit_store.find(tenant_id, ids=permit_ids) if permit_ids else []
    if len(permits) != len(permit_ids):
        raise ValidationError("One or more permits could not be found", details={"permits": "not_found"})
    for permit in permits:
        if permit.work_order_id is not None:
            raise ValidationError(
                f"Permit {permit.permit_number} is already linked to work order {permit.work_order_id}",
                details={"permits": permit.id},
            )
        if permit.type not in required_types:
            required_types.append(permit.type)

    work_order = WorkOrder(
        tenant_id=tenant_id,
        title=title.strip(),
        description=description,
        priority=priority,
        status="requested",
        approval_status=approval_status,
        assignees=assignees,
        assigned_to=assignees[0] if assignees else None,
        permits=permit_ids,
        required_permit_types=required_types,
    )

    with atomic(tenant_id=tenant_id, user_id=user_id):
        work_order_store.create(work_order)
        for permit in permits:
            permit.work_order_id = work_order.id
            permit_store.save(permit)

    logger.info("Work order %s created", work_order.id,
                extra={"tenant_id": tenant_id, "work_order_id": work_order.id, "user_id": user_id})

    notify_many(
        assignees, f'You have been assigned to work order "{work_order.title}"',
        tenant_id=tenant_id, category="work_order", entity_type="work_order", entity_id=work_order.id,
    )
    record_audit(
        tenant_id=tenant_id, user_id=user_id, action="work_order.create",
        entity_type="work_order", entity_id=work_order.id, after=work_order.to_dict(),
    )
    realtime.publish(realtime.WORK_ORDER_UPDATED, work_order.to_dict(), tenant_id=tenant_id)
    return work_order


def get_work_order(tenant_id: int, work_order_id: int) -> WorkOrder:
    return work_order_store.get(tenant_id, work_order_id)


def list_work_orders(tenant_id: int, *, status=None) -> list[WorkOrder]:
    if status is not None and status not in WORK_ORDER_STATUSES:
        raise ValidationError(f"status must be one of {sorted(WORK_ORDER_STATUSES)}")
    return work_order_store.find(tenant_id, status=status)
