"""
Maintenance Permit Core
Work order domain model.

Models:
    - WorkOrder: a maintenance job whose lifecycle is gated by its permits

Status machine (WORK_ORDER_TRANSITIONS):
    requested   -> assigned | in_progress | cancelled
    assigned    -> assigned | in_progress | cancelled
    in_progress -> completed | cancelled
    completed   -> (terminal)
    cancelled   -> (terminal)
"""

from datetime import datetime, timezone

from cmms.models import db
from cmms.models.base import TenantModel
from cmms.utils.helpers import to_iso

# ── Constants ────────────────────────────────────────────────────────────────

WORK_ORDER_STATUSES = {"requested", "assigned", "in_progress", "completed", "cancelled"}
APPROVAL_STATUSES = {"not-required", "pending", "approved", "rejected"}
PRIORITIES = {"low", "medium", "high", "urgent"}

WORK_ORDER_TRANSITIONS = {
    "requested": {"assigned", "in_progress", "cancelled"},
    "assigned": {"assigned", "in_progress", "cancelled"},
    "in_progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

TERMINAL_STATUSES = {"completed", "cancelled"}


def _now():
    return datetime.now(timezone.utc)


class WorkOrder(TenantModel):
    """Maintenance work order; ``permits`` is the set the readiness gate evaluates."""

    __tablename__ = "work_orders"
    __table_args__ = (
        db.Index("ix_work_orders_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    priority = db.Column(db.String(20), default="medium")
    status = db.Column(db.String(20), nullable=False, default="requested")

    approval_status = db.Column(db.String(20), nullable=False, default="not-required")
    approval_requested_by = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)

    assigned_to = db.Column(db.Integer, nullable=True)
    assignees = db.Column(db.JSON, nullable=False, default=list)

    permits = db.Column(db.JSON, nullable=False, default=list)
    required_permit_types = db.Column(db.JSON, nullable=False, default=list)

    # Completion record
    checklists = db.Column(db.JSON, nullable=False, default=list)
    parts_used = db.Column(db.JSON, nullable=False, default=list)
    signatures = db.Column(db.JSON, nullable=False, default=list)
    photos = db.Column(db.JSON, nullable=False, default=list)
    failure_code = db.Column(db.String(60), nullable=True)
    time_spent_min = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def link_permit(self, permit_id, permit_type=None):
        """Add a permit (and its type) to the forward sets, set semantics."""
        permits = list(self.permits or [])
        if permit_id not in permits:
            self.permits = [*permits, permit_id]
        types = list(self.required_permit_types or [])
        if permit_type and permit_type not in types:
            self.required_permit_types = [*types, permit_type]

    def unlink_permit(self, permit_id):
        self.permits = [pid for pid in (self.permits or []) if pid != permit_id]

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "approval_status": self.approval_status,
            "approval_requested_by": self.approval_requested_by,
            "approved_by": self.approved_by,
            "assigned_to": self.assigned_to,
            "assignees": list(self.assignees or []),
            "permits": list(self.permits or []),
            "required_permit_types": list(self.required_permit_types or []),
            "checklists": list(self.checklists or []),
            "parts_used": list(self.parts_used or []),
            "signatures": list(self.signatures or []),
            "photos": list(self.photos or []),
            "failure_code": self.failure_code,
            "time_spent_min": self.time_spent_min,
            "completed_at": to_iso(self.completed_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WorkOrder {self.id}: {self.title[:40]} [{self.status}]>"
