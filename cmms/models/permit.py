"""
Maintenance Permit Core
Permit-to-work domain models.

Models:
    - Permit: a safety permit gated by an ordered approval chain
    - SafetyIncident: an incident reported against a permit

The approval chain, isolation steps, watchers and history are stored as
JSON columns and always rewritten whole; see
``cmms.services.permit_chain`` for the chain state machine.
"""

from datetime import datetime, timezone

from cmms.models import db
from cmms.models.base import TenantModel
from cmms.utils.helpers import to_iso

# ── Constants ────────────────────────────────────────────────────────────────

PERMIT_STATUSES = {"pending", "approved", "rejected", "escalated", "active", "closed"}
RISK_LEVELS = {"low", "medium", "high", "critical"}
INCIDENT_SEVERITIES = {"low", "medium", "high", "critical"}
INCIDENT_STATUSES = {"open", "investigating", "closed"}


def _now():
    return datetime.now(timezone.utc)


class Permit(TenantModel):
    """
    Permit-to-work aggregate.

    ``work_order_id`` is a non-owning back-reference; the forward set is
    ``WorkOrder.permits``. ``next_escalation_at`` mirrors the pending
    step's deadline so the escalation sweep can be an indexed query.
    """

    __tablename__ = "permits"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "permit_number", name="uq_permit_tenant_number"),
        db.Index("ix_permits_tenant_status", "tenant_id", "status"),
        db.Index("ix_permits_escalation", "tenant_id", "next_escalation_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    permit_number = db.Column(db.String(64), nullable=False)
    type = db.Column(db.String(60), nullable=False, comment="hot-work | confined-space | electrical | …")
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), nullable=False, default="pending")
    risk_level = db.Column(db.String(20), default="medium")
    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_to = db.Column(db.DateTime(timezone=True), nullable=True)

    requested_by = db.Column(db.Integer, nullable=True, comment="user id from the JWT subject")
    work_order_id = db.Column(
        db.Integer, db.ForeignKey("work_orders.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    approval_chain = db.Column(db.JSON, nullable=False, default=list)
    isolation_steps = db.Column(db.JSON, nullable=False, default=list)
    watchers = db.Column(db.JSON, nullable=False, default=list)
    incidents = db.Column(db.JSON, nullable=False, default=list)
    history = db.Column(db.JSON, nullable=False, default=list)

    next_escalation_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def add_history(self, action, by=None, notes=None, at=None):
        """Append one history entry (list is reassigned so the JSON column is flagged dirty)."""
        entry = {
            "action": action,
            "by": by,
            "at": to_iso(at or _now()),
            "notes": notes,
        }
        self.history = [*(self.history or []), entry]
        return entry

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "permit_number": self.permit_number,
            "type": self.type,
            "description": self.description,
            "status": self.status,
            "risk_level": self.risk_level,
            "valid_from": to_iso(self.valid_from),
            "valid_to": to_iso(self.valid_to),
            "requested_by": self.requested_by,
            "work_order_id": self.work_order_id,
            "approval_chain": list(self.approval_chain or []),
            "isolation_steps": list(self.isolation_steps or []),
            "watchers": list(self.watchers or []),
            "incidents": list(self.incidents or []),
            "history": list(self.history or []),
            "next_escalation_at": to_iso(self.next_escalation_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Permit {self.id}: {self.permit_number} [{self.status}]>"


class SafetyIncident(TenantModel):
    """Incident raised while a permit was in force."""

    __tablename__ = "safety_incidents"

    id = db.Column(db.Integer, primary_key=True)
    permit_id = db.Column(
        db.Integer, db.ForeignKey("permits.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    work_order_id = db.Column(
        db.Integer, db.ForeignKey("work_orders.id", ondelete="SET NULL"), nullable=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="open")
    reported_by = db.Column(db.Integer, nullable=True)
    reported_at = db.Column(db.DateTime(timezone=True), default=_now, index=True)
    actions = db.Column(db.JSON, nullable=False, default=list)
    timeline = db.Column(db.JSON, nullable=False, default=list)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "permit_id": self.permit_id,
            "work_order_id": self.work_order_id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "status": self.status,
            "reported_by": self.reported_by,
            "reported_at": to_iso(self.reported_at),
            "actions": list(self.actions or []),
            "timeline": list(self.timeline or []),
        }

    def __repr__(self):
        return f"<SafetyIncident {self.id}: {self.title[:40]}>"
