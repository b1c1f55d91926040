"""
Maintenance Permit Core
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for permit and
      work-order lifecycle events.
"""

import json
from datetime import UTC, datetime

from cmms.models import db

# ── Local coercion ───────────────────────────────────────────────────────────

def _as_int(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"permit", "work_order", "safety_incident"}

AUDIT_ACTIONS = {
    # Permit lifecycle
    "permit.create",
    "permit.update",
    "permit.approve",
    "permit.reject",
    "permit.escalate",
    "permit.isolation_step_complete",
    "permit.incident_log",
    # Work order lifecycle
    "work_order.create",
    "work_order.approve",
    "work_order.assign",
    "work_order.start",
    "work_order.complete",
    "work_order.cancel",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action. ``before_json`` / ``after_json`` carry full
    aggregate snapshots taken around the mutation.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="permit | work_order | safety_incident",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="permit.approve | work_order.start | …",
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="NULL for system actions (escalation sweep)",
    )

    before_json = db.Column(db.Text, nullable=True)
    after_json = db.Column(db.Text, nullable=True)

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _load(raw):
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    @property
    def before(self) -> dict | None:
        return self._load(self.before_json)

    @property
    def after(self) -> dict | None:
        return self._load(self.after_json)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "before": self.before,
            "after": self.after,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    tenant_id: int | None = None,
    actor_user_id: int | None = None,
    before: dict | None = None,
    after: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    log = AuditLog(
        tenant_id=_as_int(tenant_id),
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=_as_int(actor_user_id),
        before_json=json.dumps(before, default=str) if before is not None else None,
        after_json=json.dumps(after, default=str) if after is not None else None,
    )
    db.session.add(log)
    db.session.flush()
    return log
