"""
Best-effort audit writer.

``record_audit`` runs after the primary mutation has committed. It writes
one AuditLog row in its own commit; a failure is rolled back and logged
but never raised, so auditing can not undo or fail a completed operation.
"""

import logging

from cmms.models import db
from cmms.models.audit import write_audit

logger = logging.getLogger(__name__)


def record_audit(
    *,
    tenant_id,
    user_id,
    action: str,
    entity_type: str,
    entity_id,
    before: dict | None = None,
    after: dict | None = None,
) -> bool:
    """Append an audit entry. Returns False (after logging) on failure."""
    try:
        write_audit(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            tenant_id=tenant_id,
            actor_user_id=user_id,
            before=before,
            after=after,
        )
        db.session.commit()
        return True
    except Exception:
        db.session.rollback()
        logger.exception(
            "Audit write failed for %s %s/%s", action, entity_type, entity_id,
            extra={"tenant_id": tenant_id, "user_id": user_id},
        )
        return False
