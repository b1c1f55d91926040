"""
Scheduled job implementations.

Importing this module registers the jobs with ``SchedulerService``.
"""

import logging

from sqlalchemy import select

from cmms.models import db
from cmms.models.auth import Tenant
from cmms.services.escalation import scanner
from cmms.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("permit_escalation_sweep")
def sweep_permit_escalations(app):
    """Escalate overdue permit approvals for every active tenant."""
    tenant_ids = db.session.execute(
        select(Tenant.id).where(Tenant.is_active.is_(True))
    ).scalars().all()

    totals = {"tenants": 0, "escalated": 0, "failed": 0}
    for tenant_id in tenant_ids:
        try:
            summary = scanner.sweep(tenant_id)
        except Exception:
            db.session.rollback()
            totals["failed"] += 1
            logger.exception("Escalation sweep failed for tenant %s", tenant_id,
                             extra={"tenant_id": tenant_id})
            continue
        totals["tenants"] += 1
        totals["escalated"] += summary["escalated"]
        totals["failed"] += summary["failed"]
    return totals
