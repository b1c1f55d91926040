"""
Permit escalation — time-driven promotion of overdue approval steps.

``EscalationScanner.sweep`` finds a tenant's permits whose pending step
deadline has passed, escalates each one and notifies its watchers. Every
permit is processed independently: a failure is logged and the sweep
moves on to the next permit.

When the sweep runs is a swappable policy, selected by the
``PERMIT_ESCALATION_MODE`` config key:

    lazy       LazyEscalation: sweep at the top of every permit read
    scheduled  ScheduledEscalation: reads do nothing; the
               ``permit_escalation_sweep`` scheduler job sweeps instead

Permit services call ``apply_pending_escalations(tenant_id)`` and never
care which one is active.
"""

from __future__ import annotations

import logging

from flask import current_app

from cmms.models import db
from cmms.services import realtime
from cmms.services.notification import notify_many
from cmms.services.permit_chain import (
    PermitStatus,
    escalate,
    is_overdue,
    load_chain,
    pending_step,
    store_chain,
)
from cmms.services.stores import atomic, permit_store
from cmms.utils.helpers import utc_now

logger = logging.getLogger(__name__)

SWEEP_STATUSES = (PermitStatus.PENDING.value, PermitStatus.ESCALATED.value)


class EscalationScanner:
    """Escalates overdue pending approval steps for one tenant at a time."""

    def __init__(self, store=None):
        self.store = store or permit_store

    def sweep(self, tenant_id, now=None) -> dict:
        now = now or utc_now()
        summary = {"matched": 0, "escalated": 0, "failed": 0, "notified": 0}

        candidates = self.store.find(
            tenant_id, statuses=SWEEP_STATUSES, escalation_due_before=now,
        )
        summary["matched"] = len(candidates)

        for permit in candidates:
            permit_id = permit.id
            try:
                escalated = self._escalate_one(permit, now)
            except Exception:
                db.session.rollback()
                summary["failed"] += 1
                logger.exception(
                    "Escalation failed for permit %s", permit_id,
                    extra={"tenant_id": tenant_id, "permit_id": permit_id},
                )
                continue
            if not escalated:
                continue

            summary["escalated"] += 1
            summary["notified"] += notify_many(
                permit.watchers,
                f"Permit {permit.permit_number} was escalated",
                tenant_id=tenant_id,
                category="escalation",
                severity="warning",
                entity_type="permit",
                entity_id=permit.id,
            )
            realtime.publish(realtime.PERMIT_ESCALATED, permit.to_dict(), tenant_id=tenant_id)

        if summary["matched"]:
            logger.info(
                "Escalation sweep: %d matched, %d escalated, %d failed",
                summary["matched"], summary["escalated"], summary["failed"],
                extra={"tenant_id": tenant_id},
            )
        return summary

    def _escalate_one(self, permit, now) -> bool:
        # Re-derive from the stored chain; the indexed deadline may be stale.
        chain = load_chain(permit.approval_chain)
        step = pending_step(chain)
        if not is_overdue(step, now):
            return False

        escalate(chain)
        with atomic(tenant_id=permit.tenant_id, permit_id=permit.id):
            store_chain(permit, chain)
            permit.status = PermitStatus.ESCALATED.value
            permit.add_history(
                "escalated",
                notes=f"Escalated approval step for {step.label}",
                at=now,
            )
            self.store.save(permit)
        return True


scanner = EscalationScanner()


# ── Trigger policies ─────────────────────────────────────────────────────────


class LazyEscalation:
    """Read-triggered: every permit read applies due escalations first."""

    name = "lazy"

    def before_read(self, tenant_id):
        return scanner.sweep(tenant_id)


class ScheduledEscalation:
    """Background-triggered: reads are untouched, the scheduler job sweeps."""

    name = "scheduled"

    def before_read(self, tenant_id):
        return None


_TRIGGERS = {
    LazyEscalation.name: LazyEscalation(),
    ScheduledEscalation.name: ScheduledEscalation(),
}


def get_escalation_trigger():
    mode = current_app.config.get("PERMIT_ESCALATION_MODE", LazyEscalation.name)
    try:
        return _TRIGGERS[mode]
    except KeyError:
        raise RuntimeError(f"Unknown PERMIT_ESCALATION_MODE {mode!r}") from None


def apply_pending_escalations(tenant_id):
    """Run whatever escalation work the configured policy wants before a read."""
    return get_escalation_trigger().before_read(tenant_id)
