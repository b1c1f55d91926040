"""
Tenant-scoped persistence for the Permit and WorkOrder aggregates.

Both stores expose the same small contract:

    find_one(tenant_id, id)   -> entity | None
    get(tenant_id, id)        -> entity (raises NotFoundError)
    find(tenant_id, **filter) -> list[entity]
    create(entity)            -> entity (flushed)
    save(entity)              -> entity (flushed)

Stores only flush. Callers wrap one logical operation in ``atomic()``,
which commits once at the end, so a permit flip and the work-order
status change it belongs to land together or not at all.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from cmms.core.exceptions import InternalError
from cmms.models import db
from cmms.models.permit import Permit, SafetyIncident
from cmms.models.work_order import WorkOrder
from cmms.services.helpers.scoped_queries import get_scoped, get_scoped_or_none

logger = logging.getLogger(__name__)


@contextmanager
def atomic(**log_context):
    """Commit everything done inside the block as one transaction.

    Database failures are rolled back, logged with ``log_context`` and
    re-raised as InternalError; any other exception is rolled back and
    propagates unchanged.
    """
    try:
        yield
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Transaction failed: %s", exc, extra=log_context)
        raise InternalError("Could not persist changes") from exc
    except Exception:
        db.session.rollback()
        raise


class _TenantStore:
    model = None

    def find_one(self, tenant_id, entity_id):
        return get_scoped_or_none(self.model, entity_id, tenant_id=tenant_id)

    def get(self, tenant_id, entity_id):
        return get_scoped(self.model, entity_id, tenant_id=tenant_id)

    def create(self, entity):
        db.session.add(entity)
        db.session.flush()
        return entity

    def save(self, entity):
        db.session.add(entity)
        db.session.flush()
        return entity

    def _base_query(self, tenant_id, ids=None):
        stmt = select(self.model).where(self.model.tenant_id == tenant_id)
        if ids is not None:
            stmt = stmt.where(self.model.id.in_(list(ids)))
        return stmt


class PermitStore(_TenantStore):
    model = Permit

    def find(
        self,
        tenant_id,
        *,
        ids=None,
        statuses=None,
        type=None,
        work_order_id=None,
        escalation_due_before=None,
    ):
        stmt = self._base_query(tenant_id, ids)
        if statuses:
            stmt = stmt.where(Permit.status.in_(list(statuses)))
        if type:
            stmt = stmt.where(Permit.type == type)
        if work_order_id is not None:
            stmt = stmt.where(Permit.work_order_id == work_order_id)
        if escalation_due_before is not None:
            stmt = stmt.where(
                Permit.next_escalation_at.is_not(None),
                Permit.next_escalation_at <= escalation_due_before,
            )
        stmt = stmt.order_by(Permit.updated_at.desc(), Permit.id.desc())
        return list(db.session.execute(stmt).scalars())

    def number_exists(self, tenant_id, permit_number) -> bool:
        stmt = select(Permit.id).where(
            Permit.tenant_id == tenant_id, Permit.permit_number == permit_number,
        )
        return db.session.execute(stmt).first() is not None


class WorkOrderStore(_TenantStore):
    model = WorkOrder

    def find(self, tenant_id, *, ids=None, status=None):
        stmt = self._base_query(tenant_id, ids)
        if status:
            stmt = stmt.where(WorkOrder.status == status)
        stmt = stmt.order_by(WorkOrder.updated_at.desc(), WorkOrder.id.desc())
        return list(db.session.execute(stmt).scalars())


class IncidentStore(_TenantStore):
    model = SafetyIncident

    def find(self, tenant_id, *, permit_ids=None, reported_since=None):
        stmt = self._base_query(tenant_id)
        if permit_ids is not None:
            stmt = stmt.where(SafetyIncident.permit_id.in_(list(permit_ids)))
        if reported_since is not None:
            stmt = stmt.where(SafetyIncident.reported_at >= reported_since)
        return list(db.session.execute(stmt).scalars())


permit_store = PermitStore()
work_order_store = WorkOrderStore()
incident_store = IncidentStore()
