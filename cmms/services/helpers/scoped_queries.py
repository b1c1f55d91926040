"""
Tenant-scoped query helpers.

Every get-by-id MUST go through these helpers instead of
db.session.get(Model, pk). Direct .get() calls bypass tenant isolation.

Usage:
    permit = get_scoped(Permit, permit_id, tenant_id=tenant_id)
    wo = get_scoped_or_none(WorkOrder, wo_id, tenant_id=tenant_id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    If the model does not have that column, a ValueError is raised at
    call time so the bug surfaces immediately during development/testing.
"""

import logging

from sqlalchemy import select

from cmms.core.exceptions import NotFoundError
from cmms.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk: int, *, tenant_id: int | None = None):
    """Fetch a single entity by PK with a mandatory tenant filter.

    Cross-tenant access is indistinguishable from a missing record: both
    raise NotFoundError → HTTP 404.

    Raises:
        ValueError: If no tenant scope is provided or the model has no
                    tenant_id column.
        NotFoundError: If the entity does not exist OR belongs to a
                       different tenant.
    """
    if tenant_id is None:
        raise ValueError(
            f"{model.__name__} id={pk} requires a tenant_id scope. "
            "Unscoped lookups are forbidden."
        )
    if not hasattr(model, "tenant_id"):
        raise ValueError(f"{model.__name__} has no tenant_id column; refusing unscoped lookup")

    stmt = select(model).where(model.id == pk, model.tenant_id == tenant_id)
    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug("get_scoped: %s id=%s not found in tenant %s", model.__name__, pk, tenant_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk, tenant_id=tenant_id)

    return result


def get_scoped_or_none(model, pk: int, *, tenant_id: int | None = None):
    """Same as get_scoped but returns None instead of raising NotFoundError."""
    try:
        return get_scoped(model, pk, tenant_id=tenant_id)
    except NotFoundError:
        return None
