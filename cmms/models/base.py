"""
TenantModel — abstract base for tenant-owned tables.

Permits, work orders and safety incidents inherit from it; every store
and scoped lookup filters on the ``tenant_id`` column it adds.
"""

from cmms.models import db


class TenantModel(db.Model):
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
