"""
TenantModel — abstract base for tenant-scoped tables.

Form templates, form instances and their workflow events all inherit from
TenantModel. Lookups always take the tenant explicitly:

    FormInstance.query_for_tenant(tenant_id).filter_by(id=instance_id)
"""

from formflow.models import db


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)

    @classmethod
    def get_for_tenant(cls, pk, tenant_id):
        """Load by primary key, returning None when the row belongs to another tenant."""
        obj = db.session.get(cls, pk)
        if obj is None or obj.tenant_id != tenant_id:
            return None
        return obj
