"""
Soft delete mixin for form templates and form instances.

A deleted template or instance keeps its row (and its workflow history)
but disappears from tenant listings:

    instance.soft_delete()
    db.session.commit()

    FormInstance.query_active().filter_by(tenant_id=tid).all()
"""

from datetime import datetime, timezone

from formflow.models import db


class SoftDeleteMixin:
    """Adds ``deleted_at`` and query helpers."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        self.deleted_at = datetime.now(timezone.utc)

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
