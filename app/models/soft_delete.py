"""
Soft Delete Mixin

Adds `deleted_at` / `deleted_by` columns and query helpers for soft delete.
Workflow items are never physically removed once they have left their
initial state; they are marked deleted instead.

Usage:
    class MyModel(SoftDeleteMixin, db.Model):
        ...

    obj.soft_delete(actor_id="u-42")
    db.session.commit()

    MyModel.query_active().all()
"""

from app.models import db
from app.utils.helpers import utcnow


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)
    deleted_by = db.Column(db.String(150), nullable=True)

    def soft_delete(self, actor_id: str | None = None):
        """Mark this record as deleted."""
        self.deleted_at = utcnow()
        self.deleted_by = actor_id

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
