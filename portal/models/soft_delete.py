"""
Soft Delete Mixin.

Adds a `deleted_at` timestamp column and query helpers. Projects use it so
that their phase tracking record and transition history survive deletion.

Usage:
    class Project(SoftDeleteMixin, db.Model):
        ...

    project.soft_delete()
    db.session.commit()

    Project.query_active().all()
"""

from datetime import datetime, timezone

from portal.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        """Restore a soft-deleted record."""
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
