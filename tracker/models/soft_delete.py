"""
Soft Delete Mixin.

Adds the tombstone triple (``is_deleted``, ``deleted_at``,
``deleted_by_id``) and query helpers. Models that include this mixin are
marked deleted rather than physically removed; only an explicit purge
of an already tombstoned row removes it.

Usage:
    class MyModel(SoftDeleteMixin, db.Model):
        ...

    # Soft delete
    obj.soft_delete(user_id)
    db.session.commit()

    # Query only live records (the default listing)
    MyModel.query_active().all()

    # Deleted items view
    MyModel.query_deleted().all()

    # Restore
    obj.restore()
    db.session.commit()
"""

from datetime import datetime, timezone

from sqlalchemy.orm import declared_attr

from tracker.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime, nullable=True, default=None)

    @declared_attr
    def deleted_by_id(cls):
        return db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def soft_delete(self, user_id=None):
        """Mark this record as deleted."""
        self.is_deleted = True
        self.deleted_at = datetime.now(timezone.utc)
        self.deleted_by_id = user_id

    def restore(self):
        """Restore a soft-deleted record."""
        self.is_deleted = False
        self.deleted_at = None
        self.deleted_by_id = None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.is_deleted.is_(False))

    @classmethod
    def query_deleted(cls):
        """Return only soft-deleted records."""
        return cls.query.filter(cls.is_deleted.is_(True))

    def tombstone_dict(self):
        return {
            "is_deleted": self.is_deleted,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "deleted_by_id": self.deleted_by_id,
        }
