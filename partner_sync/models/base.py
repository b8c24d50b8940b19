# partner_sync/models/base.py

from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _utcnow():
    return datetime.now(timezone.utc)


class BaseModel(db.Model):
    """Abstract base adding audit timestamps to every table."""

    __abstract__ = True

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class SoftDeleteMixin:
    """
    Active flag plus soft-delete bookkeeping shared by synced entities.

    Rows are never removed by a sync; they are marked inactive with a timestamp
    and a reason tag, and reactivated when the remote record comes back.
    """

    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deletion_reason = db.Column(db.String(100), nullable=True)

    def soft_delete(self, reason, *, when=None):
        self.is_active = False
        self.deleted_at = when or _utcnow()
        self.deletion_reason = getattr(reason, "value", reason)

    def reactivate(self) -> bool:
        """Clear deletion state. Returns True when the row was inactive."""
        was_inactive = not self.is_active
        self.is_active = True
        self.deleted_at = None
        self.deletion_reason = None
        return was_inactive
