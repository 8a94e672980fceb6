# crm_sync/models/base.py

from datetime import datetime, timezone

from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import SQLAlchemyError

db = SQLAlchemy()


def _utcnow():
    return datetime.now(timezone.utc)


class BaseModel(db.Model):
    """Abstract base with timestamps and commit helpers that never raise."""

    __abstract__ = True

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    @classmethod
    def safe_create(cls, **kwargs):
        """
        Create and commit a row.

        Returns:
            tuple: (instance, None) on success or (None, error message) on failure.
        """
        try:
            instance = cls(**kwargs)
            db.session.add(instance)
            db.session.commit()
            return instance, None
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.error("Database error creating %s: %s", cls.__name__, exc)
            return None, str(exc)

    def safe_update(self, **kwargs):
        """Apply attribute changes and commit, returning (instance, error)."""
        try:
            for key, value in kwargs.items():
                if hasattr(self, key):
                    setattr(self, key, value)
            self.updated_at = _utcnow()
            db.session.commit()
            return self, None
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.error("Database error updating %s: %s", type(self).__name__, exc)
            return None, str(exc)

    def safe_delete(self):
        """Delete and commit, returning (True, None) or (False, error)."""
        try:
            db.session.delete(self)
            db.session.commit()
            return True, None
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.error("Database error deleting %s: %s", type(self).__name__, exc)
            return False, str(exc)
