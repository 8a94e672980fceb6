# crm_sync/models/organization.py

from flask import current_app
from sqlalchemy import Index, func
from sqlalchemy.exc import SQLAlchemyError

from .base import BaseModel, db


class Organization(BaseModel):
    """Local organization (company) record synchronized with CRM accounts."""

    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False, index=True)
    logo = db.Column(db.String(500), nullable=True)
    description = db.Column(db.Text, nullable=True)
    is_deactivated = db.Column(db.Boolean, default=False, nullable=False)

    users = db.relationship("User", back_populates="organization")
    locations = db.relationship("Location", back_populates="organization", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_org_title_active", "title", "is_deactivated"),)

    def __repr__(self):
        return f"<Organization {self.title}>"

    @classmethod
    def find_by_title(cls, title):
        """Case-insensitive title lookup; returns None on errors."""
        if not title:
            return None
        try:
            return cls.query.filter(func.lower(cls.title) == title.strip().lower()).order_by(cls.id.asc()).first()
        except SQLAlchemyError as exc:
            current_app.logger.error("Database error finding organization by title %s: %s", title, exc)
            return None
