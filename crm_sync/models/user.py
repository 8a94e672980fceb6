# crm_sync/models/user.py

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from .base import BaseModel, db


class User(BaseModel):
    """Local user account, mapped to CRM contacts."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    phone_number = db.Column(db.String(50), nullable=True)
    photo_uri = db.Column(db.String(500), nullable=True)
    locale = db.Column(db.String(20), nullable=True)
    culture = db.Column(db.String(20), nullable=True)
    country = db.Column(db.String(100), nullable=True)
    time_zone_id = db.Column(db.String(100), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_logged_in = db.Column(db.DateTime(timezone=True), nullable=True)

    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id", ondelete="SET NULL"), nullable=True, index=True)

    organization = db.relationship("Organization", back_populates="users")
    location = db.relationship("Location", back_populates="users")

    def __repr__(self):
        return f"<User {self.email}>"

    def get_full_name(self):
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else self.email

    @classmethod
    def find_by_email(cls, email):
        """Case-insensitive email lookup; returns None on errors."""
        if not email:
            return None
        try:
            return cls.query.filter(func.lower(cls.email) == email.strip().lower()).first()
        except SQLAlchemyError as exc:
            current_app.logger.error("Database error finding user by email %s: %s", email, exc)
            return None
