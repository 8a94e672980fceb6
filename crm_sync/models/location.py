# crm_sync/models/location.py

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from .base import BaseModel, db


class Location(BaseModel):
    """A physical site belonging to an organization."""

    __tablename__ = "locations"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False, index=True)
    address = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    state = db.Column(db.String(100), nullable=True)
    zip_code = db.Column(db.String(20), nullable=True)
    lat = db.Column(db.Float, nullable=True)
    lng = db.Column(db.Float, nullable=True)
    is_deactivated = db.Column(db.Boolean, default=False, nullable=False)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True
    )

    organization = db.relationship("Organization", back_populates="locations")
    users = db.relationship("User", back_populates="location")

    def __repr__(self):
        return f"<Location {self.title}>"

    @classmethod
    def find_by_title(cls, title):
        if not title:
            return None
        try:
            return cls.query.filter(func.lower(cls.title) == title.strip().lower()).order_by(cls.id.asc()).first()
        except SQLAlchemyError as exc:
            current_app.logger.error("Database error finding location by title %s: %s", title, exc)
            return None
