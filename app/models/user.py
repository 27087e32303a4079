"""User model.

Stores the portal profile: identity, admin flags, and the Stripe
customer reference used for every checkout.
Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from app.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    full_name = db.Column(db.String(255))
    is_admin = db.Column(db.Boolean, default=False)
    is_super_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    stripe_customer_id = db.Column(
        db.String(255), nullable=True, index=True
    )  # e.g. "cus_Abc..." — re-created if Stripe no longer knows it
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    purchases = db.relationship(
        "Purchase", back_populates="user", lazy="dynamic"
    )
    invoices = db.relationship(
        "Invoice", back_populates="user", lazy="dynamic"
    )
    audit_events = db.relationship(
        "AuditEvent",
        foreign_keys="AuditEvent.actor_user_id",
        back_populates="actor",
        lazy="dynamic",
    )

    def __repr__(self):
        return f"<User {self.email}>"
