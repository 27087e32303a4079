"""Admin setting model — key/value configuration editable at runtime.

Holds the Stripe secret key (key = "STRIPE_SECRET_KEY") so it can be
rotated without a redeploy. Read through settings_service, never directly.
"""

import uuid

from app.extensions import db


class AdminSetting(db.Model):
    __tablename__ = "admin_settings"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    key = db.Column(db.String(255), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=True)
    updated_by = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<AdminSetting {self.key}>"
