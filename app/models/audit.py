"""Audit event model.

Logs every entitlement mutation (purchase created/cancelled, invoice
recorded, pending order claimed/released) and admin action, so support
staff can see how a row got into its current state.
"""

import uuid

from app.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )  # the user the event concerns
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )  # None when Stripe (webhook) initiated it
    action = db.Column(db.String(255), nullable=False)  # e.g. "purchase.created"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid the declarative attribute clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    actor = db.relationship(
        "User", foreign_keys=[actor_user_id], back_populates="audit_events"
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
