"""Stripe event model (processed-event ledger).

Every webhook event that was handled successfully is recorded by its
Stripe event ID. A redelivery of a recorded event is acknowledged
without touching the entitlement tables. Correctness does not depend on
this table: the handlers themselves upsert by subscription/invoice id.
"""

import uuid

from app.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
