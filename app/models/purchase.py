"""Purchase model (entitlement record).

One row per product a user owns. Idempotency keys:
- stripe_subscription_id (unique) for recurring purchases
- (stripe_checkout_session_id, line_index) for one-time purchases

Customer fulfillment details are copied from the cart line so the
installer has them without looking at Stripe.
"""

import uuid

from app.extensions import db


class Purchase(db.Model):
    __tablename__ = "purchases"
    __table_args__ = (
        db.UniqueConstraint(
            "stripe_checkout_session_id",
            "line_index",
            name="uq_purchases_session_line",
        ),
    )

    # -- Local statuses; other Stripe statuses are stored verbatim --
    STATUSES = ["active", "cancelled", "past_due"]

    # -- Fulfillment detail columns, in CustomerDetails field order --
    CUSTOMER_FIELDS = [
        "customer_first_name",
        "customer_last_name",
        "customer_email",
        "customer_phone",
        "customer_address",
        "customer_city",
        "customer_state",
        "customer_postcode",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    product_id = db.Column(
        db.String(64), db.ForeignKey("products.id"), nullable=False
    )
    status = db.Column(
        db.String(50), nullable=False, default="active"
    )  # active | cancelled | past_due | <stripe status>
    price_paid = db.Column(db.Numeric(10, 2), nullable=False)
    purchased_at = db.Column(db.DateTime(timezone=True), nullable=False)
    next_billing_date = db.Column(db.Date, nullable=True)  # None for one-time
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    stripe_customer_id = db.Column(db.String(255), nullable=True)
    stripe_checkout_session_id = db.Column(db.String(255), nullable=True)
    line_index = db.Column(db.Integer, nullable=True)

    customer_first_name = db.Column(db.String(255))
    customer_last_name = db.Column(db.String(255))
    customer_email = db.Column(db.String(255))
    customer_phone = db.Column(db.String(50))
    customer_address = db.Column(db.String(500))
    customer_city = db.Column(db.String(255))
    customer_state = db.Column(db.String(100))
    customer_postcode = db.Column(db.String(20))

    fulfilled = db.Column(db.Boolean, default=False, nullable=False)
    fulfilled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="purchases")
    product = db.relationship("Product", back_populates="purchases")
    invoices = db.relationship(
        "Invoice", back_populates="purchase", lazy="dynamic"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "status": self.status,
            "price_paid": float(self.price_paid),
            "purchased_at": self.purchased_at.isoformat() if self.purchased_at else None,
            "next_billing_date": (
                self.next_billing_date.isoformat() if self.next_billing_date else None
            ),
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "stripe_subscription_id": self.stripe_subscription_id,
            "fulfilled": self.fulfilled,
        }

    def __repr__(self):
        return f"<Purchase {self.product_id} ({self.status})>"
