"""Product model (price book entry).

Edited by admin tooling or synced from Stripe; read-only during checkout.
"""

import uuid

from app.extensions import db


class Product(db.Model):
    __tablename__ = "products"

    # -- Valid billing types --
    BILLING_TYPES = ["one-time", "monthly", "yearly"]
    RECURRING_TYPES = ("monthly", "yearly")

    id = db.Column(
        db.String(64), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(100), nullable=True)  # e.g. "internet"
    price = db.Column(db.Numeric(10, 2), nullable=False)  # currency units
    billing_type = db.Column(
        db.String(20), nullable=False, default="one-time"
    )  # one-time | monthly | yearly
    stripe_product_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_price_id = db.Column(db.String(255), nullable=True, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
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
        "Purchase", back_populates="product", lazy="dynamic"
    )

    @property
    def is_recurring(self):
        return self.billing_type in self.RECURRING_TYPES

    @property
    def interval(self):
        """Stripe recurring interval, or None for one-time products."""
        return {"monthly": "month", "yearly": "year"}.get(self.billing_type)

    @property
    def unit_amount(self):
        """Price in the smallest currency unit (cents)."""
        return int(round(float(self.price) * 100))

    def __repr__(self):
        return f"<Product {self.id} ({self.billing_type})>"
