"""Pending order models.

- PendingOrder: an admin-created reservation for someone who may not
  have an account yet, matched to users by email.
- PendingOrderItem: requested product + quantity (+ prefilled details).

claimed_by / claimed_at are written only through the conditional
UPDATE in pending_order_service.claim().
"""

import uuid

from app.extensions import db


class PendingOrder(db.Model):
    __tablename__ = "pending_orders"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), nullable=False, index=True)
    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    claimed_by = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    items = db.relationship(
        "PendingOrderItem",
        back_populates="pending_order",
        order_by="PendingOrderItem.position",
    )

    @property
    def is_claimed(self):
        return self.claimed_by is not None

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "notes": self.notes,
            "claimed_by": self.claimed_by,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "items": [item.to_dict() for item in self.items],
        }

    def __repr__(self):
        return f"<PendingOrder {self.email} claimed_by={self.claimed_by}>"


class PendingOrderItem(db.Model):
    __tablename__ = "pending_order_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    pending_order_id = db.Column(
        db.String(36), db.ForeignKey("pending_orders.id"), nullable=False
    )
    product_id = db.Column(
        db.String(64), db.ForeignKey("products.id"), nullable=False
    )
    quantity = db.Column(db.Integer, nullable=False, default=1)
    position = db.Column(db.Integer, nullable=False, default=0)
    customer_details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    pending_order = db.relationship("PendingOrder", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "customer_details": self.customer_details,
        }
