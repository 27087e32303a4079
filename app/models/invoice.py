"""Invoice model — mirrors one Stripe invoice, unique on stripe_invoice_id."""

import uuid

from app.extensions import db


class Invoice(db.Model):
    __tablename__ = "invoices"

    STATUSES = ["paid", "pending", "overdue", "cancelled"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    purchase_id = db.Column(
        db.String(36), db.ForeignKey("purchases.id"), nullable=True
    )
    stripe_invoice_id = db.Column(db.String(255), unique=True, nullable=False)
    stripe_subscription_id = db.Column(
        db.String(255), nullable=True, index=True
    )  # lets a late-arriving Purchase adopt the invoice
    invoice_number = db.Column(db.String(100), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(
        db.String(20), nullable=False
    )  # paid | pending | overdue | cancelled
    due_date = db.Column(db.Date, nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    description = db.Column(db.Text, nullable=True)
    pdf_url = db.Column(db.String(1000), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="invoices")
    purchase = db.relationship("Purchase", back_populates="invoices")

    def to_dict(self):
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "amount": float(self.amount),
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "description": self.description,
            "pdf_url": self.pdf_url,
            "purchase_id": self.purchase_id,
        }

    def __repr__(self):
        return f"<Invoice {self.invoice_number} ({self.status})>"
