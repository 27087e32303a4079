"""Entitlement service — Purchase / Invoice persistence.

Responsible for:
- Upserting purchases keyed by Stripe subscription id
- Guarded inserts of one-time purchases keyed by (session id, line index)
- Lifecycle updates (cancelled, past_due, renewal)
- Recording invoices keyed by Stripe invoice id
- Audit events for every mutation

Every write here is keyed by a stable Stripe id, so replaying the same
Stripe data any number of times converges to the same rows.

Functions flush but do NOT commit — the caller commits.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from flask import current_app
from sqlalchemy import or_

from app.errors import NotFoundError
from app.extensions import db
from app.models.audit import AuditEvent
from app.models.invoice import Invoice
from app.models.product import Product
from app.models.purchase import Purchase
from app.models.user import User

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Stripe payload helpers
# ──────────────────────────────────────────────

def map_subscription_status(stripe_status):
    """active -> active, canceled -> cancelled, anything else verbatim."""
    if stripe_status == "active":
        return "active"
    if stripe_status == "canceled":
        return "cancelled"
    return stripe_status or "active"


def from_timestamp(ts):
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def extract_period_end(sub_data):
    """Extract current_period_end from a Stripe subscription object.

    In newer Stripe API versions, current_period_end has moved from the
    subscription top level to items.data[0].current_period_end.
    This helper checks both locations.

    Returns a date or None.
    """
    # Try top-level first (older API versions / webhook payloads)
    ts = sub_data.get("current_period_end")

    # Fall back to items.data[0].current_period_end (newer API)
    if not ts:
        first = _first_item(sub_data)
        if first:
            ts = first.get("current_period_end")

    dt = from_timestamp(ts)
    return dt.date() if dt else None


def _first_item(sub_data):
    items = sub_data.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else None


def _price_refs(sub_data):
    """(price id, stripe product id) of the subscription's first item."""
    first = _first_item(sub_data)
    if not first:
        return None, None
    price = first.get("price") or {}
    stripe_product = price.get("product")
    if isinstance(stripe_product, dict):
        stripe_product = stripe_product.get("id")
    return price.get("id"), stripe_product


def subscription_price_paid(sub_data, product):
    """Unit amount x quantity from the subscription, else the price book."""
    first = _first_item(sub_data) or {}
    quantity = first.get("quantity") or 1
    unit_amount = (first.get("price") or {}).get("unit_amount")
    if unit_amount:
        return Decimal(unit_amount) * quantity / 100
    return Decimal(product.price) * quantity


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def resolve_product(product_id=None, sub_data=None):
    """Find the Product for a subscription.

    Prefers an explicit id (subscription metadata), then matches the
    first item's price id or Stripe product id against the price book.
    """
    if product_id:
        product = db.session.get(Product, product_id)
        if product:
            return product
        logger.warning(f"Metadata product_id {product_id} not in price book")

    if sub_data:
        price_id, stripe_product_id = _price_refs(sub_data)
        clauses = []
        if price_id:
            clauses.append(Product.stripe_price_id == price_id)
        if stripe_product_id:
            clauses.append(Product.stripe_product_id == stripe_product_id)
        if clauses:
            return Product.query.filter(or_(*clauses)).first()
    return None


def resolve_user_id(user_id=None, stripe_customer_id=None):
    """Explicit user id if it exists, else the profile owning the customer."""
    if user_id and db.session.get(User, user_id):
        return user_id
    if stripe_customer_id:
        user = User.query.filter_by(stripe_customer_id=stripe_customer_id).first()
        if user:
            return user.id
    return None


def get_purchase_by_subscription(stripe_subscription_id):
    return Purchase.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()


def log_purchase_audit(user_id, action, metadata=None, actor_user_id=None):
    """Log an entitlement audit event.

    Actor is None when the change came from Stripe.
    """
    db.session.add(AuditEvent(
        user_id=user_id,
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata or {},
    ))
    db.session.flush()


# ──────────────────────────────────────────────
# Purchases
# ──────────────────────────────────────────────

def upsert_subscription_purchase(sub_data, user_id=None, product_id=None,
                                 customer_details=None, checkout_session_id=None):
    """Create or update the Purchase for a Stripe subscription.

    This is the core sync function behind checkout completion,
    customer.subscription.created/updated and the verify fallback.

    Returns (purchase, created). purchase is None when the user or
    product cannot be resolved and no row exists yet.
    """
    stripe_subscription_id = sub_data["id"]
    metadata = sub_data.get("metadata") or {}
    details = customer_details.to_purchase_columns() if customer_details else {}

    fields = {
        "stripe_customer_id": sub_data.get("customer"),
        "status": map_subscription_status(sub_data.get("status")),
        "next_billing_date": extract_period_end(sub_data),
        "cancelled_at": from_timestamp(sub_data.get("canceled_at")),
    }

    purchase = get_purchase_by_subscription(stripe_subscription_id)
    if purchase:
        purchase.stripe_customer_id = fields["stripe_customer_id"] or purchase.stripe_customer_id
        purchase.status = fields["status"]
        if fields["next_billing_date"]:
            purchase.next_billing_date = fields["next_billing_date"]
        purchase.cancelled_at = fields["cancelled_at"]
        for column, value in details.items():
            setattr(purchase, column, value)
        db.session.flush()
        log_purchase_audit(purchase.user_id, "purchase.updated", {
            "stripe_subscription_id": stripe_subscription_id,
            "status": purchase.status,
        })
        logger.info(f"Updated purchase {purchase.id} for subscription {stripe_subscription_id}")
        return purchase, False

    user_id = resolve_user_id(
        user_id or metadata.get("user_id"), sub_data.get("customer")
    )
    product = resolve_product(product_id or metadata.get("product_id"), sub_data)
    if not user_id or not product:
        logger.warning(
            f"Cannot create purchase for subscription {stripe_subscription_id}: "
            f"user={user_id} product={product.id if product else None}"
        )
        return None, False

    purchase = Purchase(
        user_id=user_id,
        product_id=product.id,
        stripe_subscription_id=stripe_subscription_id,
        stripe_checkout_session_id=checkout_session_id or metadata.get("checkout_session_id"),
        price_paid=subscription_price_paid(sub_data, product),
        purchased_at=from_timestamp(sub_data.get("created")) or datetime.now(timezone.utc),
        **fields,
        **details,
    )
    db.session.add(purchase)
    db.session.flush()

    # Adopt invoices that were recorded before this purchase existed.
    Invoice.query.filter_by(
        stripe_subscription_id=stripe_subscription_id, purchase_id=None
    ).update({"purchase_id": purchase.id}, synchronize_session=False)

    log_purchase_audit(user_id, "purchase.created", {
        "purchase_id": purchase.id,
        "product_id": product.id,
        "stripe_subscription_id": stripe_subscription_id,
    })
    logger.info(f"Created purchase {purchase.id} for subscription {stripe_subscription_id}")
    return purchase, True


def record_one_time_purchase(user_id, product, quantity, price_paid=None,
                             stripe_customer_id=None, checkout_session_id=None,
                             line_index=None, customer_details=None):
    """Insert a one-time Purchase unless it is already recorded.

    Keyed by (checkout_session_id, line_index). Without a session id
    this falls back to a lookback of ONE_TIME_DEDUP_WINDOW seconds on
    (user, product), which is only a best-effort guard.

    Returns (purchase, created).
    """
    if checkout_session_id is not None:
        existing = Purchase.query.filter_by(
            stripe_checkout_session_id=checkout_session_id,
            line_index=line_index,
        ).first()
    else:
        window = current_app.config.get("ONE_TIME_DEDUP_WINDOW", 60)
        since = datetime.now(timezone.utc) - timedelta(seconds=window)
        existing = (
            Purchase.query
            .filter_by(user_id=user_id, product_id=product.id, stripe_subscription_id=None)
            .filter(Purchase.purchased_at >= since)
            .first()
        )
    if existing:
        logger.info(
            f"One-time purchase already recorded for session={checkout_session_id} "
            f"line={line_index} product={product.id}"
        )
        return existing, False

    if price_paid is None:
        price_paid = Decimal(product.price) * quantity

    details = customer_details.to_purchase_columns() if customer_details else {}
    purchase = Purchase(
        user_id=user_id,
        product_id=product.id,
        status="active",
        price_paid=price_paid,
        purchased_at=datetime.now(timezone.utc),
        stripe_customer_id=stripe_customer_id,
        stripe_checkout_session_id=checkout_session_id,
        line_index=line_index,
        **details,
    )
    db.session.add(purchase)
    db.session.flush()

    log_purchase_audit(user_id, "purchase.created", {
        "purchase_id": purchase.id,
        "product_id": product.id,
        "checkout_session_id": checkout_session_id,
        "line_index": line_index,
    })
    logger.info(f"Created one-time purchase {purchase.id} for product {product.id}")
    return purchase, True


def set_fulfillment(purchase_id, fulfilled, actor_user_id=None, notes=None):
    """Admin toggle of the fulfilled flag (install done, device shipped)."""
    purchase = db.session.get(Purchase, purchase_id)
    if purchase is None:
        raise NotFoundError("Purchase not found")

    purchase.fulfilled = bool(fulfilled)
    purchase.fulfilled_at = datetime.now(timezone.utc) if fulfilled else None
    if notes is not None:
        purchase.notes = notes
    db.session.flush()
    log_purchase_audit(purchase.user_id, "purchase.fulfillment_toggled", {
        "purchase_id": purchase.id,
        "fulfilled": purchase.fulfilled,
    }, actor_user_id=actor_user_id)
    return purchase


def cancel_subscription_purchase(stripe_subscription_id, cancelled_at=None):
    """Mark the purchase cancelled. Returns None if there is no match."""
    purchase = get_purchase_by_subscription(stripe_subscription_id)
    if not purchase:
        logger.info(f"subscription.deleted: no local purchase for {stripe_subscription_id}")
        return None

    purchase.status = "cancelled"
    purchase.cancelled_at = cancelled_at or datetime.now(timezone.utc)
    db.session.flush()
    log_purchase_audit(purchase.user_id, "purchase.cancelled", {
        "stripe_subscription_id": stripe_subscription_id,
    })
    return purchase


def mark_past_due(stripe_subscription_id):
    purchase = get_purchase_by_subscription(stripe_subscription_id)
    if not purchase:
        logger.info(f"payment_failed: no local purchase for {stripe_subscription_id}")
        return None

    if purchase.status != "past_due":
        purchase.status = "past_due"
        db.session.flush()
        log_purchase_audit(purchase.user_id, "purchase.past_due", {
            "stripe_subscription_id": stripe_subscription_id,
        })
    return purchase


def renew_from_paid_invoice(stripe_subscription_id, period_end_ts):
    """A paid renewal invoice: move next billing date and force active."""
    purchase = get_purchase_by_subscription(stripe_subscription_id)
    if not purchase:
        logger.info(f"invoice.paid: no local purchase yet for {stripe_subscription_id}")
        return None

    period_end = from_timestamp(period_end_ts)
    if period_end:
        purchase.next_billing_date = period_end.date()
    purchase.status = "active"
    db.session.flush()
    return purchase


# ──────────────────────────────────────────────
# Invoices
# ──────────────────────────────────────────────

def invoice_subscription_id(invoice_data):
    """The subscription an invoice bills, if any.

    Newer API versions moved it under parent.subscription_details.
    """
    if invoice_data.get("subscription"):
        sub = invoice_data["subscription"]
        return sub.get("id") if isinstance(sub, dict) else sub
    parent = invoice_data.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def invoice_period_end(invoice_data):
    """Period end (unix ts) of the first invoice line."""
    lines = (invoice_data.get("lines") or {}).get("data") or []
    if lines:
        return (lines[0].get("period") or {}).get("end")
    return invoice_data.get("period_end")


def map_invoice_status(invoice_data, now=None):
    """paid -> paid, void/uncollectible -> cancelled, open -> overdue or pending."""
    status = invoice_data.get("status")
    if status == "paid":
        return "paid"
    if status in ("void", "uncollectible"):
        return "cancelled"
    if status == "open":
        now = now or datetime.now(timezone.utc)
        if _invoice_due_date(invoice_data) < now.date():
            return "overdue"
    return "pending"


def _invoice_due_date(invoice_data):
    """Stripe due_date, else 30 days after creation."""
    due = from_timestamp(invoice_data.get("due_date"))
    if due:
        return due.date()
    created = from_timestamp(invoice_data.get("created")) or datetime.now(timezone.utc)
    return (created + timedelta(days=30)).date()


def _invoice_description(invoice_data, default):
    if invoice_data.get("description"):
        return invoice_data["description"]
    lines = (invoice_data.get("lines") or {}).get("data") or []
    if lines and lines[0].get("description"):
        return lines[0]["description"]
    return default


def _invoice_paid_at(invoice_data):
    transitions = invoice_data.get("status_transitions") or {}
    return from_timestamp(transitions.get("paid_at"))


def record_paid_invoice(invoice_data):
    """Record an invoice.paid payload. Skips if the invoice id exists.

    The user comes from the subscription's purchase, else from the
    customer's profile. Returns (invoice, created).
    """
    stripe_invoice_id = invoice_data["id"]
    existing = Invoice.query.filter_by(stripe_invoice_id=stripe_invoice_id).first()
    if existing:
        logger.info(f"Invoice {stripe_invoice_id} already recorded, skipping")
        return existing, False

    stripe_subscription_id = invoice_subscription_id(invoice_data)
    purchase = (
        get_purchase_by_subscription(stripe_subscription_id)
        if stripe_subscription_id else None
    )
    user_id = purchase.user_id if purchase else resolve_user_id(
        stripe_customer_id=invoice_data.get("customer")
    )
    if not user_id:
        logger.warning(f"invoice.paid: cannot find user for invoice {stripe_invoice_id}")
        return None, False

    invoice = Invoice(
        user_id=user_id,
        purchase_id=purchase.id if purchase else None,
        stripe_invoice_id=stripe_invoice_id,
        stripe_subscription_id=stripe_subscription_id,
        invoice_number=invoice_data.get("number") or f"INV-{stripe_invoice_id[-8:].upper()}",
        amount=Decimal(invoice_data.get("amount_paid") or 0) / 100,
        status="paid",
        paid_at=_invoice_paid_at(invoice_data) or datetime.now(timezone.utc),
        due_date=_invoice_due_date(invoice_data),
        description=_invoice_description(invoice_data, "Subscription payment"),
        pdf_url=invoice_data.get("invoice_pdf"),
    )
    db.session.add(invoice)
    db.session.flush()
    log_purchase_audit(user_id, "invoice.recorded", {
        "stripe_invoice_id": stripe_invoice_id,
        "amount": float(invoice.amount),
    })
    logger.info(f"Recorded invoice {stripe_invoice_id} for user {user_id}")
    return invoice, True


def sync_invoice(invoice_data, user_id):
    """Backfill one invoice from Stripe's invoice list.

    Inserts missing invoices; updates status/pdf_url/paid_at when they
    changed. Returns True when a row was written.
    """
    if invoice_data.get("status") == "draft":
        return False

    status = map_invoice_status(invoice_data)
    paid_at = _invoice_paid_at(invoice_data) if status == "paid" else None
    existing = Invoice.query.filter_by(stripe_invoice_id=invoice_data["id"]).first()

    if existing:
        if existing.pdf_url and existing.status == status:
            return False
        existing.status = status
        existing.pdf_url = invoice_data.get("invoice_pdf") or existing.pdf_url
        existing.paid_at = paid_at
        db.session.flush()
        return True

    stripe_subscription_id = invoice_subscription_id(invoice_data)
    purchase = (
        get_purchase_by_subscription(stripe_subscription_id)
        if stripe_subscription_id else None
    )
    invoice = Invoice(
        user_id=user_id,
        purchase_id=purchase.id if purchase else None,
        stripe_invoice_id=invoice_data["id"],
        stripe_subscription_id=stripe_subscription_id,
        invoice_number=invoice_data.get("number") or f"INV-{invoice_data['id'][-8:].upper()}",
        amount=Decimal(invoice_data.get("amount_due") or 0) / 100,
        status=status,
        due_date=_invoice_due_date(invoice_data),
        paid_at=paid_at,
        description=_invoice_description(invoice_data, "Service charge"),
        pdf_url=invoice_data.get("invoice_pdf"),
    )
    created_at = from_timestamp(invoice_data.get("created"))
    if created_at:
        invoice.created_at = created_at
    db.session.add(invoice)
    db.session.flush()
    return True
