"""Sync service — backfilling local rows from Stripe on demand.

Used by the account endpoints (a user pulling in invoices and
subscriptions made outside the portal, matched by email) and by the
super-admin product import. Writes go through the same keyed helpers
as the webhook, so a sync racing a webhook cannot duplicate rows.

Functions flush but do NOT commit — the caller commits.
"""

import logging
from decimal import Decimal

from app.extensions import db
from app.models.audit import AuditEvent
from app.models.product import Product
from app.services import entitlement_service, stripe_gateway

logger = logging.getLogger(__name__)


def _customers_for(user):
    customers = stripe_gateway.list_customers_by_email(user.email)
    logger.info(f"Found {len(customers)} Stripe customer(s) for {user.email}")
    return customers


def sync_user_invoices(user):
    """Backfill invoices for every Stripe customer sharing the user's email.

    Returns the number of rows inserted or updated.
    """
    synced = 0
    for customer in _customers_for(user):
        for invoice_data in stripe_gateway.list_invoices(customer["id"]):
            if entitlement_service.sync_invoice(invoice_data, user.id):
                synced += 1
    logger.info(f"Synced {synced} invoice(s) for user {user.id}")
    return synced


def sync_user_subscriptions(user):
    """Backfill purchases from the user's active Stripe subscriptions.

    Stores the first matching customer id on the user when none is set.
    Returns (synced_count, product_names).
    """
    customers = _customers_for(user)
    if not customers:
        return 0, []

    if not user.stripe_customer_id:
        user.stripe_customer_id = customers[0]["id"]
        db.session.flush()
        logger.info(f"Stored Stripe customer {customers[0]['id']} on user {user.id}")

    services = []
    for customer in customers:
        for subscription in stripe_gateway.list_active_subscriptions(customer["id"]):
            if entitlement_service.get_purchase_by_subscription(subscription["id"]):
                continue
            product = entitlement_service.resolve_product(sub_data=subscription)
            if not product:
                logger.info(f"No matching product for subscription {subscription['id']}")
                continue
            purchase, created = entitlement_service.upsert_subscription_purchase(
                subscription, user_id=user.id, product_id=product.id
            )
            if created:
                services.append(product.name)

    return len(services), services


def _billing_type(price):
    recurring = price.get("recurring")
    if not recurring:
        return "one-time"
    return "yearly" if recurring.get("interval") == "year" else "monthly"


def _price_map(prices):
    """Stripe product id -> its price, preferring one tagged default."""
    price_map = {}
    for price in prices:
        product_id = price.get("product")
        if product_id not in price_map or (price.get("metadata") or {}).get("default") == "true":
            price_map[product_id] = price
    return price_map


def _local_product_id(stripe_product):
    """Catalog id for an imported product (metadata product_id, else the Stripe id)."""
    return (stripe_product.get("metadata") or {}).get("product_id") or stripe_product["id"]


def sync_stripe_products(actor_user_id=None):
    """Upsert Product rows from Stripe's active products and prices.

    Products without an active price are skipped.
    Returns {"synced", "updated", "skipped", "total"}.
    """
    stripe_products = stripe_gateway.list_active_products()
    price_map = _price_map(stripe_gateway.list_active_prices())

    synced = updated = skipped = 0
    for stripe_product in stripe_products:
        price = price_map.get(stripe_product["id"])
        if not price:
            skipped += 1
            continue

        fields = {
            "name": stripe_product.get("name"),
            "description": stripe_product.get("description") or None,
            "price": Decimal(price.get("unit_amount") or 0) / 100,
            "billing_type": _billing_type(price),
            "stripe_product_id": stripe_product["id"],
            "stripe_price_id": price["id"],
            "is_active": stripe_product.get("active", True),
            "category": (stripe_product.get("metadata") or {}).get("category") or "other",
        }

        local_id = _local_product_id(stripe_product)
        product = (
            Product.query.filter_by(stripe_product_id=stripe_product["id"]).first()
            or db.session.get(Product, local_id)
        )
        if product:
            for column, value in fields.items():
                setattr(product, column, value)
            updated += 1
        else:
            db.session.add(Product(id=local_id, **fields))
            synced += 1

    result = {
        "synced": synced,
        "updated": updated,
        "skipped": skipped,
        "total": len(stripe_products),
    }
    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="products.synced",
        metadata_=result,
    ))
    db.session.flush()
    logger.info(f"Product sync: {result}")
    return result
