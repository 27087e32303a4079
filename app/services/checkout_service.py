"""Checkout service — builds Stripe Checkout Sessions from a cart.

Responsible for:
- Resolving (or re-creating) the user's Stripe customer
- Choosing the session mode from the cart's billing types
- Encoding the cart into session metadata for reconciliation
- Line items for the modes that carry them

Mode selection:
    one recurring line, nothing else   -> "subscription"
    no recurring lines                 -> "payment"
    2+ recurring lines, or a mix       -> "setup"

Stripe Checkout cannot put several independent subscriptions (or
subscriptions plus one-off charges) in one session, so "setup" only
saves a card. The subscriptions and charges are created afterwards by
the webhook from the encoded cart.
"""

import logging

from flask import current_app

from app.errors import ProductNotFoundError
from app.extensions import db
from app.models.product import Product
from app.services import stripe_gateway

logger = logging.getLogger(__name__)

MODE_SUBSCRIPTION = "subscription"
MODE_PAYMENT = "payment"
MODE_SETUP = "setup"


def select_mode(products):
    """Pick the Checkout mode for one product per cart line."""
    recurring = sum(1 for p in products if p.is_recurring)
    one_time = len(products) - recurring

    if recurring == 0:
        return MODE_PAYMENT
    if recurring == 1 and one_time == 0:
        return MODE_SUBSCRIPTION
    return MODE_SETUP


def load_products(manifest):
    """Return the active Product for each manifest line, in line order.

    Raises ProductNotFoundError naming every id that is missing or inactive.
    """
    ids = set(manifest.product_ids())
    found = {
        p.id: p
        for p in Product.query.filter(
            Product.id.in_(ids), Product.is_active.is_(True)
        ).all()
    }
    missing = [pid for pid in manifest.product_ids() if pid not in found]
    if missing:
        raise ProductNotFoundError(f"Products not found: {', '.join(missing)}")
    return [found[pid] for pid in manifest.product_ids()]


def resolve_customer(user):
    """Return a Stripe customer id that Stripe still recognizes.

    Verifies a stored id (it goes stale after a test/live switch or a
    Stripe data reset) and creates a fresh customer otherwise. A new id
    is committed right away so a failed checkout doesn't orphan it.
    """
    if user.stripe_customer_id:
        if stripe_gateway.verify_customer(user.stripe_customer_id):
            return user.stripe_customer_id
        logger.info(
            f"Stored Stripe customer {user.stripe_customer_id} is invalid, "
            f"creating a new one for {user.email}"
        )

    customer_id = stripe_gateway.create_customer(
        email=user.email, name=user.full_name, user_id=user.id
    )
    user.stripe_customer_id = customer_id
    db.session.commit()
    return customer_id


def line_item(product, quantity, currency):
    """A Checkout line item — the stored Stripe price, else inline price_data."""
    if product.stripe_price_id:
        return {"price": product.stripe_price_id, "quantity": quantity}

    product_data = {"name": product.name}
    if product.description:
        product_data["description"] = product.description
    price_data = {
        "currency": currency,
        "product_data": product_data,
        "unit_amount": product.unit_amount,
    }
    if product.is_recurring:
        price_data["recurring"] = {"interval": product.interval}
    return {"price_data": price_data, "quantity": quantity}


def build_session_params(user, customer_id, manifest, products, mode,
                         success_url=None, cancel_url=None,
                         pending_order_id=None, pending_order_item_id=None):
    """Assemble stripe.checkout.Session.create() parameters."""
    app_base_url = current_app.config["APP_BASE_URL"]
    currency = current_app.config["CHECKOUT_CURRENCY"]

    metadata = {"user_id": str(user.id), **manifest.to_metadata()}
    if pending_order_id:
        metadata["pending_order_id"] = pending_order_id
    if pending_order_item_id:
        metadata["pending_order_item_id"] = pending_order_item_id

    params = {
        "mode": mode,
        "customer": customer_id,
        "client_reference_id": str(user.id),
        "success_url": success_url or (
            f"{app_base_url}/dashboard?checkout=success"
            f"&session_id={{CHECKOUT_SESSION_ID}}"
        ),
        "cancel_url": cancel_url or f"{app_base_url}/shop?checkout=cancelled",
        "metadata": metadata,
    }

    # Metadata copied onto the object Stripe creates from the session, so
    # lifecycle webhooks can resolve the user/product without the session.
    object_metadata = {"user_id": str(user.id)}
    if pending_order_id:
        object_metadata["pending_order_id"] = pending_order_id

    if mode == MODE_SUBSCRIPTION:
        line, product = manifest.lines[0], products[0]
        params["line_items"] = [line_item(product, line.quantity, currency)]
        params["subscription_data"] = {
            "metadata": {**object_metadata, "product_id": product.id},
        }
    elif mode == MODE_PAYMENT:
        params["line_items"] = [
            line_item(product, line.quantity, currency)
            for line, product in zip(manifest.lines, products)
        ]
        params["payment_intent_data"] = {"metadata": object_metadata}
    else:
        params["payment_method_types"] = ["card"]
        params["setup_intent_data"] = {"metadata": object_metadata}

    return params


def create_checkout(user, manifest, success_url=None, cancel_url=None,
                    pending_order_id=None, pending_order_item_id=None):
    """Create a Checkout Session for a validated cart.

    Returns {"url", "sessionId", "mode"}.
    Raises ProductNotFoundError, ConfigurationError or GatewayError.
    """
    products = load_products(manifest)
    mode = select_mode(products)
    customer_id = resolve_customer(user)

    params = build_session_params(
        user, customer_id, manifest, products, mode,
        success_url=success_url,
        cancel_url=cancel_url,
        pending_order_id=pending_order_id,
        pending_order_item_id=pending_order_item_id,
    )

    logger.info(
        f"Creating {mode} Checkout Session for user {user.id} "
        f"with {len(manifest.lines)} item(s)"
    )
    session = stripe_gateway.create_checkout_session(params)
    logger.info(f"Created Checkout Session {session['id']}")

    return {"url": session["url"], "sessionId": session["id"], "mode": mode}
