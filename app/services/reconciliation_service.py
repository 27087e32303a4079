"""Reconciliation — turning a completed Checkout Session into purchases.

One implementation serves both entry points:
- the webhook (checkout.session.completed), trigger="webhook"
- the verify call made when the browser returns from Stripe, trigger="verify"

They may run in either order, concurrently, or more than once for the
same session. Every write goes through entitlement_service keyed by
subscription id or (session id, line index), so whichever runs first
creates the rows and the other finds them.

Only the webhook creates objects on Stripe (setup-mode subscriptions
and charges), and each of those calls carries an idempotency key
derived from the session id and line index.
"""

import logging
from decimal import Decimal

from flask import current_app

from app.errors import AuthorizationError, GatewayError, PaymentNotCompletedError
from app.extensions import db
from app.models.product import Product
from app.services import cart_manifest, entitlement_service, pending_order_service, stripe_gateway

logger = logging.getLogger(__name__)

TRIGGER_WEBHOOK = "webhook"
TRIGGER_VERIFY = "verify"

# Stripe statuses for a PaymentIntent that will (or did) collect funds.
_COLLECTED_STATUSES = ("succeeded", "processing")

# Session payment statuses that mean the money is in. A "complete"
# session can still be "unpaid" while a delayed method (e.g. BECS debit)
# settles; async_payment_succeeded reconciles it later.
SETTLED_PAYMENT_STATUSES = ("paid", "no_payment_required")


def _object_id(value):
    """Stripe fields may be an id string or the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def reconcile_checkout_session(session, trigger=TRIGGER_WEBHOOK):
    """Record the purchases a completed session paid for.

    Returns the names of products entitled by THIS call (empty when an
    earlier run already recorded everything).
    """
    session_id = session["id"]
    mode = session.get("mode")
    metadata = session.get("metadata") or {}
    manifest = cart_manifest.decode(metadata)
    user_id = entitlement_service.resolve_user_id(
        session.get("client_reference_id") or metadata.get("user_id"),
        session.get("customer"),
    )

    logger.info(f"Reconciling {mode} session {session_id} ({trigger}) for user {user_id}")

    if not user_id:
        logger.error(f"Session {session_id}: cannot resolve user, nothing recorded")
        return []

    if mode == "subscription":
        created = _reconcile_subscription_mode(session, manifest, user_id)
    elif mode == "payment":
        created = _reconcile_payment_mode(session, manifest, user_id)
    elif mode == "setup" and trigger == TRIGGER_WEBHOOK:
        created = _fulfil_setup_mode(session, manifest, user_id)
    elif mode == "setup":
        created = _reconcile_setup_mode(session, manifest, user_id)
    else:
        logger.warning(f"Session {session_id}: unknown mode {mode!r}, skipping")
        created = []

    pending_order_id = metadata.get("pending_order_id")
    if pending_order_id:
        pending_order_service.fulfill_and_delete(pending_order_id)

    return [purchase.product.name for purchase in created]


# ──────────────────────────────────────────────
# subscription mode
# ──────────────────────────────────────────────

def _reconcile_subscription_mode(session, manifest, user_id):
    subscription_id = _object_id(session.get("subscription"))
    if not subscription_id:
        logger.warning(f"Session {session['id']}: subscription mode without a subscription")
        return []

    subscription = stripe_gateway.retrieve_subscription(subscription_id)
    line = manifest.lines[0] if manifest else None

    purchase, created = entitlement_service.upsert_subscription_purchase(
        subscription,
        user_id=user_id,
        product_id=line.product_id if line else None,
        customer_details=line.customer_details if line else None,
        checkout_session_id=session["id"],
    )
    return [purchase] if created else []


# ──────────────────────────────────────────────
# payment mode
# ──────────────────────────────────────────────

def _session_line_items(session):
    """Line items of a payment-mode session, fetching them if the
    payload (e.g. a webhook event) didn't include them."""
    line_items = session.get("line_items")
    if not isinstance(line_items, dict):
        session = stripe_gateway.retrieve_session(session["id"], expand=["line_items"])
        line_items = session.get("line_items") or {}
    return line_items.get("data") or []


def _manifest_from_line_items(line_items):
    """Rebuild a cart from line items for sessions without cart metadata."""
    lines = []
    for item in line_items:
        price_id = (item.get("price") or {}).get("id")
        product = Product.query.filter_by(stripe_price_id=price_id).first() if price_id else None
        if not product:
            logger.warning(f"No product found for price {price_id}")
            continue
        lines.append({"product_id": product.id, "quantity": item.get("quantity") or 1})
    if not lines:
        return None
    return cart_manifest.CartManifest.model_validate({"lines": lines})


def _reconcile_payment_mode(session, manifest, user_id):
    line_items = _session_line_items(session)
    if manifest is None:
        manifest = _manifest_from_line_items(line_items)
        if manifest is None:
            logger.warning(f"Session {session['id']}: no cart to reconcile")
            return []

    # Line items follow cart order when every line was sent to Stripe.
    aligned = len(line_items) == len(manifest.lines)

    created = []
    for index, line in enumerate(manifest.lines):
        product = db.session.get(Product, line.product_id)
        if not product:
            logger.warning(f"Session {session['id']}: product {line.product_id} not found")
            continue

        price_paid = None
        if aligned and line_items[index].get("amount_total") is not None:
            price_paid = Decimal(line_items[index]["amount_total"]) / 100

        purchase, was_created = entitlement_service.record_one_time_purchase(
            user_id=user_id,
            product=product,
            quantity=line.quantity,
            price_paid=price_paid,
            stripe_customer_id=_object_id(session.get("customer")),
            checkout_session_id=session["id"],
            line_index=index,
            customer_details=line.customer_details,
        )
        if was_created:
            created.append(purchase)
    return created


# ──────────────────────────────────────────────
# setup mode
# ──────────────────────────────────────────────

def _ensure_stripe_product(product):
    """Subscriptions need a Stripe product for inline prices."""
    if not product.stripe_product_id:
        product.stripe_product_id = stripe_gateway.create_product(
            product.name,
            description=product.description,
            metadata={"product_id": product.id},
            idempotency_key=f"product:{product.id}",
        )
        db.session.flush()
    return product.stripe_product_id


def _subscription_item(product, quantity, currency):
    if product.stripe_price_id:
        return {"price": product.stripe_price_id, "quantity": quantity}
    return {
        "price_data": {
            "currency": currency,
            "product": _ensure_stripe_product(product),
            "unit_amount": product.unit_amount,
            "recurring": {"interval": product.interval},
        },
        "quantity": quantity,
    }


def _line_metadata(session_id, user_id, product, index):
    return {
        "checkout_session_id": session_id,
        "user_id": str(user_id),
        "product_id": product.id,
        "line_index": str(index),
    }


def _fulfil_setup_mode(session, manifest, user_id):
    """Create the subscriptions and charges a setup session paid for."""
    session_id = session["id"]
    customer_id = _object_id(session.get("customer"))
    currency = current_app.config["CHECKOUT_CURRENCY"]

    if manifest is None:
        logger.error(f"Setup session {session_id} has no cart metadata")
        return []

    setup_intent = stripe_gateway.retrieve_setup_intent(
        _object_id(session.get("setup_intent"))
    )
    payment_method = _object_id(setup_intent.get("payment_method"))
    stripe_gateway.set_default_payment_method(customer_id, payment_method)

    created = []
    for index, line in enumerate(manifest.lines):
        product = db.session.get(Product, line.product_id)
        if not product:
            logger.warning(f"Setup session {session_id}: product {line.product_id} not found")
            continue

        idempotency_key = f"{session_id}:{index}"
        metadata = _line_metadata(session_id, user_id, product, index)

        if product.is_recurring:
            subscription = stripe_gateway.create_subscription(
                {
                    "customer": customer_id,
                    "items": [_subscription_item(product, line.quantity, currency)],
                    "default_payment_method": payment_method,
                    "metadata": metadata,
                },
                idempotency_key=idempotency_key,
            )
            purchase, was_created = entitlement_service.upsert_subscription_purchase(
                subscription,
                user_id=user_id,
                product_id=product.id,
                customer_details=line.customer_details,
                checkout_session_id=session_id,
            )
        else:
            amount = product.unit_amount * line.quantity
            try:
                intent = stripe_gateway.create_payment_intent(
                    {
                        "amount": amount,
                        "currency": currency,
                        "customer": customer_id,
                        "payment_method": payment_method,
                        "off_session": True,
                        "confirm": True,
                        "metadata": metadata,
                    },
                    idempotency_key=idempotency_key,
                )
            except GatewayError as e:
                # 402 = card declined; retrying the webhook won't help.
                if e.http_status != 402:
                    raise
                entitlement_service.log_purchase_audit(user_id, "purchase.payment_declined", {
                    "checkout_session_id": session_id,
                    "line_index": index,
                    "product_id": product.id,
                })
                continue

            if intent.get("status") not in _COLLECTED_STATUSES:
                logger.warning(
                    f"PaymentIntent {intent.get('id')} for session {session_id} "
                    f"line {index} is {intent.get('status')}, not recording"
                )
                continue

            purchase, was_created = entitlement_service.record_one_time_purchase(
                user_id=user_id,
                product=product,
                quantity=line.quantity,
                price_paid=Decimal(intent.get("amount") or amount) / 100,
                stripe_customer_id=customer_id,
                checkout_session_id=session_id,
                line_index=index,
                customer_details=line.customer_details,
            )

        if purchase is not None and was_created:
            created.append(purchase)
    return created


def _reconcile_setup_mode(session, manifest, user_id):
    """Verify path: pick up subscriptions the webhook already created.

    Never creates anything on Stripe. Subscriptions tagged with this
    session are matched by metadata; untagged ones by product, against
    the cart.
    """
    session_id = session["id"]
    customer_id = _object_id(session.get("customer"))
    created = []

    for subscription in stripe_gateway.list_active_subscriptions(customer_id):
        if entitlement_service.get_purchase_by_subscription(subscription["id"]):
            continue

        sub_meta = subscription.get("metadata") or {}
        if sub_meta.get("checkout_session_id"):
            if sub_meta["checkout_session_id"] != session_id:
                continue
            product_id = sub_meta.get("product_id")
            index = int(sub_meta.get("line_index", -1))
        else:
            product = entitlement_service.resolve_product(sub_data=subscription)
            if not product or not manifest or manifest.find_line(product.id) is None:
                continue
            product_id = product.id
            index = manifest.find_line(product.id)

        line = manifest.lines[index] if manifest and 0 <= index < len(manifest.lines) else None
        purchase, was_created = entitlement_service.upsert_subscription_purchase(
            subscription,
            user_id=user_id,
            product_id=product_id,
            customer_details=line.customer_details if line else None,
            checkout_session_id=session_id,
        )
        if purchase is not None and was_created:
            created.append(purchase)
    return created


# ──────────────────────────────────────────────
# Verify fallback entry point
# ──────────────────────────────────────────────

def load_verified_session(session_id, user):
    """Retrieve a session for the verify call and check it is usable.

    Raises AuthorizationError if the session belongs to someone else,
    PaymentNotCompletedError if the payment hasn't gone through.
    """
    session = stripe_gateway.retrieve_session(session_id, expand=["line_items"])
    logger.info(
        f"Verifying session {session_id}: status={session.get('status')} "
        f"payment_status={session.get('payment_status')}"
    )

    if session.get("client_reference_id") != str(user.id):
        logger.error(
            f"Session user mismatch: {session.get('client_reference_id')} vs {user.id}"
        )
        raise AuthorizationError("Session does not belong to this user")

    if session.get("payment_status") not in SETTLED_PAYMENT_STATUSES:
        raise PaymentNotCompletedError(session.get("payment_status"))

    return session
