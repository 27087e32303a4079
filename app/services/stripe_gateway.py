"""Stripe gateway — every call this app makes to the Stripe API.

Responsible for:
- Fetching the secret key from admin settings on each call
- Issuing the request through the stripe SDK with a per-call api_key
- Converting SDK objects to plain dicts for the rest of the app
- Turning any Stripe error into GatewayError with the raw body attached

No retries here. Webhook redelivery is Stripe's own retry mechanism,
and request handlers decide whether to retry anything else.
"""

import logging

import stripe

from app.errors import GatewayError
from app.services.settings_service import get_stripe_secret_key

logger = logging.getLogger(__name__)


def _plain(obj):
    """StripeObject -> plain dicts/lists. Plain dicts pass through."""
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return obj


def _call(operation, fn, *args, **kwargs):
    """Run one SDK call with the configured key, translating errors."""
    kwargs["api_key"] = get_stripe_secret_key()
    try:
        return _plain(fn(*args, **kwargs))
    except stripe.StripeError as e:
        err = GatewayError(
            operation,
            raw_body=getattr(e, "http_body", None) or str(e),
            http_status=getattr(e, "http_status", None),
        )
        logger.error(f"Stripe {err}")
        raise err from e


def _list_all(operation, fn, **params):
    """Follow has_more / starting_after until every page is read."""
    items = []
    while True:
        page = _call(operation, fn, limit=100, **params)
        data = page.get("data", [])
        items.extend(data)
        if not page.get("has_more") or not data:
            return items
        params["starting_after"] = data[-1]["id"]


# ──────────────────────────────────────────────
# Customers
# ──────────────────────────────────────────────

def create_customer(email, name=None, user_id=None):
    """Create a Stripe customer and return its id."""
    params = {"email": email or ""}
    if name:
        params["name"] = name
    if user_id:
        params["metadata"] = {"user_id": str(user_id)}
    customer = _call("create_customer", stripe.Customer.create, **params)
    logger.info(f"Created Stripe customer {customer['id']} for {email}")
    return customer["id"]


def verify_customer(customer_id):
    """True if the customer still exists on Stripe's side.

    A stored id can go stale when the account is switched between test
    and live mode or the test data is reset.
    """
    try:
        customer = _call(
            "verify_customer", stripe.Customer.retrieve, customer_id
        )
    except GatewayError as e:
        if e.http_status == 404:
            return False
        raise
    return not customer.get("deleted", False)


def set_default_payment_method(customer_id, payment_method_id):
    return _call(
        "set_default_payment_method",
        stripe.Customer.modify,
        customer_id,
        invoice_settings={"default_payment_method": payment_method_id},
    )


def list_customers_by_email(email):
    return _list_all("list_customers", stripe.Customer.list, email=email)


# ──────────────────────────────────────────────
# Checkout & portal sessions
# ──────────────────────────────────────────────

def create_checkout_session(params):
    """Create a Checkout Session. Returns {"id", "url"}."""
    session = _call(
        "create_checkout_session", stripe.checkout.Session.create, **params
    )
    return {"id": session["id"], "url": session.get("url")}


def retrieve_session(session_id, expand=None):
    kwargs = {"expand": expand} if expand else {}
    return _call(
        "retrieve_session", stripe.checkout.Session.retrieve, session_id, **kwargs
    )


def create_portal_session(customer_id, return_url):
    session = _call(
        "create_portal_session",
        stripe.billing_portal.Session.create,
        customer=customer_id,
        return_url=return_url,
    )
    return session["url"]


# ──────────────────────────────────────────────
# Subscriptions, payments, setup intents
# ──────────────────────────────────────────────

def retrieve_subscription(subscription_id):
    return _call(
        "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
    )


def list_active_subscriptions(customer_id):
    return _list_all(
        "list_subscriptions",
        stripe.Subscription.list,
        customer=customer_id,
        status="active",
    )


def create_subscription(params, idempotency_key=None):
    """Create a subscription. The idempotency key makes a replay return
    the subscription created the first time instead of a second one."""
    if idempotency_key:
        params = dict(params, idempotency_key=idempotency_key)
    return _call("create_subscription", stripe.Subscription.create, **params)


def create_payment_intent(params, idempotency_key=None):
    if idempotency_key:
        params = dict(params, idempotency_key=idempotency_key)
    return _call("create_payment_intent", stripe.PaymentIntent.create, **params)


def retrieve_setup_intent(setup_intent_id):
    return _call(
        "retrieve_setup_intent", stripe.SetupIntent.retrieve, setup_intent_id
    )


# ──────────────────────────────────────────────
# Catalog & invoices
# ──────────────────────────────────────────────

def create_product(name, description=None, metadata=None, idempotency_key=None):
    """Create a Stripe product and return its id."""
    params = {"name": name}
    if idempotency_key:
        params["idempotency_key"] = idempotency_key
    if description:
        params["description"] = description
    if metadata:
        params["metadata"] = metadata
    product = _call("create_product", stripe.Product.create, **params)
    return product["id"]


def list_active_products():
    return _list_all("list_products", stripe.Product.list, active=True)


def list_active_prices():
    return _list_all("list_prices", stripe.Price.list, active=True)


def list_invoices(customer_id):
    return _list_all("list_invoices", stripe.Invoice.list, customer=customer_id)


# ──────────────────────────────────────────────
# Webhooks
# ──────────────────────────────────────────────

def construct_event(payload, sig_header, webhook_secret):
    """Verify the Stripe-Signature header (HMAC over the raw body).

    Returns the event as a plain dict.
    Raises stripe.SignatureVerificationError or ValueError on a bad
    signature or unparseable payload.
    """
    event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    return _plain(event)
