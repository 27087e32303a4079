"""Webhook service — verified Stripe events into entitlement changes.

Responsible for:
- Signature verification of the raw body
- Skipping event ids already recorded in stripe_events
- Dispatching to event-specific handlers
- Committing the handler's writes together with the ledger row

Every handler is safe to run more than once for the same event, and
in any order relative to related events.
"""

import logging

from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models.stripe_event import StripeEvent
from app.services import entitlement_service, reconciliation_service, stripe_gateway
from app.services.settings_service import get_webhook_secret

logger = logging.getLogger(__name__)


def verify_webhook_signature(payload, sig_header):
    """Verify and parse a webhook payload.

    Raises ConfigurationError when no webhook secret is set, and
    stripe.SignatureVerificationError / ValueError for a bad request.
    """
    return stripe_gateway.construct_event(payload, sig_header, get_webhook_secret())


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Returns (success: bool, message: str). On failure the session has
    been rolled back; the caller answers 500 so Stripe redelivers.
    """
    event_id = event["id"]
    event_type = event["type"]

    if StripeEvent.query.filter_by(stripe_event_id=event_id).first():
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, "already_processed"

    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Ignoring unhandled event type {event_type} ({event_id})")
        return True, "ignored"

    try:
        handler(event["data"]["object"])
        db.session.add(StripeEvent(stripe_event_id=event_id, event_type=event_type))
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery of this event (or of a related one)
        # committed first. Stripe redelivers on 500 and the retry
        # finds the rows already in place.
        db.session.rollback()
        if StripeEvent.query.filter_by(stripe_event_id=event_id).first():
            logger.info(f"Event {event_id} recorded by a concurrent delivery")
            return True, "already_processed"
        logger.warning(f"Conflict while handling {event_type} ({event_id})", exc_info=True)
        return False, "conflict"
    except Exception as e:
        logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
        db.session.rollback()
        return False, str(e)

    logger.info(f"Processed {event_type} ({event_id})")
    return True, "processed"


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _handle_checkout_completed(session):
    """checkout.session.completed — shared reconciliation, webhook side."""
    if session.get("payment_status") not in reconciliation_service.SETTLED_PAYMENT_STATUSES:
        # Delayed payment methods; Stripe sends async_payment_succeeded later.
        logger.info(
            f"Session {session['id']} completed with payment_status="
            f"{session.get('payment_status')}, waiting"
        )
        return
    reconciliation_service.reconcile_checkout_session(
        session, trigger=reconciliation_service.TRIGGER_WEBHOOK
    )


def _handle_subscription_upserted(sub_data):
    """customer.subscription.created / customer.subscription.updated."""
    entitlement_service.upsert_subscription_purchase(sub_data)


def _handle_subscription_deleted(sub_data):
    entitlement_service.cancel_subscription_purchase(
        sub_data["id"],
        cancelled_at=entitlement_service.from_timestamp(sub_data.get("canceled_at")),
    )


def _handle_invoice_paid(invoice):
    """invoice.paid — renew the subscription's purchase, record the invoice.

    Both writes tolerate the purchase not existing yet; the invoice is
    linked when the purchase is created.
    """
    stripe_subscription_id = entitlement_service.invoice_subscription_id(invoice)
    if stripe_subscription_id:
        entitlement_service.renew_from_paid_invoice(
            stripe_subscription_id,
            entitlement_service.invoice_period_end(invoice),
        )
    entitlement_service.record_paid_invoice(invoice)


def _handle_payment_failed(invoice):
    stripe_subscription_id = entitlement_service.invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        logger.info(f"invoice.payment_failed for {invoice.get('id')} has no subscription")
        return
    entitlement_service.mark_past_due(stripe_subscription_id)


_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "checkout.session.async_payment_succeeded": _handle_checkout_completed,
    "customer.subscription.created": _handle_subscription_upserted,
    "customer.subscription.updated": _handle_subscription_upserted,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.paid": _handle_invoice_paid,
    "invoice.payment_failed": _handle_payment_failed,
}
