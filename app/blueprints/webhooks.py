"""Webhooks blueprint — /stripe-webhook

Receives Stripe webhook events. No bearer token: the
Stripe-Signature header over the raw body authenticates the request.
"""

import logging

import stripe
from flask import Blueprint, jsonify, request

from app.services.webhook_service import handle_webhook_event, verify_webhook_signature

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/stripe-webhook", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with the configured webhook secret
    3. Pass to handle_webhook_event (idempotent via stripe_events table)
    4. 200 {"received": true} on success or an unhandled event type,
       500 on a processing failure so Stripe redelivers
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(payload, sig_header)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    # --- Process event (idempotent) ---
    success, message = handle_webhook_event(event)

    if success:
        return jsonify({"received": True, "status": message}), 200
    else:
        logger.error(f"Webhook processing failed: {message}")
        return jsonify({"error": "Webhook processing failed"}), 500
