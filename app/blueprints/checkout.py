"""Checkout blueprint — Stripe Checkout creation and the verify fallback.

Routes:
- POST /create-checkout          — single-product checkout
- POST /create-multi-checkout    — cart checkout (1..N lines)
- POST /verify-checkout          — reconcile a completed session on return
- POST /create-customer-portal   — Stripe billing portal for the caller

All routes take a bearer token and answer JSON.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import IntegrityError

from app.decorators import api_login_required
from app.errors import NotFoundError, ValidationError
from app.extensions import db, limiter
from app.services import (
    cart_manifest,
    checkout_service,
    pending_order_service,
    reconciliation_service,
    stripe_gateway,
)

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("checkout", __name__)


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid request.")
    return data


def _start_checkout(manifest, data):
    """Claim the pending order (if any), then create the session.

    The claim is committed before calling Stripe so a concurrent claimer
    sees it; if session creation fails the claim is released again.
    """
    pending_order_id = data.get("pendingOrderId")
    if pending_order_id:
        pending_order_service.claim(pending_order_id, current_user.id)
        db.session.commit()

    try:
        result = checkout_service.create_checkout(
            current_user,
            manifest,
            success_url=data.get("successUrl"),
            cancel_url=data.get("cancelUrl"),
            pending_order_id=pending_order_id,
            pending_order_item_id=data.get("pendingOrderItemId"),
        )
    except Exception:
        db.session.rollback()
        if pending_order_id:
            pending_order_service.release(pending_order_id, actor_user_id=current_user.id)
            db.session.commit()
            logger.info(f"Released pending order {pending_order_id} after failed checkout")
        raise

    return jsonify(result)


# ──────────────────────────────────────────────
# POST /create-checkout
# ──────────────────────────────────────────────

@checkout_bp.route("/create-checkout", methods=["POST"])
@limiter.limit("20 per minute")
@api_login_required
def create_checkout():
    """Checkout for a single product.

    Body: {productId, quantity?, customerDetails?, successUrl?,
    cancelUrl?, pendingOrderId?, pendingOrderItemId?}
    """
    data = _json_body()
    manifest = cart_manifest.parse_lines([{
        "productId": data.get("productId"),
        "quantity": data.get("quantity") or 1,
        "customerDetails": data.get("customerDetails"),
    }])
    return _start_checkout(manifest, data)


# ──────────────────────────────────────────────
# POST /create-multi-checkout
# ──────────────────────────────────────────────

@checkout_bp.route("/create-multi-checkout", methods=["POST"])
@limiter.limit("20 per minute")
@api_login_required
def create_multi_checkout():
    """Checkout for a cart.

    Body: {items: [{productId, quantity, customerDetails?}], successUrl?,
    cancelUrl?, pendingOrderId?}
    """
    data = _json_body()
    manifest = cart_manifest.parse_lines(data.get("items"))
    return _start_checkout(manifest, data)


# ──────────────────────────────────────────────
# POST /verify-checkout
# ──────────────────────────────────────────────

@checkout_bp.route("/verify-checkout", methods=["POST"])
@limiter.limit("30 per minute")
@api_login_required
def verify_checkout():
    """Reconcile a completed session right after the Stripe redirect.

    Body: {sessionId}. Returns {success, purchasesCreated, message}.
    Runs the same reconciliation as the webhook; whichever gets there
    first writes the rows.
    """
    data = _json_body()
    session_id = data.get("sessionId")
    if not session_id:
        raise ValidationError("sessionId is required")

    session = reconciliation_service.load_verified_session(session_id, current_user)

    try:
        created = reconciliation_service.reconcile_checkout_session(
            session, trigger=reconciliation_service.TRIGGER_VERIFY
        )
        db.session.commit()
    except IntegrityError:
        # The webhook committed the same rows while we were working.
        db.session.rollback()
        logger.info(f"Session {session_id} reconciled concurrently, re-reading")
        created = reconciliation_service.reconcile_checkout_session(
            session, trigger=reconciliation_service.TRIGGER_VERIFY
        )
        db.session.commit()

    if created:
        message = f"Successfully activated: {', '.join(created)}"
    else:
        message = "Your purchase has already been recorded"

    return jsonify({
        "success": True,
        "purchasesCreated": created,
        "message": message,
    })


# ──────────────────────────────────────────────
# POST /create-customer-portal
# ──────────────────────────────────────────────

@checkout_bp.route("/create-customer-portal", methods=["POST"])
@api_login_required
def create_customer_portal():
    """Stripe billing portal for the caller's stored customer."""
    if not current_user.stripe_customer_id:
        raise NotFoundError("No billing account found")

    data = request.get_json(silent=True) or {}
    return_url = data.get("returnUrl") or f"{current_app.config['APP_BASE_URL']}/billing"
    url = stripe_gateway.create_portal_session(current_user.stripe_customer_id, return_url)
    return jsonify({"url": url})
