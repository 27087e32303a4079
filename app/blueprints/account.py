"""Account blueprint — the caller's own purchases and invoices.

Routes:
- GET  /purchases                 — caller's purchases, newest first
- GET  /invoices                  — caller's invoices, newest first
- POST /sync-user-invoices        — backfill invoices from Stripe
- POST /sync-user-subscriptions   — backfill subscriptions from Stripe
"""

import logging

from flask import Blueprint, jsonify
from flask_login import current_user

from app.decorators import api_login_required
from app.extensions import db, limiter
from app.models.invoice import Invoice
from app.models.purchase import Purchase
from app.services import sync_service

logger = logging.getLogger(__name__)

account_bp = Blueprint("account", __name__)


@account_bp.route("/purchases")
@api_login_required
def purchases():
    rows = (
        Purchase.query
        .filter_by(user_id=current_user.id)
        .order_by(Purchase.purchased_at.desc())
        .all()
    )
    return jsonify({"purchases": [p.to_dict() for p in rows]})


@account_bp.route("/invoices")
@api_login_required
def invoices():
    rows = (
        Invoice.query
        .filter_by(user_id=current_user.id)
        .order_by(Invoice.created_at.desc())
        .all()
    )
    return jsonify({"invoices": [i.to_dict() for i in rows]})


@account_bp.route("/sync-user-invoices", methods=["POST"])
@limiter.limit("10 per minute")
@api_login_required
def sync_user_invoices():
    """Pull invoices for every Stripe customer with the caller's email."""
    synced = sync_service.sync_user_invoices(current_user)
    db.session.commit()
    return jsonify({
        "message": f"Synced {synced} invoice(s)",
        "synced": synced,
    })


@account_bp.route("/sync-user-subscriptions", methods=["POST"])
@limiter.limit("10 per minute")
@api_login_required
def sync_user_subscriptions():
    """Pull active subscriptions the caller has on Stripe but not here."""
    synced, services = sync_service.sync_user_subscriptions(current_user)
    db.session.commit()

    if synced:
        message = f"Synced {synced} subscription(s)"
    else:
        message = "No new subscriptions found"
    return jsonify({"message": message, "synced": synced, "services": services})
