"""Admin blueprint — /admin/*

Operator endpoints. All routes protected by @admin_required, settings
and the Stripe product import by @super_admin_required.

Route Map:
  PUT    /admin/settings/<key>                — Set STRIPE_SECRET_KEY etc.
  POST   /admin/sync-stripe-products          — Import products from Stripe
  GET    /admin/pending-orders                — All pending orders
  POST   /admin/pending-orders                — Create an order for an email
  DELETE /admin/pending-orders/<id>           — Remove an order
  POST   /admin/purchases/<id>/fulfillment    — Toggle fulfilled flag
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from app.decorators import admin_required, super_admin_required
from app.errors import ValidationError
from app.extensions import db
from app.services import cart_manifest, entitlement_service, pending_order_service, sync_service
from app.services.settings_service import set_setting

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


# ══════════════════════════════════════════════
#  SETTINGS & CATALOG (super admin)
# ══════════════════════════════════════════════

@admin_bp.route("/settings/<key>", methods=["PUT"])
@super_admin_required
def update_setting(key):
    """Body: {value}. The value is never echoed back."""
    data = request.get_json(silent=True) or {}
    value = (data.get("value") or "").strip()
    if not value:
        raise ValidationError("value is required")

    set_setting(key, value, actor_user_id=current_user.id)
    db.session.commit()
    return jsonify({"success": True, "key": key})


@admin_bp.route("/sync-stripe-products", methods=["POST"])
@super_admin_required
def sync_stripe_products():
    result = sync_service.sync_stripe_products(actor_user_id=current_user.id)
    db.session.commit()
    return jsonify({"success": True, **result})


# ══════════════════════════════════════════════
#  PENDING ORDERS
# ══════════════════════════════════════════════

@admin_bp.route("/pending-orders")
@admin_required
def pending_orders():
    orders = pending_order_service.list_all()
    return jsonify({"pendingOrders": [o.to_dict() for o in orders]})


@admin_bp.route("/pending-orders", methods=["POST"])
@admin_required
def create_pending_order():
    """Body: {email, items: [{productId, quantity, customerDetails?}], notes?}"""
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")

    manifest = cart_manifest.parse_lines(data.get("items"))
    order = pending_order_service.create_pending_order(
        email,
        manifest.lines,
        notes=data.get("notes"),
        created_by=current_user.id,
    )
    db.session.commit()
    return jsonify({"pendingOrder": order.to_dict()}), 201


@admin_bp.route("/pending-orders/<order_id>", methods=["DELETE"])
@admin_required
def delete_pending_order(order_id):
    pending_order_service.delete_pending_order(order_id, actor_user_id=current_user.id)
    db.session.commit()
    return jsonify({"success": True})


# ══════════════════════════════════════════════
#  PURCHASES
# ══════════════════════════════════════════════

@admin_bp.route("/purchases/<purchase_id>/fulfillment", methods=["POST"])
@admin_required
def purchase_fulfillment(purchase_id):
    """Body: {fulfilled: bool, notes?}"""
    data = request.get_json(silent=True) or {}
    if "fulfilled" not in data:
        raise ValidationError("fulfilled is required")

    purchase = entitlement_service.set_fulfillment(
        purchase_id,
        bool(data["fulfilled"]),
        actor_user_id=current_user.id,
        notes=data.get("notes"),
    )
    db.session.commit()
    return jsonify({"purchase": purchase.to_dict()})
