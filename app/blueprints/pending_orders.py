"""Pending orders blueprint — /pending-orders/*

Routes:
- GET  /pending-orders                 — orders the caller may check out
- POST /pending-orders/<id>/claim      — reserve an order
- POST /pending-orders/<id>/release    — give a reservation back

Admin creation and deletion live in the admin blueprint.
"""

from flask import Blueprint, jsonify
from flask_login import current_user

from app.decorators import api_login_required
from app.errors import AuthorizationError
from app.extensions import db
from app.services import pending_order_service

pending_orders_bp = Blueprint("pending_orders", __name__, url_prefix="/pending-orders")


@pending_orders_bp.route("")
@api_login_required
def list_orders():
    """Unclaimed orders plus any the caller already claimed."""
    orders = pending_order_service.list_claimable(current_user.id)
    return jsonify({"pendingOrders": [o.to_dict() for o in orders]})


@pending_orders_bp.route("/<order_id>/claim", methods=["POST"])
@api_login_required
def claim(order_id):
    order = pending_order_service.claim(order_id, current_user.id)
    db.session.commit()
    return jsonify({"pendingOrder": order.to_dict()})


@pending_orders_bp.route("/<order_id>/release", methods=["POST"])
@api_login_required
def release(order_id):
    """Only the claimant or an admin may release."""
    order = pending_order_service.get_pending_order(order_id)
    is_admin = current_user.is_admin or current_user.is_super_admin
    if order.claimed_by and order.claimed_by != current_user.id and not is_admin:
        raise AuthorizationError("This order is claimed by someone else")

    order = pending_order_service.release(order_id, actor_user_id=current_user.id)
    db.session.commit()
    return jsonify({"pendingOrder": order.to_dict()})
