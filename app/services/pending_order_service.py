"""Pending order service — reservations claimed at checkout time.

A pending order is created by an admin for an email address. A user
claims it when starting checkout; the claim is released if checkout
creation fails, and the order is deleted once reconciliation confirms
the purchase.

claim() is a single conditional UPDATE, so two concurrent claimers
cannot both win.

Functions flush but do NOT commit — the caller commits.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, update

from app.errors import ClaimConflictError, PendingOrderNotFoundError, ProductNotFoundError
from app.extensions import db
from app.models.audit import AuditEvent
from app.models.pending_order import PendingOrder, PendingOrderItem
from app.models.product import Product

logger = logging.getLogger(__name__)


def create_pending_order(email, lines, notes=None, created_by=None):
    """Create an order for `email` from a CartManifest's lines."""
    order = PendingOrder(
        email=email.strip().lower(),
        notes=notes,
        created_by=created_by,
    )
    db.session.add(order)
    db.session.flush()

    for position, line in enumerate(lines):
        if db.session.get(Product, line.product_id) is None:
            raise ProductNotFoundError(f"Products not found: {line.product_id}")
        db.session.add(PendingOrderItem(
            pending_order_id=order.id,
            product_id=line.product_id,
            quantity=line.quantity,
            position=position,
            customer_details=(
                line.customer_details.model_dump(exclude_none=True)
                if line.customer_details else None
            ),
        ))

    db.session.add(AuditEvent(
        actor_user_id=created_by,
        action="pending_order.created",
        metadata_={"pending_order_id": order.id, "email": order.email},
    ))
    db.session.flush()
    return order


def get_pending_order(order_id):
    order = db.session.get(PendingOrder, order_id)
    if order is None:
        raise PendingOrderNotFoundError()
    return order


def list_claimable(user_id):
    """Orders that are unclaimed or already claimed by this user."""
    return (
        PendingOrder.query
        .filter(or_(
            PendingOrder.claimed_by.is_(None),
            PendingOrder.claimed_by == user_id,
        ))
        .order_by(PendingOrder.created_at.asc())
        .all()
    )


def claim(order_id, user_id):
    """Claim an order for `user_id`.

    Succeeds when the order is unclaimed, or already claimed by the same
    user (retry after an incomplete payment). Raises ClaimConflictError
    if someone else holds it, PendingOrderNotFoundError if it is gone.
    """
    now = datetime.now(timezone.utc)
    result = db.session.execute(
        update(PendingOrder)
        .where(PendingOrder.id == order_id)
        .where(or_(
            PendingOrder.claimed_by.is_(None),
            PendingOrder.claimed_by == user_id,
        ))
        .values(
            claimed_by=user_id,
            claimed_at=func.coalesce(PendingOrder.claimed_at, now),
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        if db.session.get(PendingOrder, order_id) is None:
            raise PendingOrderNotFoundError()
        logger.info(f"Pending order {order_id} already claimed, rejecting {user_id}")
        raise ClaimConflictError()

    db.session.add(AuditEvent(
        user_id=user_id,
        actor_user_id=user_id,
        action="pending_order.claimed",
        metadata_={"pending_order_id": order_id},
    ))
    db.session.flush()
    logger.info(f"Pending order {order_id} claimed by {user_id}")
    return db.session.get(PendingOrder, order_id, populate_existing=True)


def release(order_id, actor_user_id=None):
    """Reset the claim so the order can be claimed again. No-op if gone."""
    db.session.execute(
        update(PendingOrder)
        .where(PendingOrder.id == order_id)
        .values(claimed_by=None, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="pending_order.released",
        metadata_={"pending_order_id": order_id},
    ))
    db.session.flush()
    logger.info(f"Pending order {order_id} released")
    return db.session.get(PendingOrder, order_id, populate_existing=True)


def fulfill_and_delete(order_id):
    """Delete the order and its items once the purchase is confirmed.

    Safe to call repeatedly. A second call finds nothing to delete.
    Returns True if a row was deleted.
    """
    PendingOrderItem.query.filter_by(pending_order_id=order_id).delete(
        synchronize_session=False
    )
    deleted = PendingOrder.query.filter_by(id=order_id).delete(
        synchronize_session=False
    )
    db.session.expire_all()

    if deleted:
        db.session.add(AuditEvent(
            action="pending_order.fulfilled",
            metadata_={"pending_order_id": order_id},
        ))
        db.session.flush()
        logger.info(f"Pending order {order_id} fulfilled and deleted")
    return bool(deleted)


def delete_pending_order(order_id, actor_user_id=None):
    """Admin removal of an order, claimed or not."""
    order = get_pending_order(order_id)
    for item in list(order.items):
        db.session.delete(item)
    db.session.delete(order)
    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="pending_order.deleted",
        metadata_={"pending_order_id": order_id, "email": order.email},
    ))
    db.session.flush()
    logger.info(f"Pending order {order_id} deleted by {actor_user_id}")


def list_all():
    return PendingOrder.query.order_by(PendingOrder.created_at.desc()).all()
