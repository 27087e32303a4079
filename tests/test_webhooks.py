"""Tests for the webhook endpoint and Stripe event handling.

Covers:
- Signature verification (missing, invalid, genuine HMAC)
- Idempotent event processing (duplicate event ids skipped)
- customer.subscription.created / updated / deleted
- invoice.paid / invoice.payment_failed, including out-of-order delivery
- checkout.session.completed in payment, subscription and setup modes
- Redelivery never duplicates purchases or Stripe objects
- Processing failures answer 500 so Stripe retries
"""

import hashlib
import hmac
import json
import time
from datetime import date
from decimal import Decimal
from unittest.mock import patch

import stripe

from app.extensions import db
from app.models.audit import AuditEvent
from app.models.invoice import Invoice
from app.models.pending_order import PendingOrder, PendingOrderItem
from app.models.purchase import Purchase
from app.models.stripe_event import StripeEvent
from app.services import cart_manifest, pending_order_service

PERIOD_END = 1798761600  # 2027-01-01
CONSTRUCT = "app.services.stripe_gateway.stripe.Webhook.construct_event"


def _event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _subscription(sub_id, user_id, product_id="P-internet-100", status="active",
                  period_end=PERIOD_END, price_id="price_internet", **extra):
    sub = {
        "id": sub_id,
        "customer": "cus_kim",
        "status": status,
        "created": 1767225600,
        "canceled_at": None,
        "metadata": {"user_id": user_id, "product_id": product_id},
        "items": {"data": [{
            "price": {"id": price_id, "product": "prod_internet", "unit_amount": 7900},
            "quantity": 1,
            "current_period_end": period_end,
        }]},
    }
    sub.update(extra)
    return sub


def _invoice(invoice_id, sub_id, amount=7900, period_end=PERIOD_END, nested=False):
    invoice = {
        "id": invoice_id,
        "customer": "cus_kim",
        "number": f"INV-{invoice_id[-4:]}",
        "amount_paid": amount,
        "status": "paid",
        "invoice_pdf": f"https://pay.stripe.com/{invoice_id}.pdf",
        "created": 1767225600,
        "status_transitions": {"paid_at": 1767225700},
        "lines": {"data": [{
            "description": "Internet 100 (monthly)",
            "period": {"start": 1767225600, "end": period_end},
        }]},
    }
    if nested:
        invoice["parent"] = {"subscription_details": {"subscription": sub_id}}
    else:
        invoice["subscription"] = sub_id
    return invoice


def _session(session_id, user_id, mode, items, **extra):
    manifest = cart_manifest.parse_lines(items)
    session = {
        "id": session_id,
        "object": "checkout.session",
        "mode": mode,
        "status": "complete",
        "payment_status": "no_payment_required" if mode == "setup" else "paid",
        "customer": "cus_kim",
        "client_reference_id": user_id,
        "metadata": {"user_id": user_id, **manifest.to_metadata()},
    }
    session.update(extra)
    return session


# ══════════════════════════════════════════════
#  SIGNATURES
# ══════════════════════════════════════════════

class TestWebhookSignature:

    def test_missing_signature_returns_400(self, client, seed_data):
        resp = client.post("/stripe-webhook", data="{}", content_type="application/json")
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data

    def test_invalid_signature_returns_400(self, client, seed_data):
        resp = client.post(
            "/stripe-webhook",
            data=json.dumps({"id": "evt_forged", "type": "invoice.paid"}),
            content_type="application/json",
            headers={"Stripe-Signature": f"t={int(time.time())},v1=deadbeef"},
        )
        assert resp.status_code == 400
        assert b"Invalid signature" in resp.data
        assert StripeEvent.query.count() == 0

    def test_genuine_signature_accepted(self, client, seed_data):
        payload = json.dumps({
            "id": "evt_signed",
            "object": "event",
            "type": "customer.created",
            "data": {"object": {"id": "cus_new", "object": "customer"}},
        })
        timestamp = int(time.time())
        signature = hmac.new(
            b"whsec_test_fake",
            f"{timestamp}.{payload}".encode(),
            hashlib.sha256,
        ).hexdigest()

        resp = client.post(
            "/stripe-webhook",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": f"t={timestamp},v1={signature}"},
        )
        assert resp.status_code == 200
        assert resp.get_json()["received"] is True

    @patch(CONSTRUCT)
    def test_unhandled_event_type_acknowledged(self, mock_construct, post_event, seed_data):
        mock_construct.return_value = _event("evt_x", "charge.refund.updated", {"id": "re_1"})
        resp = post_event()
        assert resp.status_code == 200
        assert resp.get_json() == {"received": True, "status": "ignored"}


class TestWebhookIdempotency:

    @patch(CONSTRUCT)
    def test_duplicate_event_returns_200(self, mock_construct, post_event, seed_data, app):
        with app.app_context():
            db.session.add(StripeEvent(
                stripe_event_id="evt_duplicate_123",
                event_type="customer.subscription.created",
            ))
            db.session.commit()

        mock_construct.return_value = _event(
            "evt_duplicate_123", "customer.subscription.created",
            _subscription("sub_dup", seed_data["customer_id"]),
        )
        resp = post_event()

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "already_processed"
        with app.app_context():
            assert Purchase.query.count() == 0


# ══════════════════════════════════════════════
#  SUBSCRIPTION LIFECYCLE
# ══════════════════════════════════════════════

class TestSubscriptionEvents:

    @patch(CONSTRUCT)
    def test_created_inserts_purchase(self, mock_construct, post_event, seed_data, app):
        mock_construct.return_value = _event(
            "evt_sub_created", "customer.subscription.created",
            _subscription("sub_new", seed_data["customer_id"]),
        )

        resp = post_event()

        assert resp.status_code == 200
        with app.app_context():
            purchase = Purchase.query.filter_by(stripe_subscription_id="sub_new").one()
            assert purchase.status == "active"
            assert purchase.product_id == "P-internet-100"
            assert purchase.user_id == seed_data["customer_id"]
            assert purchase.next_billing_date == date(2027, 1, 1)
            assert purchase.price_paid == Decimal("79.00")
            assert StripeEvent.query.filter_by(stripe_event_id="evt_sub_created").one()
            assert AuditEvent.query.filter_by(action="purchase.created").count() == 1

    @patch(CONSTRUCT)
    def test_repeated_delivery_converges_to_one_row(self, mock_construct, post_event,
                                                    seed_data, app):
        statuses = ["incomplete", "active", "past_due", "active"]
        for n, status in enumerate(statuses):
            mock_construct.return_value = _event(
                f"evt_sub_{n}", "customer.subscription.updated",
                _subscription("sub_repeat", seed_data["customer_id"], status=status,
                              period_end=PERIOD_END + n * 86400),
            )
            assert post_event().status_code == 200

        with app.app_context():
            rows = Purchase.query.filter_by(stripe_subscription_id="sub_repeat").all()
            assert len(rows) == 1
            assert rows[0].status == "active"
            assert rows[0].next_billing_date == date(2027, 1, 4)

    @patch(CONSTRUCT)
    def test_product_matched_by_price_without_metadata(self, mock_construct, post_event,
                                                       seed_data, app):
        sub = _subscription("sub_nometa", seed_data["customer_id"])
        sub["metadata"] = {}
        mock_construct.return_value = _event("evt_nometa", "customer.subscription.created", sub)

        assert post_event().status_code == 200
        with app.app_context():
            purchase = Purchase.query.filter_by(stripe_subscription_id="sub_nometa").one()
            # user from the profile owning cus_kim, product from price_internet
            assert purchase.user_id == seed_data["customer_id"]
            assert purchase.product_id == "P-internet-100"

    @patch(CONSTRUCT)
    def test_canceled_status_mapped(self, mock_construct, post_event, seed_data, app):
        mock_construct.return_value = _event(
            "evt_sub_canceled", "customer.subscription.updated",
            _subscription("sub_c", seed_data["customer_id"], status="canceled",
                          canceled_at=1767312000),
        )
        post_event()
        with app.app_context():
            purchase = Purchase.query.filter_by(stripe_subscription_id="sub_c").one()
            assert purchase.status == "cancelled"
            assert purchase.cancelled_at is not None

    @patch(CONSTRUCT)
    def test_deleted_marks_cancelled(self, mock_construct, post_event, seed_data, app):
        mock_construct.return_value = _event(
            "evt_a", "customer.subscription.created",
            _subscription("sub_del", seed_data["customer_id"]),
        )
        post_event()

        mock_construct.return_value = _event(
            "evt_b", "customer.subscription.deleted",
            {"id": "sub_del", "customer": "cus_kim", "status": "canceled"},
        )
        assert post_event().status_code == 200

        with app.app_context():
            purchase = Purchase.query.filter_by(stripe_subscription_id="sub_del").one()
            assert purchase.status == "cancelled"
            assert purchase.cancelled_at is not None

    @patch(CONSTRUCT)
    def test_deleted_without_match_is_noop(self, mock_construct, post_event, seed_data, app):
        mock_construct.return_value = _event(
            "evt_gone", "customer.subscription.deleted", {"id": "sub_unknown"},
        )
        assert post_event().status_code == 200
        with app.app_context():
            assert Purchase.query.count() == 0


# ══════════════════════════════════════════════
#  INVOICES
# ══════════════════════════════════════════════

class TestInvoiceEvents:

    def _create_sub(self, mock_construct, post_event, seed_data, status="active"):
        mock_construct.return_value = _event(
            f"evt_create_{status}", "customer.subscription.created",
            _subscription("sub_inv", seed_data["customer_id"], status=status),
        )
        post_event()

    @patch(CONSTRUCT)
    def test_paid_renews_and_records(self, mock_construct, post_event, seed_data, app):
        self._create_sub(mock_construct, post_event, seed_data, status="past_due")

        mock_construct.return_value = _event(
            "evt_paid", "invoice.paid",
            _invoice("in_0001", "sub_inv", period_end=PERIOD_END + 31 * 86400),
        )
        assert post_event().status_code == 200

        with app.app_context():
            purchase = Purchase.query.filter_by(stripe_subscription_id="sub_inv").one()
            assert purchase.status == "active"
            assert purchase.next_billing_date == date(2027, 2, 1)

            invoice = Invoice.query.filter_by(stripe_invoice_id="in_0001").one()
            assert invoice.purchase_id == purchase.id
            assert invoice.user_id == seed_data["customer_id"]
            assert invoice.amount == Decimal("79.00")
            assert invoice.status == "paid"
            assert invoice.description == "Internet 100 (monthly)"

    @patch(CONSTRUCT)
    def test_paid_twice_records_one_invoice(self, mock_construct, post_event, seed_data, app):
        self._create_sub(mock_construct, post_event, seed_data)
        for event_id in ("evt_paid_1", "evt_paid_2"):
            mock_construct.return_value = _event(
                event_id, "invoice.paid", _invoice("in_twice", "sub_inv"),
            )
            assert post_event().status_code == 200

        with app.app_context():
            assert Invoice.query.filter_by(stripe_invoice_id="in_twice").count() == 1

    @patch(CONSTRUCT)
    def test_subscription_under_parent_details(self, mock_construct, post_event,
                                               seed_data, app):
        self._create_sub(mock_construct, post_event, seed_data, status="past_due")
        mock_construct.return_value = _event(
            "evt_paid_new_api", "invoice.paid", _invoice("in_new", "sub_inv", nested=True),
        )
        post_event()

        with app.app_context():
            purchase = Purchase.query.filter_by(stripe_subscription_id="sub_inv").one()
            assert purchase.status == "active"
            assert Invoice.query.filter_by(stripe_invoice_id="in_new").one().purchase_id == purchase.id

    @patch(CONSTRUCT)
    def test_invoice_before_subscription_is_linked_later(self, mock_construct, post_event,
                                                         seed_data, app):
        mock_construct.return_value = _event(
            "evt_early_invoice", "invoice.paid", _invoice("in_early", "sub_late"),
        )
        assert post_event().status_code == 200

        with app.app_context():
            invoice = Invoice.query.filter_by(stripe_invoice_id="in_early").one()
            assert invoice.purchase_id is None
            assert invoice.user_id == seed_data["customer_id"]
            assert Purchase.query.count() == 0

        mock_construct.return_value = _event(
            "evt_late_sub", "customer.subscription.created",
            _subscription("sub_late", seed_data["customer_id"]),
        )
        assert post_event().status_code == 200

        with app.app_context():
            purchase = Purchase.query.filter_by(stripe_subscription_id="sub_late").one()
            invoice = Invoice.query.filter_by(stripe_invoice_id="in_early").one()
            assert invoice.purchase_id == purchase.id

    @patch(CONSTRUCT)
    def test_payment_failed_marks_past_due(self, mock_construct, post_event, seed_data, app):
        self._create_sub(mock_construct, post_event, seed_data)
        mock_construct.return_value = _event(
            "evt_failed", "invoice.payment_failed",
            {"id": "in_fail", "customer": "cus_kim", "subscription": "sub_inv",
             "amount_due": 7900},
        )
        assert post_event().status_code == 200

        with app.app_context():
            purchase = Purchase.query.filter_by(stripe_subscription_id="sub_inv").one()
            assert purchase.status == "past_due"
            # No invoice written on failure
            assert Invoice.query.count() == 0


# ══════════════════════════════════════════════
#  CHECKOUT COMPLETED
# ══════════════════════════════════════════════

class TestCheckoutCompletedPayment:

    @patch("app.services.stripe_gateway.stripe.checkout.Session.retrieve")
    @patch(CONSTRUCT)
    def test_payment_mode_records_one_time_purchase(self, mock_construct, mock_retrieve,
                                                    post_event, seed_data, app):
        session = _session("cs_pay_1", seed_data["customer_id"], "payment",
                           [{"productId": "P-router", "quantity": 2}])
        mock_construct.return_value = _event("evt_cs_pay", "checkout.session.completed", session)
        mock_retrieve.return_value = dict(session, line_items={"data": [
            {"price": {"id": "price_router_inline"}, "quantity": 2, "amount_total": 30000},
        ]})

        resp = post_event()

        assert resp.status_code == 200
        assert mock_retrieve.call_args.kwargs["expand"] == ["line_items"]
        with app.app_context():
            purchase = Purchase.query.one()
            assert purchase.product_id == "P-router"
            assert purchase.price_paid == Decimal("300.00")
            assert purchase.stripe_subscription_id is None
            assert purchase.stripe_checkout_session_id == "cs_pay_1"
            assert purchase.line_index == 0

    @patch("app.services.stripe_gateway.stripe.checkout.Session.retrieve")
    @patch(CONSTRUCT)
    def test_redelivery_does_not_duplicate(self, mock_construct, mock_retrieve,
                                           post_event, seed_data, app):
        session = _session("cs_pay_2", seed_data["customer_id"], "payment",
                           [{"productId": "P-router", "quantity": 1}],
                           line_items={"data": [{"amount_total": 15000, "quantity": 1}]})
        for event_id in ("evt_r1", "evt_r2", "evt_r3"):
            mock_construct.return_value = _event(event_id, "checkout.session.completed", session)
            assert post_event().status_code == 200

        mock_retrieve.assert_not_called()
        with app.app_context():
            assert Purchase.query.filter_by(stripe_checkout_session_id="cs_pay_2").count() == 1

    @patch(CONSTRUCT)
    def test_unpaid_session_waits(self, mock_construct, post_event, seed_data, app):
        session = _session("cs_unpaid", seed_data["customer_id"], "payment",
                           [{"productId": "P-router"}], payment_status="unpaid")
        mock_construct.return_value = _event("evt_unpaid", "checkout.session.completed", session)

        assert post_event().status_code == 200
        with app.app_context():
            assert Purchase.query.count() == 0


class TestCheckoutCompletedSubscription:

    @patch("app.services.stripe_gateway.stripe.Subscription.retrieve")
    @patch(CONSTRUCT)
    def test_subscription_mode_upserts_with_details(self, mock_construct, mock_sub,
                                                    post_event, seed_data, app):
        session = _session(
            "cs_sub_1", seed_data["customer_id"], "subscription",
            [{"productId": "P-internet-100", "quantity": 1,
              "customerDetails": {"firstName": "Kim", "address": "1 Test St",
                                  "postcode": "4000"}}],
            subscription="sub_from_checkout",
        )
        mock_construct.return_value = _event("evt_cs_sub", "checkout.session.completed", session)
        mock_sub.return_value = _subscription("sub_from_checkout", seed_data["customer_id"])

        assert post_event().status_code == 200

        with app.app_context():
            purchase = Purchase.query.filter_by(stripe_subscription_id="sub_from_checkout").one()
            assert purchase.customer_first_name == "Kim"
            assert purchase.customer_address == "1 Test St"
            assert purchase.stripe_checkout_session_id == "cs_sub_1"

    @patch("app.services.stripe_gateway.stripe.Subscription.retrieve")
    @patch(CONSTRUCT)
    def test_gateway_failure_returns_500_and_is_retried(self, mock_construct, mock_sub,
                                                        post_event, seed_data, app):
        session = _session("cs_sub_2", seed_data["customer_id"], "subscription",
                           [{"productId": "P-internet-100"}], subscription="sub_retry")
        mock_construct.return_value = _event("evt_retry", "checkout.session.completed", session)
        mock_sub.side_effect = stripe.APIConnectionError("Connection reset")

        resp = post_event()

        assert resp.status_code == 500
        with app.app_context():
            assert StripeEvent.query.count() == 0
            assert Purchase.query.count() == 0

        # Stripe redelivers the same event id once the outage clears
        mock_sub.side_effect = None
        mock_sub.return_value = _subscription("sub_retry", seed_data["customer_id"])
        assert post_event().status_code == 200
        with app.app_context():
            assert Purchase.query.filter_by(stripe_subscription_id="sub_retry").count() == 1


def _fake_subscription_create(seed_data):
    """Stripe honours idempotency keys: same key -> same subscription."""
    def _create(**params):
        metadata = params["metadata"]
        sub_id = f"sub_{params['idempotency_key'].replace(':', '_')}"
        item = params["items"][0]
        price_id = item.get("price") or "price_inline"
        sub = _subscription(sub_id, metadata["user_id"], product_id=metadata["product_id"],
                            price_id=price_id)
        sub["metadata"] = dict(metadata)
        return sub
    return _create


@patch("app.services.stripe_gateway.stripe.Customer.modify")
@patch("app.services.stripe_gateway.stripe.SetupIntent.retrieve",
       return_value={"id": "seti_1", "payment_method": "pm_card"})
class TestCheckoutCompletedSetup:

    @patch("app.services.stripe_gateway.stripe.Product.create",
           return_value={"id": "prod_backup"})
    @patch("app.services.stripe_gateway.stripe.Subscription.create")
    @patch(CONSTRUCT)
    def test_two_subscriptions_get_independent_rows(self, mock_construct, mock_sub_create,
                                                    mock_prod_create, mock_seti, mock_modify,
                                                    post_event, seed_data, app):
        mock_sub_create.side_effect = _fake_subscription_create(seed_data)
        session = _session(
            "cs_setup_1", seed_data["customer_id"], "setup",
            [{"productId": "P-internet-100", "quantity": 1,
              "customerDetails": {"firstName": "Kim", "city": "Brisbane"}},
             {"productId": "P-backup", "quantity": 1}],
            setup_intent="seti_1",
        )
        mock_construct.return_value = _event("evt_setup", "checkout.session.completed", session)

        assert post_event().status_code == 200

        # Saved card becomes the default
        assert mock_modify.call_args.kwargs["invoice_settings"] == {
            "default_payment_method": "pm_card"
        }
        keys = [c.kwargs["idempotency_key"] for c in mock_sub_create.call_args_list]
        assert keys == ["cs_setup_1:0", "cs_setup_1:1"]
        # P-backup has no Stripe price, so it gets an inline price on a Stripe product
        backup_item = mock_sub_create.call_args_list[1].kwargs["items"][0]
        assert backup_item["price_data"]["product"] == "prod_backup"
        assert backup_item["price_data"]["recurring"] == {"interval": "year"}
        assert mock_prod_create.call_args.kwargs["idempotency_key"] == "product:P-backup"

        with app.app_context():
            rows = Purchase.query.order_by(Purchase.product_id).all()
            assert [r.product_id for r in rows] == ["P-backup", "P-internet-100"]
            assert len({r.stripe_subscription_id for r in rows}) == 2
            internet = [r for r in rows if r.product_id == "P-internet-100"][0]
            assert internet.customer_first_name == "Kim"
            assert internet.customer_city == "Brisbane"

    @patch("app.services.stripe_gateway.stripe.Product.create",
           return_value={"id": "prod_backup"})
    @patch("app.services.stripe_gateway.stripe.Subscription.create")
    @patch(CONSTRUCT)
    def test_redelivered_setup_event_creates_nothing_new(self, mock_construct, mock_sub_create,
                                                         mock_prod_create, mock_seti,
                                                         mock_modify, post_event, seed_data,
                                                         app):
        mock_sub_create.side_effect = _fake_subscription_create(seed_data)
        session = _session(
            "cs_setup_2", seed_data["customer_id"], "setup",
            [{"productId": "P-internet-100"}, {"productId": "P-backup"}],
            setup_intent="seti_1",
        )
        for event_id in ("evt_s1", "evt_s2"):
            mock_construct.return_value = _event(event_id, "checkout.session.completed", session)
            assert post_event().status_code == 200

        with app.app_context():
            assert Purchase.query.count() == 2
        # Second run re-sent the same idempotency keys
        keys = [c.kwargs["idempotency_key"] for c in mock_sub_create.call_args_list]
        assert keys == ["cs_setup_2:0", "cs_setup_2:1", "cs_setup_2:0", "cs_setup_2:1"]
        # Stripe product id was stored after the first run
        assert mock_prod_create.call_count == 1

    @patch("app.services.stripe_gateway.stripe.PaymentIntent.create")
    @patch("app.services.stripe_gateway.stripe.Subscription.create")
    @patch(CONSTRUCT)
    def test_mixed_cart_charges_one_time_items(self, mock_construct, mock_sub_create,
                                               mock_pi_create, mock_seti, mock_modify,
                                               post_event, seed_data, app):
        mock_sub_create.side_effect = _fake_subscription_create(seed_data)
        mock_pi_create.return_value = {"id": "pi_1", "status": "succeeded", "amount": 30000}
        session = _session(
            "cs_mix", seed_data["customer_id"], "setup",
            [{"productId": "P-internet-100"}, {"productId": "P-router", "quantity": 2}],
            setup_intent="seti_1",
        )
        mock_construct.return_value = _event("evt_mix", "checkout.session.completed", session)

        assert post_event().status_code == 200

        params = mock_pi_create.call_args.kwargs
        assert params["amount"] == 30000
        assert params["currency"] == "aud"
        assert params["payment_method"] == "pm_card"
        assert params["off_session"] is True
        assert params["confirm"] is True
        assert params["idempotency_key"] == "cs_mix:1"

        with app.app_context():
            router = Purchase.query.filter_by(product_id="P-router").one()
            assert router.stripe_subscription_id is None
            assert router.price_paid == Decimal("300.00")
            assert router.line_index == 1
            assert Purchase.query.filter_by(product_id="P-internet-100").count() == 1

    @patch("app.services.stripe_gateway.stripe.PaymentIntent.create")
    @patch("app.services.stripe_gateway.stripe.Subscription.create")
    @patch(CONSTRUCT)
    def test_declined_card_skips_line(self, mock_construct, mock_sub_create, mock_pi_create,
                                      mock_seti, mock_modify, post_event, seed_data, app):
        mock_sub_create.side_effect = _fake_subscription_create(seed_data)
        mock_pi_create.side_effect = stripe.CardError(
            "Your card was declined.", None, "card_declined", http_status=402
        )
        session = _session(
            "cs_decline", seed_data["customer_id"], "setup",
            [{"productId": "P-internet-100"}, {"productId": "P-router"}],
            setup_intent="seti_1",
        )
        mock_construct.return_value = _event("evt_decline", "checkout.session.completed", session)

        assert post_event().status_code == 200

        with app.app_context():
            assert Purchase.query.filter_by(product_id="P-router").count() == 0
            assert Purchase.query.filter_by(product_id="P-internet-100").count() == 1
            assert AuditEvent.query.filter_by(action="purchase.payment_declined").count() == 1

    @patch("app.services.stripe_gateway.stripe.Subscription.create")
    @patch(CONSTRUCT)
    def test_pending_order_deleted(self, mock_construct, mock_sub_create, mock_seti,
                                   mock_modify, post_event, seed_data, app):
        mock_sub_create.side_effect = _fake_subscription_create(seed_data)
        with app.app_context():
            manifest = cart_manifest.parse_lines([
                {"productId": "P-internet-100"}, {"productId": "P-internet-100"},
            ])
            order = pending_order_service.create_pending_order("kim@example.com", manifest.lines)
            pending_order_service.claim(order.id, seed_data["customer_id"])
            db.session.commit()
            order_id = order.id

        session = _session(
            "cs_po", seed_data["customer_id"], "setup",
            [{"productId": "P-internet-100"}, {"productId": "P-internet-100"}],
            setup_intent="seti_1",
        )
        session["metadata"]["pending_order_id"] = order_id
        mock_construct.return_value = _event("evt_po", "checkout.session.completed", session)

        assert post_event().status_code == 200

        with app.app_context():
            assert db.session.get(PendingOrder, order_id) is None
            assert PendingOrderItem.query.filter_by(pending_order_id=order_id).count() == 0
            assert Purchase.query.count() == 2
