"""Shared test fixtures for the portal API test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, rate limits off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: users with bearer tokens, the price book, the Stripe key
- auth_headers: helper building an Authorization header from a token
- post_event: helper posting a (mocked-signature) webhook event
"""

import pytest
from flask import g

from app import create_app
from app.extensions import db as _db
from app.models.admin_setting import AdminSetting
from app.models.product import Product
from app.models.user import User
from app.services import settings_service
from app.services.auth_service import issue_token


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")

    # db_session keeps an app context pushed, and test requests reuse it,
    # so `g` outlives a request. Drop Flask-Login's cached user so each
    # request authenticates its own bearer token.
    @app.teardown_request
    def _forget_login_user(exc):
        g.pop("_login_user", None)

    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        settings_service.invalidate()
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed users, products and the Stripe secret key.

    Returns plain ids and tokens so tests can use them across app
    contexts without touching detached instances.
    """
    with app.app_context():
        # --- Users ---
        customer = User(
            email="kim@example.com",
            full_name="Kim Customer",
            stripe_customer_id="cus_kim",
        )
        other = User(email="lee@example.com", full_name="Lee Other")
        admin = User(email="admin@portal.local", full_name="Admin", is_admin=True)
        super_admin = User(
            email="root@portal.local",
            full_name="Root",
            is_admin=True,
            is_super_admin=True,
        )
        _db.session.add_all([customer, other, admin, super_admin])

        # --- Price book ---
        _db.session.add_all([
            Product(
                id="P-internet-100",
                name="Internet 100",
                category="internet",
                price=79,
                billing_type="monthly",
                stripe_product_id="prod_internet",
                stripe_price_id="price_internet",
            ),
            Product(
                id="P-backup",
                name="Cloud Backup",
                category="other",
                price=120,
                billing_type="yearly",
            ),
            Product(
                id="P-router",
                name="Wi-Fi Router",
                category="hardware",
                price=150,
                billing_type="one-time",
            ),
            Product(
                id="P-retired",
                name="Dial-up",
                price=10,
                billing_type="monthly",
                is_active=False,
            ),
        ])

        # --- Stripe key lives in admin settings ---
        _db.session.add(AdminSetting(key="STRIPE_SECRET_KEY", value="sk_test_portal"))
        _db.session.commit()

        return {
            "customer_id": customer.id,
            "customer_token": issue_token(customer),
            "other_id": other.id,
            "other_token": issue_token(other),
            "admin_id": admin.id,
            "admin_token": issue_token(admin),
            "super_admin_id": super_admin.id,
            "super_admin_token": issue_token(super_admin),
        }


@pytest.fixture
def auth_headers():
    def _headers(token):
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def post_event(client):
    """POST an already-verified event to the webhook.

    The caller patches stripe.Webhook.construct_event to return the
    event; this just sends a request with a signature header.
    """
    def _post():
        return client.post(
            "/stripe-webhook",
            data="{}",
            content_type="application/json",
            headers={"Stripe-Signature": "t=1,v1=valid"},
        )
    return _post
