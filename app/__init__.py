import os
import logging

import click
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from app.config import config_by_name
from app.errors import PortalError
from app.extensions import db, migrate, login_manager, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Register blueprints ---
    from app.blueprints.checkout import checkout_bp
    from app.blueprints.webhooks import webhooks_bp
    from app.blueprints.account import account_bp
    from app.blueprints.pending_orders import pending_orders_bp
    from app.blueprints.admin import admin_bp

    app.register_blueprint(checkout_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(account_bp)
    app.register_blueprint(pending_orders_bp)
    app.register_blueprint(admin_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    register_error_handlers(app)

    # --- CLI commands ---
    register_cli(app)

    # --- Response headers ---
    @app.after_request
    def add_api_headers(response):
        """CORS for the browser client plus basic hardening headers."""
        response.headers["Access-Control-Allow-Origin"] = app.config["CORS_ALLOW_ORIGIN"]
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = (
            "authorization, x-client-info, apikey, content-type"
        )
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Strict Transport Security (only in production)
        if not app.debug and not app.testing:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_error_handlers(app):
    """Everything leaves the API as {"error": ...} JSON."""

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Unauthorized"}), 401

    @app.errorhandler(PortalError)
    def portal_error(e):
        if e.status_code >= 500:
            app.logger.error(f"{request.method} {request.path}: {e}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(401)
    def unauthorized_error(e):
        return jsonify({"error": "Unauthorized"}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "Forbidden"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests. Please try again later."}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(Exception)
    def unhandled(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        app.logger.error(f"Unhandled error on {request.method} {request.path}", exc_info=e)
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@portal.local", help="Admin email")
    @click.option("--super", "is_super", is_flag=True, help="Grant super admin")
    def seed_admin(email, is_super):
        """Create (or promote) an admin user and print a bearer token.

        Usage:
            flask seed-admin
            flask seed-admin --email ops@example.com --super
        """
        from app.models.user import User
        from app.services.auth_service import issue_token

        admin = User.query.filter_by(email=email).first()
        if admin:
            click.echo(f"Admin user already exists: {email}")
        else:
            admin = User(email=email, full_name="Admin")
            db.session.add(admin)
            click.echo(f"Created admin user: {email}")

        admin.is_admin = True
        admin.is_super_admin = admin.is_super_admin or is_super
        db.session.commit()

        click.echo(f"  Super admin: {admin.is_super_admin}")
        click.echo(f"  Token:       {issue_token(admin)}")

    @app.cli.command("issue-token")
    @click.option("--email", required=True, help="User email")
    def issue_token_cmd(email):
        """Print a bearer token for an existing user."""
        from app.models.user import User
        from app.services.auth_service import issue_token

        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            raise click.ClickException(f"No user with email {email}")
        click.echo(issue_token(user))

    @app.cli.command("set-setting")
    @click.argument("key")
    @click.option("--value", prompt=True, hide_input=True, help="Setting value")
    def set_setting_cmd(key, value):
        """Store an admin setting, e.g. flask set-setting STRIPE_SECRET_KEY"""
        from app.services.settings_service import set_setting

        set_setting(key, value.strip())
        db.session.commit()
        click.echo(f"Saved {key}")

    @app.cli.command("sync-products")
    def sync_products():
        """Import active products and prices from Stripe."""
        from app.services.sync_service import sync_stripe_products

        result = sync_stripe_products()
        db.session.commit()
        click.echo(
            f"Synced {result['synced']} new, updated {result['updated']}, "
            f"skipped {result['skipped']} of {result['total']} Stripe products"
        )
