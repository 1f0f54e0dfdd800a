import os
import logging

import click
from flask import Flask, jsonify

from fulfillment.config import config_by_name
from fulfillment.extensions import db, migrate, limiter, mailer


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
    limiter.init_app(app)
    mailer.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from fulfillment import models  # noqa: F401

    # --- Register blueprints ---
    from fulfillment.blueprints.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp)

    # --- Health check ---
    @app.route("/healthz")
    def healthz():
        return jsonify({"status": "ok"}), 200

    # --- Error handlers ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-cart")
    @click.option("--email", default="customer@example.com", help="Customer email")
    @click.option("--name", default="Demo Customer", help="Customer name")
    def seed_cart(email, name):
        """Stage a demo cart for local webhook testing.

        Usage:
            flask seed-cart
            flask seed-cart --email jane@example.com --name "Jane Doe"

        Then trigger a checkout.session.completed with metadata cartId=<id>
        and amount_total=2000 (e.g. via `stripe trigger` overrides).
        """
        from fulfillment.models.cart import PendingCart

        cart = PendingCart(
            customer_email=email,
            customer_name=name,
            customer_phone="07000 000000",
            delivery_address="1 Demo Street, London",
            items=[
                {"product_name": "Jollof Rice", "quantity": 2, "unit_price": "8.50"},
                {"product_name": "Plantain", "quantity": 1, "unit_price": "3.00"},
            ],
        )
        db.session.add(cart)
        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Staged cart created!")
        click.echo("=" * 60)
        click.echo(f"  Cart ID:   {cart.id}")
        click.echo(f"  Customer:  {name} <{email}>")
        click.echo(f"  Total:     20.00 {app.config['CURRENCY_CODE'].upper()}")
        click.echo("=" * 60)

    @app.cli.command("retry-notifications")
    @click.option("--limit", default=50, show_default=True, help="Max orders to retry.")
    def retry_notifications(limit):
        """Resend order emails that failed during webhook handling.

        Picks orders still in "created" or "notified" and re-sends only the
        roles (merchant / customer) that never went out. Safe to run from cron.

        Usage:
            flask retry-notifications
            flask retry-notifications --limit 10
        """
        from fulfillment.services.notification_service import resend_failed_notifications

        retried = resend_failed_notifications(limit=limit)
        click.echo(f"Retried notifications for {retried} order(s).")

    @app.cli.command("check-mail")
    def check_mail():
        """Verify the SMTP transport connects and authenticates."""
        from fulfillment.errors import MailDeliveryError

        try:
            mailer.verify()
        except MailDeliveryError as e:
            click.echo(f"ERROR: {e}")
            raise SystemExit(1)
        click.echo(f"Mail transport ready ({mailer.host}:{mailer.port}).")
