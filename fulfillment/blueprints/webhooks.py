"""Webhooks blueprint: /stripe/webhooks

Receives Stripe webhook events.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from fulfillment.errors import SignatureInvalid
from fulfillment.extensions import limiter
from fulfillment.services.stripe_service import handle_webhook_event, verify_webhook_signature

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
@limiter.limit(lambda: current_app.config["WEBHOOK_RATE_LIMIT"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET -> 400 if invalid
    3. Pass to handle_webhook_event (idempotent per event and per cart)
    4. Return 200 to acknowledge, 500 to have Stripe redeliver
    """
    payload = request.get_data(cache=False)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(payload, sig_header)
    except SignatureInvalid as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    logger.info(f"Webhook {event.raw_type} {event.event_id} verified")

    # --- Process event (idempotent) ---
    success, message = handle_webhook_event(event)

    if success:
        return jsonify({"status": message}), 200
    else:
        logger.error(f"Webhook processing failed for {event.event_id}: {message}")
        return jsonify({"error": message}), 500
