"""Stripe service: webhook verification and the fulfillment pipeline.

Responsible for:
- Verifying webhook signatures and decoding events into IncomingEvent
- Event-id idempotency via the stripe_events ledger
- Dispatching each event type to its handler (unknown types are ignored)
- Running checkout fulfillment: claim -> resolve -> finalize -> notify
- Mapping pipeline failures to "acknowledge" or "ask Stripe to retry"
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal

import stripe
from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fulfillment.errors import (
    AmountMismatch,
    CartNotFound,
    FulfillmentError,
    InvalidCart,
    MalformedMetadata,
    OrderAlreadyFinalized,
    PersistenceFailure,
    SignatureInvalid,
)
from fulfillment.extensions import db
from fulfillment.models.stripe_event import StripeEvent
from fulfillment.services.cart_service import cart_id_from_session, resolve_cart
from fulfillment.services.idempotency_service import (
    ClaimResult,
    claim_cart,
    complete_claim,
    get_claim,
    reject_claim,
    release_claim,
)
from fulfillment.services.notification_service import dispatch_order_notifications
from fulfillment.services.order_service import finalize_order, from_minor_units

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    OTHER = "other"

    @classmethod
    def from_stripe(cls, raw_type):
        try:
            return cls(raw_type)
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class IncomingEvent:
    """A verified Stripe event. Only built by verify_webhook_signature()."""

    event_id: str
    event_type: EventType
    raw_type: str
    payload: dict = field(default_factory=dict)  # event.data.object
    created: int = None


# ──────────────────────────────────────────────
# Webhook Verification
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify a Stripe webhook signature and decode the event.

    `payload` must be the raw request body exactly as received. The
    signed timestamp must be within STRIPE_WEBHOOK_TOLERANCE seconds.

    Returns an IncomingEvent.
    Raises SignatureInvalid on a bad signature or an undecodable body.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    tolerance = current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300)

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureInvalid("Webhook body is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, webhook_secret, tolerance
        )
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalid(str(e)) from e

    try:
        body = json.loads(payload)
    except ValueError as e:
        raise SignatureInvalid("Webhook body is not valid JSON") from e

    if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
        raise SignatureInvalid("Webhook body is not a Stripe event")

    data = body.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None

    return IncomingEvent(
        event_id=body["id"],
        event_type=EventType.from_stripe(body["type"]),
        raw_type=body["type"],
        payload=obj if isinstance(obj, dict) else {},
        created=body.get("created"),
    )


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def handle_webhook_event(event):
    """Process a verified IncomingEvent.

    Idempotency: the stripe_events ledger short-circuits repeated event ids;
    the fulfillment claim guards each cart across different event ids.

    Returns (success: bool, message: str). success=False means Stripe
    should redeliver.
    """
    # --- Idempotency check ---
    existing = StripeEvent.query.filter_by(
        stripe_event_id=event.event_id
    ).first()
    if existing:
        logger.info(f"Duplicate webhook event {event.event_id}, skipping")
        return True, "already_processed"

    # --- Route to handler ---
    handlers = {
        EventType.CHECKOUT_COMPLETED: _handle_checkout_completed,
    }

    handler = handlers.get(event.event_type)
    if handler is None:
        logger.info(f"Ignoring {event.raw_type} event {event.event_id}")
        _record_event(event, "ignored")
        return True, "ignored"

    try:
        message = handler(event)
    except (MalformedMetadata, CartNotFound, InvalidCart) as e:
        logger.warning(f"Event {event.event_id} acknowledged without fulfillment: {e}")
        _record_event(event, "rejected")
        return True, "rejected"
    except AmountMismatch as e:
        # Needs a human: money was taken for a cart that doesn't add up
        logger.error(f"AMOUNT MISMATCH on event {event.event_id}: {e}")
        _record_event(event, "rejected")
        return True, "rejected"
    except PersistenceFailure as e:
        logger.error(f"Error handling {event.raw_type} {event.event_id}: {e}")
        return False, "persistence_failure"
    except Exception as e:
        logger.error(f"Error handling {event.raw_type} {event.event_id}: {e}", exc_info=True)
        db.session.rollback()
        return False, "processing_failed"

    if message == ClaimResult.IN_PROGRESS.value:
        # Not recorded: the in-flight attempt may still fail and need a retry
        return True, message

    _record_event(event, message)
    return True, message


def _record_event(event, outcome):
    """Record an acknowledged event in the ledger. Best effort."""
    db.session.add(StripeEvent(
        stripe_event_id=event.event_id,
        event_type=event.raw_type,
        outcome=outcome,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event recorded it first
        db.session.rollback()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to record event {event.event_id}: {e}")


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _checkout_details(session):
    """Pull (payment_reference_id, reported_total, currency) from a session.

    Raises MalformedMetadata when Stripe's payload lacks what we need to
    reconcile and record the payment.
    """
    payment_reference_id = session.get("payment_intent")
    if isinstance(payment_reference_id, dict):
        payment_reference_id = payment_reference_id.get("id")
    payment_reference_id = payment_reference_id or session.get("id")
    if not payment_reference_id or not isinstance(payment_reference_id, str):
        raise MalformedMetadata("Checkout session has no payment reference")

    amount_total = session.get("amount_total")
    if isinstance(amount_total, bool) or not isinstance(amount_total, int):
        raise MalformedMetadata(
            f"Checkout session {session.get('id')} has no amount_total"
        )

    currency = session.get("currency") or current_app.config.get("CURRENCY_CODE", "gbp")
    if not isinstance(currency, str):
        raise MalformedMetadata(
            f"Checkout session {session.get('id')} has an unreadable currency"
        )
    reported_total = from_minor_units(amount_total, currency)
    return payment_reference_id, Decimal(reported_total), currency


def _handle_checkout_completed(event):
    """Handle checkout.session.completed.

    Turns the staged cart named in the session metadata into an Order,
    then sends the merchant and customer emails. Notifications only run
    after the order is committed, and their failures never fail the event.

    Returns the outcome message for the ledger.
    """
    session = event.payload
    cart_id = cart_id_from_session(session)
    payment_reference_id, reported_total, currency = _checkout_details(session)

    claim_result = claim_cart(cart_id, event.event_id)
    if claim_result is not ClaimResult.PROCEED:
        return claim_result.value

    try:
        cart = resolve_cart(cart_id)
        claim = get_claim(cart_id, event.event_id)
        if claim is None:
            raise PersistenceFailure(f"Lost claim on cart {cart_id}")
        order = finalize_order(
            cart, claim, payment_reference_id, reported_total, currency
        )
    except (CartNotFound, InvalidCart, AmountMismatch) as e:
        reject_claim(cart_id, event.event_id, str(e))
        raise
    except OrderAlreadyFinalized as e:
        logger.info(f"Cart {cart_id} already has order {e.order.id}, skipping")
        complete_claim(cart_id, event.event_id, e.order.id)
        return ClaimResult.ALREADY_PROCESSED.value
    except FulfillmentError:
        db.session.rollback()
        release_claim(cart_id, event.event_id)
        raise
    except Exception as e:
        db.session.rollback()
        release_claim(cart_id, event.event_id)
        raise PersistenceFailure(f"Fulfillment of cart {cart_id} failed: {e}") from e

    dispatch_order_notifications(order)
    return "processed"
