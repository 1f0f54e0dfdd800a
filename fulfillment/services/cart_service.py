"""Cart service: find the staged cart a checkout refers to."""

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.errors import CartNotFound, MalformedMetadata, PersistenceFailure
from fulfillment.extensions import db
from fulfillment.models.cart import PendingCart

logger = logging.getLogger(__name__)


def cart_id_from_session(session):
    """Extract the staged cart id from a Checkout Session's metadata.

    Raises MalformedMetadata if it isn't there.
    """
    key = current_app.config.get("CART_METADATA_KEY", "cartId")
    metadata = session.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedMetadata(
            f"Checkout session {session.get('id')} has unreadable metadata"
        )
    cart_id = metadata.get(key)
    if not cart_id or not isinstance(cart_id, str):
        raise MalformedMetadata(
            f"Checkout session {session.get('id')} has no {key} in metadata"
        )
    return cart_id.strip()


def resolve_cart(cart_id):
    """Load a cart that is still eligible for fulfillment.

    Raises CartNotFound if the cart is missing or already consumed, and
    InvalidCart if its lines can't be fulfilled.
    """
    try:
        cart = db.session.get(PendingCart, cart_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistenceFailure(f"Could not load cart {cart_id}: {e}") from e

    if cart is None or cart.is_consumed:
        raise CartNotFound(cart_id)

    # Validates every line; raises InvalidCart
    cart.line_items()
    logger.info(f"Resolved cart {cart_id} for {cart.customer_email}")
    return cart
