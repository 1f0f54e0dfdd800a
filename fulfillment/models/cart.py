"""Pending cart model.

A cart is staged by the storefront when checkout starts and referenced from
the Stripe Checkout Session metadata. It is consumed (consumed_at set) in
the same transaction that creates its Order, so a retried event can never
resolve it again.
"""

import uuid
from collections import namedtuple
from decimal import Decimal, InvalidOperation

from fulfillment.errors import InvalidCart
from fulfillment.extensions import db

LineItem = namedtuple("LineItem", ["product_name", "quantity", "unit_price"])


def parse_line_item(raw):
    """Turn a stored cart line into a LineItem.

    Raises InvalidCart if the quantity is not a positive integer or the price
    is not a non-negative number.
    """
    if not isinstance(raw, dict):
        raise InvalidCart(f"Cart line is not an object: {raw!r}")

    name = (raw.get("product_name") or "").strip()
    if not name:
        raise InvalidCart("Cart line has no product name")

    quantity = raw.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidCart(f"Invalid quantity for {name}: {quantity!r}")

    try:
        # str() first so floats like 8.5 don't carry binary noise
        unit_price = Decimal(str(raw.get("unit_price")))
    except (InvalidOperation, ValueError):
        raise InvalidCart(f"Invalid unit price for {name}: {raw.get('unit_price')!r}")
    if not unit_price.is_finite() or unit_price < 0:
        raise InvalidCart(f"Invalid unit price for {name}: {unit_price}")

    return LineItem(name, quantity, unit_price)


class PendingCart(db.Model):
    __tablename__ = "pending_carts"

    id = db.Column(
        db.String(64), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_email = db.Column(db.String(255), nullable=False)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(50), nullable=True)
    delivery_address = db.Column(db.Text, nullable=True)
    items = db.Column(
        db.JSON, nullable=False, default=list
    )  # [{"product_name": ..., "quantity": 2, "unit_price": "8.50"}, ...]
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_consumed(self):
        return self.consumed_at is not None

    def line_items(self):
        """Return the cart lines as LineItems. Raises InvalidCart."""
        if not self.items:
            raise InvalidCart(f"Cart {self.id} has no items")
        return [parse_line_item(raw) for raw in self.items]

    def __repr__(self):
        return f"<PendingCart {self.id} ({self.customer_email})>"
