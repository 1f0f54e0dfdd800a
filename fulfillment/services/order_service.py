"""Order service: turn a claimed cart into a durable order.

Responsible for:
- Money helpers (minor-unit conversion, cart totals)
- Reconciling the cart total with the amount Stripe reports
- Creating the Order, consuming the cart and completing the claim in
  one transaction
- Enforcing the order status state machine
"""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fulfillment.errors import AmountMismatch, OrderAlreadyFinalized, PersistenceFailure
from fulfillment.extensions import db
from fulfillment.models.order import Order

logger = logging.getLogger(__name__)

# Stripe charges these in whole units (no minor unit)
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}


def currency_exponent(currency):
    return 0 if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount, currency):
    """Decimal major units -> integer minor units (e.g. 20.00 GBP -> 2000)."""
    exponent = currency_exponent(currency)
    scaled = (Decimal(amount) * (10 ** exponent)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(scaled)


def from_minor_units(amount_minor, currency):
    """Integer minor units -> Decimal major units (e.g. 2000 -> 20.00)."""
    exponent = currency_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return (Decimal(int(amount_minor)) / (10 ** exponent)).quantize(quantum)


def cart_total(lines):
    """Sum of quantity x unit_price over LineItems."""
    return sum((line.unit_price * line.quantity for line in lines), Decimal("0"))


def format_amount(amount, symbol=None, currency=None):
    """Render an amount for humans, e.g. £20.00 or JPY 2,000.

    The configured CURRENCY_SYMBOL is only used for the configured
    CURRENCY_CODE; other currencies are prefixed with their code.
    """
    shop_currency = current_app.config.get("CURRENCY_CODE", "gbp")
    currency = currency or shop_currency
    if symbol is None:
        if currency.lower() == shop_currency.lower():
            symbol = current_app.config.get("CURRENCY_SYMBOL", "")
        else:
            symbol = f"{currency.upper()} "
    places = currency_exponent(currency)
    return f"{symbol}{Decimal(amount):,.{places}f}"


def reconcile_total(cart, lines, reported_total):
    """Raise AmountMismatch if the reported total differs from the lines."""
    tolerance = Decimal(str(current_app.config.get("AMOUNT_TOLERANCE", "0.01")))
    expected = cart_total(lines)
    reported = Decimal(reported_total)
    if abs(expected - reported) > tolerance:
        raise AmountMismatch(cart.id, expected, reported)
    return expected


def finalize_order(cart, claim, payment_reference_id, reported_total, currency):
    """Create the Order for a claimed cart.

    The order insert, the cart consumption and the claim completion share a
    single commit. If another worker already finalized this checkout, the
    unique constraints fire and OrderAlreadyFinalized carries the existing
    order.

    Args:
        cart:                 PendingCart resolved for this event.
        claim:                The in_progress FulfillmentClaim held for it.
        payment_reference_id: Stripe payment intent (or session) id.
        reported_total:       Decimal total in major units from Stripe.
        currency:             ISO currency code from Stripe.

    Returns the committed Order.
    Raises AmountMismatch, OrderAlreadyFinalized, PersistenceFailure.
    """
    lines = cart.line_items()
    expected_total = reconcile_total(cart, lines, reported_total)

    currency = (currency or current_app.config.get("CURRENCY_CODE", "gbp")).lower()

    order = Order(
        cart_id=cart.id,
        payment_reference_id=payment_reference_id,
        customer_email=cart.customer_email,
        customer_name=cart.customer_name,
        customer_phone=cart.customer_phone,
        delivery_address=cart.delivery_address,
        # Copy, not reference: the order must not follow later cart edits
        items=[
            {
                "product_name": line.product_name,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
            }
            for line in lines
        ],
        total_amount_minor=to_minor_units(expected_total, currency),
        currency=currency,
        status="created",
    )
    db.session.add(order)

    try:
        db.session.flush()
        cart.consumed_at = datetime.now(timezone.utc)
        claim.status = "completed"
        claim.order_id = order.id
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        existing = find_existing_order(cart.id, payment_reference_id)
        if existing is not None:
            raise OrderAlreadyFinalized(existing) from e
        raise PersistenceFailure(f"Could not finalize cart {cart.id}: {e}") from e
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistenceFailure(f"Could not finalize cart {cart.id}: {e}") from e

    logger.info(
        f"Finalized order {order.id} for cart {cart.id} "
        f"(payment {payment_reference_id}, total {order.total_amount} {currency.upper()})"
    )
    return order


def find_existing_order(cart_id, payment_reference_id):
    """Return an Order already created for this cart or payment, or None."""
    return Order.query.filter(
        or_(
            Order.cart_id == cart_id,
            Order.payment_reference_id == payment_reference_id,
        )
    ).first()


def advance_status(order, new_status):
    """Move an order forward in created -> notified -> complete.

    Returns True if the status changed. Staying put is allowed; moving
    backwards or skipping into an unknown state raises ValueError.
    """
    if new_status not in Order.STATUSES:
        raise ValueError(f"Unknown order status: {new_status}")
    if order.status == new_status:
        return False
    if not order.can_transition_to(new_status):
        raise ValueError(
            f"Invalid order transition {order.status} -> {new_status}"
        )
    order.status = new_status
    db.session.flush()
    return True
