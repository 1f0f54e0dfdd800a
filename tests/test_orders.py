"""Tests for cart resolution, money helpers and order finalization.

Covers:
- Cart lookup (missing, consumed, malformed lines, missing metadata)
- Minor-unit conversion and cart totals
- Finalization success and AmountMismatch
- Unique-constraint fallback to OrderAlreadyFinalized
- Order status transitions
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fulfillment.errors import (
    AmountMismatch,
    CartNotFound,
    InvalidCart,
    MalformedMetadata,
    OrderAlreadyFinalized,
)
from fulfillment.extensions import db
from fulfillment.models.cart import LineItem, PendingCart
from fulfillment.models.claim import FulfillmentClaim
from fulfillment.models.order import Order
from fulfillment.services.cart_service import cart_id_from_session, resolve_cart
from fulfillment.services.idempotency_service import claim_cart, get_claim
from fulfillment.services.order_service import (
    advance_status,
    cart_total,
    finalize_order,
    format_amount,
    from_minor_units,
    to_minor_units,
)


def _claimed(cart_id, event_id="evt_test"):
    claim_cart(cart_id, event_id)
    return get_claim(cart_id, event_id)


class TestCartResolver:

    def test_resolves_staged_cart(self, staged_cart):
        cart = resolve_cart(staged_cart)
        assert cart.customer_email == "ada@example.com"
        assert [line.quantity for line in cart.line_items()] == [2, 1]

    def test_missing_cart(self, db_session):
        with pytest.raises(CartNotFound):
            resolve_cart("nope")

    def test_consumed_cart_is_not_found(self, staged_cart):
        cart = db.session.get(PendingCart, staged_cart)
        cart.consumed_at = datetime.now(timezone.utc)
        db.session.commit()

        with pytest.raises(CartNotFound):
            resolve_cart(staged_cart)

    @pytest.mark.parametrize("items", [
        [],
        [{"product_name": "Rice", "quantity": 0, "unit_price": "1.00"}],
        [{"product_name": "Rice", "quantity": 1.5, "unit_price": "1.00"}],
        [{"product_name": "Rice", "quantity": 1, "unit_price": "-1"}],
        [{"product_name": "Rice", "quantity": 1, "unit_price": "free"}],
        [{"product_name": "", "quantity": 1, "unit_price": "1.00"}],
    ])
    def test_unfulfillable_lines(self, db_session, items):
        db.session.add(PendingCart(id="bad", customer_email="x@example.com", items=items))
        db.session.commit()

        with pytest.raises(InvalidCart):
            resolve_cart("bad")

    def test_cart_id_from_metadata(self, app):
        assert cart_id_from_session({"metadata": {"cartId": "abc"}}) == "abc"

    def test_missing_metadata(self, app):
        with pytest.raises(MalformedMetadata):
            cart_id_from_session({"id": "cs_1", "metadata": {}})
        with pytest.raises(MalformedMetadata):
            cart_id_from_session({"id": "cs_1"})


class TestMoney:

    def test_minor_unit_conversion(self):
        assert to_minor_units(Decimal("20.00"), "gbp") == 2000
        assert to_minor_units(Decimal("8.505"), "usd") == 851
        assert from_minor_units(2000, "gbp") == Decimal("20.00")
        assert str(from_minor_units(1999, "eur")) == "19.99"

    def test_zero_decimal_currency(self):
        assert to_minor_units(Decimal("1500"), "jpy") == 1500
        assert from_minor_units(1500, "JPY") == Decimal("1500")

    def test_cart_total(self):
        lines = [
            LineItem("Jollof Rice", 2, Decimal("8.50")),
            LineItem("Plantain", 1, Decimal("3.00")),
        ]
        assert cart_total(lines) == Decimal("20.00")
        assert cart_total([]) == Decimal("0")

    def test_format_amount(self, app):
        assert format_amount(Decimal("20")) == "£20.00"
        assert format_amount(Decimal("1234.5"), "$") == "$1,234.50"

    def test_format_amount_follows_currency(self, app):
        assert format_amount(Decimal("2000"), currency="jpy") == "JPY 2,000"
        assert format_amount(Decimal("19.5"), currency="usd") == "USD 19.50"
        assert format_amount(Decimal("19.5"), currency="GBP") == "£19.50"


class TestFinalizeOrder:

    def test_matching_total_finalizes(self, staged_cart):
        cart = resolve_cart(staged_cart)
        order = finalize_order(
            cart, _claimed(staged_cart), "pi_1", Decimal("20.00"), "gbp"
        )

        assert order.total_amount == Decimal("20.00")
        assert order.status == "created"
        assert order.items[0] == {
            "product_name": "Jollof Rice",
            "quantity": 2,
            "unit_price": "8.50",
        }
        assert db.session.get(PendingCart, staged_cart).consumed_at is not None
        claim = db.session.get(FulfillmentClaim, staged_cart)
        assert claim.status == "completed"
        assert claim.order_id == order.id

    def test_lines_are_copied_not_shared(self, staged_cart):
        cart = resolve_cart(staged_cart)
        order = finalize_order(
            cart, _claimed(staged_cart), "pi_1", Decimal("20.00"), "gbp"
        )
        cart.items = [{"product_name": "Changed", "quantity": 1, "unit_price": "1"}]
        db.session.commit()

        assert db.session.get(Order, order.id).items[0]["product_name"] == "Jollof Rice"

    def test_mismatched_total_creates_nothing(self, staged_cart):
        cart = resolve_cart(staged_cart)
        with pytest.raises(AmountMismatch) as exc:
            finalize_order(
                cart, _claimed(staged_cart), "pi_1", Decimal("19.00"), "gbp"
            )

        assert exc.value.expected == Decimal("20.00")
        assert exc.value.reported == Decimal("19.00")
        assert Order.query.count() == 0
        assert db.session.get(PendingCart, staged_cart).consumed_at is None

    def test_rounding_within_tolerance(self, staged_cart):
        cart = resolve_cart(staged_cart)
        order = finalize_order(
            cart, _claimed(staged_cart), "pi_1", Decimal("20.01"), "gbp"
        )
        assert order.total_amount == Decimal("20.00")

    def test_duplicate_payment_reference(self, staged_cart):
        """A second cart paid by the same payment intent can't make a second order."""
        first = finalize_order(
            resolve_cart(staged_cart), _claimed(staged_cart),
            "pi_dup", Decimal("20.00"), "gbp",
        )

        db.session.add(PendingCart(
            id="cart_two",
            customer_email="ada@example.com",
            items=[{"product_name": "Rice", "quantity": 1, "unit_price": "20.00"}],
        ))
        db.session.commit()

        with pytest.raises(OrderAlreadyFinalized) as exc:
            finalize_order(
                resolve_cart("cart_two"), _claimed("cart_two"),
                "pi_dup", Decimal("20.00"), "gbp",
            )

        assert exc.value.order.id == first.id
        assert Order.query.count() == 1
        assert db.session.get(PendingCart, "cart_two").consumed_at is None


class TestOrderStatus:

    def _order(self):
        order = Order(
            cart_id="c1",
            payment_reference_id="pi_1",
            customer_email="a@example.com",
            items=[],
            total_amount_minor=100,
            currency="gbp",
            status="created",
        )
        db.session.add(order)
        db.session.commit()
        return order

    def test_forward_transitions(self, db_session):
        order = self._order()
        assert advance_status(order, "notified") is True
        assert advance_status(order, "complete") is True
        assert advance_status(order, "complete") is False

    def test_created_can_jump_to_complete(self, db_session):
        order = self._order()
        assert advance_status(order, "complete") is True

    def test_no_regression(self, db_session):
        order = self._order()
        advance_status(order, "complete")
        with pytest.raises(ValueError):
            advance_status(order, "notified")
        assert order.status == "complete"

    def test_unknown_status(self, db_session):
        with pytest.raises(ValueError):
            advance_status(self._order(), "shipped")
