"""Fulfillment error taxonomy.

Each error says whether the payment processor should redeliver the event.
Only retryable errors turn into a 5xx response; everything else is
acknowledged so Stripe stops retrying a request that can never succeed.
"""


class FulfillmentError(Exception):
    """Base class for pipeline failures."""

    retryable = False


class SignatureInvalid(FulfillmentError):
    """Forged, expired or unparseable webhook request (400)."""


class MalformedMetadata(FulfillmentError):
    """Event does not carry the staged cart reference."""


class CartNotFound(FulfillmentError):
    """Cart never existed or was already consumed by a finalized order."""

    def __init__(self, cart_id):
        super().__init__(f"Cart {cart_id} not found or already consumed")
        self.cart_id = cart_id


class InvalidCart(FulfillmentError):
    """Cart exists but its lines cannot be fulfilled."""


class AmountMismatch(FulfillmentError):
    """Reported payment total disagrees with the cart's line items."""

    def __init__(self, cart_id, expected, reported):
        super().__init__(
            f"Cart {cart_id} totals {expected} but processor reported {reported}"
        )
        self.cart_id = cart_id
        self.expected = expected
        self.reported = reported


class OrderAlreadyFinalized(FulfillmentError):
    """An order already exists for this cart or payment reference."""

    def __init__(self, order):
        super().__init__(f"Order {order.id} already finalized")
        self.order = order


class PersistenceFailure(FulfillmentError):
    """Database fault during claim or finalize. Stripe should retry."""

    retryable = True


class NotificationFailure(FulfillmentError):
    """A notification could not be delivered. Logged, never escalated."""

    def __init__(self, role, recipient, cause):
        super().__init__(f"{role} notification to {recipient} failed: {cause}")
        self.role = role
        self.recipient = recipient
        self.cause = cause


class MailDeliveryError(Exception):
    """Raised by the mail transport when a message could not be handed off."""
