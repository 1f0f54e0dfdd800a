"""Order model.

The durable record of a completed purchase. Line items are copied from the
staged cart at finalization time. Unique constraints on cart_id and
payment_reference_id back the crash-safety of finalization: a second insert
for the same checkout fails instead of producing a duplicate order.
"""

import uuid

from fulfillment.extensions import db
from fulfillment.models.cart import parse_line_item


class Order(db.Model):
    __tablename__ = "orders"

    # -- Valid statuses --
    STATUSES = ["created", "notified", "complete"]

    # -- Valid status transitions (enforced in order_service) --
    VALID_TRANSITIONS = {
        "created": ["notified", "complete"],
        "notified": ["complete"],
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    cart_id = db.Column(db.String(64), unique=True, nullable=False)
    payment_reference_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "pi_3Abc..."
    customer_email = db.Column(db.String(255), nullable=False)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(50), nullable=True)
    delivery_address = db.Column(db.Text, nullable=True)
    items = db.Column(db.JSON, nullable=False, default=list)
    total_amount_minor = db.Column(db.Integer, nullable=False)  # pence / cents
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(
        db.String(50), default="created", nullable=False
    )  # created | notified | complete
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    notifications = db.relationship(
        "NotificationRecord",
        back_populates="order",
        order_by="NotificationRecord.attempted_at",
    )

    @property
    def total_amount(self):
        """Total in major units as a Decimal."""
        from fulfillment.services.order_service import from_minor_units

        return from_minor_units(self.total_amount_minor, self.currency)

    def line_items(self):
        return [parse_line_item(raw) for raw in self.items]

    def can_transition_to(self, new_status):
        return new_status in self.VALID_TRANSITIONS.get(self.status, [])

    def __repr__(self):
        return f"<Order {self.id} ({self.status})>"
