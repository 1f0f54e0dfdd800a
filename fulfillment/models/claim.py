"""Fulfillment claim model (idempotency guard).

One row per staged cart. The primary key on cart_id is the atomic claim:
the first delivery to insert the row owns fulfillment, concurrent
deliveries hit the unique constraint and back off.
"""

from fulfillment.extensions import db


class FulfillmentClaim(db.Model):
    __tablename__ = "fulfillment_claims"

    # -- Valid statuses --
    STATUSES = ["in_progress", "completed", "rejected"]

    cart_id = db.Column(db.String(64), primary_key=True)
    event_id = db.Column(db.String(255), nullable=False)  # claiming Stripe event
    status = db.Column(
        db.String(50), nullable=False, default="in_progress"
    )  # in_progress | completed | rejected
    reason = db.Column(db.String(255), nullable=True)  # why it was rejected
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=True
    )
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_settled(self):
        return self.status in ("completed", "rejected")

    def __repr__(self):
        return f"<FulfillmentClaim {self.cart_id} ({self.status})>"
