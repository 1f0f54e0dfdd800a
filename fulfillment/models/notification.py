"""Notification record model.

One row per dispatch attempt of one notification role for an order.
Used for observability and to find orders whose emails need a resend.
"""

import uuid

from fulfillment.extensions import db


class NotificationRecord(db.Model):
    __tablename__ = "notification_records"

    ROLES = ["merchant", "customer"]
    OUTCOMES = ["sent", "failed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False
    )
    recipient_role = db.Column(db.String(20), nullable=False)  # merchant | customer
    recipient = db.Column(db.String(255), nullable=True)
    delivery_outcome = db.Column(db.String(20), nullable=False)  # sent | failed
    attempts = db.Column(db.Integer, nullable=False, default=1)
    error = db.Column(db.Text, nullable=True)
    attempted_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # --- Relationships ---
    order = db.relationship("Order", back_populates="notifications")

    def __repr__(self):
        return f"<NotificationRecord {self.recipient_role} {self.delivery_outcome}>"
