"""Notification service: merchant alert and customer receipt for an order.

Each role is composed from a fixed template and sent on its own, with a few
immediate retries. A failure for one role never stops the other, and
nothing raised here may reach the webhook response: by the time we get
here the order is already committed.
"""

import logging
from datetime import datetime, timezone

from flask import current_app, render_template
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.errors import MailDeliveryError, NotificationFailure
from fulfillment.extensions import db, mailer
from fulfillment.models.notification import NotificationRecord
from fulfillment.models.order import Order
from fulfillment.services.order_service import advance_status, format_amount

logger = logging.getLogger(__name__)

ROLES = ("merchant", "customer")


# ──────────────────────────────────────────────
# Composition
# ──────────────────────────────────────────────

def _template_context(order):
    currency = order.currency
    lines = [
        {
            "product_name": line.product_name,
            "quantity": line.quantity,
            "unit_price": format_amount(line.unit_price, currency=currency),
            "line_total": format_amount(line.unit_price * line.quantity, currency=currency),
        }
        for line in order.line_items()
    ]
    return {
        "order_id": order.id,
        "customer_name": order.customer_name or "",
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "delivery_address": order.delivery_address,
        "payment_reference_id": order.payment_reference_id,
        "lines": lines,
        "total": format_amount(order.total_amount, currency=currency),
        "shop_name": current_app.config.get("MAIL_FROM_NAME") or "",
    }


def compose_message(order, role):
    """Return (recipient, subject, html) for one notification role."""
    context = _template_context(order)
    if role == "merchant":
        return (
            current_app.config.get("MERCHANT_ORDER_EMAIL"),
            f"New order from {order.customer_email}",
            render_template("emails/merchant_order.html", **context),
        )
    if role == "customer":
        return (
            order.customer_email,
            "Thank you for your order!",
            render_template("emails/customer_receipt.html", **context),
        )
    raise ValueError(f"Unknown notification role: {role}")


# ──────────────────────────────────────────────
# Dispatch
# ──────────────────────────────────────────────

def _send_with_retries(recipient, subject, html):
    """Try mailer.send up to NOTIFICATION_MAX_ATTEMPTS times.

    Returns (attempts, last_error). last_error is None on success.
    """
    max_attempts = max(1, current_app.config.get("NOTIFICATION_MAX_ATTEMPTS", 2))
    last_error = None
    for attempt in range(1, max_attempts + 1):
        try:
            mailer.send(
                sender=mailer.default_sender,
                recipient=recipient,
                subject=subject,
                html=html,
            )
            return attempt, None
        except MailDeliveryError as e:
            last_error = e
            logger.warning(
                f"Attempt {attempt}/{max_attempts} to {recipient} failed: {e}"
            )
    return max_attempts, last_error


def _notify(order, role):
    """Compose and send one role. Always returns a NotificationRecord."""
    recipient = None
    attempts = 0
    error = None
    try:
        recipient, subject, html = compose_message(order, role)
        attempts, error = _send_with_retries(recipient, subject, html)
    except Exception as e:
        # Never let a template or transport bug escape into the webhook
        error = e

    if error is not None:
        failure = NotificationFailure(role, recipient, error)
        logger.error(f"Order {order.id}: {failure}")
    else:
        logger.info(f"Order {order.id}: {role} notification sent to {recipient}")

    record = NotificationRecord(
        order_id=order.id,
        recipient_role=role,
        recipient=recipient,
        delivery_outcome="failed" if error is not None else "sent",
        attempts=attempts,
        error=str(error) if error is not None else None,
        attempted_at=datetime.now(timezone.utc),
    )
    db.session.add(record)
    return record


def dispatch_order_notifications(order, roles=ROLES):
    """Send the requested notifications for a committed order.

    Advances the order to "complete" when every role has been sent at least
    once, otherwise to "notified". Returns the NotificationRecords created.
    Never raises.
    """
    records = [_notify(order, role) for role in roles]

    try:
        sent_roles = {
            r.recipient_role
            for r in NotificationRecord.query.filter_by(
                order_id=order.id, delivery_outcome="sent"
            ).all()
        }
        sent_roles.update(r.recipient_role for r in records if r.delivery_outcome == "sent")
        new_status = "complete" if sent_roles.issuperset(ROLES) else "notified"
        advance_status(order, new_status)
        db.session.commit()
    except (SQLAlchemyError, ValueError) as e:
        db.session.rollback()
        logger.error(f"Could not record notification outcome for order {order.id}: {e}")

    return records


def pending_roles(order):
    """Roles that have never been sent successfully for this order."""
    sent = {
        r.recipient_role
        for r in order.notifications
        if r.delivery_outcome == "sent"
    }
    return [role for role in ROLES if role not in sent]


def resend_failed_notifications(limit=50):
    """Best-effort resend for orders whose notifications didn't all go out.

    Runs outside the webhook request cycle (see `flask retry-notifications`).
    Returns the number of orders retried.
    """
    orders = (
        Order.query
        .filter(Order.status.in_(["created", "notified"]))
        .order_by(Order.created_at.asc())
        .limit(limit)
        .all()
    )
    retried = 0
    for order in orders:
        roles = pending_roles(order)
        if not roles:
            continue
        logger.info(f"Resending {', '.join(roles)} notification(s) for order {order.id}")
        dispatch_order_notifications(order, roles=roles)
        retried += 1
    return retried
