"""Idempotency service: atomic per-cart claims.

Responsible for:
- Claiming a staged cart for fulfillment with a single conditional insert
- Taking over claims abandoned by a crashed worker
- Releasing a claim after a transient failure so Stripe's retry can proceed
- Marking a claim rejected for permanent business failures

A claim row is committed on its own, before any other fulfillment work, so
that a concurrent delivery of the same checkout sees it immediately.
"""

import enum
import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fulfillment.errors import PersistenceFailure
from fulfillment.extensions import db
from fulfillment.models.claim import FulfillmentClaim

logger = logging.getLogger(__name__)


class ClaimResult(enum.Enum):
    PROCEED = "proceed"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"


def claim_cart(cart_id, event_id):
    """Try to take ownership of fulfilling cart_id for event_id.

    Returns a ClaimResult. Raises PersistenceFailure on database errors.
    """
    now = datetime.now(timezone.utc)
    try:
        db.session.execute(
            insert(FulfillmentClaim).values(
                cart_id=cart_id,
                event_id=event_id,
                status="in_progress",
                claimed_at=now,
            )
        )
        db.session.commit()
        logger.info(f"Claimed cart {cart_id} for event {event_id}")
        return ClaimResult.PROCEED
    except IntegrityError:
        db.session.rollback()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistenceFailure(f"Could not claim cart {cart_id}: {e}") from e

    try:
        existing = db.session.get(FulfillmentClaim, cart_id)
        if existing is None:
            # Holder released it between our insert and this read
            raise PersistenceFailure(f"Claim for cart {cart_id} changed under us")

        holder = existing.event_id
        if existing.is_settled:
            logger.info(
                f"Cart {cart_id} already {existing.status} "
                f"(event {holder}), skipping event {event_id}"
            )
            return ClaimResult.ALREADY_PROCESSED

        if _take_over_stale_claim(cart_id, event_id, now):
            logger.warning(
                f"Took over stale claim on cart {cart_id} "
                f"from event {holder} for event {event_id}"
            )
            return ClaimResult.PROCEED
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistenceFailure(f"Could not inspect claim for cart {cart_id}: {e}") from e

    if holder == event_id:
        # Same event again: its earlier attempt may have died holding the claim
        logger.warning(
            f"Event {event_id} redelivered while it still holds the claim on "
            f"cart {cart_id}; retry after CLAIM_STALE_SECONDS if no order appears"
        )
    else:
        logger.info(f"Cart {cart_id} is being fulfilled by event {holder}")
    return ClaimResult.IN_PROGRESS


def _take_over_stale_claim(cart_id, event_id, now):
    """Conditionally re-point an abandoned in_progress claim at event_id.

    The WHERE clause makes this a compare-and-set: only one of several
    concurrent takers can match the old claimed_at.
    """
    stale_after = current_app.config.get("CLAIM_STALE_SECONDS", 600)
    cutoff = now - timedelta(seconds=stale_after)
    result = db.session.execute(
        update(FulfillmentClaim)
        .where(
            FulfillmentClaim.cart_id == cart_id,
            FulfillmentClaim.status == "in_progress",
            FulfillmentClaim.claimed_at < cutoff,
        )
        .values(event_id=event_id, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def get_claim(cart_id, event_id):
    """Return the in_progress claim held by event_id, or None."""
    claim = db.session.get(FulfillmentClaim, cart_id)
    if claim and claim.event_id == event_id and claim.status == "in_progress":
        return claim
    return None


def release_claim(cart_id, event_id):
    """Drop an in_progress claim so a redelivery can try again.

    Failures here are logged, not raised: the claim will go stale and be
    taken over by a later delivery.
    """
    try:
        db.session.execute(
            delete(FulfillmentClaim)
            .where(
                FulfillmentClaim.cart_id == cart_id,
                FulfillmentClaim.event_id == event_id,
                FulfillmentClaim.status == "in_progress",
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        logger.info(f"Released claim on cart {cart_id} held by event {event_id}")
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to release claim on cart {cart_id}: {e}")


def reject_claim(cart_id, event_id, reason):
    """Settle a claim as rejected so redeliveries acknowledge without work."""
    try:
        db.session.execute(
            update(FulfillmentClaim)
            .where(
                FulfillmentClaim.cart_id == cart_id,
                FulfillmentClaim.event_id == event_id,
                FulfillmentClaim.status == "in_progress",
            )
            .values(status="rejected", reason=reason[:255])
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to mark claim on cart {cart_id} rejected: {e}")


def complete_claim(cart_id, event_id, order_id):
    """Settle a claim as completed outside the finalize transaction.

    Used when finalize finds an order for this checkout already exists,
    e.g. a stale claim was taken over while the first worker still finished.
    """
    try:
        db.session.execute(
            update(FulfillmentClaim)
            .where(
                FulfillmentClaim.cart_id == cart_id,
                FulfillmentClaim.event_id == event_id,
            )
            .values(status="completed", order_id=order_id)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to mark claim on cart {cart_id} completed: {e}")
