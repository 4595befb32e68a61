"""
Delivery provisioning.

A delivery record is created the first time an order is accepted. The
acceptance writes a PendingEffect row in its own transaction; the effect is
attempted right away and, if the customer directory is unreachable, stays
pending until an operator retries it.
"""
import logging
from datetime import datetime, time
from typing import List, Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .clients import customers_client
from .config import KITCHEN_ADDRESS, KITCHEN_LANDMARK, KITCHEN_LATITUDE, KITCHEN_LONGITUDE
from .exceptions import FulfillmentError, NotFound

logger = logging.getLogger(__name__)

PLACEHOLDER_DROP_OFF = "Customer Address"


def enqueue_provisioning(db: Session, order_id: str) -> models.PendingEffect:
    """Record that the order needs a delivery. Joins the caller's transaction."""
    effect = models.PendingEffect(
        effect_type=models.EffectType.PROVISION_DELIVERY.value,
        order_id=order_id,
        status=models.EffectStatus.PENDING.value,
        attempts=0,
    )
    db.add(effect)
    return effect


def _drop_off(customer: dict) -> dict:
    address = customer.get("address") or {}
    if isinstance(address, str):
        address = {"address": address}
    if not address.get("address"):
        logger.warning(f"Customer {customer.get('id')} has no stored address, using a placeholder drop-off")
    return {
        "to_address": address.get("address") or PLACEHOLDER_DROP_OFF,
        "to_latitude": float(address.get("latitude") or 0.0),
        "to_longitude": float(address.get("longitude") or 0.0),
        "to_landmark": address.get("landmark") or "",
    }


async def provision(db: Session, order: models.Order, token: Optional[str] = None) -> models.Delivery:
    """
    Create the delivery for an order unless one already exists.

    Pickup is the kitchen, drop-off is the customer's stored address (a
    placeholder when none is stored) and the estimated delivery time is the
    scheduled date.

    Raises:
        NotFound: customer unknown to the directory
        httpx.HTTPError: customer directory unreachable
    """
    existing = crud.get_delivery_for_order(db, order.id)
    if existing is not None:
        return existing

    customer = await customers_client.get_customer(order.customer_id, token)
    if customer is None:
        raise NotFound(f"Customer {order.customer_id} not found")

    delivery = models.Delivery(
        order_id=order.id,
        customer_id=order.customer_id,
        driver_id=order.driver_id,
        from_address=KITCHEN_ADDRESS,
        from_latitude=KITCHEN_LATITUDE,
        from_longitude=KITCHEN_LONGITUDE,
        from_landmark=KITCHEN_LANDMARK,
        estimated_delivery_time=datetime.combine(order.scheduled_for_date, time.min),
        delivery_notes=f"Meal Type: {order.meal_type}, Packaging: {order.packaging_type}",
        outcome=models.DeliveryOutcome.PENDING.value,
        **_drop_off(customer),
    )
    db.add(delivery)
    try:
        db.commit()
    except IntegrityError:
        # Provisioned concurrently
        db.rollback()
        existing = crud.get_delivery_for_order(db, order.id)
        if existing is None:
            raise
        return existing

    db.refresh(delivery)
    logger.info(f"Provisioned delivery {delivery.id} for order {order.id}")
    return delivery


async def run_effect(db: Session, effect: models.PendingEffect, token: Optional[str] = None) -> bool:
    """
    Attempt one pending effect and record the outcome on it. Failures are
    logged and kept on the effect, never raised.

    Returns:
        True if the effect completed
    """
    error = None
    try:
        order = crud.get_order(db, effect.order_id, include_deleted=True)
        if order is None:
            raise NotFound(f"Order {effect.order_id} not found")
        await provision(db, order, token)
    except (FulfillmentError, httpx.HTTPError) as e:
        db.rollback()
        error = str(e) or e.__class__.__name__
    except Exception as e:
        db.rollback()
        error = f"{e.__class__.__name__}: {e}"
        logger.exception(f"Unexpected error provisioning delivery for order {effect.order_id}")

    effect.attempts += 1
    if error is None:
        effect.status = models.EffectStatus.DONE.value
        effect.processed_at = datetime.utcnow()
        effect.last_error = None
    else:
        effect.last_error = error
        logger.error(
            f"Delivery provisioning for order {effect.order_id} failed "
            f"(attempt {effect.attempts}): {error}"
        )
    db.commit()
    return error is None


async def run_pending_for_order(db: Session, order_id: str, token: Optional[str] = None) -> bool:
    effect = (
        db.query(models.PendingEffect)
        .filter(
            models.PendingEffect.order_id == order_id,
            models.PendingEffect.effect_type == models.EffectType.PROVISION_DELIVERY.value,
            models.PendingEffect.status == models.EffectStatus.PENDING.value,
        )
        .first()
    )
    if effect is None:
        return True
    return await run_effect(db, effect, token)


def list_pending_effects(db: Session, include_done: bool = False) -> List[models.PendingEffect]:
    query = db.query(models.PendingEffect)
    if not include_done:
        query = query.filter(models.PendingEffect.status == models.EffectStatus.PENDING.value)
    return query.order_by(models.PendingEffect.created_at.asc(), models.PendingEffect.id.asc()).all()


async def retry_pending_effects(db: Session, token: Optional[str] = None, limit: int = 50) -> schemas.RetryResult:
    """Re-run pending provisioning effects, oldest first."""
    effects = list_pending_effects(db)[:limit]
    succeeded = 0
    for effect in effects:
        if await run_effect(db, effect, token):
            succeeded += 1
    logger.info(f"Retried {len(effects)} pending effect(s): {succeeded} succeeded")
    return schemas.RetryResult(attempted=len(effects), succeeded=succeeded, failed=len(effects) - succeeded)
