"""
Delivery progress tracking and the driver app operations.

A delivery moves PICKED_UP -> OUT_FOR_DELIVERY -> DELIVERED or FAILED.
Completing it either way releases the bound driver. A failed delivery
leaves the order as it is; staff decide whether to fail the order.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, drivers, models, state_machine
from .exceptions import NotFound, StateConflict, ValidationFailed

logger = logging.getLogger(__name__)

PICKED_UP = "PICKED_UP"
OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
DELIVERED = "DELIVERED"
FAILED = "FAILED"
DELIVERY_STEPS = (PICKED_UP, OUT_FOR_DELIVERY, DELIVERED, FAILED)


def derive_outcome(delivery: models.Delivery) -> models.DeliveryOutcome:
    if delivery.delivered_at is not None:
        return models.DeliveryOutcome.DELIVERED
    if delivery.failed_to_deliver_at is not None:
        return models.DeliveryOutcome.FAILED
    if delivery.picked_up_at is not None or delivery.out_for_delivery_at is not None:
        return models.DeliveryOutcome.IN_PROGRESS
    return models.DeliveryOutcome.PENDING


def _is_complete(delivery: models.Delivery) -> bool:
    return delivery.delivered_at is not None or delivery.failed_to_deliver_at is not None


def _apply_step(delivery: models.Delivery, step: str, failed_message: Optional[str], now: datetime) -> None:
    if _is_complete(delivery):
        raise StateConflict("Delivery is already completed")

    if step == PICKED_UP:
        if delivery.picked_up_at is not None:
            raise StateConflict("Delivery is already picked up")
        delivery.picked_up_at = now
    elif step == OUT_FOR_DELIVERY:
        if delivery.picked_up_at is None:
            raise StateConflict("Delivery must be picked up first")
        if delivery.out_for_delivery_at is not None:
            raise StateConflict("Delivery is already out for delivery")
        delivery.out_for_delivery_at = now
    elif step == DELIVERED:
        if delivery.out_for_delivery_at is None:
            raise StateConflict("Delivery must be out for delivery first")
        delivery.delivered_at = now
    elif step == FAILED:
        if not (failed_message or "").strip():
            raise ValidationFailed("A failure message is required")
        delivery.failed_to_deliver_at = now
        delivery.failed_message = failed_message.strip()

    delivery.outcome = derive_outcome(delivery).value


def update_delivery_status(
    db: Session,
    delivery: models.Delivery,
    requested: str,
    failed_message: Optional[str] = None,
    actor: Optional[str] = None,
) -> models.Delivery:
    """
    Record a delivery progress step.

    Raises:
        ValidationFailed: unknown step, or FAILED without a message
        StateConflict: step out of order or delivery already completed
    """
    step = (requested or "").strip().upper()
    if step not in DELIVERY_STEPS:
        raise ValidationFailed(f"Invalid delivery status: {requested}. Must be one of {', '.join(DELIVERY_STEPS)}")

    _apply_step(delivery, step, failed_message, datetime.utcnow())
    if step in (DELIVERED, FAILED):
        drivers.release_driver(db, delivery.order_id, stamp_delivery=True)

    crud.log_order_event(
        db, delivery.order_id, "delivery_updated",
        f"Delivery {step.lower().replace('_', ' ')}"
        + (f": {delivery.failed_message}" if step == FAILED else ""),
        new_value=delivery.outcome,
        actor=actor,
    )
    db.commit()
    db.refresh(delivery)
    if step == FAILED:
        logger.warning(f"Delivery {delivery.id} for order {delivery.order_id} failed: {delivery.failed_message}")
    return delivery


def assign_driver_to_delivery(
    db: Session,
    delivery: models.Delivery,
    driver_id: int,
    actor: Optional[str] = None,
) -> models.Delivery:
    """Manual assignment addressed through the delivery; binds the order too."""
    if _is_complete(delivery):
        raise StateConflict("Delivery is already completed")
    order = crud.get_order_or_404(db, delivery.order_id)
    drivers.assign_driver(db, order, driver_id, actor=actor)
    db.refresh(delivery)
    return delivery


def _assigned_order(db: Session, driver: models.DeliveryDriver, order_id: str):
    order = crud.get_order(db, order_id)
    if order is None or order.driver_id != driver.id:
        raise NotFound("Order not found or not assigned to you")
    delivery = crud.get_delivery_for_order(db, order_id)
    if delivery is None:
        raise StateConflict("Delivery has not been provisioned yet")
    return order, delivery


async def pickup(db: Session, driver: models.DeliveryDriver, order_id: str, actor: Optional[str] = None) -> models.Order:
    """
    Driver collects the order from the kitchen.

    The delivery is marked picked up and out for delivery; the order moves
    to OUT_FOR_DELIVERY if the kitchen had not already marked it ready.
    """
    order, delivery = _assigned_order(db, driver, order_id)
    if order.status not in (models.OrderStatus.PREPARING.value, models.OrderStatus.OUT_FOR_DELIVERY.value):
        raise StateConflict("Order is not ready for pickup")
    if delivery.picked_up_at is not None:
        raise StateConflict("Delivery is already picked up")

    now = datetime.utcnow()
    _apply_step(delivery, PICKED_UP, None, now)
    _apply_step(delivery, OUT_FOR_DELIVERY, None, now)
    order.picked_up_at = now
    crud.log_order_event(db, order.id, "delivery_updated", "Delivery picked up by driver", actor=actor)

    if order.status == models.OrderStatus.PREPARING.value:
        return await state_machine.transition(db, order, models.OrderStatus.OUT_FOR_DELIVERY, actor=actor)
    db.commit()
    db.refresh(order)
    return order


async def deliver(db: Session, driver: models.DeliveryDriver, order_id: str, actor: Optional[str] = None) -> models.Order:
    """Driver hands the meal over: delivery and order both complete, driver released."""
    order, delivery = _assigned_order(db, driver, order_id)
    if order.status != models.OrderStatus.OUT_FOR_DELIVERY.value:
        raise StateConflict("Order is not out for delivery")
    if delivery.out_for_delivery_at is None:
        raise StateConflict("Delivery must be picked up first")

    _apply_step(delivery, DELIVERED, None, datetime.utcnow())
    return await state_machine.transition(db, order, models.OrderStatus.DELIVERED, actor=actor)
