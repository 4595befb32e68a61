"""
CRUD (Create, Read, Update, Delete) operations for the Fulfillment service.

This module contains the plain database reads and the simple writes
(staff edits, soft delete, audit timeline). Lifecycle changes live in the
engine modules (placement, state_machine, drivers, deliveries, refunds).
"""
import logging
from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas
from .config import MAX_PAGE_SIZE
from .exceptions import NotFound, ResourceConflict, StateConflict, ValidationFailed
from .validators import normalize_order_status, normalize_packaging_type

# Set up logging
logger = logging.getLogger(__name__)

ACTIVE_FILTER = "active"
DUPLICATE_ORDER_DETAIL = "An active order already exists for this meal, date and menu item"


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    actor: Optional[str] = None,
) -> models.OrderEvent:
    """
    Add an order event to the timeline.

    The event joins the caller's transaction; it is committed together with
    the change it describes.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "driver_assigned")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        actor: Principal who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        actor=actor,
    )
    db.add(event)
    return event


def commit_or_conflict(db: Session, detail: str = DUPLICATE_ORDER_DETAIL) -> None:
    """
    Commit the session, turning a uniqueness violation into a 409.

    Raises:
        ResourceConflict: a unique constraint or index rejected the commit
    """
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Commit rejected by a uniqueness rule: {e.orig}")
        raise ResourceConflict(detail)


def get_order(db: Session, order_id: str, include_deleted: bool = False) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve
        include_deleted: Also return soft-deleted orders

    Returns:
        Order object or None if not found
    """
    query = db.query(models.Order).filter(models.Order.id == order_id)
    if not include_deleted:
        query = query.filter(models.Order.is_deleted.is_(False))
    return query.first()


def get_order_or_404(db: Session, order_id: str, include_deleted: bool = False) -> models.Order:
    order = get_order(db, order_id, include_deleted=include_deleted)
    if order is None:
        raise NotFound("Order not found")
    return order


def clamp_page(page: int, limit: int) -> Tuple[int, int]:
    return max(1, page), max(1, min(limit, MAX_PAGE_SIZE))


def list_orders(
    db: Session,
    customer_id: Optional[str] = None,
    meal_type: Optional[str] = None,
    scheduled_for_date: Optional[date] = None,
    status: Optional[str] = None,
    include_deleted: bool = False,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[models.Order], int]:
    """
    Retrieve orders matching the filters, newest scheduled date first.

    ``status`` accepts any order status or ``active`` for every non-terminal
    state.

    Returns:
        Tuple of (orders on the requested page, total matching count)
    """
    page, limit = clamp_page(page, limit)
    query = db.query(models.Order)
    if not include_deleted:
        query = query.filter(models.Order.is_deleted.is_(False))
    if customer_id:
        query = query.filter(models.Order.customer_id == customer_id)
    if meal_type:
        query = query.filter(models.Order.meal_type == meal_type.upper())
    if scheduled_for_date:
        query = query.filter(models.Order.scheduled_for_date == scheduled_for_date)
    if status:
        if status.lower() == ACTIVE_FILTER:
            query = query.filter(models.Order.status.notin_(models.TERMINAL_ORDER_STATUSES))
        else:
            order_status, error = normalize_order_status(status)
            if order_status is None:
                raise ValidationFailed(error)
            query = query.filter(models.Order.status == order_status.value)

    total = query.count()
    orders = (
        query.order_by(models.Order.scheduled_for_date.desc(), models.Order.placed_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return orders, total


def get_order_events(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )


def update_order(db: Session, order_id: str, update: schemas.OrderUpdate, actor: Optional[str] = None) -> models.Order:
    """
    Apply a staff edit to an order.

    Only packaging type and special instructions can change; prices,
    vouchers and lifecycle fields are owned by the engine.

    Raises:
        NotFound: order missing
        StateConflict: order already terminal
        ValidationFailed: unknown packaging type
    """
    db_order = get_order_or_404(db, order_id)
    if db_order.status in models.TERMINAL_ORDER_STATUSES:
        raise StateConflict(f"Cannot update a {db_order.status.lower()} order")

    update_data = update.model_dump(exclude_unset=True)
    if update_data.get("packaging_type") is not None:
        packaging, error = normalize_packaging_type(update_data["packaging_type"])
        if packaging is None:
            raise ValidationFailed(error)
        update_data["packaging_type"] = packaging.value

    changed = []
    for key, value in update_data.items():
        if value is None or getattr(db_order, key) == value:
            continue
        setattr(db_order, key, value)
        changed.append(key)

    if changed:
        log_order_event(
            db, order_id, "updated",
            f"Order updated: {', '.join(changed)}",
            actor=actor,
        )
    db.commit()
    db.refresh(db_order)
    return db_order


def soft_delete_order(db: Session, order_id: str, actor: Optional[str] = None) -> models.Order:
    """
    Flag an order as deleted. Its voucher, driver and delivery bindings
    are left as they are; cancel the order first to release them.
    """
    db_order = get_order_or_404(db, order_id)
    db_order.is_deleted = True
    db_order.deleted_at = datetime.utcnow()
    log_order_event(db, order_id, "deleted", "Order deleted", actor=actor)
    db.commit()
    db.refresh(db_order)
    logger.info(f"Order {order_id} soft deleted by {actor}")
    return db_order


def restore_order(db: Session, order_id: str, actor: Optional[str] = None) -> models.Order:
    """
    Clear the deleted flag.

    Raises:
        StateConflict: the order is not deleted
        ResourceConflict: another live order now occupies the same slot
    """
    db_order = get_order_or_404(db, order_id, include_deleted=True)
    if not db_order.is_deleted:
        raise StateConflict("Order is not deleted")
    db_order.is_deleted = False
    db_order.deleted_at = None
    log_order_event(db, order_id, "restored", "Order restored", actor=actor)
    commit_or_conflict(db)
    db.refresh(db_order)
    return db_order


def get_driver(db: Session, driver_id: int) -> Optional[models.DeliveryDriver]:
    return (
        db.query(models.DeliveryDriver)
        .filter(models.DeliveryDriver.id == driver_id, models.DeliveryDriver.is_deleted.is_(False))
        .first()
    )


def get_driver_by_uid(db: Session, uid: str) -> Optional[models.DeliveryDriver]:
    return (
        db.query(models.DeliveryDriver)
        .filter(models.DeliveryDriver.external_uid == uid, models.DeliveryDriver.is_deleted.is_(False))
        .first()
    )


def get_delivery(db: Session, delivery_id: int) -> Optional[models.Delivery]:
    return (
        db.query(models.Delivery)
        .filter(models.Delivery.id == delivery_id, models.Delivery.is_deleted.is_(False))
        .first()
    )


def get_delivery_for_order(db: Session, order_id: str) -> Optional[models.Delivery]:
    return db.query(models.Delivery).filter(models.Delivery.order_id == order_id).first()


def get_subscription(db: Session, subscription_id: int) -> Optional[models.Subscription]:
    return (
        db.query(models.Subscription)
        .filter(models.Subscription.id == subscription_id, models.Subscription.is_deleted.is_(False))
        .first()
    )
