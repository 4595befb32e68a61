"""
Driver availability registry and assignment allocator.

A driver is BUSY exactly while bound to an order. Availability changes and
bindings go through conditional updates so two dispatchers can never bind
the same driver, and a driver toggling availability can never unbind
themselves from an order.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .exceptions import NotFound, StateConflict, ValidationFailed
from .validators import normalize_availability

logger = logging.getLogger(__name__)

DRIVER_PHONE_CONFLICT = "A driver with this phone number or identity already exists"


def register_driver(db: Session, payload: schemas.DriverCreate) -> models.DeliveryDriver:
    driver = models.DeliveryDriver(
        name=payload.name,
        phone=payload.phone,
        external_uid=payload.external_uid,
        vehicle_number=payload.vehicle_number,
        is_active=True,
        availability_status=models.AvailabilityStatus.OFFLINE.value,
    )
    db.add(driver)
    crud.commit_or_conflict(db, DRIVER_PHONE_CONFLICT)
    db.refresh(driver)
    logger.info(f"Registered driver {driver.id} ({driver.name})")
    return driver


def list_drivers(
    db: Session,
    availability: Optional[str] = None,
    active_only: bool = False,
) -> List[models.DeliveryDriver]:
    query = db.query(models.DeliveryDriver).filter(models.DeliveryDriver.is_deleted.is_(False))
    if availability:
        status, error = normalize_availability(availability)
        if status is None:
            raise ValidationFailed(error)
        query = query.filter(models.DeliveryDriver.availability_status == status.value)
    if active_only:
        query = query.filter(models.DeliveryDriver.is_active.is_(True))
    return query.order_by(models.DeliveryDriver.id.asc()).all()


def set_availability(db: Session, driver: models.DeliveryDriver, requested: str) -> models.DeliveryDriver:
    """
    Move a driver between AVAILABLE and OFFLINE.

    Raises:
        ValidationFailed: unknown status or an attempt to set BUSY directly
        StateConflict: driver inactive, or currently BUSY with an order
    """
    status, error = normalize_availability(requested)
    if status is None:
        raise ValidationFailed(error)
    if status == models.AvailabilityStatus.BUSY:
        raise ValidationFailed("BUSY is set by order assignment only")
    if not driver.is_active:
        raise StateConflict("Driver account is inactive")

    driver_model = models.DeliveryDriver
    result = db.execute(
        update(driver_model)
        .where(
            driver_model.id == driver.id,
            driver_model.availability_status != models.AvailabilityStatus.BUSY.value,
        )
        .values(availability_status=status.value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise StateConflict("Cannot change availability while assigned to an order")
    db.commit()
    db.refresh(driver)
    return driver


def _check_assignable(order: models.Order) -> None:
    if order.status in models.TERMINAL_ORDER_STATUSES:
        raise StateConflict(f"Cannot assign a driver to a {order.status.lower()} order")
    if order.driver_id is not None:
        raise StateConflict("Order already has a driver assigned")


def _bind(db: Session, driver_id: int, order: models.Order, actor: Optional[str]) -> bool:
    """
    Bind an AVAILABLE driver to an order and commit.

    Returns:
        False if the driver was no longer available (nothing changed)

    Raises:
        StateConflict: the order got a driver or reached a terminal state meanwhile
    """
    now = datetime.utcnow()
    driver_model = models.DeliveryDriver
    claimed = db.execute(
        update(driver_model)
        .where(
            driver_model.id == driver_id,
            driver_model.availability_status == models.AvailabilityStatus.AVAILABLE.value,
            driver_model.is_active.is_(True),
            driver_model.is_deleted.is_(False),
        )
        .values(
            availability_status=models.AvailabilityStatus.BUSY.value,
            current_order_id=order.id,
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        return False

    bound = db.execute(
        update(models.Order)
        .where(
            models.Order.id == order.id,
            models.Order.driver_id.is_(None),
            models.Order.is_deleted.is_(False),
            models.Order.status.notin_(models.TERMINAL_ORDER_STATUSES),
        )
        .values(driver_id=driver_id, assigned_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if bound.rowcount != 1:
        db.rollback()
        raise StateConflict("Order already has a driver assigned")

    db.execute(
        update(models.Delivery)
        .where(models.Delivery.order_id == order.id)
        .values(driver_id=driver_id)
        .execution_options(synchronize_session=False)
    )
    crud.log_order_event(
        db, order.id, "driver_assigned",
        f"Driver {driver_id} assigned",
        new_value=str(driver_id),
        actor=actor,
    )
    db.commit()
    db.refresh(order)
    logger.info(f"Driver {driver_id} assigned to order {order.id}")
    return True


def assign_driver(
    db: Session,
    order: models.Order,
    driver_id: int,
    actor: Optional[str] = None,
) -> models.Order:
    """
    Assign a specific driver to an order.

    Raises:
        NotFound: driver missing or inactive
        StateConflict: driver not AVAILABLE, order already has a driver, order terminal
    """
    _check_assignable(order)
    driver = crud.get_driver(db, driver_id)
    if driver is None or not driver.is_active:
        raise NotFound("Driver not found or inactive")
    if driver.availability_status != models.AvailabilityStatus.AVAILABLE.value:
        raise StateConflict(f"Driver is not available (status: {driver.availability_status})")

    if not _bind(db, driver.id, order, actor):
        raise StateConflict("Driver is no longer available")
    return order


def auto_assign_driver(
    db: Session,
    order: models.Order,
    actor: Optional[str] = None,
) -> Tuple[models.Order, models.DeliveryDriver]:
    """
    Assign the AVAILABLE active driver who has waited longest since their
    last delivery. Drivers who never delivered come first.

    Raises:
        NotFound: no driver available
        StateConflict: order already has a driver or is terminal
    """
    _check_assignable(order)
    driver_model = models.DeliveryDriver
    candidates = (
        db.query(driver_model)
        .filter(
            driver_model.availability_status == models.AvailabilityStatus.AVAILABLE.value,
            driver_model.is_active.is_(True),
            driver_model.is_deleted.is_(False),
        )
        .order_by(driver_model.last_delivery_at.asc().nullsfirst(), driver_model.id.asc())
        .all()
    )
    for driver in candidates:
        if _bind(db, driver.id, order, actor):
            db.refresh(driver)
            return order, driver
        logger.warning(f"Driver {driver.id} was taken before assignment to order {order.id}; trying next")

    raise NotFound("No available drivers")


def release_driver(db: Session, order_id: str, stamp_delivery: bool) -> bool:
    """
    Free the driver bound to an order. Joins the caller's transaction.

    Args:
        stamp_delivery: record the release time as the driver's last delivery

    Returns:
        True if a driver was released
    """
    values = {
        "availability_status": models.AvailabilityStatus.AVAILABLE.value,
        "current_order_id": None,
    }
    if stamp_delivery:
        values["last_delivery_at"] = datetime.utcnow()

    driver_model = models.DeliveryDriver
    result = db.execute(
        update(driver_model)
        .where(
            driver_model.current_order_id == order_id,
            driver_model.availability_status == models.AvailabilityStatus.BUSY.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Released driver bound to order {order_id}")
    return bool(result.rowcount)


def get_active_assignments(db: Session, driver: models.DeliveryDriver) -> List[models.Order]:
    return (
        db.query(models.Order)
        .filter(
            models.Order.driver_id == driver.id,
            models.Order.is_deleted.is_(False),
            models.Order.status.notin_(models.TERMINAL_ORDER_STATUSES),
        )
        .order_by(models.Order.scheduled_for_date.asc(), models.Order.assigned_at.asc())
        .all()
    )
