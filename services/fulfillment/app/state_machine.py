"""
Order lifecycle state machine.

PLACED -> ACCEPTED -> PREPARING -> OUT_FOR_DELIVERY -> DELIVERED, with
CANCELLED and FAILED reachable from every non-terminal state. Each status
has a matching timestamp column that records when it was entered.

Side effects of a transition commit together with it:
- into CANCELLED or FAILED: vouchers return to the subscription once and
  a bound driver is freed
- into DELIVERED: the bound driver is released and stamped
- into ACCEPTED: a delivery provisioning effect is queued, then attempted
  after the commit
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import crud, drivers, models, provisioning, timing, vouchers
from .exceptions import FulfillmentError, StateConflict, ValidationFailed
from .models import OrderStatus
from .validators import normalize_order_status, validate_order_status_transition

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.OUT_FOR_DELIVERY: "out_for_delivery_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.FAILED: "failed_at",
}

FAILURE_STATES = (OrderStatus.CANCELLED, OrderStatus.FAILED)


def append_note(instructions: Optional[str], note: str) -> str:
    instructions = (instructions or "").strip()
    return f"{instructions} {note}".strip()


async def transition(
    db: Session,
    order: models.Order,
    target: OrderStatus,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    token: Optional[str] = None,
) -> models.Order:
    """
    Move an order to ``target`` and apply the side effects of entering it.

    The status column is updated only if it still holds the status that was
    validated, so two concurrent transitions cannot both succeed. Pending ORM
    changes on the session are committed together with the transition.

    Args:
        db: Database session
        order: Order to move
        target: Requested status
        actor: Principal performing the change, recorded on the timeline
        reason: Cancellation or failure reason
        token: Bearer token forwarded to the customer directory when provisioning

    Raises:
        StateConflict: transition not allowed from the current status
    """
    current = OrderStatus(order.status)
    allowed, message = validate_order_status_transition(current, target)
    if not allowed:
        raise StateConflict(message)

    now = datetime.utcnow()
    values = {"status": target.value, TIMESTAMP_FIELDS[target]: now, "updated_at": now}
    if reason and target in FAILURE_STATES:
        values["cancellation_reason"] = reason

    result = db.execute(
        update(models.Order)
        .where(models.Order.id == order.id, models.Order.status == current.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise StateConflict("Order status changed concurrently, reload and retry")

    description = f"Status changed from {current.value} to {target.value}"
    if reason:
        description = f"{description}: {reason}"
    crud.log_order_event(
        db, order.id, "status_changed", description,
        old_value=current.value, new_value=target.value, actor=actor,
    )

    if target in FAILURE_STATES:
        vouchers.reverse(db, order)
        drivers.release_driver(db, order.id, stamp_delivery=False)
    elif target == OrderStatus.DELIVERED:
        drivers.release_driver(db, order.id, stamp_delivery=True)
    elif target == OrderStatus.ACCEPTED:
        provisioning.enqueue_provisioning(db, order.id)

    db.commit()
    db.refresh(order)
    logger.info(f"Order {order.id}: {current.value} -> {target.value} by {actor}")

    if target == OrderStatus.ACCEPTED:
        # A failure stays queued on the pending effect; the acceptance stands
        await provisioning.run_pending_for_order(db, order.id, token)
        db.refresh(order)
    return order


async def update_status(
    db: Session,
    order: models.Order,
    requested: str,
    actor: Optional[str] = None,
    token: Optional[str] = None,
) -> models.Order:
    """Staff status update from a user supplied status string."""
    target, error = normalize_order_status(requested)
    if target is None:
        raise ValidationFailed(error)
    return await transition(db, order, target, actor=actor, token=token)


async def accept(db: Session, order: models.Order, actor: Optional[str] = None, token: Optional[str] = None) -> models.Order:
    return await transition(db, order, OrderStatus.ACCEPTED, actor=actor, token=token)


async def mark_ready(db: Session, order: models.Order, actor: Optional[str] = None) -> models.Order:
    """Kitchen hands the order over: PREPARING -> OUT_FOR_DELIVERY."""
    return await transition(db, order, OrderStatus.OUT_FOR_DELIVERY, actor=actor)


async def reject(db: Session, order: models.Order, reason: str, actor: Optional[str] = None) -> models.Order:
    """
    Kitchen rejection. The order fails and its vouchers return.

    Raises:
        StateConflict: order already terminal
    """
    if order.status in models.TERMINAL_ORDER_STATUSES:
        raise StateConflict(f"Cannot reject a {order.status.lower()} order")

    order.special_instructions = append_note(order.special_instructions, f"[Kitchen Rejected: {reason}]")
    return await transition(db, order, OrderStatus.FAILED, actor=actor, reason=reason)


async def bulk_accept(db: Session, order_ids, actor: Optional[str] = None, token: Optional[str] = None):
    """
    Accept several orders, each in its own transaction.

    Returns:
        Tuple of (accepted ids, list of (order id, reason) for skipped orders)
    """
    accepted, skipped = [], []
    for order_id in dict.fromkeys(order_ids):
        order = crud.get_order(db, order_id)
        if order is None:
            skipped.append((order_id, "Order not found"))
            continue
        try:
            await accept(db, order, actor=actor, token=token)
        except FulfillmentError as e:
            skipped.append((order_id, e.detail))
            continue
        accepted.append(order_id)
    logger.info(f"Bulk accept by {actor}: {len(accepted)} accepted, {len(skipped)} skipped")
    return accepted, skipped


async def cancel_by_customer(
    db: Session,
    order: models.Order,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.Order:
    """
    Customer cancellation, gated by the meal cutoff.

    Raises:
        StateConflict: order terminal or out for delivery
        ValidationFailed: cutoff passed or scheduled date in the past
    """
    if order.status in models.TERMINAL_ORDER_STATUSES:
        raise StateConflict(f"Cannot cancel a {order.status.lower()} order")
    if order.status == OrderStatus.OUT_FOR_DELIVERY.value:
        raise StateConflict("Cannot cancel an order that is out for delivery")

    allowed, message = timing.can_cancel(order, now)
    if not allowed:
        raise ValidationFailed(message)
    return await transition(db, order, OrderStatus.CANCELLED, actor=actor, reason=reason or "Cancelled by customer")


async def cancel_by_admin(
    db: Session,
    order: models.Order,
    reason: str,
    actor: Optional[str] = None,
    bypass_time_restrictions: bool = False,
    now: Optional[datetime] = None,
) -> models.Order:
    """
    Admin cancellation. The reason is appended to the special instructions;
    the meal cutoff applies unless bypassed.
    """
    if order.status in models.TERMINAL_ORDER_STATUSES:
        raise StateConflict(f"Cannot cancel a {order.status.lower()} order")
    if not bypass_time_restrictions:
        allowed, message = timing.can_cancel(order, now)
        if not allowed:
            raise ValidationFailed(message)

    order.special_instructions = append_note(order.special_instructions, f"[Admin Cancelled: {reason}]")
    return await transition(db, order, OrderStatus.CANCELLED, actor=actor, reason=reason)
