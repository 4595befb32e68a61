"""
Refund workflow: none -> pending -> processed | rejected.

Approving a refund cancels the order through the state machine, which
returns its vouchers. An order that is already cancelled or failed has
returned them before, so approval then only records the decision.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import crud, models, state_machine
from .exceptions import StateConflict, ValidationFailed

logger = logging.getLogger(__name__)


def request_refund(db: Session, order: models.Order, reason: str, actor: Optional[str] = None) -> models.Order:
    """
    Open a refund request for the full order total.

    Raises:
        StateConflict: order delivered, or a refund was already requested
    """
    if order.status == models.OrderStatus.DELIVERED.value:
        raise StateConflict("Cannot request a refund for a delivered order")
    if order.refund_status != models.RefundStatus.NONE.value:
        raise StateConflict(f"Refund already {order.refund_status}")

    now = datetime.utcnow()
    result = db.execute(
        update(models.Order)
        .where(
            models.Order.id == order.id,
            models.Order.refund_status == models.RefundStatus.NONE.value,
            models.Order.status != models.OrderStatus.DELIVERED.value,
        )
        .values(
            refund_status=models.RefundStatus.PENDING.value,
            refund_amount=order.total,
            refund_reason=reason,
            refund_requested_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise StateConflict("Refund could not be requested for this order")

    crud.log_order_event(
        db, order.id, "refund_requested", f"Refund requested: {reason}",
        old_value=models.RefundStatus.NONE.value,
        new_value=models.RefundStatus.PENDING.value,
        actor=actor,
    )
    db.commit()
    db.refresh(order)
    logger.info(f"Refund requested for order {order.id} ({order.refund_amount})")
    return order


async def process_refund(
    db: Session,
    order: models.Order,
    approve: bool,
    actor: Optional[str] = None,
    admin_notes: Optional[str] = None,
) -> models.Order:
    """
    Approve or reject a pending refund. Without admin notes a default note
    naming the decision is stored.

    Raises:
        StateConflict: no pending refund on the order
    """
    decision = models.RefundStatus.PROCESSED if approve else models.RefundStatus.REJECTED
    admin_notes = admin_notes or f"Refund {'approved' if approve else 'rejected'} by admin"
    now = datetime.utcnow()
    result = db.execute(
        update(models.Order)
        .where(
            models.Order.id == order.id,
            models.Order.refund_status == models.RefundStatus.PENDING.value,
        )
        .values(
            refund_status=decision.value,
            refund_processed_at=now,
            refund_processed_by=actor,
            admin_notes=admin_notes,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise StateConflict("No pending refund for this order")

    crud.log_order_event(
        db, order.id, "refund_processed",
        f"Refund {'approved' if approve else 'rejected'}: {admin_notes}",
        old_value=models.RefundStatus.PENDING.value,
        new_value=decision.value,
        actor=actor,
    )

    if approve and order.status not in models.TERMINAL_ORDER_STATUSES:
        await state_machine.transition(
            db, order, models.OrderStatus.CANCELLED, actor=actor, reason="Refund approved",
        )
    else:
        db.commit()
        db.refresh(order)

    logger.info(f"Refund for order {order.id} {decision.value} by {actor}")
    return order


def list_refunds(db: Session, status: Optional[str] = None) -> List[models.Order]:
    """Orders with a refund request, optionally filtered by refund status."""
    query = db.query(models.Order).filter(
        models.Order.refund_status != models.RefundStatus.NONE.value,
        models.Order.is_deleted.is_(False),
    )
    if status:
        try:
            refund_status = models.RefundStatus(status.strip().lower())
        except ValueError:
            raise ValidationFailed(f"Invalid refund status: {status}")
        query = query.filter(models.Order.refund_status == refund_status.value)
    return query.order_by(models.Order.refund_requested_at.desc()).all()
