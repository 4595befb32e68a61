"""
Voucher ledger for subscription balances.

A subscription's used_vouchers counter only moves through the conditional
updates below. Every movement is also recorded as a VoucherLedgerEntry;
the unique (order_id, entry_type) pair guarantees an order consumes and
returns its vouchers at most once, even across retries and concurrent
requests.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, case, update
from sqlalchemy.orm import Session

from . import models
from .exceptions import NotFound, StateConflict, ValidationFailed
from .validators import plan_covers_meal

logger = logging.getLogger(__name__)


def find_usable_subscription(
    db: Session,
    customer_id: str,
    meal_type: models.MealType,
    now: Optional[datetime] = None,
) -> models.Subscription:
    """
    Pick the subscription that pays for a meal.

    Among the customer's ACTIVE, unexpired subscriptions with vouchers left,
    the one expiring first whose plan type covers the meal is used.

    Raises:
        NotFound: no active subscription with vouchers left
        ValidationFailed: no subscription covers the meal type
    """
    now = now or datetime.utcnow()
    candidates = (
        db.query(models.Subscription)
        .filter(
            models.Subscription.customer_id == customer_id,
            models.Subscription.status == models.SubscriptionStatus.ACTIVE.value,
            models.Subscription.is_deleted.is_(False),
            models.Subscription.expiry_date > now,
            models.Subscription.used_vouchers < models.Subscription.total_vouchers,
        )
        .order_by(models.Subscription.expiry_date.asc(), models.Subscription.id.asc())
        .all()
    )
    if not candidates:
        raise NotFound("No active subscription with available vouchers")

    for subscription in candidates:
        if plan_covers_meal(subscription.plan_type, meal_type):
            return subscription

    raise ValidationFailed(
        f"Your subscription plan does not cover {models.MealType(meal_type).value.lower()} orders"
    )


def consume(db: Session, subscription_id: int, order_id: str, count: int = 1) -> None:
    """
    Draw vouchers from a subscription for an order.

    The counter is incremented only while it stays within total_vouchers and
    the subscription is ACTIVE; reaching the total marks it EXHAUSTED. The
    change joins the caller's transaction.

    Raises:
        ValidationFailed: non-positive count
        StateConflict: not enough vouchers left (including a lost race)
    """
    if count <= 0:
        raise ValidationFailed("Voucher count must be positive")

    sub = models.Subscription
    new_used = sub.used_vouchers + count
    result = db.execute(
        update(sub)
        .where(
            sub.id == subscription_id,
            sub.status == models.SubscriptionStatus.ACTIVE.value,
            sub.is_deleted.is_(False),
            new_used <= sub.total_vouchers,
        )
        .values(
            used_vouchers=new_used,
            status=case(
                (new_used >= sub.total_vouchers, models.SubscriptionStatus.EXHAUSTED.value),
                else_=sub.status,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"Voucher consumption refused for subscription {subscription_id} (order {order_id})")
        raise StateConflict("Not enough vouchers remaining on subscription")

    db.add(models.VoucherLedgerEntry(
        subscription_id=subscription_id,
        order_id=order_id,
        entry_type=models.LedgerEntryType.CONSUME.value,
        count=count,
    ))
    logger.info(f"Consumed {count} voucher(s) from subscription {subscription_id} for order {order_id}")


def reverse(db: Session, order: models.Order) -> bool:
    """
    Return an order's vouchers to its subscription.

    Runs at most once per order: a second call finds the REVERSE ledger
    entry and does nothing. An EXHAUSTED subscription that has not expired
    becomes ACTIVE again. The change joins the caller's transaction.

    Returns:
        True if vouchers were returned, False if there was nothing to do
    """
    count = order.vouchers_consumed or 0
    if not order.subscription_id or count <= 0:
        return False

    already_reversed = (
        db.query(models.VoucherLedgerEntry)
        .filter(
            models.VoucherLedgerEntry.order_id == order.id,
            models.VoucherLedgerEntry.entry_type == models.LedgerEntryType.REVERSE.value,
        )
        .first()
    )
    if already_reversed is not None:
        logger.info(f"Vouchers for order {order.id} were already returned")
        return False

    sub = models.Subscription
    now = datetime.utcnow()
    result = db.execute(
        update(sub)
        .where(sub.id == order.subscription_id, sub.used_vouchers >= count)
        .values(
            used_vouchers=sub.used_vouchers - count,
            status=case(
                (
                    and_(
                        sub.status == models.SubscriptionStatus.EXHAUSTED.value,
                        sub.expiry_date > now,
                    ),
                    models.SubscriptionStatus.ACTIVE.value,
                ),
                else_=sub.status,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.error(
            f"Could not return {count} voucher(s) for order {order.id}: "
            f"subscription {order.subscription_id} missing or counter too low"
        )
        return False

    db.add(models.VoucherLedgerEntry(
        subscription_id=order.subscription_id,
        order_id=order.id,
        entry_type=models.LedgerEntryType.REVERSE.value,
        count=count,
    ))
    logger.info(f"Returned {count} voucher(s) to subscription {order.subscription_id} for order {order.id}")
    return True


def get_ledger(db: Session, subscription_id: int) -> List[models.VoucherLedgerEntry]:
    return (
        db.query(models.VoucherLedgerEntry)
        .filter(models.VoucherLedgerEntry.subscription_id == subscription_id)
        .order_by(models.VoucherLedgerEntry.created_at.asc(), models.VoucherLedgerEntry.id.asc())
        .all()
    )
