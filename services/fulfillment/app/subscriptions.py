"""
Subscription plans and the subscription lifecycle.

Voucher balances are moved by the voucher ledger only; this module creates
subscriptions and moves them to CANCELLED or EXPIRED.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models, schemas
from .exceptions import NotFound, ResourceConflict, StateConflict, ValidationFailed
from .validators import normalize_plan_type

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = Decimal("0.01")
CANCELLABLE = (models.SubscriptionStatus.ACTIVE.value, models.SubscriptionStatus.EXHAUSTED.value)


def create_plan(db: Session, payload: schemas.SubscriptionPlanCreate) -> models.SubscriptionPlan:
    plan_type, error = normalize_plan_type(payload.plan_type)
    if plan_type is None:
        raise ValidationFailed(error)
    plan = models.SubscriptionPlan(
        name=payload.name,
        days=payload.days,
        plan_type=plan_type.value,
        total_vouchers=payload.total_vouchers,
        price=payload.price,
        description=payload.description,
        is_active=True,
    )
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


def list_plans(db: Session, active_only: bool = True) -> List[models.SubscriptionPlan]:
    query = db.query(models.SubscriptionPlan)
    if active_only:
        query = query.filter(models.SubscriptionPlan.is_active.is_(True))
    return query.order_by(models.SubscriptionPlan.price.asc()).all()


def purchase(
    db: Session,
    customer_id: str,
    payload: schemas.SubscriptionPurchase,
    now: Optional[datetime] = None,
) -> models.Subscription:
    """
    Buy a plan.

    The amount paid must match the plan price to the cent and a customer
    holds at most one active subscription per plan type. Expiry is the
    purchase time plus the plan's days.

    Raises:
        NotFound: plan missing or inactive
        ValidationFailed: amount mismatch
        ResourceConflict: an active subscription of the same plan type exists
    """
    now = now or datetime.utcnow()
    plan = (
        db.query(models.SubscriptionPlan)
        .filter(models.SubscriptionPlan.id == payload.plan_id, models.SubscriptionPlan.is_active.is_(True))
        .first()
    )
    if plan is None:
        raise NotFound("Subscription plan not found")

    if abs(Decimal(str(payload.amount_paid)) - Decimal(str(plan.price))) > PRICE_TOLERANCE:
        raise ValidationFailed(f"Amount paid does not match plan price ({plan.price})")

    existing = (
        db.query(models.Subscription)
        .filter(
            models.Subscription.customer_id == customer_id,
            models.Subscription.plan_type == plan.plan_type,
            models.Subscription.status == models.SubscriptionStatus.ACTIVE.value,
            models.Subscription.is_deleted.is_(False),
            models.Subscription.expiry_date > now,
        )
        .first()
    )
    if existing is not None:
        raise ResourceConflict(f"You already have an active {plan.plan_type} subscription")

    subscription = models.Subscription(
        customer_id=customer_id,
        plan_id=plan.id,
        plan_type=plan.plan_type,
        purchase_date=now,
        expiry_date=now + timedelta(days=plan.days),
        total_vouchers=plan.total_vouchers,
        used_vouchers=0,
        amount_paid=payload.amount_paid,
        status=models.SubscriptionStatus.ACTIVE.value,
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    logger.info(f"Customer {customer_id} purchased plan {plan.id} (subscription {subscription.id})")
    return subscription


def list_for_customer(db: Session, customer_id: str) -> List[models.Subscription]:
    return (
        db.query(models.Subscription)
        .filter(models.Subscription.customer_id == customer_id, models.Subscription.is_deleted.is_(False))
        .order_by(models.Subscription.purchase_date.desc())
        .all()
    )


def cancel(db: Session, subscription: models.Subscription) -> models.Subscription:
    """
    Cancel an ACTIVE or EXHAUSTED subscription.

    Raises:
        StateConflict: subscription already cancelled or expired
    """
    result = db.execute(
        update(models.Subscription)
        .where(
            models.Subscription.id == subscription.id,
            models.Subscription.status.in_(CANCELLABLE),
        )
        .values(status=models.SubscriptionStatus.CANCELLED.value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise StateConflict(f"Cannot cancel a {subscription.status.lower()} subscription")
    db.commit()
    db.refresh(subscription)
    logger.info(f"Subscription {subscription.id} cancelled")
    return subscription


def expire_due(db: Session, now: Optional[datetime] = None) -> int:
    """Mark ACTIVE and EXHAUSTED subscriptions past their expiry as EXPIRED."""
    now = now or datetime.utcnow()
    result = db.execute(
        update(models.Subscription)
        .where(
            models.Subscription.status.in_(CANCELLABLE),
            models.Subscription.expiry_date <= now,
        )
        .values(status=models.SubscriptionStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    expired = result.rowcount
    db.commit()
    if expired:
        logger.info(f"Expired {expired} subscription(s)")
    return expired
