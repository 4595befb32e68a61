"""
SQLAlchemy ORM models for the Fulfillment service.

Defines the database schema for orders, subscriptions, the voucher ledger,
deliveries, drivers and the pending side effect queue.
"""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    and_,
    false,
)
from sqlalchemy.dialects.postgresql import JSONB

from .database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class MealType(str, enum.Enum):
    LUNCH = "LUNCH"
    DINNER = "DINNER"


class PackagingType(str, enum.Enum):
    STEEL_DABBA = "STEEL_DABBA"
    DISPOSABLE = "DISPOSABLE"


class PlanType(str, enum.Enum):
    BOTH = "BOTH"
    LUNCH_ONLY = "LUNCH_ONLY"
    DINNER_ONLY = "DINNER_ONLY"


class OrderStatus(str, enum.Enum):
    PLACED = "PLACED"
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class RefundStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    PROCESSED = "processed"
    REJECTED = "rejected"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXHAUSTED = "EXHAUSTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class DeliveryOutcome(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"


class LedgerEntryType(str, enum.Enum):
    CONSUME = "CONSUME"
    REVERSE = "REVERSE"


class EffectType(str, enum.Enum):
    PROVISION_DELIVERY = "PROVISION_DELIVERY"


class EffectStatus(str, enum.Enum):
    PENDING = "PENDING"
    DONE = "DONE"


TERMINAL_ORDER_STATUSES = (
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.FAILED.value,
)


class Order(Base):
    """
    Order model representing one scheduled meal purchase.

    Attributes:
        id (str): Primary key, generated order ID
        customer_id (str): ID of the customer in the customers service
        meal_type (str): LUNCH or DINNER
        scheduled_for_date (date): Day the meal is delivered
        menu_item_id (str): Catalog menu item reference
        menu_item_price (Decimal): Menu item price at order time
        addons (list): Addon references with their price at order time (stored as JSON)
        total (Decimal): Amount payable after voucher coverage
        subscription_id (int): Subscription the vouchers were drawn from (optional)
        vouchers_consumed (int): Number of vouchers drawn for this order
        status (str): Current lifecycle state
        placed_at .. failed_at (datetime): Lifecycle timestamps, one per state
        driver_id (int): Assigned delivery driver (optional)
        refund_status (str): none, pending, processed or rejected
        is_deleted (bool): Soft delete flag
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    customer_id = Column(String, nullable=False, index=True)
    meal_type = Column(String, nullable=False)
    scheduled_for_date = Column(Date, nullable=False, index=True)
    packaging_type = Column(String, nullable=False)
    special_instructions = Column(Text, nullable=False, default="")
    menu_item_id = Column(String, nullable=False)
    menu_item_price = Column(Numeric(10, 2), nullable=False)
    addons = Column(JSONType, nullable=False, default=list)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    vouchers_consumed = Column(Integer, nullable=False, default=0)

    status = Column(String, nullable=False, default=OrderStatus.PLACED.value, index=True)
    placed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    accepted_at = Column(DateTime, nullable=True)
    preparing_at = Column(DateTime, nullable=True)
    out_for_delivery_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    driver_id = Column(Integer, ForeignKey("delivery_drivers.id"), nullable=True, index=True)
    assigned_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)

    refund_status = Column(String, nullable=False, default=RefundStatus.NONE.value, index=True)
    refund_amount = Column(Numeric(10, 2), nullable=False, default=0)
    refund_reason = Column(Text, nullable=True)
    refund_requested_at = Column(DateTime, nullable=True)
    refund_processed_at = Column(DateTime, nullable=True)
    refund_processed_by = Column(String, nullable=True)
    admin_notes = Column(Text, nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("vouchers_consumed >= 0", name="ck_orders_vouchers_non_negative"),
        CheckConstraint(
            "vouchers_consumed = 0 OR subscription_id IS NOT NULL",
            name="ck_orders_vouchers_need_subscription",
        ),
        CheckConstraint(
            "(CASE WHEN delivered_at IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN cancelled_at IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN failed_at IS NULL THEN 0 ELSE 1 END) <= 1",
            name="ck_orders_single_outcome",
        ),
    )


# One live, non-terminal order per customer, meal, day and menu item
_live_slot = and_(
    Order.is_deleted == false(),
    Order.status.notin_([OrderStatus.CANCELLED.value, OrderStatus.FAILED.value]),
)
Index(
    "uq_orders_live_slot",
    Order.customer_id,
    Order.meal_type,
    Order.scheduled_for_date,
    Order.menu_item_id,
    unique=True,
    postgresql_where=_live_slot,
    sqlite_where=_live_slot,
)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event (e.g., "created", "status_changed", "driver_assigned")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        actor (str): Identity of the principal who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    actor = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SubscriptionPlan(Base):
    """
    Purchasable voucher plan.

    Attributes:
        id (int): Primary key
        name (str): Display name
        days (int): Validity in days from purchase
        plan_type (str): BOTH, LUNCH_ONLY or DINNER_ONLY
        total_vouchers (int): Vouchers granted on purchase
        price (Decimal): Plan price
        is_active (bool): Whether the plan can be purchased
    """
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    days = Column(Integer, nullable=False)
    plan_type = Column(String, nullable=False, default=PlanType.BOTH.value)
    total_vouchers = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    description = Column(Text, nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Subscription(Base):
    """
    A customer's prepaid voucher pool.

    used_vouchers and status are only written by the voucher ledger and the
    subscription lifecycle operations.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String, nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    plan_type = Column(String, nullable=False, default=PlanType.BOTH.value)
    purchase_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    expiry_date = Column(DateTime, nullable=False)
    total_vouchers = Column(Integer, nullable=False)
    used_vouchers = Column(Integer, nullable=False, default=0)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("total_vouchers >= 1", name="ck_subscriptions_total_positive"),
        CheckConstraint(
            "used_vouchers >= 0 AND used_vouchers <= total_vouchers",
            name="ck_subscriptions_used_in_range",
        ),
    )


class VoucherLedgerEntry(Base):
    """
    Immutable fact that an order consumed or returned vouchers.

    The unique (order_id, entry_type) pair makes every consumption and
    every reversal happen at most once per order.
    """
    __tablename__ = "voucher_ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    order_id = Column(String, nullable=False, index=True)
    entry_type = Column(String, nullable=False)
    count = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "entry_type", name="uq_voucher_ledger_order_entry"),
        CheckConstraint("count > 0", name="ck_voucher_ledger_count_positive"),
    )


class DeliveryDriver(Base):
    """
    Delivery driver and their availability.

    Attributes:
        availability_status (str): AVAILABLE, BUSY or OFFLINE
        current_order_id (str): Order the driver is bound to while BUSY
        last_delivery_at (datetime): Last release time, oldest first for auto-assignment
    """
    __tablename__ = "delivery_drivers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False, unique=True)
    external_uid = Column(String, nullable=True, unique=True, index=True)
    vehicle_number = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    availability_status = Column(String, nullable=False, default=AvailabilityStatus.OFFLINE.value, index=True)
    current_order_id = Column(String, nullable=True)
    last_delivery_at = Column(DateTime, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "(availability_status = 'BUSY' AND current_order_id IS NOT NULL)"
            " OR (availability_status <> 'BUSY' AND current_order_id IS NULL)",
            name="ck_drivers_busy_has_order",
        ),
    )


class Delivery(Base):
    """
    Delivery record, exactly one per order.

    Attributes:
        order_id (str): Unique reference to the order
        driver_id (int): Assigned driver (optional until assignment)
        from_* / to_*: Pickup and drop-off locations
        picked_up_at .. failed_to_deliver_at (datetime): Delivery lifecycle timestamps
        outcome (str): PENDING, IN_PROGRESS, DELIVERED or FAILED, derived from the timestamps
    """
    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    customer_id = Column(String, nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("delivery_drivers.id"), nullable=True, index=True)

    from_address = Column(String, nullable=False)
    from_latitude = Column(Float, nullable=False, default=0.0)
    from_longitude = Column(Float, nullable=False, default=0.0)
    from_landmark = Column(String, nullable=False, default="")
    to_address = Column(String, nullable=False)
    to_latitude = Column(Float, nullable=False, default=0.0)
    to_longitude = Column(Float, nullable=False, default=0.0)
    to_landmark = Column(String, nullable=False, default="")

    picked_up_at = Column(DateTime, nullable=True)
    out_for_delivery_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    failed_to_deliver_at = Column(DateTime, nullable=True)
    outcome = Column(String, nullable=False, default=DeliveryOutcome.PENDING.value)
    failed_message = Column(Text, nullable=True)

    estimated_delivery_time = Column(DateTime, nullable=True)
    delivery_notes = Column(Text, nullable=False, default="")
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "delivered_at IS NULL OR failed_to_deliver_at IS NULL",
            name="ck_deliveries_single_outcome",
        ),
        CheckConstraint(
            "out_for_delivery_at IS NULL OR (picked_up_at IS NOT NULL AND out_for_delivery_at >= picked_up_at)",
            name="ck_deliveries_pickup_first",
        ),
    )


class PendingEffect(Base):
    """
    Outbox row for a side effect that must eventually run for an order.

    Written in the same transaction as the state change that requires it.
    """
    __tablename__ = "pending_effects"

    id = Column(Integer, primary_key=True, index=True)
    effect_type = Column(String, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default=EffectStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("effect_type", "order_id", name="uq_pending_effects_order"),
    )
