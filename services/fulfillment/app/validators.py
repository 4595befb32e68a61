"""
Validation utilities for the Fulfillment service.

Provides business rule validation beyond schema validation: enum
normalization and the order status transition table.
"""
from enum import Enum
from typing import Optional, Tuple, Type

from .models import AvailabilityStatus, MealType, OrderStatus, PackagingType, PlanType

# Allowed forward moves; CANCELLED and FAILED are added for every non-terminal state
VALID_TRANSITIONS = {
    OrderStatus.PLACED: [OrderStatus.ACCEPTED],
    OrderStatus.ACCEPTED: [OrderStatus.PREPARING],
    OrderStatus.PREPARING: [OrderStatus.OUT_FOR_DELIVERY],
    OrderStatus.OUT_FOR_DELIVERY: [OrderStatus.DELIVERED],
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
    OrderStatus.FAILED: [],
}

for _source, _targets in VALID_TRANSITIONS.items():
    if _targets:
        _targets.extend([OrderStatus.CANCELLED, OrderStatus.FAILED])


def normalize_enum(value, enum_cls: Type[Enum], label: str) -> Tuple[Optional[Enum], str]:
    """
    Resolve a user supplied string to an enum member, ignoring case.

    Returns:
        Tuple of (member or None, error_message)
    """
    if isinstance(value, enum_cls):
        return value, ""
    if not isinstance(value, str) or not value.strip():
        return None, f"{label} is required"
    try:
        return enum_cls(value.strip().upper()), ""
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        return None, f"Invalid {label}: {value}. Must be one of {allowed}"


def normalize_meal_type(value) -> Tuple[Optional[MealType], str]:
    return normalize_enum(value, MealType, "meal type")


def normalize_packaging_type(value) -> Tuple[Optional[PackagingType], str]:
    return normalize_enum(value, PackagingType, "packaging type")


def normalize_plan_type(value) -> Tuple[Optional[PlanType], str]:
    return normalize_enum(value, PlanType, "plan type")


def normalize_order_status(value) -> Tuple[Optional[OrderStatus], str]:
    return normalize_enum(value, OrderStatus, "order status")


def normalize_availability(value) -> Tuple[Optional[AvailabilityStatus], str]:
    return normalize_enum(value, AvailabilityStatus, "availability status")


def plan_covers_meal(plan_type: str, meal_type: MealType) -> bool:
    """Whether vouchers of a plan type can pay for the given meal."""
    if plan_type == PlanType.BOTH.value:
        return True
    if plan_type == PlanType.LUNCH_ONLY.value:
        return meal_type == MealType.LUNCH
    if plan_type == PlanType.DINNER_ONLY.value:
        return meal_type == MealType.DINNER
    return False


def validate_order_status_transition(old_status: OrderStatus, new_status: OrderStatus) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Error messages name the guard that failed, matching what kitchen staff
    see in the dashboard.

    Args:
        old_status: Current order status
        new_status: Requested order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status == OrderStatus.CANCELLED:
        return False, "Cannot update status of cancelled order"
    if old_status == OrderStatus.FAILED:
        return False, "Cannot update status of failed order"
    if old_status == OrderStatus.DELIVERED:
        if new_status == OrderStatus.DELIVERED:
            return False, "Order is already delivered"
        return False, "Cannot update status of delivered order"

    if old_status == new_status:
        return False, f"Order is already {_label(new_status)}"

    if new_status in VALID_TRANSITIONS[old_status]:
        return True, ""

    # Backwards moves or skipped steps
    order = [
        OrderStatus.PLACED,
        OrderStatus.ACCEPTED,
        OrderStatus.PREPARING,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
    ]
    if order.index(new_status) < order.index(old_status):
        return False, f"Order is already {_label(old_status)}"
    required = order[order.index(new_status) - 1]
    return False, f"Order must be {_label(required)} first"


def _label(order_status: OrderStatus) -> str:
    return order_status.value.lower().replace("_", " ")
