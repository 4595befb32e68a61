"""
Meal cutoff rules.

Orders for today's lunch close at LUNCH_CUTOFF_HOUR and today's dinner at
DINNER_CUTOFF_HOUR, both on the wall clock of SERVICE_TIMEZONE.
"""
from datetime import date, datetime
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from .config import DINNER_CUTOFF_HOUR, LUNCH_CUTOFF_HOUR, SERVICE_TIMEZONE
from .models import MealType

SERVICE_TZ = ZoneInfo(SERVICE_TIMEZONE)


def service_now() -> datetime:
    """Current time in the service timezone."""
    return datetime.now(SERVICE_TZ)


def service_today() -> date:
    return service_now().date()


def cutoff_hour(meal_type: MealType) -> int:
    return LUNCH_CUTOFF_HOUR if MealType(meal_type) == MealType.LUNCH else DINNER_CUTOFF_HOUR


def _within_cutoff(meal_type: MealType, now: datetime) -> bool:
    return now.hour < cutoff_hour(meal_type)


def can_place(meal_type: MealType, scheduled_date: date, now: Optional[datetime] = None) -> Tuple[bool, str]:
    """
    Whether an order for the given meal and day may still be placed.

    Past dates are rejected by the caller before this check.

    Returns:
        Tuple of (allowed, reason)
    """
    now = now or service_now()
    if scheduled_date > now.date():
        return True, ""
    if scheduled_date == now.date() and not _within_cutoff(meal_type, now):
        meal = MealType(meal_type).value.lower()
        return False, (
            f"Orders for today's {meal} must be placed before "
            f"{cutoff_hour(meal_type):02d}:00"
        )
    return True, ""


def can_cancel(order, now: Optional[datetime] = None) -> Tuple[bool, str]:
    """
    Whether a customer may still cancel the order.

    Dates are compared at day granularity: an order scheduled for a day
    before today can no longer be cancelled, today's order follows the same
    cutoff as placement and future orders are always cancellable.

    Returns:
        Tuple of (allowed, reason)
    """
    now = now or service_now()
    today = now.date()
    if order.scheduled_for_date < today:
        return False, "Cannot cancel orders scheduled for past dates"
    if order.scheduled_for_date == today and not _within_cutoff(order.meal_type, now):
        meal = MealType(order.meal_type).value.lower()
        return False, (
            f"Today's {meal} orders can only be cancelled before "
            f"{cutoff_hour(order.meal_type):02d}:00"
        )
    return True, ""
