"""
Order placement.

Validates a customer's order against the meal cutoffs, the duplicate-order
rule and the live catalog, snapshots prices, optionally pays for the menu
item with a subscription voucher and persists the order. Voucher
consumption and the order insert share one transaction.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from . import crud, models, schemas, timing, vouchers
from .auth import CurrentUser
from .clients import catalog_client, customers_client
from .exceptions import FulfillmentError, NotFound, ResourceConflict, Unauthorized, ValidationFailed
from .validators import normalize_meal_type, normalize_packaging_type

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _to_decimal(value) -> Decimal:
    return Decimal(str(value))


def find_live_duplicate(
    db: Session,
    customer_id: str,
    meal_type: models.MealType,
    scheduled_for_date,
    menu_item_id: str,
):
    """Existing non-terminal, non-deleted order occupying the same slot."""
    return (
        db.query(models.Order)
        .filter(
            models.Order.customer_id == customer_id,
            models.Order.meal_type == meal_type.value,
            models.Order.scheduled_for_date == scheduled_for_date,
            models.Order.menu_item_id == menu_item_id,
            models.Order.is_deleted.is_(False),
            models.Order.status.notin_([
                models.OrderStatus.CANCELLED.value,
                models.OrderStatus.FAILED.value,
            ]),
        )
        .first()
    )


async def _resolve_catalog(
    menu_item_id: str,
    meal_type: models.MealType,
    addon_ids: List[str],
    token: str,
) -> Tuple[dict, List[dict]]:
    menu_item = await catalog_client.get_live_menu_item(menu_item_id, meal_type.value, token)
    if menu_item is None:
        raise NotFound(f"Menu item not found or not available for {meal_type.value.lower()}")

    addons = await catalog_client.get_live_addons(addon_ids, token)
    by_id = {str(addon["id"]): addon for addon in addons}
    missing = [addon_id for addon_id in addon_ids if addon_id not in by_id]
    if missing:
        raise NotFound(f"Addons not found or unavailable: {', '.join(missing)}")
    return menu_item, [by_id[addon_id] for addon_id in addon_ids]


async def place_order(db: Session, current_user: CurrentUser, request: schemas.OrderCreate) -> models.Order:
    """
    Place an order for the authenticated customer.

    Steps:
    - normalize meal and packaging types
    - reject past dates and orders after today's cutoff
    - reject a duplicate live order for the same meal, date and menu item
    - resolve the menu item and every addon from the catalog (all or nothing)
    - total = menu price + addon prices; a voucher covers the menu price only
    - persist the order together with the voucher consumption

    Raises:
        ValidationFailed: bad enum, past date, cutoff passed, plan does not cover the meal
        Unauthorized: caller is not a known customer
        NotFound: menu item or addon not live, no subscription with vouchers left
        ResourceConflict: duplicate live order
        StateConflict: vouchers ran out concurrently
    """
    meal_type, error = normalize_meal_type(request.meal_type)
    if meal_type is None:
        raise ValidationFailed(error)
    packaging_type, error = normalize_packaging_type(request.packaging_type)
    if packaging_type is None:
        raise ValidationFailed(error)

    now = timing.service_now()
    if request.scheduled_for_date < now.date():
        raise ValidationFailed("Cannot place orders for past dates")
    allowed, reason = timing.can_place(meal_type, request.scheduled_for_date, now)
    if not allowed:
        raise ValidationFailed(reason)

    customer = await customers_client.get_customer_by_external_identity(current_user.uid, current_user.token)
    if customer is None:
        raise Unauthorized("Customer profile not found")
    customer_id = str(customer["id"])

    if find_live_duplicate(db, customer_id, meal_type, request.scheduled_for_date, request.menu_item_id):
        raise ResourceConflict(crud.DUPLICATE_ORDER_DETAIL)

    addon_ids = list(dict.fromkeys(request.addon_ids))
    menu_item, addons = await _resolve_catalog(request.menu_item_id, meal_type, addon_ids, current_user.token)

    menu_price = _to_decimal(menu_item["price"])
    addon_snapshots = [
        {
            "addon_id": str(addon["id"]),
            "name": addon.get("name", ""),
            "price": str(_to_decimal(addon["price"])),
        }
        for addon in addons
    ]
    total = menu_price + sum((_to_decimal(a["price"]) for a in addons), Decimal("0"))

    db_order = models.Order(
        id=uuid4().hex,
        customer_id=customer_id,
        meal_type=meal_type.value,
        scheduled_for_date=request.scheduled_for_date,
        packaging_type=packaging_type.value,
        special_instructions=request.special_instructions or "",
        menu_item_id=request.menu_item_id,
        menu_item_price=menu_price,
        addons=addon_snapshots,
        status=models.OrderStatus.PLACED.value,
        refund_status=models.RefundStatus.NONE.value,
        vouchers_consumed=0,
    )

    try:
        if request.use_voucher:
            subscription = vouchers.find_usable_subscription(db, customer_id, meal_type)
            vouchers.consume(db, subscription.id, db_order.id)
            db_order.subscription_id = subscription.id
            db_order.vouchers_consumed = 1
            total = max(Decimal("0"), total - menu_price)

        db_order.total = total.quantize(CENT, rounding=ROUND_HALF_UP)
        db.add(db_order)
        crud.log_order_event(
            db, db_order.id, "created",
            f"Order placed for {meal_type.value.lower()} on {request.scheduled_for_date.isoformat()}",
            new_value=models.OrderStatus.PLACED.value,
            actor=current_user.uid,
        )
        crud.commit_or_conflict(db)
    except FulfillmentError:
        db.rollback()
        raise

    db.refresh(db_order)
    logger.info(
        f"Order {db_order.id} placed by customer {customer_id}: total {db_order.total}, "
        f"vouchers {db_order.vouchers_consumed}"
    )
    return db_order
