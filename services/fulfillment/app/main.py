"""
Fulfillment Service API

This module implements a FastAPI-based microservice that orchestrates meal
orders from placement to delivery: cutoff and duplicate checks, voucher
payment, the kitchen lifecycle, delivery provisioning, driver assignment,
cancellations and refunds.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /orders: Place an order (customer)
    GET /orders/me, GET /orders/me/{order_id}: Customer's own orders
    GET /orders, GET /orders/{order_id}: Order lookup (staff)
    PATCH /orders/{order_id}/status and the kitchen shortcuts: Lifecycle (staff)
    POST /orders/{order_id}/cancel, /admin-cancel: Cancellation
    POST /orders/{order_id}/refund, /refund/process: Refund workflow
    POST /orders/{order_id}/assign-driver, /auto-assign-driver: Dispatch
    /deliveries, /drivers, /driver/orders: Delivery tracking and the driver app
    /subscription-plans, /subscriptions: Voucher subscriptions
    /admin/pending-effects: Delivery provisioning queue

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "fulfillment-service"
"""
import logging
from datetime import date
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import (
    auth,
    crud,
    deliveries,
    drivers,
    models,
    placement,
    provisioning,
    refunds,
    schemas,
    state_machine,
    subscriptions,
    vouchers,
)
from .clients import customers_client
from .config import DEFAULT_PAGE_SIZE
from .database import engine, get_db
from .exceptions import FulfillmentError, NotFound, Unauthorized
from .logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="fulfillment-service")


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(httpx.HTTPError)
async def collaborator_error_handler(request: Request, exc: httpx.HTTPError):
    logger.error(f"Collaborator service error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "A dependent service is unavailable, try again later"},
    )


async def get_current_customer(
    current_user: auth.CurrentUser = Depends(auth.require_customer)
) -> dict:
    """Resolve the caller's customer record from the customer directory."""
    customer = await customers_client.get_customer_by_external_identity(current_user.uid, current_user.token)
    if customer is None:
        raise Unauthorized("Customer profile not found")
    return customer


def get_current_driver(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_driver)
) -> models.DeliveryDriver:
    driver = crud.get_driver_by_uid(db, current_user.uid)
    if driver is None:
        raise NotFound("Driver profile not found")
    return driver


def _own_order(db: Session, order_id: str, customer: dict) -> models.Order:
    db_order = crud.get_order_or_404(db, order_id)
    if db_order.customer_id != str(customer["id"]):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this order"
        )
    return db_order


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the fulfillment service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


# Orders

@app.post("/orders", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
async def place_order(
    order: schemas.OrderCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_customer)
):
    """
    Place an order for the authenticated customer.

    Raises:
        400: invalid meal/packaging type, past date, cutoff passed, plan does not cover the meal
        401: caller is not a known customer
        404: menu item or addon not available, no subscription with vouchers left
        409: an active order for the same meal, date and menu item exists
    """
    return await placement.place_order(db, current_user, order)


@app.get("/orders/me", response_model=schemas.OrderPage)
def list_my_orders(
    meal_type: Optional[str] = None,
    scheduled_for_date: Optional[date] = None,
    status_filter: Optional[str] = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    db: Session = Depends(get_db),
    customer: dict = Depends(get_current_customer)
):
    """List the caller's orders. ``status_filter=active`` selects non-terminal orders."""
    page, limit = crud.clamp_page(page, limit)
    orders, total = crud.list_orders(
        db,
        customer_id=str(customer["id"]),
        meal_type=meal_type,
        scheduled_for_date=scheduled_for_date,
        status=status_filter,
        page=page,
        limit=limit,
    )
    return {"items": orders, "total": total, "page": page, "limit": limit}


@app.get("/orders/me/{order_id}", response_model=schemas.Order)
def get_my_order(
    order_id: str,
    db: Session = Depends(get_db),
    customer: dict = Depends(get_current_customer)
):
    return _own_order(db, order_id, customer)


@app.get("/orders/refunds", response_model=List[schemas.Order])
def list_refund_requests(
    refund_status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    """List orders with a refund request, optionally filtered by refund status."""
    return refunds.list_refunds(db, refund_status)


@app.post("/orders/bulk-accept", response_model=schemas.BulkAcceptResult)
async def bulk_accept_orders(
    request: schemas.BulkAcceptRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    """Accept several orders; orders that cannot be accepted are reported as skipped."""
    accepted, skipped = await state_machine.bulk_accept(
        db, request.order_ids, actor=current_user.uid, token=current_user.token
    )
    return {
        "accepted": accepted,
        "skipped": [{"order_id": order_id, "reason": reason} for order_id, reason in skipped],
    }


@app.get("/orders", response_model=schemas.OrderPage)
def list_orders(
    customer_id: Optional[str] = None,
    meal_type: Optional[str] = None,
    scheduled_for_date: Optional[date] = None,
    status_filter: Optional[str] = None,
    include_deleted: bool = False,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    """
    List orders with filters and pagination (staff).

    Args:
        customer_id: Only this customer's orders
        meal_type: LUNCH or DINNER
        scheduled_for_date: Only orders for this day
        status_filter: An order status, or ``active`` for all non-terminal orders
        include_deleted: Include soft-deleted orders
        page: 1-based page number
        limit: Page size (capped by MAX_PAGE_SIZE)
    """
    page, limit = crud.clamp_page(page, limit)
    orders, total = crud.list_orders(
        db,
        customer_id=customer_id,
        meal_type=meal_type,
        scheduled_for_date=scheduled_for_date,
        status=status_filter,
        include_deleted=include_deleted,
        page=page,
        limit=limit,
    )
    return {"items": orders, "total": total, "page": page, "limit": limit}


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    return crud.get_order_or_404(db, order_id, include_deleted=True)


@app.patch("/orders/{order_id}", response_model=schemas.Order)
def update_order(
    order_id: str,
    update: schemas.OrderUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    """Change packaging type or special instructions of a non-terminal order."""
    return crud.update_order(db, order_id, update, actor=current_user.uid)


@app.delete("/orders/{order_id}", response_model=schemas.Order)
def delete_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Soft delete an order (admin only)."""
    return crud.soft_delete_order(db, order_id, actor=current_user.uid)


@app.post("/orders/{order_id}/restore", response_model=schemas.Order)
def restore_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    return crud.restore_order(db, order_id, actor=current_user.uid)


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    """
    Get the timeline of events for an order.

    Returns:
        List of order events ordered by creation time (oldest first)
    """
    crud.get_order_or_404(db, order_id, include_deleted=True)
    return crud.get_order_events(db, order_id)


@app.patch("/orders/{order_id}/status", response_model=schemas.Order)
async def update_order_status(
    order_id: str,
    update: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    """
    Move an order through its lifecycle (staff).

    Raises:
        400: unknown status or transition not allowed from the current status
        404: order not found
    """
    db_order = crud.get_order_or_404(db, order_id)
    return await state_machine.update_status(
        db, db_order, update.status, actor=current_user.uid, token=current_user.token
    )


@app.post("/orders/{order_id}/accept", response_model=schemas.Order)
async def accept_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    db_order = crud.get_order_or_404(db, order_id)
    return await state_machine.accept(db, db_order, actor=current_user.uid, token=current_user.token)


@app.post("/orders/{order_id}/reject", response_model=schemas.Order)
async def reject_order(
    order_id: str,
    request: schemas.ReasonRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    """Kitchen rejection: the order fails and any voucher is returned."""
    db_order = crud.get_order_or_404(db, order_id)
    return await state_machine.reject(db, db_order, request.reason, actor=current_user.uid)


@app.post("/orders/{order_id}/ready", response_model=schemas.Order)
async def mark_order_ready(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    db_order = crud.get_order_or_404(db, order_id)
    return await state_machine.mark_ready(db, db_order, actor=current_user.uid)


@app.post("/orders/{order_id}/cancel", response_model=schemas.Order)
async def cancel_my_order(
    order_id: str,
    request: Optional[schemas.CancelRequest] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_customer),
    customer: dict = Depends(get_current_customer)
):
    """
    Cancel one of the caller's orders before the meal cutoff.

    Raises:
        400: cutoff passed, order out for delivery or already terminal
        403: order belongs to another customer
    """
    db_order = _own_order(db, order_id, customer)
    return await state_machine.cancel_by_customer(
        db, db_order, actor=current_user.uid, reason=request.reason if request else None
    )


@app.post("/orders/{order_id}/admin-cancel", response_model=schemas.Order)
async def admin_cancel_order(
    order_id: str,
    request: schemas.AdminCancelRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Cancel any non-terminal order, optionally ignoring the meal cutoff."""
    db_order = crud.get_order_or_404(db, order_id)
    return await state_machine.cancel_by_admin(
        db, db_order, request.reason,
        actor=current_user.uid,
        bypass_time_restrictions=request.bypass_time_restrictions,
    )


@app.post("/orders/{order_id}/refund", response_model=schemas.Order)
def request_refund(
    order_id: str,
    request: schemas.ReasonRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_customer),
    customer: dict = Depends(get_current_customer)
):
    db_order = _own_order(db, order_id, customer)
    return refunds.request_refund(db, db_order, request.reason, actor=current_user.uid)


@app.post("/orders/{order_id}/refund/process", response_model=schemas.Order)
async def process_refund(
    order_id: str,
    decision: schemas.RefundDecision,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Approve (cancels the order and returns vouchers) or reject a pending refund."""
    db_order = crud.get_order_or_404(db, order_id)
    return await refunds.process_refund(
        db, db_order, decision.approve, actor=current_user.uid, admin_notes=decision.admin_notes
    )


@app.post("/orders/{order_id}/assign-driver", response_model=schemas.Order)
def assign_driver(
    order_id: str,
    request: schemas.AssignDriverRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    db_order = crud.get_order_or_404(db, order_id)
    return drivers.assign_driver(db, db_order, request.driver_id, actor=current_user.uid)


@app.post("/orders/{order_id}/auto-assign-driver", response_model=schemas.Order)
def auto_assign_driver(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    """Assign the available driver whose last delivery is oldest."""
    db_order = crud.get_order_or_404(db, order_id)
    db_order, _ = drivers.auto_assign_driver(db, db_order, actor=current_user.uid)
    return db_order


@app.get("/orders/{order_id}/delivery", response_model=schemas.Delivery)
def get_order_delivery(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    delivery = crud.get_delivery_for_order(db, order_id)
    if delivery is None:
        raise NotFound("Delivery not found")
    return delivery


# Deliveries

@app.get("/deliveries/{delivery_id}", response_model=schemas.Delivery)
def get_delivery(
    delivery_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    delivery = crud.get_delivery(db, delivery_id)
    if delivery is None:
        raise NotFound("Delivery not found")
    return delivery


@app.patch("/deliveries/{delivery_id}/status", response_model=schemas.Delivery)
def update_delivery_status(
    delivery_id: int,
    update: schemas.DeliveryStatusUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Record delivery progress (staff or the driver bound to the delivery).

    Raises:
        400: step out of order, or FAILED without a failure message
        403: caller is neither staff nor the bound driver
    """
    delivery = crud.get_delivery(db, delivery_id)
    if delivery is None:
        raise NotFound("Delivery not found")

    if not current_user.is_staff:
        driver = crud.get_driver_by_uid(db, current_user.uid) if current_user.role == "driver" else None
        if driver is None or delivery.driver_id != driver.id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not authorized to update this delivery"
            )

    return deliveries.update_delivery_status(
        db, delivery, update.status, failed_message=update.failed_message, actor=current_user.uid
    )


@app.post("/deliveries/{delivery_id}/assign-driver", response_model=schemas.Delivery)
def assign_driver_to_delivery(
    delivery_id: int,
    request: schemas.AssignDriverRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    delivery = crud.get_delivery(db, delivery_id)
    if delivery is None:
        raise NotFound("Delivery not found")
    return deliveries.assign_driver_to_delivery(db, delivery, request.driver_id, actor=current_user.uid)


# Drivers

@app.post("/drivers", response_model=schemas.Driver, status_code=status.HTTP_201_CREATED)
def register_driver(
    driver: schemas.DriverCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    return drivers.register_driver(db, driver)


@app.get("/drivers", response_model=List[schemas.Driver])
def list_drivers(
    availability: Optional[str] = None,
    active_only: bool = False,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_staff)
):
    return drivers.list_drivers(db, availability=availability, active_only=active_only)


@app.patch("/drivers/me/availability", response_model=schemas.Driver)
def set_my_availability(
    update: schemas.AvailabilityUpdate,
    db: Session = Depends(get_db),
    driver: models.DeliveryDriver = Depends(get_current_driver)
):
    """Go AVAILABLE or OFFLINE. Rejected while assigned to an order."""
    return drivers.set_availability(db, driver, update.status)


@app.get("/driver/orders", response_model=List[schemas.Order])
def list_my_assignments(
    db: Session = Depends(get_db),
    driver: models.DeliveryDriver = Depends(get_current_driver)
):
    return drivers.get_active_assignments(db, driver)


@app.post("/driver/orders/{order_id}/pickup", response_model=schemas.Order)
async def pickup_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_driver),
    driver: models.DeliveryDriver = Depends(get_current_driver)
):
    return await deliveries.pickup(db, driver, order_id, actor=current_user.uid)


@app.post("/driver/orders/{order_id}/deliver", response_model=schemas.Order)
async def deliver_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_driver),
    driver: models.DeliveryDriver = Depends(get_current_driver)
):
    return await deliveries.deliver(db, driver, order_id, actor=current_user.uid)


# Subscriptions

@app.post("/subscription-plans", response_model=schemas.SubscriptionPlan, status_code=status.HTTP_201_CREATED)
def create_subscription_plan(
    plan: schemas.SubscriptionPlanCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    return subscriptions.create_plan(db, plan)


@app.get("/subscription-plans", response_model=List[schemas.SubscriptionPlan])
def list_subscription_plans(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return subscriptions.list_plans(db)


@app.post("/subscriptions", response_model=schemas.Subscription, status_code=status.HTTP_201_CREATED)
def purchase_subscription(
    purchase: schemas.SubscriptionPurchase,
    db: Session = Depends(get_db),
    customer: dict = Depends(get_current_customer)
):
    return subscriptions.purchase(db, str(customer["id"]), purchase)


@app.get("/subscriptions/me", response_model=List[schemas.Subscription])
def list_my_subscriptions(
    db: Session = Depends(get_db),
    customer: dict = Depends(get_current_customer)
):
    return subscriptions.list_for_customer(db, str(customer["id"]))


@app.post("/subscriptions/expire", response_model=dict)
def expire_subscriptions(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Expire every ACTIVE or EXHAUSTED subscription past its expiry date."""
    return {"expired": subscriptions.expire_due(db)}


@app.post("/subscriptions/{subscription_id}/cancel", response_model=schemas.Subscription)
def cancel_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    customer: dict = Depends(get_current_customer)
):
    subscription = crud.get_subscription(db, subscription_id)
    if subscription is None or subscription.customer_id != str(customer["id"]):
        raise NotFound("Subscription not found")
    return subscriptions.cancel(db, subscription)


@app.get("/subscriptions/{subscription_id}/ledger", response_model=List[schemas.VoucherLedgerEntry])
def get_subscription_ledger(
    subscription_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    if crud.get_subscription(db, subscription_id) is None:
        raise NotFound("Subscription not found")
    return vouchers.get_ledger(db, subscription_id)


# Outbox

@app.get("/admin/pending-effects", response_model=List[schemas.PendingEffect])
def list_pending_effects(
    include_done: bool = False,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    return provisioning.list_pending_effects(db, include_done=include_done)


@app.post("/admin/pending-effects/retry", response_model=schemas.RetryResult)
async def retry_pending_effects(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Re-run delivery provisioning for every effect still pending."""
    return await provisioning.retry_pending_effects(db, token=current_user.token)
