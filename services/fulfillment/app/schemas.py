"""
Pydantic schemas for request/response validation in the Fulfillment service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class AddonSnapshot(BaseModel):
    """Addon reference with the price captured when the order was placed."""
    addon_id: str
    name: str = ""
    price: Decimal = Field(..., ge=0)


class OrderCreate(BaseModel):
    """
    Schema for placing a new order.

    Enum-like fields are plain strings here and normalized case-insensitively
    during placement.
    """
    meal_type: str = Field(..., description="LUNCH or DINNER")
    scheduled_for_date: date
    menu_item_id: str = Field(..., min_length=1)
    addon_ids: List[str] = Field(default_factory=list, description="Catalog addon references")
    use_voucher: bool = False
    packaging_type: str = Field("STEEL_DABBA", description="STEEL_DABBA or DISPOSABLE")
    special_instructions: str = Field("", max_length=500)


class OrderUpdate(BaseModel):
    """Schema for staff edits. Only presentation fields can change."""
    packaging_type: Optional[str] = None
    special_instructions: Optional[str] = Field(None, max_length=500)


class StatusUpdate(BaseModel):
    status: str


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class AdminCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    bypass_time_restrictions: bool = False


class BulkAcceptRequest(BaseModel):
    order_ids: List[str] = Field(..., min_length=1, max_length=100)


class SkippedOrder(BaseModel):
    order_id: str
    reason: str


class BulkAcceptResult(BaseModel):
    accepted: List[str]
    skipped: List[SkippedOrder]


class RefundDecision(BaseModel):
    approve: bool
    admin_notes: Optional[str] = Field(None, max_length=1000)


class AssignDriverRequest(BaseModel):
    driver_id: int


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        id (str): Order's unique identifier
        customer_id (str): Customer who placed the order
        total (Decimal): Amount payable after voucher coverage
        status (str): Current lifecycle state
        addons (List[AddonSnapshot]): Addons with their order-time prices
        driver_id (int): Assigned driver, if any
        refund_status (str): none, pending, processed or rejected
    """
    id: str
    customer_id: str
    meal_type: str
    scheduled_for_date: date
    packaging_type: str
    special_instructions: str
    menu_item_id: str
    menu_item_price: Decimal
    addons: List[AddonSnapshot] = Field(default_factory=list)
    total: Decimal
    subscription_id: Optional[int] = None
    vouchers_consumed: int
    status: str
    placed_at: datetime
    accepted_at: Optional[datetime] = None
    preparing_at: Optional[datetime] = None
    out_for_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    driver_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    refund_status: str
    refund_amount: Decimal
    refund_reason: Optional[str] = None
    refund_requested_at: Optional[datetime] = None
    refund_processed_at: Optional[datetime] = None
    refund_processed_by: Optional[str] = None
    admin_notes: Optional[str] = None
    is_deleted: bool
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderPage(BaseModel):
    items: List[Order]
    total: int
    page: int
    limit: int


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event (created, status_changed, driver_assigned, ...)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        actor (str): Principal who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SubscriptionPlanCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    days: int = Field(..., gt=0, le=366)
    plan_type: str = "BOTH"
    total_vouchers: int = Field(..., gt=0)
    price: Decimal = Field(..., ge=0)
    description: str = ""


class SubscriptionPlan(BaseModel):
    id: int
    name: str
    days: int
    plan_type: str
    total_vouchers: int
    price: Decimal
    description: str
    is_active: bool

    class Config:
        from_attributes = True


class SubscriptionPurchase(BaseModel):
    plan_id: int
    amount_paid: Decimal = Field(..., ge=0)


class Subscription(BaseModel):
    id: int
    customer_id: str
    plan_id: int
    plan_type: str
    purchase_date: datetime
    expiry_date: datetime
    total_vouchers: int
    used_vouchers: int
    amount_paid: Decimal
    status: str

    class Config:
        from_attributes = True


class VoucherLedgerEntry(BaseModel):
    id: int
    subscription_id: int
    order_id: str
    entry_type: str
    count: int
    created_at: datetime

    class Config:
        from_attributes = True


class DriverCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., min_length=5, max_length=20)
    external_uid: Optional[str] = None
    vehicle_number: Optional[str] = None


class Driver(BaseModel):
    id: int
    name: str
    phone: str
    external_uid: Optional[str] = None
    vehicle_number: Optional[str] = None
    is_active: bool
    availability_status: str
    current_order_id: Optional[str] = None
    last_delivery_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AvailabilityUpdate(BaseModel):
    status: str = Field(..., description="AVAILABLE or OFFLINE")


class Delivery(BaseModel):
    id: int
    order_id: str
    customer_id: str
    driver_id: Optional[int] = None
    from_address: str
    from_latitude: float
    from_longitude: float
    from_landmark: str
    to_address: str
    to_latitude: float
    to_longitude: float
    to_landmark: str
    picked_up_at: Optional[datetime] = None
    out_for_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_to_deliver_at: Optional[datetime] = None
    outcome: str
    failed_message: Optional[str] = None
    estimated_delivery_time: Optional[datetime] = None
    delivery_notes: str

    class Config:
        from_attributes = True


class DeliveryStatusUpdate(BaseModel):
    """Delivery progress step: PICKED_UP, OUT_FOR_DELIVERY, DELIVERED or FAILED."""
    status: str
    failed_message: Optional[str] = Field(None, max_length=500)


class PendingEffect(BaseModel):
    id: int
    effect_type: str
    order_id: str
    status: str
    attempts: int
    last_error: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RetryResult(BaseModel):
    attempted: int
    succeeded: int
    failed: int
