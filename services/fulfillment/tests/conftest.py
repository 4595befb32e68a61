"""
Pytest fixtures for the fulfillment service tests.

Tests run against an in-memory SQLite database that is rebuilt for every
test. Collaborator clients are replaced with in-process fakes and the
service clock is pinned to 09:00 on TODAY in the service timezone.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"

import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from app import config, models, timing
from app.clients import catalog_client, customers_client
from app.database import Base, SessionLocal, engine
from app.main import app

TODAY = date(2025, 3, 10)
TOMORROW = TODAY + timedelta(days=1)
YESTERDAY = TODAY - timedelta(days=1)

MENU_ITEMS = {
    "veg-thali": {"id": "veg-thali", "name": "Veg Thali", "price": 180, "meal_type": "LUNCH", "is_live": True},
    "paneer-bowl": {"id": "paneer-bowl", "name": "Paneer Bowl", "price": 150, "meal_type": "LUNCH", "is_live": True},
    "dal-khichdi": {"id": "dal-khichdi", "name": "Dal Khichdi", "price": 160, "meal_type": "DINNER", "is_live": True},
}

ADDONS = {
    "raita": {"id": "raita", "name": "Raita", "price": 40, "is_live": True},
    "papad": {"id": "papad", "name": "Papad", "price": 15.5, "is_live": True},
}

CUSTOMERS = {
    "uid-asha": {
        "id": "cust-1",
        "name": "Asha",
        "address": {"address": "12 MG Road, Pune", "latitude": 18.52, "longitude": 73.85, "landmark": "Near the park"},
    },
    "uid-ravi": {
        "id": "cust-2",
        "name": "Ravi",
        "address": {"address": "4 FC Road, Pune", "latitude": 18.51, "longitude": 73.84, "landmark": ""},
    },
}


def run(coro):
    """Drive an async engine function to completion."""
    return asyncio.run(coro)


def make_token(uid: str, role: str) -> str:
    return jwt.encode({"sub": uid, "role": role}, config.SECRET_KEY, algorithm=config.ALGORITHM)


def auth_headers(uid: str, role: str) -> dict:
    return {"Authorization": f"Bearer {make_token(uid, role)}"}


class FakeClock:
    """Stand-in for the service clock; tests move it with ``at``."""

    def __init__(self):
        self.now = datetime(TODAY.year, TODAY.month, TODAY.day, 9, 0, tzinfo=timing.SERVICE_TZ)

    def at(self, hour: int, minute: int = 0, day: date = TODAY):
        self.now = datetime(day.year, day.month, day.day, hour, minute, tzinfo=timing.SERVICE_TZ)
        return self.now


class FakeCustomerDirectory:
    """In-process customer directory. Set ``down`` to simulate an outage."""

    def __init__(self):
        self.down = False

    async def get_customer_by_external_identity(self, uid, token=None):
        if self.down:
            raise httpx.ConnectError("customers service unreachable")
        return CUSTOMERS.get(uid)

    async def get_customer(self, customer_id, token=None):
        if self.down:
            raise httpx.ConnectError("customers service unreachable")
        for customer in CUSTOMERS.values():
            if customer["id"] == customer_id:
                return customer
        return None


@pytest.fixture(autouse=True)
def db():
    """Fresh schema and a session for each test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(timing, "service_now", lambda: fake.now)
    return fake


@pytest.fixture(autouse=True)
def catalog(monkeypatch):
    async def get_live_menu_item(menu_item_id, meal_type, token=None):
        item = MENU_ITEMS.get(menu_item_id)
        if item is None or not item["is_live"] or item["meal_type"] != meal_type:
            return None
        return dict(item)

    async def get_live_addons(addon_ids, token=None):
        return [dict(ADDONS[addon_id]) for addon_id in addon_ids if addon_id in ADDONS]

    monkeypatch.setattr(catalog_client, "get_live_menu_item", get_live_menu_item)
    monkeypatch.setattr(catalog_client, "get_live_addons", get_live_addons)


@pytest.fixture(autouse=True)
def customers(monkeypatch):
    directory = FakeCustomerDirectory()
    monkeypatch.setattr(
        customers_client, "get_customer_by_external_identity", directory.get_customer_by_external_identity
    )
    monkeypatch.setattr(customers_client, "get_customer", directory.get_customer)
    return directory


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def customer_user():
    from app.auth import CurrentUser
    return CurrentUser(uid="uid-asha", role="customer", token=make_token("uid-asha", "customer"))


@pytest.fixture
def customer_headers():
    return auth_headers("uid-asha", "customer")


@pytest.fixture
def other_customer_headers():
    return auth_headers("uid-ravi", "customer")


@pytest.fixture
def staff_headers():
    return auth_headers("uid-kitchen", "staff")


@pytest.fixture
def admin_headers():
    return auth_headers("uid-admin", "admin")


@pytest.fixture
def subscription_factory(db):
    """Create a plan plus a subscription for a customer."""
    def create(
        customer_id="cust-1",
        total_vouchers=10,
        used_vouchers=0,
        plan_type="BOTH",
        status=models.SubscriptionStatus.ACTIVE.value,
        expiry_date=None,
    ):
        plan = models.SubscriptionPlan(
            name=f"{plan_type} {total_vouchers}",
            days=30,
            plan_type=plan_type,
            total_vouchers=total_vouchers,
            price=Decimal("1500.00"),
        )
        db.add(plan)
        db.flush()
        subscription = models.Subscription(
            customer_id=customer_id,
            plan_id=plan.id,
            plan_type=plan_type,
            purchase_date=datetime.utcnow(),
            expiry_date=expiry_date or datetime.utcnow() + timedelta(days=30),
            total_vouchers=total_vouchers,
            used_vouchers=used_vouchers,
            amount_paid=Decimal("1500.00"),
            status=status,
        )
        db.add(subscription)
        db.commit()
        db.refresh(subscription)
        return subscription
    return create


@pytest.fixture
def driver_factory(db):
    counter = {"n": 0}

    def create(
        name="Driver",
        external_uid=None,
        availability_status=models.AvailabilityStatus.AVAILABLE.value,
        last_delivery_at=None,
        is_active=True,
    ):
        counter["n"] += 1
        driver = models.DeliveryDriver(
            name=name,
            phone=f"+9190000000{counter['n']:02d}",
            external_uid=external_uid,
            is_active=is_active,
            availability_status=availability_status,
            last_delivery_at=last_delivery_at,
        )
        db.add(driver)
        db.commit()
        db.refresh(driver)
        return driver
    return create


@pytest.fixture
def order_factory(db):
    """Insert an order directly, bypassing placement."""
    counter = {"n": 0}

    def create(
        customer_id="cust-1",
        meal_type="LUNCH",
        scheduled_for_date=TOMORROW,
        menu_item_id="veg-thali",
        total=Decimal("180.00"),
        status=models.OrderStatus.PLACED.value,
        subscription=None,
        vouchers_consumed=0,
    ):
        counter["n"] += 1
        order = models.Order(
            id=f"order-{counter['n']}",
            customer_id=customer_id,
            meal_type=meal_type,
            scheduled_for_date=scheduled_for_date,
            packaging_type="STEEL_DABBA",
            special_instructions="",
            menu_item_id=menu_item_id,
            menu_item_price=Decimal("180.00"),
            addons=[],
            total=total,
            subscription_id=subscription.id if subscription is not None else None,
            vouchers_consumed=vouchers_consumed,
            status=status,
        )
        db.add(order)
        if subscription is not None and vouchers_consumed:
            db.add(models.VoucherLedgerEntry(
                subscription_id=subscription.id,
                order_id=order.id,
                entry_type=models.LedgerEntryType.CONSUME.value,
                count=vouchers_consumed,
            ))
        db.commit()
        db.refresh(order)
        return order
    return create
