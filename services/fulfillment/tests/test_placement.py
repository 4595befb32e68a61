"""
Tests for order placement.
"""
from decimal import Decimal

import pytest

from app import models, placement, schemas
from app.auth import CurrentUser
from app.exceptions import NotFound, ResourceConflict, Unauthorized, ValidationFailed

from conftest import TODAY, TOMORROW, YESTERDAY, make_token, run


def _request(**overrides):
    data = {
        "meal_type": "lunch",
        "scheduled_for_date": TOMORROW,
        "menu_item_id": "veg-thali",
        "addon_ids": [],
        "use_voucher": False,
        "packaging_type": "steel_dabba",
    }
    data.update(overrides)
    return schemas.OrderCreate(**data)


class TestPlaceOrder:

    def test_places_order_with_price_snapshot(self, db, customer_user):
        order = run(placement.place_order(db, customer_user, _request(addon_ids=["raita", "papad"])))

        assert order.status == models.OrderStatus.PLACED.value
        assert order.customer_id == "cust-1"
        assert order.meal_type == "LUNCH"
        assert order.packaging_type == "STEEL_DABBA"
        assert order.menu_item_price == Decimal("180")
        assert [a["addon_id"] for a in order.addons] == ["raita", "papad"]
        assert order.total == Decimal("235.50")
        assert order.vouchers_consumed == 0
        assert order.subscription_id is None
        assert order.placed_at is not None

    def test_voucher_covers_menu_price_only(self, db, customer_user, subscription_factory):
        subscription = subscription_factory(total_vouchers=10, used_vouchers=0)

        order = run(placement.place_order(
            db, customer_user, _request(addon_ids=["raita"], use_voucher=True)
        ))

        assert order.total == Decimal("40.00")
        assert order.vouchers_consumed == 1
        assert order.subscription_id == subscription.id
        db.refresh(subscription)
        assert subscription.used_vouchers == 1

    def test_voucher_total_never_negative(self, db, customer_user, subscription_factory):
        subscription_factory()
        order = run(placement.place_order(db, customer_user, _request(use_voucher=True)))
        assert order.total == Decimal("0.00")

    def test_last_voucher_exhausts_subscription(self, db, customer_user, subscription_factory):
        subscription = subscription_factory(total_vouchers=2, used_vouchers=1)
        run(placement.place_order(db, customer_user, _request(use_voucher=True)))
        db.refresh(subscription)
        assert subscription.used_vouchers == 2
        assert subscription.status == models.SubscriptionStatus.EXHAUSTED.value

    def test_lunch_today_at_noon_rejected(self, db, customer_user, clock):
        clock.at(12)
        with pytest.raises(ValidationFailed, match="11:00"):
            run(placement.place_order(db, customer_user, _request(scheduled_for_date=TODAY)))

    def test_lunch_today_at_nine_accepted(self, db, customer_user, clock):
        clock.at(9)
        order = run(placement.place_order(db, customer_user, _request(scheduled_for_date=TODAY)))
        assert order.scheduled_for_date == TODAY

    def test_past_date_rejected(self, db, customer_user):
        with pytest.raises(ValidationFailed, match="past"):
            run(placement.place_order(db, customer_user, _request(scheduled_for_date=YESTERDAY)))

    def test_unknown_meal_type_rejected(self, db, customer_user):
        with pytest.raises(ValidationFailed, match="meal type"):
            run(placement.place_order(db, customer_user, _request(meal_type="brunch")))

    def test_unknown_packaging_rejected(self, db, customer_user):
        with pytest.raises(ValidationFailed, match="packaging type"):
            run(placement.place_order(db, customer_user, _request(packaging_type="box")))

    def test_duplicate_live_order_conflicts(self, db, customer_user):
        run(placement.place_order(db, customer_user, _request()))
        with pytest.raises(ResourceConflict):
            run(placement.place_order(db, customer_user, _request()))

    def test_duplicate_allowed_after_cancellation(self, db, customer_user):
        first = run(placement.place_order(db, customer_user, _request()))
        first.status = models.OrderStatus.CANCELLED.value
        db.commit()

        second = run(placement.place_order(db, customer_user, _request()))
        assert second.id != first.id

    def test_different_menu_item_same_slot_allowed(self, db, customer_user):
        run(placement.place_order(db, customer_user, _request()))
        order = run(placement.place_order(db, customer_user, _request(menu_item_id="paneer-bowl")))
        assert order.menu_item_id == "paneer-bowl"

    def test_duplicate_blocked_by_unique_index(self, db, customer_user, monkeypatch):
        run(placement.place_order(db, customer_user, _request()))
        # Simulate a concurrent request that passed the pre-check
        monkeypatch.setattr(placement, "find_live_duplicate", lambda *args: None)
        with pytest.raises(ResourceConflict):
            run(placement.place_order(db, customer_user, _request()))

    def test_duplicate_rollback_returns_voucher(self, db, customer_user, subscription_factory, monkeypatch):
        subscription = subscription_factory(total_vouchers=5)
        run(placement.place_order(db, customer_user, _request(use_voucher=True)))
        monkeypatch.setattr(placement, "find_live_duplicate", lambda *args: None)

        with pytest.raises(ResourceConflict):
            run(placement.place_order(db, customer_user, _request(use_voucher=True)))
        db.refresh(subscription)
        assert subscription.used_vouchers == 1

    def test_menu_item_for_other_meal_not_found(self, db, customer_user):
        with pytest.raises(NotFound, match="Menu item"):
            run(placement.place_order(db, customer_user, _request(menu_item_id="dal-khichdi")))

    def test_missing_addon_rejects_whole_order(self, db, customer_user):
        with pytest.raises(NotFound, match="ghee"):
            run(placement.place_order(db, customer_user, _request(addon_ids=["raita", "ghee"])))
        assert db.query(models.Order).count() == 0

    def test_voucher_without_subscription_not_found(self, db, customer_user):
        with pytest.raises(NotFound, match="No active subscription"):
            run(placement.place_order(db, customer_user, _request(use_voucher=True)))
        assert db.query(models.Order).count() == 0

    def test_unknown_customer_unauthorized(self, db):
        stranger = CurrentUser(uid="uid-nobody", role="customer", token=make_token("uid-nobody", "customer"))
        with pytest.raises(Unauthorized):
            run(placement.place_order(db, stranger, _request()))

    def test_created_event_logged(self, db, customer_user):
        order = run(placement.place_order(db, customer_user, _request()))
        events = db.query(models.OrderEvent).filter(models.OrderEvent.order_id == order.id).all()
        assert [e.event_type for e in events] == ["created"]
        assert events[0].actor == "uid-asha"
