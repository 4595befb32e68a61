"""
Tests for the voucher ledger.
"""
from datetime import datetime, timedelta

import pytest

from app import models, vouchers
from app.exceptions import NotFound, StateConflict, ValidationFailed
from app.models import MealType, SubscriptionStatus


class TestConsume:

    def test_consume_increments_and_records_ledger(self, db, subscription_factory):
        subscription = subscription_factory(total_vouchers=5, used_vouchers=1)

        vouchers.consume(db, subscription.id, "order-a")
        db.commit()
        db.refresh(subscription)

        assert subscription.used_vouchers == 2
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        entries = vouchers.get_ledger(db, subscription.id)
        assert [(e.order_id, e.entry_type, e.count) for e in entries] == [("order-a", "CONSUME", 1)]

    def test_reaching_total_marks_exhausted(self, db, subscription_factory):
        subscription = subscription_factory(total_vouchers=3, used_vouchers=2)

        vouchers.consume(db, subscription.id, "order-a")
        db.commit()
        db.refresh(subscription)

        assert subscription.used_vouchers == 3
        assert subscription.status == SubscriptionStatus.EXHAUSTED.value

    def test_consume_beyond_remaining_fails(self, db, subscription_factory):
        subscription = subscription_factory(total_vouchers=3, used_vouchers=2)

        with pytest.raises(StateConflict):
            vouchers.consume(db, subscription.id, "order-a", count=2)
        db.rollback()
        db.refresh(subscription)
        assert subscription.used_vouchers == 2

    def test_exhausted_subscription_refuses(self, db, subscription_factory):
        subscription = subscription_factory(
            total_vouchers=3, used_vouchers=3, status=SubscriptionStatus.EXHAUSTED.value
        )
        with pytest.raises(StateConflict):
            vouchers.consume(db, subscription.id, "order-a")

    def test_same_order_cannot_consume_twice(self, db, subscription_factory):
        from sqlalchemy.exc import IntegrityError

        subscription = subscription_factory(total_vouchers=5)
        vouchers.consume(db, subscription.id, "order-a")
        db.commit()

        vouchers.consume(db, subscription.id, "order-a")
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
        db.refresh(subscription)
        assert subscription.used_vouchers == 1


class TestReverse:

    def test_reverse_reactivates_exhausted(self, db, subscription_factory, order_factory):
        subscription = subscription_factory(
            total_vouchers=1, used_vouchers=1, status=SubscriptionStatus.EXHAUSTED.value
        )
        order = order_factory(subscription=subscription, vouchers_consumed=1)

        assert vouchers.reverse(db, order) is True
        db.commit()
        db.refresh(subscription)

        assert subscription.used_vouchers == 0
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    def test_reverse_happens_exactly_once(self, db, subscription_factory, order_factory):
        subscription = subscription_factory(total_vouchers=5, used_vouchers=2)
        order = order_factory(subscription=subscription, vouchers_consumed=1)

        assert vouchers.reverse(db, order) is True
        db.commit()
        assert vouchers.reverse(db, order) is False
        db.commit()
        db.refresh(subscription)

        assert subscription.used_vouchers == 1
        reversals = [e for e in vouchers.get_ledger(db, subscription.id) if e.entry_type == "REVERSE"]
        assert len(reversals) == 1

    def test_expired_exhausted_subscription_stays_exhausted(self, db, subscription_factory, order_factory):
        subscription = subscription_factory(
            total_vouchers=1,
            used_vouchers=1,
            status=SubscriptionStatus.EXHAUSTED.value,
            expiry_date=datetime.utcnow() - timedelta(days=1),
        )
        order = order_factory(subscription=subscription, vouchers_consumed=1)

        vouchers.reverse(db, order)
        db.commit()
        db.refresh(subscription)

        assert subscription.used_vouchers == 0
        assert subscription.status == SubscriptionStatus.EXHAUSTED.value

    def test_order_without_vouchers_is_noop(self, db, order_factory):
        order = order_factory()
        assert vouchers.reverse(db, order) is False

    def test_counter_never_goes_negative(self, db, subscription_factory, order_factory):
        subscription = subscription_factory(total_vouchers=5, used_vouchers=0)
        order = order_factory(subscription=subscription, vouchers_consumed=1)

        assert vouchers.reverse(db, order) is False
        db.commit()
        db.refresh(subscription)
        assert subscription.used_vouchers == 0


class TestFindUsableSubscription:

    def test_none_available(self, db):
        with pytest.raises(NotFound, match="No active subscription"):
            vouchers.find_usable_subscription(db, "cust-1", MealType.LUNCH)

    def test_plan_type_must_cover_meal(self, db, subscription_factory):
        subscription_factory(plan_type="DINNER_ONLY")
        with pytest.raises(ValidationFailed, match="does not cover lunch"):
            vouchers.find_usable_subscription(db, "cust-1", MealType.LUNCH)

    def test_prefers_covering_plan(self, db, subscription_factory):
        subscription_factory(plan_type="DINNER_ONLY")
        lunch = subscription_factory(plan_type="LUNCH_ONLY")
        assert vouchers.find_usable_subscription(db, "cust-1", MealType.LUNCH).id == lunch.id

    def test_skips_expired_and_full(self, db, subscription_factory):
        subscription_factory(expiry_date=datetime.utcnow() - timedelta(hours=1))
        subscription_factory(
            total_vouchers=2, used_vouchers=2, status=models.SubscriptionStatus.EXHAUSTED.value
        )
        with pytest.raises(ValidationFailed):
            vouchers.find_usable_subscription(db, "cust-1", MealType.DINNER)
