"""
Tests for the meal cutoff rules.
"""
from types import SimpleNamespace

from app import timing
from app.models import MealType

from conftest import TODAY, TOMORROW, YESTERDAY


class TestCanPlace:
    """Placement cutoffs evaluated on the service clock."""

    def test_lunch_today_before_cutoff(self, clock):
        allowed, reason = timing.can_place(MealType.LUNCH, TODAY, clock.at(9))
        assert allowed
        assert reason == ""

    def test_lunch_today_at_noon_rejected(self, clock):
        allowed, reason = timing.can_place(MealType.LUNCH, TODAY, clock.at(12))
        assert not allowed
        assert "11:00" in reason

    def test_lunch_cutoff_is_exclusive(self, clock):
        assert timing.can_place(MealType.LUNCH, TODAY, clock.at(10, 59))[0]
        assert not timing.can_place(MealType.LUNCH, TODAY, clock.at(11, 0))[0]

    def test_dinner_today(self, clock):
        assert timing.can_place(MealType.DINNER, TODAY, clock.at(18, 30))[0]
        assert not timing.can_place(MealType.DINNER, TODAY, clock.at(19))[0]

    def test_future_always_allowed(self, clock):
        assert timing.can_place(MealType.LUNCH, TOMORROW, clock.at(23, 59))[0]

    def test_uses_patched_service_clock_by_default(self, clock):
        clock.at(12)
        assert not timing.can_place(MealType.LUNCH, TODAY)[0]
        clock.at(9)
        assert timing.can_place(MealType.LUNCH, TODAY)[0]


class TestCanCancel:
    """Cancellation compares scheduled dates at day granularity."""

    def _order(self, meal_type="LUNCH", day=TODAY):
        return SimpleNamespace(meal_type=meal_type, scheduled_for_date=day)

    def test_past_date_rejected(self, clock):
        allowed, reason = timing.can_cancel(self._order(day=YESTERDAY), clock.at(8))
        assert not allowed
        assert "past" in reason

    def test_today_before_cutoff(self, clock):
        assert timing.can_cancel(self._order(), clock.at(10))[0]

    def test_today_after_cutoff(self, clock):
        allowed, reason = timing.can_cancel(self._order(), clock.at(11, 30))
        assert not allowed
        assert "11:00" in reason

    def test_today_dinner_after_lunch_cutoff(self, clock):
        assert timing.can_cancel(self._order(meal_type="DINNER"), clock.at(15))[0]

    def test_today_early_morning_is_not_a_past_date(self, clock):
        # Midnight-to-cutoff window belongs to today, not to the past
        assert timing.can_cancel(self._order(), clock.at(0, 5))[0]

    def test_future_always_allowed(self, clock):
        assert timing.can_cancel(self._order(day=TOMORROW), clock.at(23))[0]
