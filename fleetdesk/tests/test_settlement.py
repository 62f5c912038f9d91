"""
Tests for end-of-rental settlement and the cancellation policy.
"""
from datetime import datetime, timedelta, timezone

import pytest

from fleetdesk.config import BookingPolicy
from fleetdesk.errors import ValidationError
from fleetdesk.pricing.settlement import CancellationPolicy, SettlementCalculator
from fleetdesk.schemas import LocationTerms

START = datetime(2025, 6, 3, 9, 0, tzinfo=timezone.utc)
END = START + timedelta(days=3)


@pytest.fixture
def calculator():
    return SettlementCalculator(BookingPolicy())


class TestSettlement:
    def test_late_return_charged_per_started_hour(self, calculator):
        settlement = calculator.settle(START, END, END + timedelta(hours=2), original_total=165.0)

        assert settlement.late_hours == 2
        assert settlement.late_fee == 20.0
        assert settlement.final_total == 185.0

    def test_one_minute_late_is_a_full_hour(self, calculator):
        settlement = calculator.settle(START, END, END + timedelta(minutes=1), original_total=100.0)

        assert settlement.late_hours == 1
        assert settlement.late_fee == 10.0

    def test_on_time_return_has_no_adjustments(self, calculator):
        settlement = calculator.settle(START, END, END - timedelta(hours=1), original_total=165.0)

        assert settlement.late_fee == 0.0
        assert settlement.total_adjustments == 0.0
        assert settlement.final_total == 165.0

    def test_mileage_over_allowance(self, calculator):
        settlement = calculator.settle(
            START, END, END, original_total=165.0, pickup_odometer=1000.0, return_odometer=1450.0
        )

        assert settlement.actual_miles == 450.0
        assert settlement.extra_miles == 150.0
        assert settlement.extra_mileage_cost == 75.0
        assert settlement.final_total == 240.0

    def test_mileage_within_allowance(self, calculator):
        settlement = calculator.settle(
            START, END, END, original_total=165.0, pickup_odometer=1000.0, return_odometer=1200.0
        )

        assert settlement.extra_miles == 0.0
        assert settlement.extra_mileage_cost == 0.0

    def test_mileage_skipped_without_both_readings(self, calculator):
        settlement = calculator.settle(START, END, END, original_total=165.0, return_odometer=5000.0)

        assert settlement.actual_miles is None
        assert settlement.extra_mileage_cost == 0.0

    def test_odometer_going_backwards_rejected(self, calculator):
        with pytest.raises(ValidationError):
            calculator.settle(START, END, END, original_total=165.0, pickup_odometer=1000.0, return_odometer=900.0)

    def test_fuel_refill_charge(self, calculator):
        settlement = calculator.settle(START, END, END, original_total=165.0, return_fuel_level=0.25)

        assert settlement.fuel_cost == 3.0

    def test_fuel_level_out_of_range_rejected(self, calculator):
        with pytest.raises(ValidationError):
            calculator.settle(START, END, END, original_total=165.0, return_fuel_level=1.5)

    def test_damage_only_charged_when_flagged(self, calculator):
        damaged = calculator.settle(START, END, END, original_total=165.0, damage=True, damage_cost=250.5)
        clean = calculator.settle(START, END, END, original_total=165.0, damage=False, damage_cost=250.5)

        assert damaged.damage_cost == 250.5
        assert damaged.final_total == 415.5
        assert clean.damage_cost == 0.0

    def test_negative_damage_cost_rejected(self, calculator):
        with pytest.raises(ValidationError):
            calculator.settle(START, END, END, original_total=165.0, damage=True, damage_cost=-1.0)

    def test_location_terms_override_policy(self, calculator):
        terms = LocationTerms(late_fee_per_hour=15.0, fuel_price_per_gallon=5.0)
        settlement = calculator.settle(
            START, END, END + timedelta(hours=2), original_total=100.0, return_fuel_level=0.5, location=terms
        )

        assert settlement.late_fee == 30.0
        assert settlement.fuel_cost == 2.5
        assert settlement.total_adjustments == 32.5
        assert settlement.final_total == 132.5

    def test_all_adjustments_combined(self, calculator):
        settlement = calculator.settle(
            START,
            END,
            END + timedelta(hours=3),
            original_total=165.0,
            pickup_odometer=100.0,
            return_odometer=500.0,
            return_fuel_level=0.5,
            damage=True,
            damage_cost=100.0,
        )

        # 30 late + 50 mileage + 2 fuel + 100 damage
        assert settlement.total_adjustments == 182.0
        assert settlement.final_total == 347.0


class TestCancellationPolicy:
    @pytest.fixture
    def policy(self):
        return CancellationPolicy(BookingPolicy())

    def test_inside_window_forfeits_half(self, policy):
        terms = policy.assess(200.0, START, START - timedelta(hours=24))

        assert terms.hours_before_start == 24.0
        assert terms.cancellation_fee == 100.0
        assert terms.refund_amount == 100.0
        assert terms.policy == "50% fee"

    def test_window_boundary_is_inclusive(self, policy):
        terms = policy.assess(200.0, START, START - timedelta(hours=48))

        assert terms.cancellation_fee == 100.0

    def test_outside_window_is_free(self, policy):
        terms = policy.assess(200.0, START, START - timedelta(hours=72))

        assert terms.cancellation_fee == 0.0
        assert terms.refund_amount == 200.0
        assert terms.policy == "free"

    def test_custom_window_and_rate(self):
        policy = CancellationPolicy(BookingPolicy(cancellation_window_hours=24, cancellation_fee_rate=0.25))

        inside = policy.assess(165.0, START, START - timedelta(hours=12))
        outside = policy.assess(165.0, START, START - timedelta(hours=30))

        assert inside.cancellation_fee == 41.25
        assert inside.refund_amount == 123.75
        assert outside.cancellation_fee == 0.0
