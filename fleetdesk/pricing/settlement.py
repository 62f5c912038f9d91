"""
Settlement and cancellation calculations.
Pure functions over already-fetched booking data.
"""

from datetime import datetime
from typing import Any, Optional
import math

from pydantic import BaseModel

from ..config import BookingPolicy
from ..errors import ValidationError
from .money import HOUR, hours_between, rental_days, round2


class Settlement(BaseModel):
    rental_days: int
    late_hours: int = 0
    late_fee: float = 0.0
    actual_miles: Optional[float] = None
    extra_miles: float = 0.0
    extra_mileage_cost: float = 0.0
    fuel_cost: float = 0.0
    damage_cost: float = 0.0
    total_adjustments: float = 0.0
    original_total: float
    final_total: float


class CancellationTerms(BaseModel):
    hours_before_start: float
    cancellation_fee: float
    refund_amount: float
    policy: str


def _term(terms: Any, name: str, default: float) -> float:
    value = getattr(terms, name, None) if terms is not None else None
    return default if value is None else value


class SettlementCalculator:
    """Computes end-of-rental adjustments and the final total."""

    def __init__(self, policy: Optional[BookingPolicy] = None):
        self.policy = policy or BookingPolicy()

    def settle(
        self,
        start: datetime,
        end: datetime,
        returned_at: datetime,
        original_total: float,
        pickup_odometer: Optional[float] = None,
        return_odometer: Optional[float] = None,
        return_fuel_level: Optional[float] = None,
        damage: bool = False,
        damage_cost: float = 0.0,
        location: Optional[Any] = None,
    ) -> Settlement:
        days = rental_days(start, end)

        late_hours = 0
        late_fee = 0.0
        if returned_at > end:
            late_hours = math.ceil((returned_at - end) / HOUR)
            late_fee = round2(late_hours * _term(location, "late_fee_per_hour", self.policy.late_fee_per_hour))

        actual_miles = None
        extra_miles = 0.0
        extra_mileage_cost = 0.0
        if pickup_odometer is not None and return_odometer is not None:
            if return_odometer < pickup_odometer:
                raise ValidationError(
                    "Return odometer reading is below the pickup reading",
                    {"pickup_odometer": pickup_odometer, "return_odometer": return_odometer},
                )
            actual_miles = return_odometer - pickup_odometer
            expected = days * _term(location, "expected_miles_per_day", self.policy.expected_miles_per_day)
            extra_miles = max(0.0, actual_miles - expected)
            extra_mileage_cost = round2(extra_miles * _term(location, "extra_mileage_rate", self.policy.extra_mileage_rate))

        fuel_cost = 0.0
        if return_fuel_level is not None:
            if not 0.0 <= return_fuel_level <= 1.0:
                raise ValidationError("Fuel level must be a fraction between 0 and 1")
            fuel_price = _term(location, "fuel_price_per_gallon", self.policy.fuel_price_per_gallon)
            fuel_cost = round2(max(0.0, 1.0 - return_fuel_level) * fuel_price)

        damage_amount = 0.0
        if damage:
            if damage_cost < 0:
                raise ValidationError("Damage cost cannot be negative")
            damage_amount = round2(damage_cost)

        total_adjustments = round2(late_fee + extra_mileage_cost + fuel_cost + damage_amount)

        return Settlement(
            rental_days=days,
            late_hours=late_hours,
            late_fee=late_fee,
            actual_miles=actual_miles,
            extra_miles=extra_miles,
            extra_mileage_cost=extra_mileage_cost,
            fuel_cost=fuel_cost,
            damage_cost=damage_amount,
            total_adjustments=total_adjustments,
            original_total=original_total,
            final_total=round2(original_total + total_adjustments),
        )


class CancellationPolicy:
    """Free cancellation outside the window, a forfeited share inside it."""

    def __init__(self, policy: Optional[BookingPolicy] = None):
        self.policy = policy or BookingPolicy()

    def assess(self, total: float, start: datetime, now: datetime) -> CancellationTerms:
        hours_before_start = hours_between(now, start)

        if hours_before_start <= self.policy.cancellation_window_hours:
            fee = round2(total * self.policy.cancellation_fee_rate)
            return CancellationTerms(
                hours_before_start=round2(hours_before_start),
                cancellation_fee=fee,
                refund_amount=round2(total - fee),
                policy=f"{int(self.policy.cancellation_fee_rate * 100)}% fee",
            )

        return CancellationTerms(
            hours_before_start=round2(hours_before_start),
            cancellation_fee=0.0,
            refund_amount=round2(total),
            policy="free",
        )
