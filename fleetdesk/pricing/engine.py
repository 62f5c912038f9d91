"""
Pricing Engine for vehicle reservations
Turns a vehicle rate, interval, add-ons, rules, promo and renter age into a
line-item breakdown.

The engine never reads from the database: the active rule set and location
terms are passed in, so identical inputs always give an identical breakdown.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional
import logging

from ..config import BookingPolicy
from ..errors import ValidationError
from ..models import RuleType
from ..schemas import AddOnLine, LocationTerms, PriceBreakdown
from .money import DAY, round2, rental_days

logger = logging.getLogger(__name__)


def sunday_weekday(day: datetime) -> int:
    """Weekday with 0=Sunday .. 6=Saturday, the numbering stored on weekday rules."""
    return (day.weekday() + 1) % 7


def _overlaps(start: datetime, end: datetime, rule_start: datetime, rule_end: datetime) -> bool:
    return not (end < rule_start or start > rule_end)


class PricingEngine:
    """Core pricing engine for reservation quotes"""

    def __init__(self, policy: Optional[BookingPolicy] = None):
        self.policy = policy or BookingPolicy()

    def calculate_breakdown(
        self,
        vehicle: Any,
        start: datetime,
        end: datetime,
        addons: Iterable[AddOnLine] = (),
        location: Optional[Any] = None,
        rules: Iterable[Any] = (),
        promo_rule: Optional[Any] = None,
        renter_age: Optional[int] = None,
        one_way: bool = False,
    ) -> PriceBreakdown:
        """
        Calculate a complete price breakdown.

        Args:
            vehicle: object with daily_rate / base_daily_rate
            start, end: rental interval (end strictly after start)
            addons: resolved add-on lines (unit price, qty, per-day flag)
            location: pickup location terms; unset fields use the policy
            rules: seasonal / weekday / length_of_rental rules, applied in order
            promo_rule: optional promo rule (flat_amount or multiplier)
            renter_age: renter age for the young-driver surcharge
            one_way: pickup and dropoff locations differ

        Returns:
            PriceBreakdown with every intermediate amount
        """
        if end <= start:
            raise ValidationError("End date must be after start date")

        terms = location or LocationTerms()
        days = rental_days(start, end)

        daily_rate = vehicle.daily_rate if vehicle.daily_rate is not None else (vehicle.base_daily_rate or 0.0)
        day_rates = [float(daily_rate)] * days

        for rule in rules:
            self._apply_rule(rule, day_rates, start, end, days)

        subtotal = round2(sum(day_rates))

        lines: List[AddOnLine] = []
        for addon in addons:
            line_price = addon.unit_price * addon.qty * days if addon.per_day else addon.unit_price * addon.qty
            lines.append(addon.model_copy(update={"line_price": round2(line_price)}))
        addons_total = round2(sum(line.line_price for line in lines))

        fees = 0.0
        if one_way:
            fees = round2(self._term(terms, "one_way_fee", self.policy.one_way_fee))

        young_driver_fee = 0.0
        threshold = self._term(terms, "min_age_threshold", self.policy.young_driver_age)
        if renter_age and 0 < renter_age < threshold:
            per_day = self._term(terms, "young_driver_fee_per_day", self.policy.young_driver_fee_per_day)
            young_driver_fee = round2(per_day * days)

        tax_rate = self._term(terms, "tax_rate", self.policy.default_tax_rate)
        taxes = round2(tax_rate * (subtotal + addons_total + fees + young_driver_fee))

        total_before_promo = round2(subtotal + addons_total + fees + young_driver_fee + taxes)

        promo_discount = 0.0
        promo_code = None
        if promo_rule is not None:
            promo_code = promo_rule.code
            if promo_rule.flat_amount:
                promo_discount = round2(promo_rule.flat_amount)
            elif promo_rule.multiplier:
                promo_discount = round2(total_before_promo * (1 - 1 / promo_rule.multiplier))

        total = max(0.0, round2(total_before_promo - promo_discount))

        return PriceBreakdown(
            days=days,
            daily_rates=day_rates,
            subtotal=subtotal,
            addons=lines,
            addons_total=addons_total,
            fees=fees,
            young_driver_fee=young_driver_fee,
            tax_rate=tax_rate,
            taxes=taxes,
            total_before_promo=total_before_promo,
            promo_code=promo_code,
            promo_discount=promo_discount,
            total=total,
        )

    def _apply_rule(self, rule: Any, day_rates: List[float], start: datetime, end: datetime, days: int) -> None:
        """Fold one rule into the per-day rates. Overlapping rules stack in list order."""
        if not getattr(rule, "active", True):
            return

        if rule.type == RuleType.SEASONAL:
            if rule.start_date is None or rule.end_date is None:
                return
            if not _overlaps(start, end, rule.start_date, rule.end_date):
                return
            for i in range(days):
                if rule.multiplier:
                    day_rates[i] = day_rates[i] * rule.multiplier
                if rule.flat_amount:
                    day_rates[i] = day_rates[i] + rule.flat_amount

        elif rule.type == RuleType.WEEKDAY and rule.multiplier:
            weekdays = set(rule.weekdays or [])
            for i in range(days):
                if sunday_weekday(start + i * DAY) in weekdays:
                    day_rates[i] = day_rates[i] * rule.multiplier

        elif rule.type == RuleType.LENGTH_OF_RENTAL and rule.multiplier:
            if rule.min_days and days >= rule.min_days:
                for i in range(days):
                    day_rates[i] = day_rates[i] * rule.multiplier

        elif rule.type == RuleType.PROMO:
            logger.debug(f"Ignoring promo rule {rule.code} in rule list; promos are applied separately")

    @staticmethod
    def _term(terms: Any, name: str, default: float) -> float:
        value = getattr(terms, name, None)
        return default if value is None else value
