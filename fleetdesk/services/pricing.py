"""
Pricing Service
Loads vehicles, locations, rules and add-ons, then hands them to the pure
PricingEngine.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import BookingPolicy
from ..errors import NotFoundError, ValidationError
from ..models import AddOn, Location, PriceRule, Renter, RuleType, Vehicle
from ..pricing.engine import PricingEngine
from ..schemas import AddOnLine, AddOnSelection, LocationTerms, PriceBreakdown, RuleData

logger = logging.getLogger(__name__)


class PricingService:
    """Service for calculating reservation prices from stored records."""

    def __init__(self, session: AsyncSession, policy: Optional[BookingPolicy] = None):
        self.session = session
        self.policy = policy or BookingPolicy()
        self.engine = PricingEngine(self.policy)

    async def get_vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = await self.session.get(Vehicle, vehicle_id)
        if not vehicle:
            raise NotFoundError("Vehicle not found", {"vehicle_id": vehicle_id})
        return vehicle

    async def get_location(self, location_id: str, role: str = "Location") -> Location:
        location = await self.session.get(Location, location_id)
        if not location:
            raise NotFoundError(f"{role} not found", {"location_id": location_id})
        return location

    async def active_rules(self) -> List[RuleData]:
        """Active non-promo rules in a stable order (creation, then id)."""
        result = await self.session.execute(
            select(PriceRule)
            .where(PriceRule.active.is_(True), PriceRule.type != RuleType.PROMO)
            .order_by(PriceRule.created_at, PriceRule.id)
        )
        return [RuleData.model_validate(rule) for rule in result.scalars().all()]

    async def promo_rule(self, code: Optional[str]) -> Optional[RuleData]:
        if not code:
            return None
        result = await self.session.execute(
            select(PriceRule).where(
                PriceRule.code == code,
                PriceRule.type == RuleType.PROMO,
                PriceRule.active.is_(True),
            )
        )
        rule = result.scalar_one_or_none()
        if not rule:
            raise NotFoundError("Promo code not found", {"promo_code": code})
        return RuleData.model_validate(rule)

    async def resolve_addons(self, selections: Iterable[AddOnSelection]) -> List[AddOnLine]:
        lines = []
        for selection in selections:
            if selection.qty <= 0:
                raise ValidationError("Add-on quantity must be positive", {"addon_id": selection.addon_id})
            addon = await self.session.get(AddOn, selection.addon_id)
            if not addon or not addon.active:
                raise NotFoundError("Add-on not found", {"addon_id": selection.addon_id})
            lines.append(
                AddOnLine(
                    addon_id=addon.id,
                    name=addon.name,
                    qty=selection.qty,
                    per_day=addon.per_day,
                    unit_price=addon.price,
                )
            )
        return lines

    async def renter_age(self, renter_id: Optional[str]) -> Optional[int]:
        if not renter_id:
            return None
        renter = await self.session.get(Renter, renter_id)
        return renter.age if renter else None

    async def price(
        self,
        vehicle: Vehicle,
        start: datetime,
        end: datetime,
        pickup_location: Optional[Location],
        dropoff_location_id: Optional[str],
        addons: Iterable[AddOnSelection] = (),
        promo_code: Optional[str] = None,
        renter_id: Optional[str] = None,
        renter_age: Optional[int] = None,
    ) -> Tuple[PriceBreakdown, List[AddOnLine]]:
        """Price a vehicle for an interval with everything resolved from the store."""
        if pickup_location is None and vehicle.location_id:
            pickup_location = await self.session.get(Location, vehicle.location_id)

        lines = await self.resolve_addons(addons)
        rules = await self.active_rules()
        promo = await self.promo_rule(promo_code)
        age = renter_age if renter_age is not None else await self.renter_age(renter_id)

        one_way = bool(
            pickup_location is not None
            and dropoff_location_id
            and dropoff_location_id != pickup_location.id
        )

        breakdown = self.engine.calculate_breakdown(
            vehicle=vehicle,
            start=start,
            end=end,
            addons=lines,
            location=LocationTerms.model_validate(pickup_location) if pickup_location else None,
            rules=rules,
            promo_rule=promo,
            renter_age=age,
            one_way=one_way,
        )
        logger.info(
            f"Priced vehicle {vehicle.id} for {breakdown.days} day(s): total ${breakdown.total:.2f}"
        )
        return breakdown, lines

    async def quote(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        pickup_location_id: Optional[str] = None,
        dropoff_location_id: Optional[str] = None,
        addons: Iterable[AddOnSelection] = (),
        promo_code: Optional[str] = None,
        renter_age: Optional[int] = None,
    ) -> PriceBreakdown:
        """Price preview without creating anything."""
        vehicle = await self.get_vehicle(vehicle_id)
        pickup = await self.get_location(pickup_location_id, "Pickup location") if pickup_location_id else None
        if dropoff_location_id:
            await self.get_location(dropoff_location_id, "Dropoff location")
        breakdown, _ = await self.price(
            vehicle,
            start,
            end,
            pickup,
            dropoff_location_id,
            addons=addons,
            promo_code=promo_code,
            renter_age=renter_age,
        )
        return breakdown
