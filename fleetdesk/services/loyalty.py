"""
Loyalty points for renters.
Completed rentals earn points on the final total; the tier follows the balance.
"""
from typing import Dict
import logging
import math

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..errors import NotFoundError
from ..models import Renter

logger = logging.getLogger(__name__)

POINTS_PER_DOLLAR = 10

# Lowest balance for each tier, highest first
TIERS: Dict[str, int] = {
    "platinum": 10000,
    "gold": 5000,
    "silver": 1000,
    "bronze": 0,
}


class LoyaltyAward(BaseModel):
    renter_id: str
    points_earned: int
    balance: int
    tier: str


def tier_for(points: int) -> str:
    for tier, floor in TIERS.items():
        if points >= floor:
            return tier
    return "bronze"


class LoyaltyService:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def award_points(self, renter_id: str, amount: float, reason: str = "booking_completed") -> LoyaltyAward:
        """Credit points for `amount` dollars spent and recompute the tier."""
        points = math.floor(max(0.0, amount) * POINTS_PER_DOLLAR)
        async with self.session_factory() as session:
            renter = await session.get(Renter, renter_id)
            if not renter:
                raise NotFoundError("Renter not found", {"renter_id": renter_id})

            renter.loyalty_points = (renter.loyalty_points or 0) + points
            renter.loyalty_tier = tier_for(renter.loyalty_points)
            await session.commit()

            award = LoyaltyAward(
                renter_id=renter.id,
                points_earned=points,
                balance=renter.loyalty_points,
                tier=renter.loyalty_tier,
            )

        logger.info(f"Awarded {points} points to renter {renter_id} ({reason}): balance {award.balance}, tier {award.tier}")
        return award
