"""
Quote API: price preview without creating a booking.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ...database import ensure_utc
from ...schemas import PriceBreakdown, QuoteRequest
from ...services.bookings import BookingLifecycle
from ...services.pricing import PricingService
from ..deps import get_lifecycle, get_session

router = APIRouter(prefix="/api", tags=["Quotes"])


@router.post("/quotes", response_model=PriceBreakdown)
async def create_quote(
    quote_request: QuoteRequest,
    session: AsyncSession = Depends(get_session),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    service = PricingService(session, lifecycle.policy)
    return await service.quote(
        vehicle_id=quote_request.vehicle_id,
        start=ensure_utc(quote_request.start_date),
        end=ensure_utc(quote_request.end_date),
        pickup_location_id=quote_request.pickup_location_id,
        dropoff_location_id=quote_request.dropoff_location_id,
        addons=quote_request.addons,
        promo_code=quote_request.promo_code,
        renter_age=quote_request.renter_age,
    )
