"""
Availability API for querying free vehicles over an interval.
"""
from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ...database import ensure_utc
from ...schemas import AvailabilityCheck, VehicleView
from ...services.availability import AvailabilityService
from ...services.bookings import BookingLifecycle
from ..deps import get_lifecycle, get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/availability", tags=["Availability"])


@router.get("/check", response_model=AvailabilityCheck)
async def check_availability(
    vehicle_id: str = Query(..., description="Vehicle to check"),
    start_date: datetime = Query(..., description="Pickup time (ISO 8601)"),
    end_date: datetime = Query(..., description="Drop-off time (ISO 8601)"),
    session: AsyncSession = Depends(get_session),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """
    Check whether one vehicle is free for the interval.

    Holds past their expiry do not count against availability.
    """
    start, end = ensure_utc(start_date), ensure_utc(end_date)
    available = await AvailabilityService.is_available(session, vehicle_id, start, end, lifecycle.clock())
    return AvailabilityCheck(vehicle_id=vehicle_id, start_date=start, end_date=end, available=available)


@router.get("/vehicles", response_model=List[VehicleView])
async def list_available_vehicles(
    start_date: datetime = Query(..., description="Pickup time (ISO 8601)"),
    end_date: datetime = Query(..., description="Drop-off time (ISO 8601)"),
    category: Optional[str] = Query(None, description="Filter by vehicle category"),
    location: Optional[str] = Query(None, description="Filter by home location code"),
    session: AsyncSession = Depends(get_session),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """
    List vehicles free for the interval.

    - **category**: e.g. economy, suv
    - **location**: location code; an unknown code returns an empty list
    """
    vehicles = await AvailabilityService.find_available(
        session,
        ensure_utc(start_date),
        ensure_utc(end_date),
        lifecycle.clock(),
        category=category,
        location_code=location,
    )
    logger.info(f"Found {len(vehicles)} available vehicle(s) for {start_date}..{end_date}")
    return [VehicleView.model_validate(vehicle) for vehicle in vehicles]
