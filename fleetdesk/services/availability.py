"""
Availability resolver for vehicles.

A vehicle is taken for [start, end] when another booking in the committing
set overlaps it (closed intervals). Holds past their expiry are ignored at
read time; `committing_clause` is the only place that decides this and every
availability path goes through it.
"""
from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFoundError, ValidationError
from ..models import Booking, BookingStatus, Location, Vehicle, VehicleStatus

logger = logging.getLogger(__name__)

# Confirmed bookings and their post-confirmation sub-states
COMMITTED_STATUSES = (
    BookingStatus.CONFIRMED,
    BookingStatus.READY_FOR_PICKUP,
    BookingStatus.CHECKED_IN,
    BookingStatus.ACTIVE,
)


def committing_clause(now: datetime):
    """Bookings that occupy their vehicle at `now`: committed, or an unexpired hold."""
    return or_(
        Booking.status.in_(COMMITTED_STATUSES),
        and_(
            Booking.status == BookingStatus.PENDING_HOLD,
            or_(Booking.hold_expires_at.is_(None), Booking.hold_expires_at >= now),
        ),
    )


def overlap_clause(start: datetime, end: datetime):
    return and_(Booking.start_date <= end, Booking.end_date >= start)


def is_hold_expired(booking: Booking, now: datetime) -> bool:
    return (
        booking.status == BookingStatus.PENDING_HOLD
        and booking.hold_expires_at is not None
        and booking.hold_expires_at < now
    )


class AvailabilityService:
    """Service answering whether vehicles are free for an interval."""

    @staticmethod
    def validate_interval(start: datetime, end: datetime) -> None:
        if end <= start:
            raise ValidationError(
                "End date must be after start date",
                {"start_date": start.isoformat(), "end_date": end.isoformat()},
            )

    @staticmethod
    async def find_conflicts(
        session: AsyncSession,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """Committing bookings for the vehicle that overlap [start, end]."""
        AvailabilityService.validate_interval(start, end)

        conditions = [
            Booking.vehicle_id == vehicle_id,
            committing_clause(now),
            overlap_clause(start, end),
        ]
        if exclude_booking_id:
            conditions.append(Booking.id != exclude_booking_id)

        result = await session.execute(select(Booking).where(and_(*conditions)).order_by(Booking.start_date))
        return list(result.scalars().all())

    @staticmethod
    async def is_available(
        session: AsyncSession,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> bool:
        if not await session.get(Vehicle, vehicle_id):
            raise NotFoundError("Vehicle not found", {"vehicle_id": vehicle_id})
        conflicts = await AvailabilityService.find_conflicts(
            session, vehicle_id, start, end, now, exclude_booking_id=exclude_booking_id
        )
        return not conflicts

    @staticmethod
    async def find_available(
        session: AsyncSession,
        start: datetime,
        end: datetime,
        now: datetime,
        category: Optional[str] = None,
        location_code: Optional[str] = None,
    ) -> List[Vehicle]:
        """
        Vehicles free for [start, end], filtered by category and home location.
        Vehicles whose catalog status is not `available` are never returned.
        """
        AvailabilityService.validate_interval(start, end)

        conditions = [Vehicle.status == VehicleStatus.AVAILABLE]

        if location_code:
            location_result = await session.execute(select(Location).where(Location.code == location_code))
            location = location_result.scalar_one_or_none()
            if not location:
                logger.info(f"Unknown location code {location_code}; no vehicles available")
                return []
            conditions.append(Vehicle.location_id == location.id)

        if category:
            conditions.append(Vehicle.category == category)

        conflict = exists().where(
            and_(
                Booking.vehicle_id == Vehicle.id,
                committing_clause(now),
                overlap_clause(start, end),
            )
        )
        conditions.append(~conflict)

        result = await session.execute(
            select(Vehicle).where(and_(*conditions)).order_by(Vehicle.category, Vehicle.daily_rate)
        )
        return list(result.scalars().all())
