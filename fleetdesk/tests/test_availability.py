"""
Tests for the availability resolver against a real database.
"""
from datetime import timedelta

import pytest

from fleetdesk.errors import NotFoundError, ValidationError
from fleetdesk.services.availability import AvailabilityService

from .conftest import NOW


async def check(session_factory, vehicle_id, start, end, now, exclude=None):
    async with session_factory() as session:
        return await AvailabilityService.is_available(session, vehicle_id, start, end, now, exclude_booking_id=exclude)


async def free_vehicles(session_factory, start, end, now, **filters):
    async with session_factory() as session:
        return await AvailabilityService.find_available(session, start, end, now, **filters)


class TestIsAvailable:
    @pytest.mark.asyncio
    async def test_free_when_no_bookings(self, session_factory, catalog):
        start = NOW + timedelta(days=1)
        assert await check(session_factory, catalog.economy, start, start + timedelta(days=2), NOW)

    @pytest.mark.asyncio
    async def test_unknown_vehicle_is_not_found(self, session_factory, catalog):
        start = NOW + timedelta(days=1)

        with pytest.raises(NotFoundError) as exc_info:
            await check(session_factory, "no-such-vehicle", start, start + timedelta(days=2), NOW)
        assert exc_info.value.details == {"vehicle_id": "no-such-vehicle"}

    @pytest.mark.asyncio
    async def test_active_hold_blocks_overlap(self, session_factory, lifecycle, alice, hold_request, catalog):
        hold = await lifecycle.place_hold(alice, hold_request())

        assert not await check(session_factory, catalog.economy, hold.start_date + timedelta(hours=5),
                               hold.end_date + timedelta(days=1), NOW)

    @pytest.mark.asyncio
    async def test_touching_endpoints_conflict(self, session_factory, lifecycle, alice, hold_request, catalog):
        hold = await lifecycle.place_hold(alice, hold_request())

        # Closed intervals: sharing the boundary instant is an overlap
        assert not await check(session_factory, catalog.economy, hold.end_date, hold.end_date + timedelta(days=1), NOW)
        assert await check(
            session_factory, catalog.economy,
            hold.end_date + timedelta(minutes=1), hold.end_date + timedelta(days=1), NOW,
        )

    @pytest.mark.asyncio
    async def test_expired_hold_does_not_block(self, session_factory, lifecycle, alice, bob, hold_request, clock, catalog):
        hold = await lifecycle.place_hold(alice, hold_request())
        later = clock.advance(minutes=16)

        assert await check(session_factory, catalog.economy, hold.start_date, hold.end_date, later)

        # And a competing hold goes through without any sweep having run
        competing = await lifecycle.place_hold(bob, hold_request())
        assert competing.id != hold.id

    @pytest.mark.asyncio
    async def test_hold_still_blocks_at_expiry_instant(self, session_factory, lifecycle, alice, hold_request, catalog):
        hold = await lifecycle.place_hold(alice, hold_request())

        assert not await check(session_factory, catalog.economy, hold.start_date, hold.end_date, hold.hold_expires_at)

    @pytest.mark.asyncio
    async def test_cancelled_and_pending_requests_do_not_block(
        self, session_factory, lifecycle, alice, hold_request, catalog
    ):
        hold = await lifecycle.place_hold(alice, hold_request())
        await lifecycle.cancel(alice, hold.id)
        await lifecycle.request_booking(alice, hold_request())

        assert await check(session_factory, catalog.economy, hold.start_date, hold.end_date, NOW)

    @pytest.mark.asyncio
    async def test_confirmed_booking_blocks(self, session_factory, lifecycle, alice, hold_request, catalog):
        hold = await lifecycle.place_hold(alice, hold_request())
        await lifecycle.confirm(alice, hold.id)

        assert not await check(session_factory, catalog.economy, hold.start_date, hold.end_date, NOW + timedelta(days=1))

    @pytest.mark.asyncio
    async def test_booking_can_be_excluded(self, session_factory, lifecycle, alice, hold_request, catalog):
        hold = await lifecycle.place_hold(alice, hold_request())

        assert await check(session_factory, catalog.economy, hold.start_date, hold.end_date, NOW, exclude=hold.id)

    @pytest.mark.asyncio
    async def test_invalid_interval_rejected(self, session_factory, catalog):
        with pytest.raises(ValidationError):
            await check(session_factory, catalog.economy, NOW, NOW, NOW)


class TestFindAvailable:
    @pytest.mark.asyncio
    async def test_lists_only_rentable_vehicles(self, session_factory, catalog):
        start = NOW + timedelta(days=1)
        vehicles = await free_vehicles(session_factory, start, start + timedelta(days=2), NOW)

        assert {v.id for v in vehicles} == {catalog.economy, catalog.suv}

    @pytest.mark.asyncio
    async def test_category_filter(self, session_factory, catalog):
        start = NOW + timedelta(days=1)
        vehicles = await free_vehicles(session_factory, start, start + timedelta(days=2), NOW, category="suv")

        assert [v.id for v in vehicles] == [catalog.suv]

    @pytest.mark.asyncio
    async def test_location_filter(self, session_factory, catalog):
        start = NOW + timedelta(days=1)
        end = start + timedelta(days=2)

        assert len(await free_vehicles(session_factory, start, end, NOW, location_code="DTW")) == 2
        assert await free_vehicles(session_factory, start, end, NOW, location_code="AIR") == []

    @pytest.mark.asyncio
    async def test_unknown_location_yields_nothing(self, session_factory, catalog):
        start = NOW + timedelta(days=1)
        assert await free_vehicles(session_factory, start, start + timedelta(days=2), NOW, location_code="NOPE") == []

    @pytest.mark.asyncio
    async def test_held_vehicle_excluded_until_hold_expires(
        self, session_factory, lifecycle, alice, hold_request, catalog
    ):
        hold = await lifecycle.place_hold(alice, hold_request())

        during = await free_vehicles(session_factory, hold.start_date, hold.end_date, NOW)
        after_expiry = await free_vehicles(
            session_factory, hold.start_date, hold.end_date, NOW + timedelta(minutes=16)
        )

        assert [v.id for v in during] == [catalog.suv]
        assert {v.id for v in after_expiry} == {catalog.economy, catalog.suv}
