"""
HTTP-level tests: routing, headers and the error-to-status mapping.
"""
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from fleetdesk.api.deps import get_redis
from fleetdesk.config import Settings
from fleetdesk.models import Booking
from fleetdesk.server import create_app

from .conftest import NOW


@pytest.fixture
def app(engine, lifecycle, catalog):
    settings = Settings(rate_limit_enabled=False, hold_sweep_interval_seconds=0)
    return create_app(settings=settings, engine=engine, lifecycle=lifecycle)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class InMemoryIdempotencyStore:
    """Stands in for RedisService's idempotency calls."""

    def __init__(self):
        self.records = {}

    async def get_idempotency_result(self, key_hash):
        record = self.records.get(key_hash)
        return dict(record) if record else None

    async def store_idempotency_key(self, key_hash, result):
        self.records[key_hash] = result
        return True


def as_renter(renter_id, role="customer"):
    return {"X-Renter-Id": renter_id, "X-Renter-Role": role}


def hold_body(catalog, start_in=timedelta(days=1), length=timedelta(days=3), **overrides):
    start = NOW + start_in
    body = {
        "vehicle_id": catalog.economy,
        "pickup_location_id": catalog.downtown,
        "dropoff_location_id": catalog.downtown,
        "start_date": start.isoformat(),
        "end_date": (start + length).isoformat(),
    }
    body.update(overrides)
    return body


class TestBookingsApi:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["database"] == "healthy"
        assert response.json()["redis"] == "disabled"

    @pytest.mark.asyncio
    async def test_hold_then_conflict(self, client, catalog):
        first = await client.post("/api/bookings/hold", json=hold_body(catalog), headers=as_renter(catalog.alice))
        second = await client.post("/api/bookings/hold", json=hold_body(catalog), headers=as_renter(catalog.bob))

        assert first.status_code == 201
        assert first.json()["booking"]["status"] == "pending_hold"
        assert first.json()["booking"]["total_price"] == 165.0
        assert first.json()["created_from_idempotency"] is False
        assert second.status_code == 409
        assert second.json()["error"] == "CONFLICT"

    @pytest.mark.asyncio
    async def test_identity_header_required(self, client, catalog):
        response = await client.post("/api/bookings/hold", json=hold_body(catalog))

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_error_mapping(self, client, catalog, clock):
        alice = as_renter(catalog.alice)
        hold = (await client.post("/api/bookings/hold", json=hold_body(catalog), headers=alice)).json()["booking"]

        missing = await client.get("/api/bookings/nope", headers=alice)
        forbidden = await client.get(f"/api/bookings/{hold['id']}", headers=as_renter(catalog.bob))
        wrong_state = await client.post(
            f"/api/bookings/{hold['id']}/prepare", json={}, headers=as_renter(catalog.admin, "admin")
        )
        invalid = await client.post(
            "/api/bookings/hold",
            json=hold_body(catalog, start_in=timedelta(days=20), length=timedelta(hours=-1)),
            headers=alice,
        )

        assert missing.status_code == 404
        assert missing.json()["error"] == "NOT_FOUND"
        assert forbidden.status_code == 403
        assert wrong_state.status_code == 409
        assert wrong_state.json()["error"] == "INVALID_STATE"
        assert invalid.status_code == 400
        assert invalid.json()["error"] == "VALIDATION_ERROR"

        clock.advance(minutes=16)
        expired = await client.post(f"/api/bookings/{hold['id']}/confirm", headers=alice)
        assert expired.status_code == 410
        assert expired.json()["error"] == "HOLD_EXPIRED"

    @pytest.mark.asyncio
    async def test_full_rental_flow(self, client, catalog, clock):
        alice = as_renter(catalog.alice)
        admin = as_renter(catalog.admin, "admin")

        hold = (await client.post("/api/bookings/hold", json=hold_body(catalog), headers=alice)).json()["booking"]
        booking_id = hold["id"]

        confirmed = await client.post(
            f"/api/bookings/{booking_id}/confirm", json={"provider_reference": "pi_abc"}, headers=alice
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["payment"]["provider_reference"] == "pi_abc"

        again = await client.post(f"/api/bookings/{booking_id}/confirm", headers=alice)
        assert again.json()["payment"]["id"] == confirmed.json()["payment"]["id"]

        prepared = await client.post(f"/api/bookings/{booking_id}/prepare", json={"cleaned": True}, headers=admin)
        assert prepared.json()["status"] == "ready_for_pickup"

        checked_in = await client.post(
            f"/api/bookings/{booking_id}/checkin",
            json={"documents": ["license.jpg"], "agreement_signed": True},
            headers=alice,
        )
        code = checked_in.json()["addons"]["checkin"]["pickup_code"]

        picked_up = await client.post(
            f"/api/bookings/{booking_id}/contactless-pickup",
            json={"pickup_code": code, "odometer": 2000},
            headers=alice,
        )
        assert picked_up.json()["status"] == "active"

        clock.now = NOW + timedelta(days=4, hours=2)
        returned = await client.post(
            f"/api/bookings/{booking_id}/return", json={"odometer": 2300, "fuel_level": 0.5}, headers=alice
        )
        assert returned.status_code == 200
        # 165 + 20 late + 2 fuel
        assert returned.json()["total_price"] == 187.0
        assert returned.json()["status"] == "completed"

        listed = await client.get("/api/bookings", params={"status": "completed"}, headers=alice)
        assert [b["id"] for b in listed.json()] == [booking_id]


class TestIdempotentHolds:
    @pytest.mark.asyncio
    async def test_repeated_key_returns_original_hold(self, app, client, catalog, session_factory):
        store = InMemoryIdempotencyStore()
        app.dependency_overrides[get_redis] = lambda: store
        headers = {**as_renter(catalog.alice), "Idempotency-Key": "checkout-1"}

        first = await client.post("/api/bookings/hold", json=hold_body(catalog), headers=headers)
        second = await client.post("/api/bookings/hold", json=hold_body(catalog), headers=headers)

        assert first.status_code == 201
        assert first.json()["created_from_idempotency"] is False
        assert second.status_code == 201
        assert second.json()["created_from_idempotency"] is True
        assert second.json()["booking"]["id"] == first.json()["booking"]["id"]
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(Booking)) == 1

    @pytest.mark.asyncio
    async def test_keys_are_scoped_per_renter(self, app, client, catalog):
        store = InMemoryIdempotencyStore()
        app.dependency_overrides[get_redis] = lambda: store

        await client.post(
            "/api/bookings/hold",
            json=hold_body(catalog),
            headers={**as_renter(catalog.alice), "Idempotency-Key": "checkout-1"},
        )
        other = await client.post(
            "/api/bookings/hold",
            json=hold_body(catalog),
            headers={**as_renter(catalog.bob), "Idempotency-Key": "checkout-1"},
        )

        # Bob gets his own attempt, which collides with Alice's hold
        assert other.status_code == 409
        assert len(store.records) == 1

    @pytest.mark.asyncio
    async def test_without_key_every_request_is_new(self, app, client, catalog):
        store = InMemoryIdempotencyStore()
        app.dependency_overrides[get_redis] = lambda: store

        first = await client.post("/api/bookings/hold", json=hold_body(catalog), headers=as_renter(catalog.alice))
        second = await client.post("/api/bookings/hold", json=hold_body(catalog), headers=as_renter(catalog.alice))

        assert first.status_code == 201
        assert second.status_code == 409
        assert store.records == {}


class TestAvailabilityApi:
    @pytest.mark.asyncio
    async def test_check_and_list(self, client, catalog):
        start = NOW + timedelta(days=1)
        params = {"start_date": start.isoformat(), "end_date": (start + timedelta(days=3)).isoformat()}

        free = await client.get("/api/availability/check", params={**params, "vehicle_id": catalog.economy})
        assert free.json()["available"] is True

        await client.post("/api/bookings/hold", json=hold_body(catalog), headers=as_renter(catalog.alice))

        taken = await client.get("/api/availability/check", params={**params, "vehicle_id": catalog.economy})
        vehicles = await client.get("/api/availability/vehicles", params=params)
        airport = await client.get("/api/availability/vehicles", params={**params, "location": "AIR"})

        assert taken.json()["available"] is False
        assert [v["id"] for v in vehicles.json()] == [catalog.suv]
        assert vehicles.json()[0]["effective_daily_rate"] == 100.0
        assert airport.json() == []

    @pytest.mark.asyncio
    async def test_quote(self, client, catalog):
        start = NOW + timedelta(days=1)
        response = await client.post(
            "/api/quotes",
            json={
                "vehicle_id": catalog.economy,
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(days=3)).isoformat(),
                "promo_code": "SAVE20",
            },
        )

        assert response.status_code == 200
        assert response.json()["total_before_promo"] == 165.0
        assert response.json()["total"] == 145.0

    @pytest.mark.asyncio
    async def test_quote_unknown_vehicle(self, client, catalog):
        start = NOW + timedelta(days=1)
        response = await client.post(
            "/api/quotes",
            json={
                "vehicle_id": "missing",
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(days=1)).isoformat(),
            },
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_check_unknown_vehicle(self, client, catalog):
        start = NOW + timedelta(days=1)
        response = await client.get(
            "/api/availability/check",
            params={
                "vehicle_id": "missing",
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(days=1)).isoformat(),
            },
        )

        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"
