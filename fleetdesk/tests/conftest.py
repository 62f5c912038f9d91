"""
Shared fixtures: a throwaway SQLite database per test, a seeded catalog and a
lifecycle wired with a fixed clock and a recording notifier.
"""
import os

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("HOLD_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("PAYMENTS_DRY_RUN", "true")

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio

from fleetdesk.config import BookingPolicy
from fleetdesk.database import build_engine, build_session_factory, close_db, init_db
from fleetdesk.integrations.notifications import NotificationService
from fleetdesk.integrations.payments import PaymentGateway
from fleetdesk.locks import LocalLockManager
from fleetdesk.models import AddOn, Location, PriceRule, Renter, RuleType, Vehicle, VehicleStatus
from fleetdesk.schemas import Actor, HoldRequest
from fleetdesk.services.audit import AuditService
from fleetdesk.services.bookings import BookingLifecycle

# A Monday morning
NOW = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(NotificationService):
    """Keeps every message instead of delivering it; can be told to fail."""

    def __init__(self):
        super().__init__(enabled=False)
        self.sent = []
        self.fail = False

    async def send(self, template, to, params):
        if self.fail:
            raise RuntimeError("provider down")
        self.sent.append({"template": template, "to": to, "params": params})
        return {"status": "recorded", "template": template}

    def templates(self):
        return [message["template"] for message in self.sent]


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def policy():
    return BookingPolicy()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'fleetdesk.db'}")
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def catalog(session_factory):
    """Two locations, three vehicles, three renters, two add-ons and two promo codes."""
    async with session_factory() as session:
        downtown = Location(code="DTW", name="Downtown", city="Springfield")
        airport = Location(code="AIR", name="Airport", city="Springfield", one_way_fee=75.0)
        session.add_all([downtown, airport])
        await session.flush()

        economy = Vehicle(
            make="Toyota", model="Corolla", year=2023, category="economy",
            base_daily_rate=50.0, daily_rate=50.0, location_id=downtown.id,
        )
        suv = Vehicle(
            make="Ford", model="Explorer", year=2022, category="suv",
            base_daily_rate=100.0, location_id=downtown.id,
        )
        in_shop = Vehicle(
            make="Honda", model="Civic", year=2021, category="economy",
            base_daily_rate=45.0, daily_rate=45.0, location_id=downtown.id,
            status=VehicleStatus.MAINTENANCE,
        )
        alice = Renter(name="Alice", email="alice@example.com", age=30)
        bob = Renter(name="Bob", email="bob@example.com", age=22)
        admin = Renter(name="Ops", email="ops@example.com", age=40, role="admin")
        gps = AddOn(name="GPS", price=10.0, per_day=True)
        cleaning = AddOn(name="Cleaning", price=25.0, per_day=False)
        retired_addon = AddOn(name="Roof box", price=15.0, per_day=True, active=False)
        save20 = PriceRule(name="Summer $20 off", type=RuleType.PROMO, code="SAVE20", flat_amount=20.0)
        quarter = PriceRule(name="Quarter off", type=RuleType.PROMO, code="QUARTER", multiplier=1.25)

        session.add_all([economy, suv, in_shop, alice, bob, admin, gps, cleaning, retired_addon, save20, quarter])
        await session.commit()

        return SimpleNamespace(
            downtown=downtown.id,
            airport=airport.id,
            economy=economy.id,
            suv=suv.id,
            in_shop=in_shop.id,
            alice=alice.id,
            bob=bob.id,
            admin=admin.id,
            gps=gps.id,
            cleaning=cleaning.id,
            retired_addon=retired_addon.id,
        )


@pytest.fixture
def lifecycle(session_factory, policy, notifier, clock):
    return BookingLifecycle(
        session_factory,
        policy=policy,
        lock_manager=LocalLockManager(),
        notifier=notifier,
        payments=PaymentGateway(dry_run=True),
        audit=AuditService(session_factory),
        admin_email="ops@fleetdesk.test",
        clock=clock,
    )


@pytest.fixture
def alice(catalog):
    return Actor(renter_id=catalog.alice)


@pytest.fixture
def bob(catalog):
    return Actor(renter_id=catalog.bob)


@pytest.fixture
def admin(catalog):
    return Actor(renter_id=catalog.admin, role="admin")


@pytest.fixture
def hold_request(catalog):
    """Builds hold requests for the economy car, starting a day after NOW by default."""

    def build(start_in=timedelta(days=1), length=timedelta(days=3), **overrides):
        start = NOW + start_in
        data = {
            "vehicle_id": catalog.economy,
            "pickup_location_id": catalog.downtown,
            "dropoff_location_id": catalog.downtown,
            "start_date": start,
            "end_date": start + length,
        }
        data.update(overrides)
        return HoldRequest(**data)

    return build
