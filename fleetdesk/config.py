"""
Configuration for FleetDesk
Environment-driven settings and the booking policy passed into pricing,
settlement and the lifecycle.
"""

import os
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.lower() in ("1", "true", "yes", "on")


class BookingPolicy(BaseModel):
    """Per-market policy constants. Location records may override the money rates."""

    hold_minutes: int = 15
    cancellation_window_hours: float = 48.0
    cancellation_fee_rate: float = 0.5

    default_tax_rate: float = 0.10
    one_way_fee: float = 50.0
    young_driver_age: int = 25
    young_driver_fee_per_day: float = 15.0

    late_fee_per_hour: float = 10.0
    expected_miles_per_day: float = 100.0
    extra_mileage_rate: float = 0.50
    fuel_price_per_gallon: float = 4.00

    tracking_buffer_size: int = 100
    speed_limit_kmh: float = 120.0
    low_fuel_threshold: float = 0.1

    @classmethod
    def from_env(cls) -> "BookingPolicy":
        defaults = cls()
        return cls(
            hold_minutes=_env_int("HOLD_MINUTES", defaults.hold_minutes),
            cancellation_window_hours=_env_float("CANCELLATION_WINDOW_HOURS", defaults.cancellation_window_hours),
            cancellation_fee_rate=_env_float("CANCELLATION_FEE_RATE", defaults.cancellation_fee_rate),
            default_tax_rate=_env_float("DEFAULT_TAX_RATE", defaults.default_tax_rate),
            one_way_fee=_env_float("ONE_WAY_FEE", defaults.one_way_fee),
            young_driver_age=_env_int("YOUNG_DRIVER_AGE", defaults.young_driver_age),
            young_driver_fee_per_day=_env_float("YOUNG_DRIVER_FEE_PER_DAY", defaults.young_driver_fee_per_day),
            late_fee_per_hour=_env_float("LATE_FEE_PER_HOUR", defaults.late_fee_per_hour),
            expected_miles_per_day=_env_float("EXPECTED_MILES_PER_DAY", defaults.expected_miles_per_day),
            extra_mileage_rate=_env_float("EXTRA_MILEAGE_RATE", defaults.extra_mileage_rate),
            fuel_price_per_gallon=_env_float("FUEL_PRICE_PER_GALLON", defaults.fuel_price_per_gallon),
            tracking_buffer_size=_env_int("TRACKING_BUFFER_SIZE", defaults.tracking_buffer_size),
            speed_limit_kmh=_env_float("SPEED_LIMIT_KMH", defaults.speed_limit_kmh),
            low_fuel_threshold=_env_float("LOW_FUEL_THRESHOLD", defaults.low_fuel_threshold),
        )


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./fleetdesk.db"
    redis_url: str = "redis://localhost:6379/0"
    lock_backend: str = "local"  # "local" or "redis"
    lock_timeout_seconds: int = 30
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    hold_sweep_interval_seconds: int = 60

    rate_limit_enabled: bool = True
    rate_limit_holds: int = 5
    rate_limit_window: int = 60

    notifications_enabled: bool = False
    notify_api_url: str = "https://api.mailer.local/v1/messages"
    notify_api_token: str = ""
    notify_from: str = "bookings@fleetdesk.local"
    admin_email: str = "support@fleetdesk.local"

    payments_dry_run: bool = True
    stripe_secret_key: str = ""
    stripe_api_url: str = "https://api.stripe.com/v1"

    policy: BookingPolicy = Field(default_factory=BookingPolicy)

    @property
    def redis_enabled(self) -> bool:
        return self.lock_backend == "redis"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URL") or defaults.database_url,
            redis_url=os.getenv("REDIS_URL", defaults.redis_url),
            lock_backend=os.getenv("LOCK_BACKEND", defaults.lock_backend).lower(),
            lock_timeout_seconds=_env_int("LOCK_TIMEOUT_SECONDS", defaults.lock_timeout_seconds),
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(","),
            hold_sweep_interval_seconds=_env_int("HOLD_SWEEP_INTERVAL_SECONDS", defaults.hold_sweep_interval_seconds),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", defaults.rate_limit_enabled),
            rate_limit_holds=_env_int("RATE_LIMIT_HOLDS", defaults.rate_limit_holds),
            rate_limit_window=_env_int("RATE_LIMIT_WINDOW", defaults.rate_limit_window),
            notifications_enabled=_env_bool("NOTIFICATIONS_ENABLED", defaults.notifications_enabled),
            notify_api_url=os.getenv("NOTIFY_API_URL", defaults.notify_api_url),
            notify_api_token=os.getenv("NOTIFY_API_TOKEN", defaults.notify_api_token),
            notify_from=os.getenv("NOTIFY_FROM", defaults.notify_from),
            admin_email=os.getenv("ADMIN_EMAIL", defaults.admin_email),
            payments_dry_run=_env_bool("PAYMENTS_DRY_RUN", defaults.payments_dry_run),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", defaults.stripe_secret_key),
            stripe_api_url=os.getenv("STRIPE_API_URL", defaults.stripe_api_url),
            policy=BookingPolicy.from_env(),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
