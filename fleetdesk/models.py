"""
SQLAlchemy models for the reservation core.
Catalog tables (locations, vehicles, renters, add-ons, price rules) are read
by the core; bookings, payments and audit logs are written by it.
"""

import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, Enum as SQLEnum, Float, ForeignKey, Index, Integer, String, Text

from .database import Base, UTCDateTime, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


# Enums
class VehicleStatus(str, enum.Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    RENTED = "rented"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    PENDING_HOLD = "pending_hold"
    CONFIRMED = "confirmed"
    READY_FOR_PICKUP = "ready_for_pickup"
    CHECKED_IN = "checked_in"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    PAID = "paid"
    REFUNDED = "refunded"


class RuleType(str, enum.Enum):
    SEASONAL = "seasonal"
    WEEKDAY = "weekday"
    LENGTH_OF_RENTAL = "length_of_rental"
    PROMO = "promo"


# Catalog
class Location(Base):
    __tablename__ = "locations"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    city = Column(String(100), nullable=True)

    # Per-location policy overrides; null falls back to BookingPolicy
    tax_rate = Column(Float, nullable=True)
    one_way_fee = Column(Float, nullable=True)
    min_age_threshold = Column(Integer, nullable=True)
    young_driver_fee_per_day = Column(Float, nullable=True)
    late_fee_per_hour = Column(Float, nullable=True)
    extra_mileage_rate = Column(Float, nullable=True)
    fuel_price_per_gallon = Column(Float, nullable=True)
    expected_miles_per_day = Column(Float, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(String(36), primary_key=True, default=new_id)
    make = Column(String(100), nullable=False)
    model = Column(String(100), nullable=False)
    year = Column(Integer, nullable=True)
    category = Column(String(50), nullable=False, index=True)

    base_daily_rate = Column(Float, nullable=False)
    daily_rate = Column(Float, nullable=True)
    status = Column(SQLEnum(VehicleStatus), default=VehicleStatus.AVAILABLE, nullable=False)
    location_id = Column(String(36), ForeignKey("locations.id"), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_vehicles_status_category", "status", "category"),
    )

    @property
    def effective_daily_rate(self) -> float:
        return self.daily_rate if self.daily_rate is not None else (self.base_daily_rate or 0.0)


class Renter(Base):
    __tablename__ = "renters"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    phone = Column(String(50), nullable=True)
    age = Column(Integer, nullable=True)
    role = Column(String(20), default="customer", nullable=False)
    loyalty_points = Column(Integer, default=0, nullable=False)
    loyalty_tier = Column(String(20), default="bronze", nullable=False)

    created_at = Column(UTCDateTime, default=utcnow)


# Rule store
class AddOn(Base):
    __tablename__ = "addons"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    price = Column(Float, nullable=False)
    per_day = Column(Boolean, default=True, nullable=False)
    active = Column(Boolean, default=True, nullable=False)


class PriceRule(Base):
    __tablename__ = "price_rules"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=True)
    type = Column(SQLEnum(RuleType), nullable=False, index=True)
    code = Column(String(50), unique=True, nullable=True)  # promo rules only

    start_date = Column(UTCDateTime, nullable=True)
    end_date = Column(UTCDateTime, nullable=True)
    weekdays = Column(JSON, nullable=True)  # 0=Sunday .. 6=Saturday
    min_days = Column(Integer, nullable=True)
    multiplier = Column(Float, nullable=True)
    flat_amount = Column(Float, nullable=True)

    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


# Lifecycle
class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)
    renter_id = Column(String(36), ForeignKey("renters.id"), nullable=False, index=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=False)
    pickup_location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)
    dropoff_location_id = Column(String(36), ForeignKey("locations.id"), nullable=False)

    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False)

    status = Column(SQLEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False)
    payment_status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    hold_expires_at = Column(UTCDateTime, nullable=True)

    # Derived money fields, written only by pricing and settlement
    subtotal = Column(Float, default=0.0, nullable=False)
    taxes = Column(Float, default=0.0, nullable=False)
    fees = Column(Float, default=0.0, nullable=False)
    total_price = Column(Float, default=0.0, nullable=False)

    promo_code = Column(String(50), nullable=True)
    addon_lines = Column(JSON, nullable=True)  # [{"addon_id", "qty"}] as selected
    price_breakdown = Column(JSON, nullable=True)
    addons = Column(JSON, nullable=True)  # stage records, see stages.BookingStages

    notes = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_bookings_vehicle_window", "vehicle_id", "start_date", "end_date"),
        Index("idx_bookings_status_hold", "status", "hold_expires_at"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), unique=True, nullable=False)

    amount = Column(Float, nullable=False)
    method = Column(String(50), default="credit_card", nullable=False)
    status = Column(String(20), default="completed", nullable=False)
    provider_reference = Column(String(255), nullable=True, index=True)

    created_at = Column(UTCDateTime, default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    entity = Column(String(50), nullable=False)  # e.g. "booking"
    entity_id = Column(String(36), nullable=False)
    action = Column(String(100), nullable=False, index=True)  # e.g. "hold_created"
    data = Column(JSON, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("idx_audit_entity", "entity", "entity_id"),
    )
