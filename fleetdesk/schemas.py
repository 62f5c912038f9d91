"""
Pydantic models shared by the pricing engine, the lifecycle and the API.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import BookingStatus, PaymentStatus, RuleType


# Identity
class Actor(BaseModel):
    """Verified (renter_id, role) supplied by the identity collaborator."""
    renter_id: str
    role: Literal["customer", "admin"] = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# Pricing inputs
class RuleData(BaseModel):
    """Detached price rule; the ORM PriceRule has the same attribute names."""
    model_config = ConfigDict(from_attributes=True)

    type: RuleType
    name: Optional[str] = None
    code: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    weekdays: Optional[List[int]] = None
    min_days: Optional[int] = None
    multiplier: Optional[float] = None
    flat_amount: Optional[float] = None
    active: bool = True


class LocationTerms(BaseModel):
    """Location-configured money terms; None means use the policy default."""
    model_config = ConfigDict(from_attributes=True)

    tax_rate: Optional[float] = None
    one_way_fee: Optional[float] = None
    min_age_threshold: Optional[int] = None
    young_driver_fee_per_day: Optional[float] = None
    late_fee_per_hour: Optional[float] = None
    extra_mileage_rate: Optional[float] = None
    fuel_price_per_gallon: Optional[float] = None
    expected_miles_per_day: Optional[float] = None


class VehicleRate(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    daily_rate: Optional[float] = None
    base_daily_rate: float = 0.0


class AddOnLine(BaseModel):
    addon_id: str
    name: Optional[str] = None
    qty: int = 1
    per_day: bool = True
    unit_price: float = 0.0
    line_price: float = 0.0


class PriceBreakdown(BaseModel):
    days: int
    daily_rates: List[float]
    subtotal: float
    addons: List[AddOnLine] = Field(default_factory=list)
    addons_total: float = 0.0
    fees: float = 0.0
    young_driver_fee: float = 0.0
    tax_rate: float
    taxes: float
    total_before_promo: float
    promo_code: Optional[str] = None
    promo_discount: float = 0.0
    total: float


# Requests
class AddOnSelection(BaseModel):
    addon_id: str
    qty: int = 1


class HoldRequest(BaseModel):
    vehicle_id: str
    pickup_location_id: str
    dropoff_location_id: str
    start_date: datetime
    end_date: datetime
    addons: List[AddOnSelection] = Field(default_factory=list)
    promo_code: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class QuoteRequest(BaseModel):
    vehicle_id: str
    start_date: datetime
    end_date: datetime
    pickup_location_id: Optional[str] = None
    dropoff_location_id: Optional[str] = None
    addons: List[AddOnSelection] = Field(default_factory=list)
    promo_code: Optional[str] = None
    renter_age: Optional[int] = None


class ConfirmRequest(BaseModel):
    provider_reference: Optional[str] = None
    payment_method: str = "credit_card"


class PreparationRequest(BaseModel):
    cleaned: bool = False
    fueled: bool = False
    inspected: bool = False
    maintenance_done: bool = False
    condition_images: List[str] = Field(default_factory=list)
    notes: str = ""


class CheckinRequest(BaseModel):
    documents: List[str] = Field(default_factory=list)
    agreement_signed: bool = False
    notes: str = ""


class InspectionRequest(BaseModel):
    photos: List[str] = Field(default_factory=list)
    fuel_level: Optional[float] = None
    odometer: Optional[float] = None
    notes: str = ""
    user_verified: bool = False
    documents_checked: bool = False
    signature: Optional[str] = None
    damage_acknowledged: bool = False


class ContactlessPickupRequest(InspectionRequest):
    pickup_code: str


class ReturnRequest(BaseModel):
    photos: List[str] = Field(default_factory=list)
    fuel_level: Optional[float] = None
    odometer: Optional[float] = None
    damage: bool = False
    damage_notes: str = ""
    damage_cost: float = 0.0


class ModifyRequest(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    pickup_location_id: Optional[str] = None
    dropoff_location_id: Optional[str] = None
    promo_code: Optional[str] = None


class ExtendRequest(BaseModel):
    new_end_date: Optional[datetime] = None
    additional_days: Optional[int] = None


class IncidentRequest(BaseModel):
    type: Literal["breakdown", "accident", "other"] = "breakdown"
    description: str = ""
    location: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    contact_info: Optional[str] = None
    severity: Literal["minor", "moderate", "major"] = "minor"
    replacement_needed: bool = False


class SOSRequest(BaseModel):
    note: str = ""
    location: Optional[str] = None


class LocationUpdateRequest(BaseModel):
    latitude: float
    longitude: float
    timestamp: Optional[datetime] = None
    speed: Optional[float] = None
    fuel_level: Optional[float] = None
    odometer: Optional[float] = None


class TrackingSampleRequest(BaseModel):
    lat: float
    lng: float
    speed: float = 0.0
    heading: float = 0.0
    accuracy: float = 0.0
    timestamp: Optional[datetime] = None


# Responses
class BookingView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    renter_id: str
    vehicle_id: str
    pickup_location_id: str
    dropoff_location_id: str
    start_date: datetime
    end_date: datetime
    status: BookingStatus
    payment_status: PaymentStatus
    hold_expires_at: Optional[datetime] = None
    subtotal: float
    taxes: float
    fees: float
    total_price: float
    promo_code: Optional[str] = None
    price_breakdown: Optional[Dict[str, Any]] = None
    addons: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class PaymentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    amount: float
    method: str
    status: str
    provider_reference: Optional[str] = None


class ConfirmationResponse(BaseModel):
    booking: BookingView
    payment: PaymentView


class HoldResponse(BaseModel):
    booking: BookingView
    created_from_idempotency: bool = False


class VehicleView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    make: str
    model: str
    year: Optional[int] = None
    category: str
    effective_daily_rate: float
    location_id: Optional[str] = None


class AvailabilityCheck(BaseModel):
    vehicle_id: str
    start_date: datetime
    end_date: datetime
    available: bool
