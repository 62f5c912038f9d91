"""
Stage records accumulated on a booking across its lifecycle.

Stored in the booking's `addons` JSON column, keyed by stage name. Single-shot
stages are written once; tracking is a bounded ring buffer; the rest are
append-only lists.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import ConflictError
from .pricing.settlement import CancellationTerms, Settlement


class PreparationRecord(BaseModel):
    cleaned: bool = False
    fueled: bool = False
    inspected: bool = False
    maintenance_done: bool = False
    condition_images: List[str] = Field(default_factory=list)
    notes: str = ""
    prepared_by: Optional[str] = None
    at: datetime


class CheckinRecord(BaseModel):
    documents: List[str] = Field(default_factory=list)
    agreement_signed: bool
    notes: str = ""
    pickup_code: str
    code_used_at: Optional[datetime] = None
    checked_in_at: datetime


class PickupInspection(BaseModel):
    method: Literal["counter", "contactless"] = "counter"
    photos: List[str] = Field(default_factory=list)
    fuel_level: Optional[float] = None
    odometer: Optional[float] = None
    notes: str = ""
    user_verified: bool = False
    documents_checked: bool = False
    signature: Optional[str] = None
    damage_acknowledged: bool = False
    at: datetime


class ReturnInspection(BaseModel):
    photos: List[str] = Field(default_factory=list)
    fuel_level: Optional[float] = None
    odometer: Optional[float] = None
    damage: bool = False
    damage_notes: str = ""
    damage_cost: float = 0.0
    at: datetime


class SettlementRecord(Settlement):
    returned_at: datetime


class CancellationRecord(CancellationTerms):
    cancelled_at: datetime
    cancelled_by: str
    previous_status: str


class TrackingSample(BaseModel):
    lat: float
    lng: float
    speed: float = 0.0
    heading: float = 0.0
    accuracy: float = 0.0
    timestamp: datetime


class TrackingAlert(BaseModel):
    type: str
    message: str
    timestamp: datetime


class TrackingLog(BaseModel):
    enabled: bool = True
    locations: List[TrackingSample] = Field(default_factory=list)
    total_distance: float = 0.0
    alerts: List[TrackingAlert] = Field(default_factory=list)


class LocationUpdate(BaseModel):
    latitude: float
    longitude: float
    timestamp: datetime
    speed: Optional[float] = None
    fuel_level: Optional[float] = None
    odometer: Optional[float] = None


class IncidentReport(BaseModel):
    type: str
    description: str = ""
    location: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    contact_info: Optional[str] = None
    severity: str = "minor"
    replacement_needed: bool = False
    status: str = "reported"
    reported_at: datetime


class SOSRecord(BaseModel):
    note: str = ""
    location: Optional[str] = None
    status: str = "dispatched"
    at: datetime


class ExtensionRecord(BaseModel):
    previous_end: datetime
    new_end: datetime
    extra_days: int
    charge: float
    at: datetime


SINGLE_STAGES = {
    "preparation": PreparationRecord,
    "checkin": CheckinRecord,
    "pickup_inspection": PickupInspection,
    "return_inspection": ReturnInspection,
    "settlement": SettlementRecord,
    "cancellation": CancellationRecord,
}

LIST_STAGES = {
    "location_updates": LocationUpdate,
    "incidents": IncidentReport,
    "sos_requests": SOSRecord,
    "extensions": ExtensionRecord,
}


class BookingStages:
    """Owned view over a booking's stage records."""

    def __init__(self, tracking_capacity: int = 100):
        self.tracking_capacity = tracking_capacity
        self.single: Dict[str, BaseModel] = {}
        self.lists: Dict[str, List[BaseModel]] = {name: [] for name in LIST_STAGES}
        self.tracking: Optional[TrackingLog] = None
        self.flags: Dict[str, Any] = {}

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]], tracking_capacity: int = 100) -> "BookingStages":
        stages = cls(tracking_capacity=tracking_capacity)
        for key, value in (data or {}).items():
            if key in SINGLE_STAGES:
                stages.single[key] = SINGLE_STAGES[key].model_validate(value)
            elif key in LIST_STAGES:
                stages.lists[key] = [LIST_STAGES[key].model_validate(item) for item in value]
            elif key == "tracking":
                stages.tracking = TrackingLog.model_validate(value)
            else:
                stages.flags[key] = value
        return stages

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.flags)
        for key, record in self.single.items():
            data[key] = record.model_dump(mode="json")
        for key, items in self.lists.items():
            if items:
                data[key] = [item.model_dump(mode="json") for item in items]
        if self.tracking is not None:
            data["tracking"] = self.tracking.model_dump(mode="json")
        return data

    def get(self, stage: str) -> Optional[BaseModel]:
        return self.single.get(stage)

    def record(self, stage: str, record: BaseModel) -> None:
        if stage not in SINGLE_STAGES:
            raise KeyError(f"Unknown stage: {stage}")
        if stage in self.single:
            raise ConflictError(f"Stage '{stage}' has already been recorded")
        self.single[stage] = record

    def replace(self, stage: str, record: BaseModel) -> None:
        """Rewrite a recorded stage in place (e.g. consuming the pickup code)."""
        if stage not in self.single:
            raise KeyError(f"Stage '{stage}' has not been recorded")
        self.single[stage] = record

    def append(self, name: str, item: BaseModel) -> None:
        if name not in LIST_STAGES:
            raise KeyError(f"Unknown list stage: {name}")
        self.lists[name].append(item)

    def add_tracking_sample(self, sample: TrackingSample, distance: float = 0.0) -> TrackingLog:
        if self.tracking is None:
            self.tracking = TrackingLog()
        self.tracking.total_distance += distance
        self.tracking.locations.append(sample)
        # Keep only the newest samples
        overflow = len(self.tracking.locations) - self.tracking_capacity
        if overflow > 0:
            del self.tracking.locations[:overflow]
        return self.tracking

    def last_tracking_sample(self) -> Optional[TrackingSample]:
        if self.tracking and self.tracking.locations:
            return self.tracking.locations[-1]
        return None
