"""Helpers for in-rental location updates and GPS tracking."""
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config import BookingPolicy
from ..pricing.money import hours_between, round2

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates, in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def location_alerts(
    policy: BookingPolicy,
    end: datetime,
    now: datetime,
    speed: Optional[float] = None,
    fuel_level: Optional[float] = None,
) -> List[str]:
    alerts = []
    if fuel_level is not None and fuel_level < policy.low_fuel_threshold:
        alerts.append("Low fuel")
    if speed is not None and speed > policy.speed_limit_kmh:
        alerts.append("Speeding")
    hours_to_end = hours_between(now, end)
    if 0 < hours_to_end <= 1:
        alerts.append("Approaching drop-off time")
    return alerts


def rental_stats(
    start: datetime,
    end: datetime,
    now: datetime,
    daily_rate: float,
    current_mileage: Optional[float],
) -> Dict[str, Any]:
    remaining_hours = max(0.0, hours_between(now, end))
    return {
        "elapsed_hours": round2(hours_between(start, now)),
        "remaining_hours": round2(remaining_hours),
        "estimated_remaining_cost": round2(remaining_hours / 24 * daily_rate),
        "current_mileage": current_mileage or 0,
    }
