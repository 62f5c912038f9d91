"""Money and duration helpers shared by pricing and settlement."""
import math
from datetime import datetime, timedelta

DAY = timedelta(days=1)
HOUR = timedelta(hours=1)


def round2(value: float) -> float:
    """Round half-up to cents, matching the rounding used by the existing ledger."""
    return math.floor(value * 100 + 0.5) / 100


def rental_days(start: datetime, end: datetime) -> int:
    """Billable days: partial days count as whole ones, minimum 1."""
    return max(1, math.ceil((end - start) / DAY))


def hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier) / HOUR
