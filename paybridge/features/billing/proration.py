"""Proration for mid-period plan changes.

The billing month is a fixed number of days (PRORATION_TOTAL_DAYS), not the
calendar length of the current period.
"""
import math
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from paybridge.core.config import settings
from paybridge.models.billing import CompanySubscription, Plan, utc_now


def remaining_days(end_date: datetime, now: datetime) -> int:
    """Whole days left in the period, rounded up and never negative."""
    seconds = (end_date - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / timedelta(days=1).total_seconds())


def calculate_proration(
    current_subscription: CompanySubscription,
    current_plan: Plan,
    new_plan: Plan,
    now: Optional[datetime] = None,
    total_days: Optional[int] = None,
) -> int:
    """Amount owed in minor units to move to `new_plan` for the rest of the period.

    Positive means a charge is required; zero or negative means the change
    can be applied without collecting anything.
    """
    now = now or utc_now()
    total = total_days if total_days is not None else settings.PRORATION_TOTAL_DAYS
    if total <= 0:
        raise ValueError("total_days must be positive")

    days = remaining_days(current_subscription.end_date, now)
    difference = new_plan.price - current_plan.price
    if difference == 0 or days == 0:
        return 0

    raw = Decimal(difference) * Decimal(days) / Decimal(total)
    # Half away from zero on the magnitude
    rounded = abs(raw).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(rounded) if raw > 0 else -int(rounded)
