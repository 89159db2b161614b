"""Mid-cycle upgrade proration.

The charge for switching tiers mid-period is the price difference scaled by
the fraction of the period still remaining. Period length is a fixed 30 days
(monthly) or 365 days (annual), not calendar-exact; changing it would change
amounts already charged to customers.

BRL is charged in whole reais (rounded half up). USD is returned unrounded and
left for the provider to finalize.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Optional
from models import Plan, BillingCycle, Currency, ProratedAmount

MONTHLY_PERIOD_DAYS = 30
ANNUAL_PERIOD_DAYS = 365


def period_length(cycle: BillingCycle) -> timedelta:
    days = ANNUAL_PERIOD_DAYS if cycle == BillingCycle.ANNUAL else MONTHLY_PERIOD_DAYS
    return timedelta(days=days)


def remaining_ratio(
    cycle: BillingCycle,
    current_period_end: datetime,
    now: Optional[datetime] = None
) -> float:
    """Fraction of the billing period still ahead of ``now``, clamped to [0, 1]."""
    now = now or datetime.now(timezone.utc)
    ratio = (current_period_end - now) / period_length(cycle)
    return min(1.0, max(0.0, ratio))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_prorated_upgrade(
    current_plan: Plan,
    target_plan: Plan,
    cycle: BillingCycle,
    current_period_end: Optional[datetime],
    now: Optional[datetime] = None
) -> Optional[ProratedAmount]:
    """Return the prorated upgrade charge, or None when there is nothing to prorate.

    None when ``current_period_end`` is missing or not after ``now``. A same
    tier or cheaper target yields zero amounts; refunds never go through here.
    """
    now = now or datetime.now(timezone.utc)
    if current_period_end is None or current_period_end <= now:
        return None

    ratio = remaining_ratio(cycle, current_period_end, now)

    diff_brl = target_plan.price_for(cycle, Currency.BRL) - current_plan.price_for(cycle, Currency.BRL)
    diff_usd = target_plan.price_for(cycle, Currency.USD) - current_plan.price_for(cycle, Currency.USD)

    return ProratedAmount(
        remaining_ratio=ratio,
        amount_brl=max(0, _round_half_up(ratio * diff_brl)),
        amount_usd=max(0.0, ratio * diff_usd),
    )
