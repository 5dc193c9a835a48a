# app/services/fee_calculator.py
"""
Parking fee computation. Pure functions — no DB, no clock, no logging.

    duration  = whole minutes between entry and exit (floored)
    billable  = duration - free minutes - admin extension (never below 0)
    fee       = min(ceil(billable / 60) * hourly rate, daily cap)

Any started hour is billed in full, and the cap wins even for a single
billable minute.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from app.errors import NegativeDuration

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    """Normalise an amount to a 2-place Decimal. Floats go through str() first."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeBreakdown:
    duration_minutes: int
    billable_minutes: int
    billable_hours: int
    capped: bool
    fee: Decimal


def fee_breakdown(entry_time: datetime, exit_time: datetime, rate, extension_minutes: int = 0) -> FeeBreakdown:
    """
    `rate` is anything exposing hourly_rate, free_minutes and max_daily_rate
    (a RateTerms snapshot or a RateSnapshot row).
    """
    if exit_time < entry_time:
        raise NegativeDuration(entry_time, exit_time)

    duration_minutes = (exit_time - entry_time) // timedelta(minutes=1)
    billable_minutes = max(0, duration_minutes - int(rate.free_minutes) - int(extension_minutes or 0))
    if billable_minutes == 0:
        return FeeBreakdown(duration_minutes, 0, 0, False, ZERO)

    billable_hours = math.ceil(billable_minutes / 60)
    linear = to_money(rate.hourly_rate) * billable_hours
    cap = to_money(rate.max_daily_rate)
    return FeeBreakdown(
        duration_minutes=duration_minutes,
        billable_minutes=billable_minutes,
        billable_hours=billable_hours,
        capped=linear > cap,
        fee=to_money(min(linear, cap)),
    )


def calculate_fee(entry_time: datetime, exit_time: datetime, rate, extension_minutes: int = 0) -> Decimal:
    return fee_breakdown(entry_time, exit_time, rate, extension_minutes).fee
