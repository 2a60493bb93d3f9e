"""
Interest Engine Module

Rate math for trade-finance loans: effective rate composition, day-count
fractions and simple/compound interest over a loan's term. All functions are
pure and operate on Decimal.
"""

from decimal import Decimal
from datetime import datetime, date
from typing import Union
from enum import Enum
import math

from .currency import round2, round4, to_decimal
from .exceptions import ValidationError


DateLike = Union[date, datetime]


class DayCountConvention(Enum):
    """Rules for turning a calendar span into a year fraction"""
    THIRTY_360 = "30/360"          # 30-day months, 360-day year
    ACTUAL_360 = "actual/360"      # Actual days / 360 (common for loans)
    ACTUAL_365 = "actual/365"      # Actual days / 365


class AccrualMethod(Enum):
    """How the effective rate is applied over the day-count fraction"""
    SIMPLE = "simple"
    COMPOUND = "compound"


_DAYS_IN_YEAR = {
    DayCountConvention.ACTUAL_360: Decimal('360'),
    DayCountConvention.ACTUAL_365: Decimal('365'),
}


def effective_rate(base_rate: Decimal, spread: Decimal) -> Decimal:
    """All-in rate: base rate plus spread, rounded to 4 dp"""
    return round4(to_decimal(base_rate) + to_decimal(spread))


def _thirty_360_days(start: date, end: date) -> int:
    d1 = min(start.day, 30)
    d2 = min(end.day, 30)
    return (end.year - start.year) * 360 + (end.month - start.month) * 30 + (d2 - d1)


def _actual_days(start: DateLike, end: DateLike) -> int:
    if isinstance(start, datetime) and isinstance(end, datetime):
        seconds = abs((end - start).total_seconds())
        return math.ceil(seconds / 86400)
    start_day = start.date() if isinstance(start, datetime) else start
    end_day = end.date() if isinstance(end, datetime) else end
    return abs((end_day - start_day).days)


def day_count_fraction(start: DateLike, end: DateLike,
                       convention: Union[DayCountConvention, str]) -> Decimal:
    """
    Year fraction between two dates under a day-count convention.

    30/360 clamps day 31 to 30 on both ends. The actual conventions count
    whole days between the dates, rounding partial days up.
    """
    convention = DayCountConvention(convention)

    if convention == DayCountConvention.THIRTY_360:
        start_day = start.date() if isinstance(start, datetime) else start
        end_day = end.date() if isinstance(end, datetime) else end
        return Decimal(_thirty_360_days(start_day, end_day)) / Decimal('360')

    return Decimal(_actual_days(start, end)) / _DAYS_IN_YEAR[convention]


def simple_interest(principal: Decimal, rate: Decimal, fraction: Decimal) -> Decimal:
    """principal * rate * fraction, rounded to cents"""
    return round2(to_decimal(principal) * to_decimal(rate) * to_decimal(fraction))


def compound_interest(principal: Decimal, rate: Decimal, fraction: Decimal) -> Decimal:
    """
    Interest compounded annually over a fraction of a year:
    principal * ((1 + rate) ^ fraction - 1), rounded to cents.
    """
    growth = Decimal('1') + to_decimal(rate)
    if growth <= 0:
        raise ValidationError("Compound interest requires a rate above -100%")
    fraction = to_decimal(fraction)
    if fraction == 0:
        return round2(Decimal('0'))
    return round2(to_decimal(principal) * (growth ** fraction - Decimal('1')))


def calculate_interest(
    principal: Decimal,
    rate: Decimal,
    start: DateLike,
    end: DateLike,
    convention: Union[DayCountConvention, str] = DayCountConvention.ACTUAL_360,
    accrual_method: Union[AccrualMethod, str] = AccrualMethod.SIMPLE
) -> Decimal:
    """Interest on principal between two dates"""
    fraction = day_count_fraction(start, end, convention)
    if AccrualMethod(accrual_method) == AccrualMethod.COMPOUND:
        return compound_interest(principal, rate, fraction)
    return simple_interest(principal, rate, fraction)
