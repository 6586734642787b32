"""
Billing period arithmetic.

Billing periods are anchored to the day-of-month the subscription started,
not to calendar months.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Tuple

from dateutil.relativedelta import relativedelta


@dataclass(frozen=True)
class BillingPeriod:
    """One billing cycle: [start_date, end_date)."""
    start_date: datetime
    end_date: datetime

    def __post_init__(self):
        """Validate the period is not inverted."""
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")

    @property
    def month(self) -> int:
        """Calendar month (1-12) the period starts in."""
        return self.start_date.month

    @property
    def year(self) -> int:
        """Calendar year the period starts in."""
        return self.start_date.year

    def contains(self, when: datetime) -> bool:
        """Check whether a timestamp falls inside this period."""
        return self.start_date <= _as_utc(when) < self.end_date


def _as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def shift_months(anchor: datetime, months: int) -> datetime:
    """Shift a timestamp by whole months, clamping to the end of short months.

    Always shift from the original anchor: Jan 31 + 1 month is Feb 28/29,
    and Jan 31 + 2 months is Mar 31, never Mar 28.

    Args:
        anchor: Subscription anchor timestamp
        months: Number of months to shift (may be negative)

    Returns:
        Shifted timestamp in UTC
    """
    return _as_utc(anchor) + relativedelta(months=months)


def _months_between(start: datetime, end: datetime) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def _period_at(anchor: datetime, offset: int) -> BillingPeriod:
    return BillingPeriod(
        start_date=shift_months(anchor, offset),
        end_date=shift_months(anchor, offset + 1)
    )


def period_containing(subscription_start: datetime, when: datetime) -> BillingPeriod:
    """Find the billing period that contains a timestamp.

    Args:
        subscription_start: Timestamp the subscription began
        when: Timestamp to locate

    Returns:
        The BillingPeriod whose range includes `when`
    """
    anchor = _as_utc(subscription_start)
    when = _as_utc(when)

    offset = _months_between(anchor, when)
    # Early in the month the anchor day may not have been reached yet
    if when < shift_months(anchor, offset):
        offset -= 1

    return _period_at(anchor, offset)


def compute_billing_periods(
    subscription_start: datetime,
    now: datetime
) -> Tuple[BillingPeriod, BillingPeriod]:
    """Compute the current and previous billing periods.

    Both periods are deterministic functions of the inputs. They never
    overlap and never skip a month: previous.end_date == current.start_date.

    Args:
        subscription_start: Timestamp marking the subscription day-of-month
        now: Current timestamp

    Returns:
        Tuple of (current_period, previous_period)
    """
    anchor = _as_utc(subscription_start)
    current = period_containing(anchor, now)
    offset = _months_between(anchor, current.start_date)
    previous = _period_at(anchor, offset - 1)
    return current, previous
