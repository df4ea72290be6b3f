"""Temporal billing policy - next billing dates, due dates and lateness"""

from datetime import date, timedelta
from typing import Optional

from billing_reconciler.domain.models import Cadence, LatenessStatus
from billing_reconciler.utils.date_utils import add_months, with_day

DEFAULT_DUE_DAYS = 30

# Months per cycle for the day-of-month cadences
_MONTHLY_STEPS = {
    Cadence.MONTHLY: 1,
    Cadence.QUARTERLY: 3,
    Cadence.ANNUALLY: 12,
}

# Days per cycle for the fixed-length cadences
_WEEKLY_STEPS = {
    Cadence.WEEKLY: 7,
    Cadence.BI_WEEKLY: 14,
}


def compute_next_billing_date(
    cadence: Cadence,
    billing_day_of_month: int,
    service_start_date: Optional[date],
    reference_date: date,
) -> date:
    """
    Next date an account is billed.

    Day-of-month cadences (monthly/quarterly/annually):
    - Take billing_day_of_month in the reference month (clamped to month end)
    - If that is strictly before reference_date, advance one cycle

    Fixed-length cadences (weekly/bi-weekly):
    - Base is the service start date, or reference_date when unknown
    - Next billing = base + (whole periods elapsed + 1) periods

    Example:
        monthly, day 15, reference 2024-03-20 -> 2024-04-15
        weekly, start 2024-03-01, reference 2024-03-10 -> 2024-03-15
    """
    cadence = Cadence(cadence)

    if cadence in _WEEKLY_STEPS:
        period_days = _WEEKLY_STEPS[cadence]
        base = service_start_date or reference_date
        elapsed_periods = (reference_date - base).days // period_days
        return base + timedelta(days=(elapsed_periods + 1) * period_days)

    candidate = with_day(reference_date, billing_day_of_month)
    if candidate < reference_date:
        candidate = add_months(candidate, _MONTHLY_STEPS[cadence], day=billing_day_of_month)
    return candidate


def compute_due_date(billing_date: date, due_days: int = DEFAULT_DUE_DAYS) -> date:
    """Default due date for a bill that doesn't carry one"""
    return billing_date + timedelta(days=due_days)


def is_overdue(due_date: date, grace_period_days: int, reference_date: date) -> bool:
    """True once the grace period after due_date has fully elapsed"""
    return reference_date > due_date + timedelta(days=grace_period_days)


def compute_lateness(
    next_billing_date: Optional[date],
    grace_period_days: int,
    account_balance_cents: int,
    last_payment_date: Optional[date],
    reference_date: date,
) -> LatenessStatus:
    """
    Classify an account as current or late.

    Late requires all of:
    1. A positive balance
    2. reference_date past the due date plus grace period
    3. No payment on or after the due date

    Accounts with nothing owed, or with no due date to be late against, are current.
    """
    if account_balance_cents <= 0 or next_billing_date is None:
        return LatenessStatus.CURRENT

    if not is_overdue(next_billing_date, grace_period_days, reference_date):
        return LatenessStatus.CURRENT

    if last_payment_date is not None and last_payment_date >= next_billing_date:
        return LatenessStatus.CURRENT

    return LatenessStatus.LATE
