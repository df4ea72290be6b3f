"""Billing record lifecycle - validation, auto-dating, status transitions and balance contribution"""

import uuid
from datetime import date
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from billing_reconciler.domain.exceptions import ValidationError
from billing_reconciler.domain.models import (
    BalanceChange,
    BillingRecordData,
    BillingStatus,
    CancellationPolicy,
    RecordState,
)
from billing_reconciler.domain.temporal import DEFAULT_DUE_DAYS, compute_due_date, is_overdue

BILLING_NUMBER_PREFIX = "BILL-"

# Statuses the overdue sweep never touches
SETTLED_STATUSES = frozenset({BillingStatus.PAID, BillingStatus.CANCELLED})

# Fields a patch may change. Account and billing number are fixed at creation.
PATCHABLE_FIELDS = frozenset(
    {
        "amount_cents",
        "billing_date",
        "due_date",
        "status",
        "paid_date",
        "paid_amount_cents",
        "description",
        "billing_period_start",
        "billing_period_end",
        "notes",
    }
)
IMMUTABLE_FIELDS = frozenset({"account_id", "billing_number", "id", "settled_amount_cents"})


def _validate_amounts(amount_cents: int, paid_amount_cents: Optional[int]) -> None:
    if amount_cents is None:
        raise ValidationError("amount_cents is required")
    if amount_cents < 0:
        raise ValidationError(f"amount_cents must be >= 0, got {amount_cents}")
    if paid_amount_cents is not None and paid_amount_cents < 0:
        raise ValidationError(f"paid_amount_cents must be >= 0, got {paid_amount_cents}")


def _validate_period(start: Optional[date], end: Optional[date]) -> None:
    if start and end and end < start:
        raise ValidationError("billing period ends before it starts")


def auto_status(
    status: BillingStatus,
    due_date: date,
    grace_period_days: int,
    reference_date: date,
) -> BillingStatus:
    """Pending bills whose grace period has elapsed become overdue; nothing else moves"""
    if status == BillingStatus.PENDING and is_overdue(due_date, grace_period_days, reference_date):
        return BillingStatus.OVERDUE
    return status


def effective_status(record: BillingRecordData, grace_period_days: int, reference_date: date) -> BillingStatus:
    """Status as of reference_date, without persisting anything"""
    return auto_status(record.status, record.due_date, grace_period_days, reference_date)


def create_record(
    account_id: Optional[uuid.UUID],
    amount_cents: int,
    billing_date: date,
    grace_period_days: int,
    reference_date: date,
    due_date: Optional[date] = None,
    status: Optional[BillingStatus] = None,
    paid_date: Optional[date] = None,
    paid_amount_cents: Optional[int] = None,
    description: Optional[str] = None,
    billing_period_start: Optional[date] = None,
    billing_period_end: Optional[date] = None,
    notes: Optional[str] = None,
    due_days: int = DEFAULT_DUE_DAYS,
) -> BillingRecordData:
    """
    Validate and normalize a new billing record.

    - due_date defaults to billing_date + due_days
    - status defaults to pending, or overdue when the grace period already elapsed
    - a record created as paid is paid on reference_date unless told otherwise

    The billing number is assigned by the caller from the sequence generator.
    """
    _validate_amounts(amount_cents, paid_amount_cents)
    if billing_date is None:
        raise ValidationError("billing_date is required")
    _validate_period(billing_period_start, billing_period_end)

    resolved_due = due_date or compute_due_date(billing_date, due_days)
    resolved_status = auto_status(
        BillingStatus(status or BillingStatus.PENDING),
        resolved_due,
        grace_period_days,
        reference_date,
    )
    if resolved_status == BillingStatus.PAID and paid_date is None:
        paid_date = reference_date

    return BillingRecordData(
        account_id=account_id,
        amount_cents=amount_cents,
        billing_date=billing_date,
        due_date=resolved_due,
        status=resolved_status,
        paid_date=paid_date,
        paid_amount_cents=paid_amount_cents,
        description=description,
        billing_period_start=billing_period_start,
        billing_period_end=billing_period_end,
        notes=notes,
    )


def apply_patch(
    existing: BillingRecordData,
    patch: Mapping[str, Any],
    grace_period_days: int,
    reference_date: date,
    due_days: int = DEFAULT_DUE_DAYS,
) -> BillingRecordData:
    """
    Produce the updated record for a patch.

    Moving a bill's billing date without an explicit due date re-derives the
    due date. Moving into paid stamps paid_date when the caller omitted it.
    """
    blocked = IMMUTABLE_FIELDS.intersection(patch)
    if blocked:
        raise ValidationError(f"cannot change {', '.join(sorted(blocked))} on an existing billing record")
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValidationError(f"unknown billing record fields: {', '.join(sorted(unknown))}")

    changes: Dict[str, Any] = dict(patch)
    if "status" in changes and changes["status"] is not None:
        changes["status"] = BillingStatus(changes["status"])
    elif "status" in changes:
        raise ValidationError("status cannot be null")
    # Cancelled is terminal
    if existing.status == BillingStatus.CANCELLED and changes.get("status", existing.status) != existing.status:
        raise ValidationError(f"billing record {existing.billing_number} is cancelled; its status cannot change")
    if changes.get("amount_cents", existing.amount_cents) is None:
        raise ValidationError("amount_cents cannot be null")

    if "billing_date" in changes and "due_date" not in changes:
        changes["due_date"] = compute_due_date(changes["billing_date"], due_days)

    updated = existing.copy(**changes)
    _validate_amounts(updated.amount_cents, updated.paid_amount_cents)
    _validate_period(updated.billing_period_start, updated.billing_period_end)

    if updated.status == BillingStatus.PAID and existing.status != BillingStatus.PAID and updated.paid_date is None:
        updated.paid_date = reference_date

    updated.status = auto_status(updated.status, updated.due_date, grace_period_days, reference_date)
    return updated


def amount_contribution(state: Optional[RecordState], policy: CancellationPolicy) -> int:
    """What a record adds to the balance before any settlement"""
    if state is None:
        return 0
    if state.status == BillingStatus.CANCELLED and policy == CancellationPolicy.REVERSE:
        return 0
    return state.amount_cents


def applied_settlement(state: Optional[RecordState]) -> int:
    """Settlement currently subtracted from the balance for a record"""
    if state is None or state.status != BillingStatus.PAID:
        return 0
    return state.settled_amount_cents


def contribution(state: Optional[RecordState], policy: CancellationPolicy) -> int:
    """Net effect of a record on its account's balance"""
    return amount_contribution(state, policy) - applied_settlement(state)


# (was paid, is paid) -> settlement delta from (previously applied, newly requested).
# Positive deltas reduce the balance.
_SETTLEMENT_TRANSITIONS: Dict[Tuple[bool, bool], Callable[[int, int], int]] = {
    (False, False): lambda previous, requested: 0,
    (False, True): lambda previous, requested: requested,
    (True, False): lambda previous, requested: -previous,
    (True, True): lambda previous, requested: requested - previous,
}


def settlement_delta(
    previous_status: Optional[BillingStatus],
    previous_settled_cents: int,
    new_status: Optional[BillingStatus],
    requested_settlement_cents: int,
) -> int:
    """Change in collected money implied by a status/paid-amount transition"""
    was_paid = previous_status == BillingStatus.PAID
    is_paid = new_status == BillingStatus.PAID
    return _SETTLEMENT_TRANSITIONS[(was_paid, is_paid)](
        previous_settled_cents if was_paid else 0,
        requested_settlement_cents if is_paid else 0,
    )


def compute_balance_change(
    balance_cents: int,
    previous: Optional[BillingRecordData],
    current: Optional[BillingRecordData],
    policy: CancellationPolicy,
) -> BalanceChange:
    """
    Balance effect of moving a record from `previous` to `current`.

    previous is None on create, current is None on delete. A settlement never
    pushes a non-negative balance below zero: only what is owed at that point
    is applied, and the applied amount is what a later reversal gives back.

    Example:
        balance 75, record of 75 pending -> paid 75: balance 0, settled 75
        balance 0, paid 75 -> paid 50: balance 25, settled 50
    """
    previous_state = previous.state if previous is not None else None
    current_state = current.state if current is not None else None

    amount_delta = amount_contribution(current_state, policy) - amount_contribution(previous_state, policy)
    previously_settled = applied_settlement(previous_state)

    # Balance with this record's amount applied and its old settlement given back
    unsettled_balance = balance_cents + amount_delta + previously_settled

    settled = 0
    if current is not None and current.status == BillingStatus.PAID:
        settled = max(0, min(current.settlement_cents, unsettled_balance))

    delta = settlement_delta(
        previous_state.status if previous_state else None,
        previously_settled,
        current_state.status if current_state else None,
        settled,
    )

    return BalanceChange(
        amount_delta_cents=amount_delta,
        settlement_delta_cents=delta,
        settled_amount_cents=settled,
        balance_before_cents=balance_cents,
        balance_after_cents=balance_cents + amount_delta - delta,
    )
