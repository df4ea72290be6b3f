"""Account balance reconciliation - the account state transition for one billing record event"""

from dataclasses import dataclass, replace
from datetime import date
from typing import Optional

from billing_reconciler.domain.lifecycle import auto_status, compute_balance_change
from billing_reconciler.domain.models import (
    AccountBillingState,
    BalanceChange,
    BillingRecordData,
    BillingStatus,
    CancellationPolicy,
    LatePaymentEntry,
)
from billing_reconciler.domain.temporal import compute_lateness, is_overdue


@dataclass
class ReconciledAccount:
    """New account state, the balance change and the record as it must be persisted"""

    account: AccountBillingState
    change: BalanceChange
    record: Optional[BillingRecordData]


def _record_late_payment(
    account: AccountBillingState,
    record: BillingRecordData,
    late_fee_cents: int,
) -> AccountBillingState:
    """Late payment bookkeeping. Fees are tracked, not added to the balance."""
    if record.paid_date is None:
        return account
    if not is_overdue(record.due_date, account.grace_period_days, record.paid_date):
        return account

    entry = LatePaymentEntry(
        due_date=record.due_date,
        paid_date=record.paid_date,
        days_late=(record.paid_date - record.due_date).days,
        amount_cents=record.settlement_cents,
        late_fee_cents=late_fee_cents,
    )
    return replace(
        account,
        late_payment_count=account.late_payment_count + 1,
        last_late_payment_date=record.paid_date,
        total_late_fees_cents=account.total_late_fees_cents + late_fee_cents,
        late_payment_history=[*account.late_payment_history, entry],
    )


def reconcile_account(
    account: AccountBillingState,
    previous: Optional[BillingRecordData],
    current: Optional[BillingRecordData],
    reference_date: date,
    policy: CancellationPolicy = CancellationPolicy.REVERSE,
    late_fee_cents: int = 0,
    fallback_due_date: Optional[date] = None,
) -> ReconciledAccount:
    """
    Apply one billing record event to an account.

    Flow:
    1. Auto-transition the record to overdue if its grace period elapsed
    2. Compute the balance change (amount delta and settlement delta)
    3. Payment bookkeeping on transitions into paid, or paid amount changes
    4. Re-derive lateness against the account's next billing date, or
       fallback_due_date for accounts without a billing schedule

    Args:
        previous: record before the event (None on create)
        current: record after the event (None on delete)
    """
    record = None
    if current is not None:
        record = current.copy(
            status=auto_status(current.status, current.due_date, account.grace_period_days, reference_date)
        )

    change = compute_balance_change(account.balance_cents, previous, record, policy)
    updated = replace(account, balance_cents=change.balance_after_cents)

    if record is not None:
        record.settled_amount_cents = change.settled_amount_cents

        was_paid = previous is not None and previous.status == BillingStatus.PAID
        if record.status == BillingStatus.PAID and not was_paid:
            updated = replace(
                updated,
                last_payment_date=record.paid_date or reference_date,
                last_payment_amount_cents=record.settlement_cents,
            )
            updated = _record_late_payment(updated, record, late_fee_cents)
        elif record.status == BillingStatus.PAID and change.settlement_delta_cents != 0:
            updated = replace(
                updated,
                last_payment_date=record.paid_date or account.last_payment_date or reference_date,
                last_payment_amount_cents=record.settlement_cents,
            )

    updated.is_late = compute_lateness(
        account.next_billing_date or fallback_due_date,
        account.grace_period_days,
        updated.balance_cents,
        updated.last_payment_date,
        reference_date,
    )
    return ReconciledAccount(account=updated, change=change, record=record)


def refresh_lateness(
    account: AccountBillingState,
    reference_date: date,
    fallback_due_date: Optional[date] = None,
) -> AccountBillingState:
    """Re-derive lateness with no record event, e.g. as the clock moves"""
    return replace(
        account,
        is_late=compute_lateness(
            account.next_billing_date or fallback_due_date,
            account.grace_period_days,
            account.balance_cents,
            account.last_payment_date,
            reference_date,
        ),
    )
