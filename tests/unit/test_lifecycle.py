"""Unit tests for billing record validation, status transitions and balance deltas"""

import uuid
import pytest
from datetime import date
from billing_reconciler.domain.exceptions import ValidationError
from billing_reconciler.domain.lifecycle import (
    apply_patch,
    compute_balance_change,
    contribution,
    create_record,
    effective_status,
    settlement_delta,
)
from billing_reconciler.domain.models import BillingRecordData, BillingStatus, CancellationPolicy

ACCOUNT_ID = uuid.uuid4()


def make_record(**overrides) -> BillingRecordData:
    fields = dict(
        account_id=ACCOUNT_ID,
        amount_cents=7500,
        billing_date=date(2024, 3, 15),
        due_date=date(2024, 4, 14),
        status=BillingStatus.PENDING,
        billing_number="BILL-000001",
    )
    fields.update(overrides)
    return BillingRecordData(**fields)


# create_record


def test_create_defaults_due_date_and_pending_status():
    record = create_record(ACCOUNT_ID, 7500, date(2024, 3, 15), 5, reference_date=date(2024, 3, 15))
    assert record.due_date == date(2024, 4, 14)
    assert record.status == BillingStatus.PENDING
    assert record.paid_date is None


def test_create_keeps_explicit_due_date():
    record = create_record(ACCOUNT_ID, 7500, date(2024, 3, 15), 5, date(2024, 3, 15), due_date=date(2024, 3, 31))
    assert record.due_date == date(2024, 3, 31)


def test_create_past_grace_starts_overdue():
    record = create_record(ACCOUNT_ID, 7500, date(2024, 1, 1), 5, reference_date=date(2024, 3, 1))
    assert record.status == BillingStatus.OVERDUE


def test_create_paid_stamps_paid_date():
    record = create_record(
        ACCOUNT_ID, 7500, date(2024, 3, 15), 5, date(2024, 3, 16), status=BillingStatus.PAID
    )
    assert record.status == BillingStatus.PAID
    assert record.paid_date == date(2024, 3, 16)


def test_create_cancelled_is_never_overdue():
    record = create_record(
        ACCOUNT_ID, 7500, date(2024, 1, 1), 5, date(2024, 3, 1), status=BillingStatus.CANCELLED
    )
    assert record.status == BillingStatus.CANCELLED


def test_create_rejects_negative_amount():
    with pytest.raises(ValidationError):
        create_record(ACCOUNT_ID, -1, date(2024, 3, 15), 5, date(2024, 3, 15))


def test_create_rejects_negative_paid_amount():
    with pytest.raises(ValidationError):
        create_record(ACCOUNT_ID, 100, date(2024, 3, 15), 5, date(2024, 3, 15), paid_amount_cents=-5)


def test_create_rejects_inverted_billing_period():
    with pytest.raises(ValidationError):
        create_record(
            ACCOUNT_ID,
            100,
            date(2024, 3, 15),
            5,
            date(2024, 3, 15),
            billing_period_start=date(2024, 3, 31),
            billing_period_end=date(2024, 3, 1),
        )


def test_zero_amount_is_allowed():
    record = create_record(ACCOUNT_ID, 0, date(2024, 3, 15), 5, date(2024, 3, 15))
    assert record.amount_cents == 0


# apply_patch


def test_patch_into_paid_stamps_paid_date():
    updated = apply_patch(make_record(), {"status": "paid"}, 5, date(2024, 3, 20))
    assert updated.status == BillingStatus.PAID
    assert updated.paid_date == date(2024, 3, 20)


def test_patch_keeps_explicit_paid_date():
    updated = apply_patch(make_record(), {"status": "paid", "paid_date": date(2024, 3, 18)}, 5, date(2024, 3, 20))
    assert updated.paid_date == date(2024, 3, 18)


def test_patch_billing_date_rederives_due_date():
    updated = apply_patch(make_record(), {"billing_date": date(2024, 3, 20)}, 5, date(2024, 3, 20))
    assert updated.due_date == date(2024, 4, 19)


def test_patch_auto_transitions_to_overdue():
    updated = apply_patch(make_record(), {"notes": "called customer"}, 5, date(2024, 4, 20))
    assert updated.status == BillingStatus.OVERDUE
    assert updated.notes == "called customer"


@pytest.mark.parametrize("field", ["account_id", "billing_number", "settled_amount_cents"])
def test_patch_rejects_immutable_fields(field: str):
    with pytest.raises(ValidationError):
        apply_patch(make_record(), {field: "x"}, 5, date(2024, 3, 20))


def test_patch_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        apply_patch(make_record(), {"colour": "blue"}, 5, date(2024, 3, 20))


def test_patch_rejects_null_status():
    with pytest.raises(ValidationError):
        apply_patch(make_record(), {"status": None}, 5, date(2024, 3, 20))


@pytest.mark.parametrize("status", ["pending", "paid", "overdue"])
def test_cancelled_record_cannot_be_reopened(status: str):
    with pytest.raises(ValidationError):
        apply_patch(make_record(status=BillingStatus.CANCELLED), {"status": status}, 5, date(2024, 3, 20))


def test_cancelled_record_keeps_accepting_other_edits():
    cancelled = make_record(status=BillingStatus.CANCELLED)

    updated = apply_patch(cancelled, {"status": "cancelled", "notes": "duplicate bill"}, 5, date(2024, 4, 20))

    assert updated.status == BillingStatus.CANCELLED
    assert updated.notes == "duplicate bill"


def test_patch_does_not_mutate_existing():
    existing = make_record()
    apply_patch(existing, {"amount_cents": 100}, 5, date(2024, 3, 20))
    assert existing.amount_cents == 7500


def test_effective_status_reads_overdue_without_persisting():
    record = make_record()
    assert effective_status(record, 5, date(2024, 4, 19)) == BillingStatus.PENDING
    assert effective_status(record, 5, date(2024, 4, 20)) == BillingStatus.OVERDUE
    assert record.status == BillingStatus.PENDING


# contribution and deltas


def test_settlement_delta_table():
    assert settlement_delta(BillingStatus.PENDING, 0, BillingStatus.PENDING, 0) == 0
    assert settlement_delta(BillingStatus.PENDING, 0, BillingStatus.PAID, 7500) == 7500
    assert settlement_delta(BillingStatus.PAID, 7500, BillingStatus.OVERDUE, 0) == -7500
    assert settlement_delta(BillingStatus.PAID, 7500, BillingStatus.PAID, 5000) == -2500
    assert settlement_delta(None, 0, BillingStatus.PAID, 100) == 100
    assert settlement_delta(BillingStatus.PAID, 100, None, 0) == -100


def test_create_adds_amount():
    """Balance 0, new 75.00 bill -> 75.00"""
    change = compute_balance_change(0, None, make_record(), CancellationPolicy.REVERSE)
    assert change.balance_after_cents == 7500
    assert change.amount_delta_cents == 7500
    assert change.settlement_delta_cents == 0


def test_pay_in_full_zeroes_balance():
    change = compute_balance_change(
        7500, make_record(), make_record(status=BillingStatus.PAID, paid_amount_cents=7500), CancellationPolicy.REVERSE
    )
    assert change.balance_after_cents == 0
    assert change.settled_amount_cents == 7500


def test_lower_paid_amount_reopens_difference():
    """Paid 75.00 -> paid 50.00 owes the 25.00 under-collected"""
    previous = make_record(status=BillingStatus.PAID, paid_amount_cents=7500, settled_amount_cents=7500)
    current = previous.copy(paid_amount_cents=5000)
    change = compute_balance_change(0, previous, current, CancellationPolicy.REVERSE)
    assert change.balance_after_cents == 2500
    assert change.settled_amount_cents == 5000


def test_overpayment_does_not_create_credit():
    """A settlement never pushes a non-negative balance below zero"""
    change = compute_balance_change(
        7500, make_record(), make_record(status=BillingStatus.PAID, paid_amount_cents=10_000), CancellationPolicy.REVERSE
    )
    assert change.balance_after_cents == 0
    assert change.settled_amount_cents == 7500


def test_unpay_gives_back_exactly_what_was_settled():
    """Out of paid adds back the applied settlement, not the requested one"""
    previous = make_record(status=BillingStatus.PAID, paid_amount_cents=10_000, settled_amount_cents=7500)
    change = compute_balance_change(0, previous, previous.copy(status=BillingStatus.PENDING), CancellationPolicy.REVERSE)
    assert change.balance_after_cents == 7500
    assert change.settlement_delta_cents == -7500


def test_existing_credit_is_kept():
    """A credit balance stays; paying a bill against it settles nothing"""
    change = compute_balance_change(
        -2000, make_record(), make_record(status=BillingStatus.PAID), CancellationPolicy.REVERSE
    )
    # -2000 + 0 amount delta, unsettled -2000 -> nothing applied
    assert change.settled_amount_cents == 0
    assert change.balance_after_cents == -2000


def test_delete_pending_removes_amount():
    """Balance 50.00, delete the pending 50.00 bill -> 0"""
    change = compute_balance_change(5000, make_record(amount_cents=5000), None, CancellationPolicy.REVERSE)
    assert change.balance_after_cents == 0


def test_delete_paid_record_removes_net_contribution():
    previous = make_record(status=BillingStatus.PAID, paid_amount_cents=7500, settled_amount_cents=7500)
    change = compute_balance_change(0, previous, None, CancellationPolicy.REVERSE)
    assert change.balance_after_cents == 0


def test_amount_change_on_pending_record():
    change = compute_balance_change(7500, make_record(), make_record(amount_cents=9000), CancellationPolicy.REVERSE)
    assert change.amount_delta_cents == 1500
    assert change.balance_after_cents == 9000


def test_cancel_under_reverse_policy_removes_amount():
    change = compute_balance_change(
        7500, make_record(), make_record(status=BillingStatus.CANCELLED), CancellationPolicy.REVERSE
    )
    assert change.balance_after_cents == 0


def test_cancel_under_retain_policy_keeps_amount():
    change = compute_balance_change(
        7500, make_record(), make_record(status=BillingStatus.CANCELLED), CancellationPolicy.RETAIN
    )
    assert change.balance_after_cents == 7500


def test_cancel_paid_record_under_reverse_policy():
    """Settlement goes back and the amount leaves: net zero"""
    previous = make_record(status=BillingStatus.PAID, settled_amount_cents=7500)
    change = compute_balance_change(0, previous, previous.copy(status=BillingStatus.CANCELLED), CancellationPolicy.REVERSE)
    assert change.balance_after_cents == 0


def test_cancel_paid_record_under_retain_policy_reopens_amount():
    previous = make_record(status=BillingStatus.PAID, settled_amount_cents=7500)
    change = compute_balance_change(0, previous, previous.copy(status=BillingStatus.CANCELLED), CancellationPolicy.RETAIN)
    assert change.balance_after_cents == 7500


@pytest.mark.parametrize("policy", list(CancellationPolicy))
def test_paid_unpaid_paid_sequence_matches_contribution(policy: CancellationPolicy):
    """Balance always equals the record's contribution, whatever the path"""
    states = [
        make_record(),
        make_record(status=BillingStatus.PAID, paid_amount_cents=7500),
        make_record(status=BillingStatus.PENDING),
        make_record(status=BillingStatus.PAID, paid_amount_cents=4000),
        make_record(status=BillingStatus.PAID, paid_amount_cents=6000, amount_cents=8000),
        make_record(status=BillingStatus.CANCELLED, amount_cents=8000),
        make_record(status=BillingStatus.OVERDUE, amount_cents=8000),
    ]
    balance = 0
    previous = None
    for state in states:
        change = compute_balance_change(balance, previous, state, policy)
        balance = change.balance_after_cents
        previous = state.copy(settled_amount_cents=change.settled_amount_cents)
        assert balance == contribution(previous.state, policy)
