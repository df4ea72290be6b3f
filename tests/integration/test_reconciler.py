"""Integration tests for the transactional billing reconciler"""

import uuid
import pytest
from datetime import date
from unittest.mock import patch
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from billing_reconciler.domain.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from billing_reconciler.domain.lifecycle import contribution
from billing_reconciler.domain.models import (
    BillingStatus,
    CancellationPolicy,
    LatenessStatus,
    Operation,
    RecordState,
)
from billing_reconciler.infrastructure.database.models import Account, BillingRecord, ReconciliationEvent
from billing_reconciler.infrastructure.database.repositories import (
    AccountRepository,
    ReconciliationEventRepository,
)
from billing_reconciler.services.notifications import make_invoice_recorder
from billing_reconciler.services.reconciler import BillingReconciler

pytestmark = pytest.mark.integration

MARCH_15 = date(2024, 3, 15)


@pytest.fixture
def account(make_account) -> Account:
    """Monthly account billed on the 15th, onboarded 2024-03-15"""
    return make_account(reference_date=MARCH_15, billing_day_of_month=15)


def reconciler(db: Session, **kwargs) -> BillingReconciler:
    return BillingReconciler(db, clock=lambda: MARCH_15, **kwargs)


def assert_balance_consistent(db: Session, account_id, policy=CancellationPolicy.REVERSE):
    """Balance == replayed event log == sum of live record contributions"""
    account = db.get(Account, account_id)
    records = db.query(BillingRecord).filter(BillingRecord.account_id == account_id).all()
    from_records = sum(
        contribution(RecordState(BillingStatus(r.status), r.amount_cents, r.settled_amount_cents), policy)
        for r in records
    )
    assert account.account_balance_cents == ReconciliationEventRepository(db).balance_sum(account_id)
    assert account.account_balance_cents == from_records


# Scenarios


def test_create_adds_amount_and_assigns_billing_number(db: Session, account: Account):
    result = reconciler(db).create(account.id, 7500, MARCH_15)

    assert result.balance_before_cents == 0
    assert result.balance_after_cents == 7500
    assert result.record_status == BillingStatus.PENDING
    assert result.billing_number == "BILL-000001"
    assert result.is_late == LatenessStatus.CURRENT
    assert result.should_notify is True

    record = db.get(BillingRecord, result.billing_record_id)
    assert record.due_date == date(2024, 4, 14)
    assert db.get(Account, account.id).account_balance_cents == 7500
    assert_balance_consistent(db, account.id)


def test_billing_numbers_are_sequential(db: Session, account: Account):
    service = reconciler(db)
    numbers = [service.create(account.id, 100, MARCH_15).billing_number for _ in range(3)]
    assert numbers == ["BILL-000001", "BILL-000002", "BILL-000003"]


def test_pay_in_full_then_lower_paid_amount(db: Session, account: Account):
    service = reconciler(db)
    created = service.create(account.id, 7500, MARCH_15)

    paid = service.update(
        created.billing_record_id,
        {"status": "paid", "paid_amount_cents": 7500, "paid_date": date(2024, 3, 20)},
        reference_date=date(2024, 3, 20),
    )
    assert paid.balance_after_cents == 0
    assert paid.is_late == LatenessStatus.CURRENT
    stored = db.get(Account, account.id)
    assert stored.last_payment_date == date(2024, 3, 20)
    assert stored.last_payment_amount_cents == 7500

    lowered = service.update(created.billing_record_id, {"paid_amount_cents": 5000}, reference_date=date(2024, 3, 21))
    assert lowered.balance_after_cents == 2500
    assert lowered.record_status == BillingStatus.PAID
    assert_balance_consistent(db, account.id)


def test_delete_pending_record(db: Session, account: Account):
    service = reconciler(db)
    created = service.create(account.id, 5000, MARCH_15)

    result = service.delete(created.billing_record_id)

    assert result.balance_after_cents == 0
    assert result.operation == Operation.DELETE
    assert result.should_notify is False
    assert db.get(BillingRecord, created.billing_record_id) is None
    assert_balance_consistent(db, account.id)


def test_record_created_past_grace_is_overdue_and_account_late(db: Session, make_account):
    account = make_account(reference_date=date(2024, 1, 1), billing_day_of_month=1)
    result = reconciler(db).create(account.id, 7500, date(2024, 1, 1), reference_date=date(2024, 3, 1))

    assert result.record_status == BillingStatus.OVERDUE
    assert result.is_late == LatenessStatus.LATE


def test_late_payment_is_recorded(db: Session, make_account):
    account = make_account(reference_date=date(2024, 3, 15), billing_day_of_month=15)
    service = reconciler(db, late_fee_cents=1500)
    created = service.create(account.id, 7500, MARCH_15)

    service.update(created.billing_record_id, {"status": "paid"}, reference_date=date(2024, 4, 25))

    stored = db.get(Account, account.id)
    assert stored.late_payment_count == 1
    assert stored.total_late_fees_cents == 1500
    assert stored.account_balance_cents == 0
    assert stored.late_payment_history[0]["days_late"] == 11


def test_lateness_uses_oldest_open_bill_without_schedule(db: Session, account: Account):
    stored = db.get(Account, account.id)
    stored.next_billing_date = None
    db.commit()

    service = reconciler(db)
    service.create(
        account.id, 7500, date(2024, 2, 1), due_date=date(2024, 3, 1), reference_date=date(2024, 3, 5)
    )
    result = service.create(account.id, 100, MARCH_15, reference_date=date(2024, 3, 10))

    assert result.is_late == LatenessStatus.LATE


# Cancellation policy


@pytest.mark.parametrize(
    "policy, expected_balance",
    [(CancellationPolicy.REVERSE, 0), (CancellationPolicy.RETAIN, 7500)],
)
def test_cancelling_a_record(db: Session, account: Account, policy, expected_balance):
    service = reconciler(db, policy=policy)
    created = service.create(account.id, 7500, MARCH_15)

    result = service.update(created.billing_record_id, {"status": "cancelled"})

    assert result.balance_after_cents == expected_balance
    assert_balance_consistent(db, account.id, policy)


def test_cancelled_creation_does_not_notify(db: Session, account: Account):
    result = reconciler(db).create(account.id, 7500, MARCH_15, status="cancelled")
    assert result.balance_after_cents == 0
    assert result.should_notify is False


# Invariant over arbitrary sequences


@pytest.mark.parametrize("policy", list(CancellationPolicy))
def test_balance_matches_event_log_over_mixed_sequence(db: Session, account: Account, policy):
    service = reconciler(db, policy=policy)
    first = service.create(account.id, 7500, MARCH_15).billing_record_id
    second = service.create(account.id, 5000, MARCH_15).billing_record_id
    third = service.create(account.id, 1200, MARCH_15, status="paid").billing_record_id

    steps = [
        lambda: service.update(first, {"status": "paid", "paid_amount_cents": 10_000}),
        lambda: service.update(second, {"amount_cents": 6000}),
        lambda: service.update(first, {"status": "pending"}),
        lambda: service.update(second, {"status": "paid", "paid_amount_cents": 3000}),
        lambda: service.update(first, {"status": "cancelled"}),
        lambda: service.update(second, {"status": "paid", "paid_amount_cents": 6000}),
        lambda: service.delete(third),
        lambda: service.update(first, {"amount_cents": 8000}),
        lambda: service.update(second, {"status": "pending", "amount_cents": 100}),
        lambda: service.delete(first),
    ]
    assert_balance_consistent(db, account.id, policy)
    for step in steps:
        step()
        assert_balance_consistent(db, account.id, policy)

    assert db.get(Account, account.id).account_balance_cents == 100


# Replay guard


def test_replayed_mutation_is_not_applied_twice(db: Session, account: Account):
    service = reconciler(db)
    first = service.create(account.id, 7500, MARCH_15, idempotency_key="create-1")
    again = service.create(account.id, 7500, MARCH_15, idempotency_key="create-1")

    assert again.replayed is True
    assert again.should_notify is False
    assert again.billing_record_id == first.billing_record_id
    assert again.balance_after_cents == 7500
    assert db.query(BillingRecord).count() == 1
    assert db.query(ReconciliationEvent).count() == 1
    assert db.get(Account, account.id).account_balance_cents == 7500


def test_replayed_payment_confirmation(db: Session, account: Account):
    service = reconciler(db)
    created = service.create(account.id, 7500, MARCH_15)

    service.confirm_payment(record_id=created.billing_record_id, amount_cents=5000, idempotency_key="pay-1")
    replay = service.confirm_payment(record_id=created.billing_record_id, amount_cents=5000, idempotency_key="pay-1")

    assert replay.replayed is True
    assert db.get(Account, account.id).account_balance_cents == 2500


def test_idempotency_key_reused_for_other_operation(db: Session, account: Account):
    service = reconciler(db)
    created = service.create(account.id, 7500, MARCH_15, idempotency_key="key-1")

    with pytest.raises(ValidationError):
        service.delete(created.billing_record_id, idempotency_key="key-1")
    assert db.get(Account, account.id).account_balance_cents == 7500


def test_idempotency_key_reused_for_other_record(db: Session, account: Account):
    service = reconciler(db)
    first = service.create(account.id, 5000, MARCH_15)
    second = service.create(account.id, 5000, MARCH_15)
    service.confirm_payment(record_id=first.billing_record_id, idempotency_key="pay-k")

    with pytest.raises(ValidationError):
        service.confirm_payment(record_id=second.billing_record_id, idempotency_key="pay-k")

    assert db.get(BillingRecord, second.billing_record_id).status == BillingStatus.PENDING.value
    assert db.get(Account, account.id).account_balance_cents == 5000


def test_idempotency_key_reused_for_other_create(db: Session, account: Account, make_account):
    other = make_account()
    service = reconciler(db)
    service.create(account.id, 7500, MARCH_15, idempotency_key="create-k")

    with pytest.raises(ValidationError):
        service.create(account.id, 9900, MARCH_15, idempotency_key="create-k")
    with pytest.raises(ValidationError):
        service.create(other.id, 7500, MARCH_15, idempotency_key="create-k")

    assert db.query(BillingRecord).count() == 1


def test_cancelled_create_replays(db: Session, account: Account):
    service = reconciler(db)
    first = service.create(account.id, 7500, MARCH_15, status="cancelled", idempotency_key="create-c")
    again = service.create(account.id, 7500, MARCH_15, status="cancelled", idempotency_key="create-c")

    assert again.replayed is True
    assert again.billing_record_id == first.billing_record_id


# Payment confirmations


def test_confirm_payment_by_invoice_id(db: Session, account: Account):
    service = reconciler(db)
    created = service.create(account.id, 7500, MARCH_15)
    make_invoice_recorder(sessionmaker(bind=db.get_bind()))(created.billing_record_id, "in_123")

    result = service.confirm_payment(invoice_id="in_123", paid_date=date(2024, 3, 18))

    assert result.record_status == BillingStatus.PAID
    assert result.balance_after_cents == 0
    assert db.get(Account, account.id).last_payment_date == date(2024, 3, 18)


def test_confirm_payment_unknown_invoice(db: Session, account: Account):
    with pytest.raises(NotFoundError):
        reconciler(db).confirm_payment(invoice_id="in_missing")


def test_confirm_payment_needs_a_reference(db: Session):
    with pytest.raises(ValidationError):
        reconciler(db).confirm_payment()


# Failure handling


def test_unknown_account(db: Session):
    with pytest.raises(NotFoundError):
        reconciler(db).create(uuid.uuid4(), 7500, MARCH_15)
    assert db.query(BillingRecord).count() == 0


def test_unknown_record(db: Session):
    with pytest.raises(NotFoundError):
        reconciler(db).update(uuid.uuid4(), {"amount_cents": 1})


def test_invalid_amount_changes_nothing(db: Session, account: Account):
    service = reconciler(db)
    created = service.create(account.id, 7500, MARCH_15)

    with pytest.raises(ValidationError):
        service.update(created.billing_record_id, {"amount_cents": -1})

    assert db.get(BillingRecord, created.billing_record_id).amount_cents == 7500
    assert db.get(Account, account.id).account_balance_cents == 7500


def test_version_conflict_is_retried(db: Session, account: Account):
    real_apply = AccountRepository.apply_billing_state
    calls = {"n": 0}

    def lose_first_race(target, state):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StaleDataError("account version changed underneath us")
        real_apply(target, state)

    with patch.object(AccountRepository, "apply_billing_state", side_effect=lose_first_race):
        result = reconciler(db).create(account.id, 7500, MARCH_15)

    assert calls["n"] == 2
    assert result.billing_number == "BILL-000001"
    assert db.query(BillingRecord).count() == 1
    assert_balance_consistent(db, account.id)


def test_gives_up_after_max_retries(db: Session, account: Account):
    with patch.object(AccountRepository, "apply_billing_state", side_effect=StaleDataError("stale")) as mock_apply:
        with pytest.raises(ConcurrencyConflictError):
            reconciler(db, max_retries=3).create(account.id, 7500, MARCH_15)

    assert mock_apply.call_count == 3
    assert db.query(BillingRecord).count() == 0
    assert db.get(Account, account.id).account_balance_cents == 0


def test_account_write_failure_rolls_back_record(db: Session, account: Account):
    """Record and account are written together or not at all"""
    service = reconciler(db)
    created = service.create(account.id, 7500, MARCH_15)

    with patch.object(
        AccountRepository, "apply_billing_state", side_effect=OperationalError("UPDATE account", {}, Exception("disk I/O error"))
    ):
        with pytest.raises(PersistenceError):
            service.update(created.billing_record_id, {"amount_cents": 9000})

    assert db.get(BillingRecord, created.billing_record_id).amount_cents == 7500
    assert db.get(Account, account.id).account_balance_cents == 7500
    assert db.query(ReconciliationEvent).count() == 1


def test_stale_account_write_is_detected(db: Session, account: Account):
    """The version column turns a lost update into an error"""
    account_id = account.id
    factory = sessionmaker(bind=db.get_bind())
    first, second = factory(), factory()
    try:
        mine = first.get(Account, account_id)
        theirs = second.get(Account, account_id)
        theirs.name = "Renamed elsewhere"
        second.commit()

        mine.name = "Renamed here"
        with pytest.raises(StaleDataError):
            first.flush()
    finally:
        first.rollback()
        first.close()
        second.close()


def test_record_without_account_skips_reconciliation(db: Session, account: Account):
    service = reconciler(db)
    created = service.create(account.id, 7500, MARCH_15)
    record = db.get(BillingRecord, created.billing_record_id)
    record.account_id = None
    db.commit()

    result = service.update(created.billing_record_id, {"amount_cents": 9000})

    assert result.account_id is None
    assert db.get(BillingRecord, created.billing_record_id).amount_cents == 9000
    assert db.get(Account, account.id).account_balance_cents == 7500


def test_create_requires_account(db: Session):
    with pytest.raises(ValidationError):
        reconciler(db).create(None, 7500, MARCH_15)
