"""Data access layer for accounts, billing records, reconciliation events and sequences"""

import uuid
from datetime import date
from typing import Any, Callable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from billing_reconciler.domain.models import (
    AccountBillingState,
    AccountSnapshot,
    BalanceChange,
    BillingRecordData,
    BillingRecordSnapshot,
    BillingStatus,
    LatePaymentEntry,
    LatenessStatus,
    Operation,
)
from billing_reconciler.infrastructure.database.models import (
    Account,
    BillingRecord,
    Invoice,
    ReconciliationEvent,
    SequenceCounter,
)

OPEN_STATUSES = (BillingStatus.PENDING.value, BillingStatus.OVERDUE.value)


class AccountRepository:
    """Repository for customer accounts"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, account_id: uuid.UUID, for_update: bool = False) -> Optional[Account]:
        """Fetch an account, row-locked when the backend supports it"""
        query = self.db.query(Account).filter(Account.id == account_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    def get_by_email(self, email: str) -> Optional[Account]:
        return self.db.query(Account).filter(Account.email == email).first()

    def get_by_account_number(self, account_number: str) -> Optional[Account]:
        return self.db.query(Account).filter(Account.account_number == account_number).first()

    def count_with_prefix(self, prefix: str) -> int:
        return (
            self.db.query(func.count(Account.id))
            .filter(Account.account_number.startswith(prefix))
            .scalar()
        )

    def list_ids(self, after: Optional[uuid.UUID] = None, limit: int = 500) -> List[uuid.UUID]:
        """One page of account ids in id order, starting after the given id"""
        query = select(Account.id)
        if after is not None:
            query = query.where(Account.id > after)
        return list(self.db.scalars(query.order_by(Account.id).limit(limit)))

    def create(self, **fields: Any) -> Account:
        """Persist a new account"""
        db_account = Account(**fields)
        self.db.add(db_account)
        self.db.flush()  # Get ID without committing
        return db_account

    @staticmethod
    def to_billing_state(account: Account) -> AccountBillingState:
        return AccountBillingState(
            balance_cents=account.account_balance_cents or 0,
            grace_period_days=account.grace_period_days,
            next_billing_date=account.next_billing_date,
            last_payment_date=account.last_payment_date,
            last_payment_amount_cents=account.last_payment_amount_cents,
            is_late=LatenessStatus(account.is_late),
            late_payment_count=account.late_payment_count,
            last_late_payment_date=account.last_late_payment_date,
            total_late_fees_cents=account.total_late_fees_cents,
            late_payment_history=[LatePaymentEntry.from_dict(e) for e in account.late_payment_history or []],
        )

    @staticmethod
    def apply_billing_state(account: Account, state: AccountBillingState) -> None:
        """Copy reconciler-owned fields back onto the ORM row"""
        account.account_balance_cents = state.balance_cents
        account.next_billing_date = state.next_billing_date
        account.last_payment_date = state.last_payment_date
        account.last_payment_amount_cents = state.last_payment_amount_cents
        account.is_late = LatenessStatus(state.is_late).value
        account.late_payment_count = state.late_payment_count
        account.last_late_payment_date = state.last_late_payment_date
        account.total_late_fees_cents = state.total_late_fees_cents
        account.late_payment_history = [e.to_dict() for e in state.late_payment_history]

    @staticmethod
    def snapshot(account: Account) -> AccountSnapshot:
        return AccountSnapshot(
            id=account.id,
            account_number=account.account_number,
            name=account.name,
            email=account.email,
            invoicing_customer_id=account.invoicing_customer_id,
        )


class BillingRecordRepository:
    """Repository for billing records"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, record_id: uuid.UUID, for_update: bool = False) -> Optional[BillingRecord]:
        query = self.db.query(BillingRecord).filter(BillingRecord.id == record_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    def get_by_invoice_id(self, invoice_id: str) -> Optional[BillingRecord]:
        return self.db.query(BillingRecord).filter(BillingRecord.invoice_id == invoice_id).first()

    def list_for_account(self, account_id: uuid.UUID) -> List[BillingRecord]:
        return (
            self.db.query(BillingRecord)
            .filter(BillingRecord.account_id == account_id)
            .order_by(BillingRecord.billing_date, BillingRecord.billing_number)
            .all()
        )

    def list_open_for_account(self, account_id: uuid.UUID) -> List[BillingRecord]:
        """Pending and overdue records, oldest due first"""
        return (
            self.db.query(BillingRecord)
            .filter(
                BillingRecord.account_id == account_id,
                BillingRecord.status.in_(OPEN_STATUSES),
            )
            .order_by(BillingRecord.due_date)
            .all()
        )

    def earliest_open_due_date(self, account_id: uuid.UUID, exclude_id: Optional[uuid.UUID] = None) -> Optional[date]:
        query = self.db.query(func.min(BillingRecord.due_date)).filter(
            BillingRecord.account_id == account_id,
            BillingRecord.status.in_(OPEN_STATUSES),
        )
        if exclude_id is not None:
            query = query.filter(BillingRecord.id != exclude_id)
        return query.scalar()

    def count_with_prefix(self, prefix: str) -> int:
        return (
            self.db.query(func.count(BillingRecord.id))
            .filter(BillingRecord.billing_number.startswith(prefix))
            .scalar()
        )

    def create(self, data: BillingRecordData, billing_number: str) -> BillingRecord:
        """Persist a normalized billing record"""
        db_record = BillingRecord(billing_number=billing_number, account_id=data.account_id)
        self.apply(db_record, data)
        self.db.add(db_record)
        self.db.flush()
        return db_record

    @staticmethod
    def apply(record: BillingRecord, data: BillingRecordData) -> None:
        record.amount_cents = data.amount_cents
        record.billing_date = data.billing_date
        record.due_date = data.due_date
        record.status = BillingStatus(data.status).value
        record.paid_date = data.paid_date
        record.paid_amount_cents = data.paid_amount_cents
        record.settled_amount_cents = data.settled_amount_cents
        record.description = data.description
        record.billing_period_start = data.billing_period_start
        record.billing_period_end = data.billing_period_end
        record.notes = data.notes

    def delete(self, record: BillingRecord) -> None:
        self.db.delete(record)
        self.db.flush()

    def attach_invoice(self, record_id: uuid.UUID, invoice_id: str) -> bool:
        """Store the external invoice reference; False if the record is gone"""
        record = self.get(record_id)
        if record is None:
            return False
        record.invoice_id = invoice_id
        self.db.flush()
        return True

    @staticmethod
    def to_data(record: BillingRecord) -> BillingRecordData:
        return BillingRecordData(
            id=record.id,
            billing_number=record.billing_number,
            account_id=record.account_id,
            amount_cents=record.amount_cents,
            billing_date=record.billing_date,
            due_date=record.due_date,
            status=BillingStatus(record.status),
            paid_date=record.paid_date,
            paid_amount_cents=record.paid_amount_cents,
            settled_amount_cents=record.settled_amount_cents or 0,
            description=record.description,
            billing_period_start=record.billing_period_start,
            billing_period_end=record.billing_period_end,
            notes=record.notes,
        )

    @staticmethod
    def snapshot(record: BillingRecord) -> BillingRecordSnapshot:
        return BillingRecordSnapshot(
            id=record.id,
            billing_number=record.billing_number,
            amount_cents=record.amount_cents,
            billing_date=record.billing_date,
            due_date=record.due_date,
            status=BillingStatus(record.status),
            description=record.description,
        )


class ReconciliationEventRepository:
    """Repository for the per-account reconciliation log"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_idempotency_key(self, key: str) -> Optional[ReconciliationEvent]:
        return self.db.query(ReconciliationEvent).filter(ReconciliationEvent.idempotency_key == key).first()

    def record(
        self,
        account_id: uuid.UUID,
        billing_record_id: uuid.UUID,
        billing_number: str,
        operation: Operation,
        change: BalanceChange,
        record_status: BillingStatus,
        idempotency_key: Optional[str] = None,
    ) -> ReconciliationEvent:
        event = ReconciliationEvent(
            account_id=account_id,
            billing_record_id=billing_record_id,
            billing_number=billing_number,
            operation=Operation(operation).value,
            idempotency_key=idempotency_key,
            amount_delta_cents=change.amount_delta_cents,
            settlement_delta_cents=change.settlement_delta_cents,
            balance_delta_cents=change.balance_delta_cents,
            balance_before_cents=change.balance_before_cents,
            balance_after_cents=change.balance_after_cents,
            record_status=BillingStatus(record_status).value,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def list_for_account(self, account_id: uuid.UUID) -> List[ReconciliationEvent]:
        return (
            self.db.query(ReconciliationEvent)
            .filter(ReconciliationEvent.account_id == account_id)
            .order_by(ReconciliationEvent.created_at)
            .all()
        )

    def balance_sum(self, account_id: uuid.UUID) -> int:
        """Balance replayed from the event log"""
        total = (
            self.db.query(func.coalesce(func.sum(ReconciliationEvent.balance_delta_cents), 0))
            .filter(ReconciliationEvent.account_id == account_id)
            .scalar()
        )
        return int(total)


class SequenceRepository:
    """Transactional fetch-and-increment counters keyed by scope"""

    def __init__(self, db: Session):
        self.db = db

    def next_value(self, scope: str, seed: Optional[Callable[[], int]] = None) -> int:
        """
        Increment and return the counter for scope.

        The UPDATE holds the row (or database) write lock until the caller's
        transaction ends, so concurrent callers serialize on it. A missing row
        is created from `seed()` (the number of identifiers already issued the
        old way); two first callers racing on the insert fail one of them on
        the primary key, which the caller's retry handles.
        """
        result = self.db.execute(
            update(SequenceCounter)
            .where(SequenceCounter.scope == scope)
            .values(value=SequenceCounter.value + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            start = (seed() if seed else 0) + 1
            self.db.add(SequenceCounter(scope=scope, value=start))
            self.db.flush()
            return start

        return self.db.execute(select(SequenceCounter.value).where(SequenceCounter.scope == scope)).scalar_one()


class InvoiceRepository:
    """Repository for region-numbered invoices"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, invoice_number: str, account_id: uuid.UUID, total_cents: int, **fields: Any) -> Invoice:
        db_invoice = Invoice(
            invoice_number=invoice_number,
            account_id=account_id,
            total_cents=total_cents,
            **fields,
        )
        self.db.add(db_invoice)
        self.db.flush()
        return db_invoice

    def count_with_prefix(self, prefix: str) -> int:
        return (
            self.db.query(func.count(Invoice.id))
            .filter(Invoice.invoice_number.startswith(prefix))
            .scalar()
        )

