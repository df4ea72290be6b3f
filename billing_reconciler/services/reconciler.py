"""Account balance reconciler - applies billing record mutations to accounts atomically"""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_reconciler.config import settings
from billing_reconciler.domain import lifecycle
from billing_reconciler.domain.exceptions import (
    ConcurrencyConflictError,
    DomainException,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from billing_reconciler.domain.models import (
    BillingRecordData,
    BillingRecordSnapshot,
    BillingStatus,
    CancellationPolicy,
    LatenessStatus,
    Operation,
    ReconciliationResult,
)
from billing_reconciler.domain.reconciliation import reconcile_account
from billing_reconciler.infrastructure.database.models import Account, BillingRecord, ReconciliationEvent
from billing_reconciler.infrastructure.database.repositories import (
    AccountRepository,
    BillingRecordRepository,
    ReconciliationEventRepository,
)
from billing_reconciler.infrastructure.observability.logging import log_reconciliation
from billing_reconciler.infrastructure.observability.metrics import (
    overdue_transition_counter,
    reconciliation_conflict_counter,
    record_lateness_change,
    record_reconciliation,
)
from billing_reconciler.services.identifiers import IdentifierGenerator
from billing_reconciler.utils.date_utils import today

logger = logging.getLogger(__name__)

OPEN_STATUSES = (BillingStatus.PENDING, BillingStatus.OVERDUE)


class BillingReconciler:
    """
    Owns every write to billing records and to account balances.

    Each mutation is one transaction: the account row is locked and
    version-checked, the record is written, the account is written and the
    event is logged, then everything commits together. A lost version race
    rolls the whole attempt back and retries it from fresh state.
    """

    def __init__(
        self,
        db: Session,
        policy: CancellationPolicy | str | None = None,
        max_retries: int | None = None,
        late_fee_cents: int | None = None,
        due_days: int | None = None,
        clock: Callable[[], date] = today,
        request_id: str | None = None,
    ):
        self.db = db
        self.policy = CancellationPolicy(policy or settings.cancellation_policy)
        self.max_retries = max(1, max_retries or settings.reconcile_max_retries)
        self.late_fee_cents = settings.late_fee_cents if late_fee_cents is None else late_fee_cents
        self.due_days = due_days or settings.default_due_days
        self.clock = clock
        self.request_id = request_id

        self.accounts = AccountRepository(db)
        self.records = BillingRecordRepository(db)
        self.events = ReconciliationEventRepository(db)

    # Public operations

    def create(
        self,
        account_id: Optional[uuid.UUID],
        amount_cents: int,
        billing_date: date,
        idempotency_key: Optional[str] = None,
        reference_date: Optional[date] = None,
        **fields: Any,
    ) -> ReconciliationResult:
        """Create a billing record and add it to its account's balance"""
        if account_id is None:
            raise ValidationError("account_id is required")

        def apply(ref: date) -> ReconciliationResult:
            account = self._lock_account(account_id)
            data = lifecycle.create_record(
                account_id=account_id,
                amount_cents=amount_cents,
                billing_date=billing_date,
                grace_period_days=account.grace_period_days,
                reference_date=ref,
                due_days=self.due_days,
                **fields,
            )
            data.billing_number = IdentifierGenerator(self.db).next_billing_number()
            return self._reconcile(account, Operation.CREATE, None, data, None, idempotency_key, ref)

        return self._run(
            Operation.CREATE,
            apply,
            idempotency_key,
            reference_date,
            target={"account_id": account_id, "amount_cents": amount_cents},
        )

    def update(
        self,
        record_id: uuid.UUID,
        patch: Mapping[str, Any],
        idempotency_key: Optional[str] = None,
        reference_date: Optional[date] = None,
    ) -> ReconciliationResult:
        """Apply a patch to a billing record and its balance effect to the account"""

        def apply(ref: date) -> ReconciliationResult:
            account, db_record = self._lock_record(record_id)
            previous = BillingRecordRepository.to_data(db_record)
            grace = account.grace_period_days if account is not None else settings.default_grace_period_days
            current = lifecycle.apply_patch(previous, patch, grace, ref, due_days=self.due_days)
            return self._reconcile(account, Operation.UPDATE, previous, current, db_record, idempotency_key, ref)

        return self._run(Operation.UPDATE, apply, idempotency_key, reference_date, target={"record_id": record_id})

    def delete(
        self,
        record_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
        reference_date: Optional[date] = None,
    ) -> ReconciliationResult:
        """Delete a billing record, giving back its contribution to the balance"""

        def apply(ref: date) -> ReconciliationResult:
            account, db_record = self._lock_record(record_id)
            previous = BillingRecordRepository.to_data(db_record)
            return self._reconcile(account, Operation.DELETE, previous, None, db_record, idempotency_key, ref)

        return self._run(Operation.DELETE, apply, idempotency_key, reference_date, target={"record_id": record_id})

    def confirm_payment(
        self,
        record_id: Optional[uuid.UUID] = None,
        invoice_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
        paid_date: Optional[date] = None,
        idempotency_key: Optional[str] = None,
        reference_date: Optional[date] = None,
    ) -> ReconciliationResult:
        """
        Record an external payment confirmation as a transition into paid.

        The record is found by id or by the external invoice id. Without an
        amount the full bill is treated as collected.
        """
        if record_id is None and not invoice_id:
            raise ValidationError("either billing_record_id or invoice_id is required")

        if record_id is None:
            db_record = self.records.get_by_invoice_id(invoice_id)
            if db_record is None:
                raise NotFoundError(f"No billing record for invoice {invoice_id}")
            record_id = db_record.id

        patch: Dict[str, Any] = {
            "status": BillingStatus.PAID,
            "paid_date": paid_date or reference_date or self.clock(),
        }
        if amount_cents is not None:
            patch["paid_amount_cents"] = amount_cents
        return self.update(record_id, patch, idempotency_key=idempotency_key, reference_date=reference_date)

    # Transaction handling

    def _run(
        self,
        operation: Operation,
        apply: Callable[[date], ReconciliationResult],
        idempotency_key: Optional[str],
        reference_date: Optional[date],
        target: Mapping[str, Any],
    ) -> ReconciliationResult:
        ref = reference_date or self.clock()
        attempt = 0
        while True:
            attempt += 1

            if idempotency_key:
                applied = self.events.get_by_idempotency_key(idempotency_key)
                if applied is not None:
                    return self._replay(operation, applied, target)

            try:
                result = apply(ref)
                self.db.commit()

            except (StaleDataError, IntegrityError) as e:
                # Lost a version race, or a concurrent duplicate of this very mutation
                self.db.rollback()
                reconciliation_conflict_counter.inc()
                logger.warning(
                    f"Reconciliation conflict on attempt {attempt}: {e}",
                    extra={"request_id": self.request_id, "operation": operation.value},
                )
                if attempt >= self.max_retries:
                    record_reconciliation(operation.value, "failed")
                    raise ConcurrencyConflictError(
                        f"Account changed concurrently; gave up after {attempt} attempts"
                    ) from e

            except DomainException:
                self.db.rollback()
                record_reconciliation(operation.value, "rejected")
                raise

            except SQLAlchemyError as e:
                self.db.rollback()
                record_reconciliation(operation.value, "failed")
                logger.error(f"Reconciliation storage failure: {e}", extra={"request_id": self.request_id})
                raise PersistenceError(f"Could not persist {operation.value}: {e}") from e

            else:
                record_reconciliation(
                    operation.value, "applied", result.balance_after_cents - result.balance_before_cents
                )
                log_reconciliation(
                    self.request_id,
                    str(result.account_id),
                    result.billing_number,
                    operation.value,
                    result.balance_before_cents,
                    result.balance_after_cents,
                    LatenessStatus(result.is_late).value,
                    attempts=attempt,
                )
                return result

    @staticmethod
    def _same_target(event: ReconciliationEvent, target: Mapping[str, Any]) -> bool:
        """Whether a logged event is the same mutation as the one being retried"""
        if "record_id" in target:
            return event.billing_record_id == target["record_id"]
        if event.account_id != target["account_id"]:
            return False
        # A cancelled create under the reverse policy logs no amount
        if event.record_status == BillingStatus.CANCELLED.value and event.amount_delta_cents == 0:
            return True
        return event.amount_delta_cents == target["amount_cents"]

    def _replay(
        self, operation: Operation, event: ReconciliationEvent, target: Mapping[str, Any]
    ) -> ReconciliationResult:
        """Answer a retried mutation from the log instead of applying it twice"""
        if event.operation != operation.value or not self._same_target(event, target):
            raise ValidationError(
                f"Idempotency key already used for a {event.operation} of {event.billing_number}"
            )

        account = self.accounts.get(event.account_id)
        db_record = self.records.get(event.billing_record_id)
        record_reconciliation(operation.value, "replayed")
        log_reconciliation(
            self.request_id,
            str(event.account_id),
            event.billing_number,
            operation.value,
            event.balance_before_cents,
            event.balance_after_cents,
            account.is_late if account is not None else LatenessStatus.CURRENT.value,
            replayed=True,
        )
        return ReconciliationResult(
            operation=operation,
            account_id=event.account_id,
            billing_record_id=event.billing_record_id,
            billing_number=event.billing_number,
            record_status=BillingStatus(event.record_status),
            balance_before_cents=event.balance_before_cents,
            balance_after_cents=event.balance_after_cents,
            is_late=LatenessStatus(account.is_late) if account is not None else LatenessStatus.CURRENT,
            replayed=True,
            account=AccountRepository.snapshot(account) if account is not None else None,
            record=BillingRecordRepository.snapshot(db_record) if db_record is not None else None,
        )

    # Locking

    def _lock_account(self, account_id: uuid.UUID) -> Account:
        account = self.accounts.get(account_id, for_update=True)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def _lock_record(self, record_id: uuid.UUID) -> tuple[Optional[Account], BillingRecord]:
        """Lock account then record, the same order every writer uses"""
        db_record = self.records.get(record_id)
        if db_record is None:
            raise NotFoundError(f"Billing record {record_id} not found")

        account = None
        if db_record.account_id is not None:
            account = self._lock_account(db_record.account_id)
        db_record = self.records.get(record_id, for_update=True)
        if db_record is None:
            raise NotFoundError(f"Billing record {record_id} not found")
        return account, db_record

    # The reconciliation step

    def _lateness_fallback(
        self,
        account: Account,
        record_id: Optional[uuid.UUID],
        current: Optional[BillingRecordData],
    ) -> Optional[date]:
        """Earliest open due date, used when the account has no billing schedule"""
        if account.next_billing_date is not None:
            return None
        candidates = [self.records.earliest_open_due_date(account.id, exclude_id=record_id)]
        if current is not None and current.status in OPEN_STATUSES:
            candidates.append(current.due_date)
        candidates = [c for c in candidates if c is not None]
        return min(candidates) if candidates else None

    def _reconcile(
        self,
        account: Optional[Account],
        operation: Operation,
        previous: Optional[BillingRecordData],
        current: Optional[BillingRecordData],
        db_record: Optional[BillingRecord],
        idempotency_key: Optional[str],
        ref: date,
    ) -> ReconciliationResult:
        if account is None:
            return self._apply_orphan(operation, previous, current, db_record)

        record_id = db_record.id if db_record is not None else None
        state = AccountRepository.to_billing_state(account)
        reconciled = reconcile_account(
            state,
            previous,
            current,
            ref,
            policy=self.policy,
            late_fee_cents=self.late_fee_cents,
            fallback_due_date=self._lateness_fallback(account, record_id, current),
        )
        record = reconciled.record

        if record is not None and record.status == BillingStatus.OVERDUE and current.status != BillingStatus.OVERDUE:
            overdue_transition_counter.inc()

        if operation == Operation.CREATE:
            db_record = self.records.create(record, record.billing_number)
        elif operation == Operation.UPDATE:
            BillingRecordRepository.apply(db_record, record)
        else:
            snapshot = BillingRecordRepository.snapshot(db_record)
            self.records.delete(db_record)

        if operation != Operation.DELETE:
            snapshot = BillingRecordRepository.snapshot(db_record)

        AccountRepository.apply_billing_state(account, reconciled.account)
        # Always write the account row so the version check runs for every event
        account.updated_at = datetime.now(timezone.utc)
        self.db.flush()

        final_status = record.status if record is not None else previous.status
        self.events.record(
            account_id=account.id,
            billing_record_id=snapshot.id,
            billing_number=snapshot.billing_number,
            operation=operation,
            change=reconciled.change,
            record_status=final_status,
            idempotency_key=idempotency_key,
        )
        record_lateness_change(state.is_late.value, reconciled.account.is_late.value)

        return ReconciliationResult(
            operation=operation,
            account_id=account.id,
            billing_record_id=snapshot.id,
            billing_number=snapshot.billing_number,
            record_status=final_status,
            balance_before_cents=reconciled.change.balance_before_cents,
            balance_after_cents=reconciled.change.balance_after_cents,
            is_late=reconciled.account.is_late,
            account=AccountRepository.snapshot(account),
            record=snapshot,
        )

    def _apply_orphan(
        self,
        operation: Operation,
        previous: Optional[BillingRecordData],
        current: Optional[BillingRecordData],
        db_record: BillingRecord,
    ) -> ReconciliationResult:
        """A record whose account is gone changes without touching any balance"""
        logger.warning(
            "Billing record has no account - skipping reconciliation",
            extra={"request_id": self.request_id, "billing_number": db_record.billing_number},
        )
        snapshot: BillingRecordSnapshot = BillingRecordRepository.snapshot(db_record)
        if operation == Operation.DELETE:
            self.records.delete(db_record)
        else:
            BillingRecordRepository.apply(db_record, current)
            self.db.flush()
            snapshot = BillingRecordRepository.snapshot(db_record)

        return ReconciliationResult(
            operation=operation,
            account_id=None,
            billing_record_id=snapshot.id,
            billing_number=snapshot.billing_number,
            record_status=current.status if current is not None else previous.status,
            balance_before_cents=0,
            balance_after_cents=0,
            is_late=LatenessStatus.CURRENT,
        )
