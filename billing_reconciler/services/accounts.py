"""Account onboarding, direct edits and time-based refresh"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_reconciler.config import settings
from billing_reconciler.domain.exceptions import (
    ConcurrencyConflictError,
    DomainException,
    DuplicateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from billing_reconciler.domain.lifecycle import auto_status
from billing_reconciler.domain.models import BillingStatus, Cadence, LatenessStatus
from billing_reconciler.domain.reconciliation import refresh_lateness
from billing_reconciler.domain.temporal import compute_next_billing_date
from billing_reconciler.infrastructure.database.models import Account
from billing_reconciler.infrastructure.database.repositories import AccountRepository, BillingRecordRepository
from billing_reconciler.infrastructure.observability.metrics import (
    overdue_transition_counter,
    reconciliation_conflict_counter,
    record_lateness_change,
)
from billing_reconciler.services.identifiers import IdentifierGenerator, normalize_region_code
from billing_reconciler.utils.date_utils import today

logger = logging.getLogger(__name__)

# Fields callers may edit directly; everything balance-related belongs to the reconciler
EDITABLE_FIELDS = frozenset(
    {
        "name",
        "email",
        "region_code",
        "invoicing_customer_id",
        "service_start_date",
        "billing_day_of_month",
        "billing_cadence",
        "grace_period_days",
        "payment_method",
    }
)
SCHEDULE_FIELDS = frozenset({"service_start_date", "billing_day_of_month", "billing_cadence"})


@dataclass
class RefreshResult:
    account_id: uuid.UUID
    overdue_records: int
    is_late: LatenessStatus
    next_billing_date: Optional[date]


def _validate_schedule(billing_day_of_month: int, grace_period_days: int) -> None:
    if not 1 <= billing_day_of_month <= 31:
        raise ValidationError(f"billing_day_of_month must be 1-31, got {billing_day_of_month}")
    if grace_period_days < 0:
        raise ValidationError(f"grace_period_days must be >= 0, got {grace_period_days}")


class AccountService:
    """Account writes outside of billing record events"""

    def __init__(
        self,
        db: Session,
        max_retries: int | None = None,
        clock: Callable[[], date] = today,
    ):
        self.db = db
        self.max_retries = max(1, max_retries or settings.reconcile_max_retries)
        self.clock = clock
        self.accounts = AccountRepository(db)
        self.records = BillingRecordRepository(db)

    def get(self, account_id: uuid.UUID) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def onboard(
        self,
        name: str,
        email: str,
        account_number: Optional[str] = None,
        region_code: Optional[str] = None,
        invoicing_customer_id: Optional[str] = None,
        service_start_date: Optional[date] = None,
        billing_day_of_month: int = 1,
        billing_cadence: Cadence | str = Cadence.MONTHLY,
        grace_period_days: Optional[int] = None,
        payment_method: Optional[str] = None,
        reference_date: Optional[date] = None,
    ) -> Account:
        """
        Create an account with a zero balance and a computed next billing date.

        Raises:
            ValidationError: Bad schedule or region code
            DuplicateError: Email or account number already taken
        """
        ref = reference_date or self.clock()
        cadence = Cadence(billing_cadence)
        grace = settings.default_grace_period_days if grace_period_days is None else grace_period_days
        _validate_schedule(billing_day_of_month, grace)
        if region_code:
            region_code = normalize_region_code(region_code)

        if self.accounts.get_by_email(email):
            raise DuplicateError(f"An account with email {email} already exists")
        if account_number and self.accounts.get_by_account_number(account_number):
            raise DuplicateError(f"Account number {account_number} already exists")

        try:
            account = self.accounts.create(
                account_number=account_number or IdentifierGenerator(self.db).next_account_number(),
                name=name,
                email=email,
                region_code=region_code,
                invoicing_customer_id=invoicing_customer_id,
                service_start_date=service_start_date,
                billing_day_of_month=billing_day_of_month,
                billing_cadence=cadence.value,
                next_billing_date=compute_next_billing_date(cadence, billing_day_of_month, service_start_date, ref),
                account_balance_cents=0,
                is_late=LatenessStatus.CURRENT.value,
                grace_period_days=grace,
                payment_method=payment_method,
                late_payment_history=[],
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateError(f"Account conflicts with an existing one: {e.orig}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Could not create account: {e}") from e

        logger.info(
            f"Onboarded account {account.account_number}",
            extra={"account_id": str(account.id), "next_billing_date": str(account.next_billing_date)},
        )
        return account

    def update(
        self,
        account_id: uuid.UUID,
        changes: Mapping[str, Any],
        reference_date: Optional[date] = None,
    ) -> Account:
        """
        Direct edit of an account.

        Schedule changes recompute the next billing date; lateness is always
        re-derived since grace period and schedule both feed it. The balance
        and payment fields are not editable here.
        """
        rejected = set(changes) - EDITABLE_FIELDS
        if rejected:
            raise ValidationError(f"fields not editable on an account: {', '.join(sorted(rejected))}")

        def apply(account: Account, ref: date) -> None:
            if "email" in changes and changes["email"] != account.email:
                other = self.accounts.get_by_email(changes["email"])
                if other is not None and other.id != account.id:
                    raise DuplicateError(f"An account with email {changes['email']} already exists")

            values = dict(changes)
            if values.get("region_code"):
                values["region_code"] = normalize_region_code(values["region_code"])
            if "billing_cadence" in values:
                values["billing_cadence"] = Cadence(values["billing_cadence"]).value
            _validate_schedule(
                values.get("billing_day_of_month", account.billing_day_of_month),
                values.get("grace_period_days", account.grace_period_days),
            )

            for field, value in values.items():
                setattr(account, field, value)

            if SCHEDULE_FIELDS & set(values):
                account.next_billing_date = compute_next_billing_date(
                    Cadence(account.billing_cadence),
                    account.billing_day_of_month,
                    account.service_start_date,
                    ref,
                )
            self._rederive_lateness(account, ref)

        return self._in_transaction(account_id, apply, reference_date)

    def refresh_account(self, account_id: uuid.UUID, reference_date: Optional[date] = None) -> RefreshResult:
        """
        Apply the time-based transitions for one account.

        Flow:
        1. Pending records past due date + grace become overdue
        2. Once the next billing date has passed with nothing owed, move to the next cycle
        3. Re-derive lateness
        """
        overdue = 0

        def apply(account: Account, ref: date) -> None:
            nonlocal overdue
            overdue = 0
            for record in self.records.list_open_for_account(account.id):
                status = auto_status(BillingStatus(record.status), record.due_date, account.grace_period_days, ref)
                if status.value != record.status:
                    record.status = status.value
                    overdue += 1

            if (
                account.next_billing_date is not None
                and ref > account.next_billing_date
                and (account.account_balance_cents or 0) <= 0
            ):
                account.next_billing_date = compute_next_billing_date(
                    Cadence(account.billing_cadence),
                    account.billing_day_of_month,
                    account.service_start_date,
                    ref,
                )
            self._rederive_lateness(account, ref)

        account = self._in_transaction(account_id, apply, reference_date)
        if overdue:
            overdue_transition_counter.inc(overdue)
        return RefreshResult(
            account_id=account.id,
            overdue_records=overdue,
            is_late=LatenessStatus(account.is_late),
            next_billing_date=account.next_billing_date,
        )

    def refresh_all(self, reference_date: Optional[date] = None, page_size: int = 500) -> List[RefreshResult]:
        """Refresh every account, a page of ids at a time; one failing account does not stop the sweep"""
        ref = reference_date or self.clock()
        results = []
        last_id = None
        while True:
            page = self.accounts.list_ids(after=last_id, limit=page_size)
            if not page:
                break
            for account_id in page:
                try:
                    results.append(self.refresh_account(account_id, ref))
                except (NotFoundError, PersistenceError) as e:
                    logger.error(
                        f"Refresh failed for account {account_id}: {e}", extra={"account_id": str(account_id)}
                    )
            last_id = page[-1]
        logger.info(
            f"Refreshed {len(results)} accounts",
            extra={"reference_date": ref.isoformat(), "overdue_records": sum(r.overdue_records for r in results)},
        )
        return results

    def _rederive_lateness(self, account: Account, ref: date) -> None:
        state = AccountRepository.to_billing_state(account)
        fallback = None
        if account.next_billing_date is None:
            fallback = self.records.earliest_open_due_date(account.id)
        refreshed = refresh_lateness(state, ref, fallback_due_date=fallback)
        record_lateness_change(state.is_late.value, refreshed.is_late.value)
        account.is_late = refreshed.is_late.value

    def _in_transaction(
        self,
        account_id: uuid.UUID,
        apply: Callable[[Account, date], None],
        reference_date: Optional[date],
    ) -> Account:
        """Lock, modify and commit one account, retrying lost version races"""
        ref = reference_date or self.clock()
        attempt = 0
        while True:
            attempt += 1
            try:
                account = self.accounts.get(account_id, for_update=True)
                if account is None:
                    raise NotFoundError(f"Account {account_id} not found")
                apply(account, ref)
                account.updated_at = datetime.now(timezone.utc)
                self.db.flush()
                self.db.commit()
                return account

            except StaleDataError as e:
                self.db.rollback()
                reconciliation_conflict_counter.inc()
                if attempt >= self.max_retries:
                    raise ConcurrencyConflictError(
                        f"Account {account_id} changed concurrently; gave up after {attempt} attempts"
                    ) from e

            except DomainException:
                self.db.rollback()
                raise

            except IntegrityError as e:
                self.db.rollback()
                raise DuplicateError(f"Account update conflicts with an existing account: {e.orig}") from e

            except SQLAlchemyError as e:
                self.db.rollback()
                raise PersistenceError(f"Could not update account {account_id}: {e}") from e
