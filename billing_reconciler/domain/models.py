"""Domain models - pure Python dataclasses representing business entities"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import List, Optional


class Cadence(str, Enum):
    """Billing frequency"""

    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class BillingStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class LatenessStatus(str, Enum):
    CURRENT = "current"
    LATE = "late"


class CancellationPolicy(str, Enum):
    """What a cancelled billing record contributes to the account balance"""

    REVERSE = "reverse"  # nothing
    RETAIN = "retain"  # its unsettled amount, as if still pending


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class RecordState:
    """The three fields of a billing record that move an account balance"""

    status: BillingStatus
    amount_cents: int
    settled_amount_cents: int = 0


@dataclass
class BillingRecordData:
    """A billing record as the lifecycle manager sees it"""

    account_id: Optional[uuid.UUID]
    amount_cents: int
    billing_date: date
    due_date: date
    status: BillingStatus = BillingStatus.PENDING
    paid_date: Optional[date] = None
    paid_amount_cents: Optional[int] = None
    settled_amount_cents: int = 0
    description: Optional[str] = None
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None
    notes: Optional[str] = None
    billing_number: Optional[str] = None
    id: Optional[uuid.UUID] = None

    @property
    def state(self) -> RecordState:
        return RecordState(
            status=self.status,
            amount_cents=self.amount_cents,
            settled_amount_cents=self.settled_amount_cents,
        )

    @property
    def settlement_cents(self) -> int:
        """Amount collected when this record is paid (paid amount, else full amount)"""
        if self.paid_amount_cents is not None:
            return self.paid_amount_cents
        return self.amount_cents

    def copy(self, **changes) -> "BillingRecordData":
        return replace(self, **changes)


@dataclass
class LatePaymentEntry:
    """One record of a bill that was paid after its grace period"""

    due_date: date
    paid_date: date
    days_late: int
    amount_cents: int
    late_fee_cents: int

    def to_dict(self) -> dict:
        return {
            "due_date": self.due_date.isoformat(),
            "paid_date": self.paid_date.isoformat(),
            "days_late": self.days_late,
            "amount_cents": self.amount_cents,
            "late_fee_cents": self.late_fee_cents,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LatePaymentEntry":
        return cls(
            due_date=date.fromisoformat(data["due_date"]),
            paid_date=date.fromisoformat(data["paid_date"]),
            days_late=data["days_late"],
            amount_cents=data["amount_cents"],
            late_fee_cents=data["late_fee_cents"],
        )


@dataclass
class AccountBillingState:
    """Balance and payment fields of an account owned by the reconciler"""

    balance_cents: int
    grace_period_days: int
    next_billing_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    last_payment_amount_cents: Optional[int] = None
    is_late: LatenessStatus = LatenessStatus.CURRENT
    late_payment_count: int = 0
    last_late_payment_date: Optional[date] = None
    total_late_fees_cents: int = 0
    late_payment_history: List[LatePaymentEntry] = field(default_factory=list)


@dataclass(frozen=True)
class BalanceChange:
    """Financial effect of one billing record event on its account"""

    amount_delta_cents: int
    settlement_delta_cents: int  # positive = more collected, balance goes down
    settled_amount_cents: int  # settlement now applied for the record
    balance_before_cents: int
    balance_after_cents: int

    @property
    def balance_delta_cents(self) -> int:
        return self.balance_after_cents - self.balance_before_cents


@dataclass
class AccountSnapshot:
    """Detached account view handed to post-commit side effects"""

    id: uuid.UUID
    account_number: str
    name: str
    email: Optional[str]
    invoicing_customer_id: Optional[str] = None


@dataclass
class BillingRecordSnapshot:
    """Detached billing record view handed to post-commit side effects"""

    id: uuid.UUID
    billing_number: str
    amount_cents: int
    billing_date: date
    due_date: date
    status: BillingStatus
    description: Optional[str] = None


@dataclass
class ReconciliationResult:
    """Outcome of applying one billing record mutation"""

    operation: Operation
    account_id: Optional[uuid.UUID]  # None when the record has no account
    billing_record_id: uuid.UUID
    billing_number: str
    record_status: BillingStatus
    balance_before_cents: int
    balance_after_cents: int
    is_late: LatenessStatus
    replayed: bool = False
    account: Optional[AccountSnapshot] = None
    record: Optional[BillingRecordSnapshot] = None

    @property
    def should_notify(self) -> bool:
        return (
            self.operation == Operation.CREATE
            and not self.replayed
            and self.record_status != BillingStatus.CANCELLED
        )
